"""
Bit vector conversions for 64-bit perceptual hashes.

A pHash is kept in three shapes:
- Binary string: "1010..." (64 chars of 0/1)
- Hex string: "a5a5a5a5a5a5a5a5" (16 hex chars)
- Float vector: [1.0, 0.0, ...] (64 floats, the storage form)

On 0/1 vectors squared Euclidean distance equals Hamming distance, which is
what the manifest index relies on.
"""

import re

from .errors import FormatError

PHASH_BITS = 64
PHASH_HEX_CHARS = PHASH_BITS // 4

_BINARY_RE = re.compile(r"^[01]{64}$")
_HEX_RE = re.compile(r"^[0-9a-f]{16}$")


def _strip_hex_prefix(value: str) -> str:
    cleaned = value.strip().lower()
    if cleaned.startswith("0x"):
        cleaned = cleaned[2:]
    return cleaned


def is_valid_binary(value: str) -> bool:
    """True if value is a 64-character string of 0/1."""
    return bool(_BINARY_RE.match(value))


def is_valid_hex(value: str) -> bool:
    """True if value is 16 hex characters, with or without a 0x prefix."""
    return bool(_HEX_RE.match(_strip_hex_prefix(value)))


def hex_to_binary(hex_value: str) -> str:
    """Convert 16 hex characters to a 64-character binary string.

    "a5" -> "10100101" per byte. Accepts an optional 0x prefix.
    """
    cleaned = _strip_hex_prefix(hex_value)
    if len(cleaned) != PHASH_HEX_CHARS:
        raise FormatError(f"Expected {PHASH_HEX_CHARS} hex characters, got {len(cleaned)}")
    try:
        return "".join(format(int(ch, 16), "04b") for ch in cleaned)
    except ValueError:
        raise FormatError(f"Invalid hex characters in pHash: {hex_value[:20]!r}")


def binary_to_hex(binary: str) -> str:
    """Convert a 64-character binary string to 16 lowercase hex characters."""
    if len(binary) != PHASH_BITS:
        raise FormatError(f"Expected {PHASH_BITS}-bit binary string, got {len(binary)} bits")
    if not is_valid_binary(binary):
        raise FormatError("Binary pHash may only contain '0' and '1'")
    return "".join(
        format(int(binary[i:i + 4], 2), "x") for i in range(0, PHASH_BITS, 4)
    )


def binary_to_floats(binary: str) -> list[float]:
    """Convert a 64-character binary string to the 64-float storage form."""
    if len(binary) != PHASH_BITS:
        raise FormatError(f"Expected {PHASH_BITS}-bit binary string, got {len(binary)} bits")
    floats = []
    for bit in binary:
        if bit not in ("0", "1"):
            raise FormatError(f"Invalid bit character: {bit!r}")
        floats.append(1.0 if bit == "1" else 0.0)
    return floats


def floats_to_binary(floats: list[float]) -> str:
    """Convert a 64-float vector back to binary, thresholding at 0.5."""
    if len(floats) != PHASH_BITS:
        raise FormatError(f"Expected {PHASH_BITS} floats, got {len(floats)}")
    return "".join("1" if f >= 0.5 else "0" for f in floats)


def hamming_distance(a: str, b: str) -> int:
    """Count positions where two equal-length binary strings differ."""
    if len(a) != len(b):
        raise FormatError(f"Binary strings must have same length: {len(a)} vs {len(b)}")
    return sum(1 for x, y in zip(a, b) if x != y)


def hamming_distance_floats(a: list[float], b: list[float]) -> int:
    """Hamming distance between two float vectors (values >= 0.5 count as 1)."""
    if len(a) != len(b):
        raise FormatError(f"Float vectors must have same length: {len(a)} vs {len(b)}")
    return sum(1 for x, y in zip(a, b) if (x >= 0.5) != (y >= 0.5))


def format_for_display(binary: str) -> str:
    """Group a binary pHash into 8-bit blocks separated by spaces."""
    if len(binary) != PHASH_BITS:
        return binary
    return " ".join(binary[i:i + 8] for i in range(0, PHASH_BITS, 8))


def parse_fingerprint(value: str) -> str:
    """
    Normalize a fingerprint to its 64-character binary form.

    Accepts a 64-char binary string or a 16-char hex string (optionally
    0x-prefixed). Binary is tried first: a 64-char string of 0/1 is never
    reinterpreted as hex.

    Raises:
        FormatError: if value is neither form
    """
    if not isinstance(value, str):
        raise FormatError(f"pHash must be a string, got {type(value).__name__}")
    trimmed = value.strip()
    if is_valid_binary(trimmed):
        return trimmed
    if is_valid_hex(trimmed):
        return hex_to_binary(trimmed)
    raise FormatError(
        "Invalid pHash format. Expected 64-bit binary string or 16-character "
        f"hex string, got: {trimmed[:20]!r}"
    )
