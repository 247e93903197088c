"""
Soft binding algorithm registry and value codec.

A soft binding value for the pHash algorithm is the 8 raw hash bytes,
base64-encoded.
"""

import base64
import binascii

from .bit_vector import PHASH_HEX_CHARS, is_valid_hex
from .errors import FormatError

SOFT_BINDING_ALG_ID = "org.ar-io.phash"

# Fingerprint algorithms this sidecar can resolve. Watermarks: none.
FINGERPRINT_ALGORITHMS = (SOFT_BINDING_ALG_ID,)
WATERMARK_ALGORITHMS: tuple[str, ...] = ()


def is_supported_algorithm(alg: str | None) -> bool:
    return bool(alg) and alg in FINGERPRINT_ALGORITHMS + WATERMARK_ALGORITHMS


def supported_algorithms() -> dict:
    """Static registry in the shape served by /v1/services/supportedAlgorithms."""
    return {
        "watermarks": [{"alg": alg} for alg in WATERMARK_ALGORITHMS],
        "fingerprints": [{"alg": alg} for alg in FINGERPRINT_ALGORITHMS],
    }


def phash_hex_to_binding_value(phash_hex: str) -> str:
    """16-char pHash hex -> base64 soft binding value."""
    if not is_valid_hex(phash_hex):
        raise FormatError(f"Invalid pHash hex: {phash_hex[:20]!r}")
    cleaned = phash_hex.strip().lower().removeprefix("0x")
    return base64.b64encode(bytes.fromhex(cleaned)).decode("ascii")


def binding_value_to_phash_hex(value_b64: str) -> str:
    """Base64 soft binding value -> 16-char pHash hex.

    Raises:
        FormatError: if the value is not base64 or does not decode to 8 bytes
    """
    try:
        raw = base64.b64decode(value_b64.strip(), validate=True)
    except (binascii.Error, ValueError):
        raise FormatError("Soft binding value is not valid base64")
    hex_value = raw.hex()
    if len(hex_value) != PHASH_HEX_CHARS:
        raise FormatError(
            f"Soft binding value must decode to {PHASH_HEX_CHARS // 2} bytes, got {len(raw)}"
        )
    return hex_value
