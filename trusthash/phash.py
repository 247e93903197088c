"""
Perceptual hash computation and image validation.

The hash is the 64-bit blockhash (bmvbhash) that produces the ledger's
``pHash`` tags: RGBA pixels are summed into an 8x8 grid of block values
(weighted by coverage when the image size is not a multiple of 8, fully
transparent pixels counting as white), and each block becomes one bit by
comparing it with the median of its horizontal band (4 bands of 16
blocks). The result is returned in every form the rest of the sidecar uses:
binary string, hex string and the 64-float storage vector.
"""

import io
import logging
import math
from dataclasses import dataclass, field
from typing import Protocol

from PIL import Image, UnidentifiedImageError

from .bit_vector import binary_to_floats, binary_to_hex
from .errors import ValidationError

logger = logging.getLogger(__name__)

GRID_SIZE = 8
BANDS = 4
TRANSPARENT_VALUE = 3 * 255
SUPPORTED_FORMATS = ("jpeg", "png", "webp", "gif", "tiff")


@dataclass
class PHashResult:
    """A computed fingerprint in binary, hex and float forms."""
    binary: str
    hex: str
    floats: list[float] = field(repr=False)


@dataclass
class ImageInfo:
    width: int
    height: int
    format: str
    size_bytes: int


class PHashProvider(Protocol):
    """Anything that turns image bytes into a 64-bit fingerprint."""

    def __call__(self, data: bytes) -> PHashResult: ...


def _open(data: bytes) -> Image.Image:
    try:
        img = Image.open(io.BytesIO(data))
        img.load()
    except (UnidentifiedImageError, Image.DecompressionBombError, OSError,
            SyntaxError, ValueError) as e:
        raise ValidationError(f"Invalid image: {e}") from e
    return img


def validate_image(data: bytes) -> ImageInfo:
    """
    Check that ``data`` decodes as a supported image with real dimensions.

    Raises:
        ValidationError: empty, undecodable, unsupported format or no dimensions
    """
    if not data:
        raise ValidationError("Image body is empty")
    img = _open(data)
    fmt = (img.format or "unknown").lower()
    if fmt not in SUPPORTED_FORMATS:
        raise ValidationError(f"Invalid image: unsupported image format {fmt}")
    width, height = img.size
    if not width or not height:
        raise ValidationError("Could not determine image dimensions")
    return ImageInfo(width=width, height=height, format=fmt, size_bytes=len(data))


def _pixel_rows(img: Image.Image) -> list[list[int]]:
    """Per-pixel r+g+b values, row by row; fully transparent pixels count as white."""
    rgba = img.convert("RGBA")
    width, height = rgba.size
    data = rgba.tobytes()
    stride = width * 4
    rows = []
    for y in range(height):
        row = data[y * stride:(y + 1) * stride]
        rows.append([
            TRANSPARENT_VALUE if a == 0 else r + g + b
            for r, g, b, a in zip(row[0::4], row[1::4], row[2::4], row[3::4])
        ])
    return rows


def _even_blocks(rows: list[list[int]], width: int, height: int) -> tuple[list[int], int]:
    block_w = width // GRID_SIZE
    block_h = height // GRID_SIZE
    blocks = [0] * (GRID_SIZE * GRID_SIZE)
    for y, values in enumerate(rows):
        base = (y // block_h) * GRID_SIZE
        for x in range(GRID_SIZE):
            blocks[base + x] += sum(values[x * block_w:(x + 1) * block_w])
    return blocks, block_w * block_h


def _edge_weights(index: int, size: int, block: float, even: bool) -> tuple[int, int, float, float]:
    """Blocks a pixel row/column falls into and the share of it each receives."""
    if even:
        first = math.floor(index / block)
        return first, first, 1.0, 0.0
    mod = (index + 1) % block
    frac = mod - math.floor(mod)
    whole = mod - frac
    if whole > 0 or index + 1 == size:
        first = second = math.floor(index / block)
    else:
        first = math.floor(index / block)
        second = math.ceil(index / block)
    return first, second, 1 - frac, frac


def _weighted_blocks(
    rows: list[list[int]], width: int, height: int,
) -> tuple[list[float], float]:
    block_w = width / GRID_SIZE
    block_h = height / GRID_SIZE
    even_x = width % GRID_SIZE == 0
    even_y = height % GRID_SIZE == 0
    grid = [[0.0] * GRID_SIZE for _ in range(GRID_SIZE)]
    columns = [_edge_weights(x, width, block_w, even_x) for x in range(width)]
    for y, values in enumerate(rows):
        top, bottom, w_top, w_bottom = _edge_weights(y, height, block_h, even_y)
        top_row, bottom_row = grid[top], grid[bottom]
        # Same per-pixel accumulation order as bmvbhash, so float sums match exactly
        for v, (left, right, w_left, w_right) in zip(values, columns):
            top_row[left] += v * w_top * w_left
            top_row[right] += v * w_top * w_right
            bottom_row[left] += v * w_bottom * w_left
            bottom_row[right] += v * w_bottom * w_right
    return [v for row in grid for v in row], block_w * block_h


def _median(values: list) -> float:
    ordered = sorted(values)
    mid = len(ordered) // 2
    if len(ordered) % 2:
        return ordered[mid]
    return (ordered[mid - 1] + ordered[mid]) / 2.0


def _bits_from_blocks(blocks: list, pixels_per_block: float) -> str:
    half_block_value = pixels_per_block * 256 * 3 / 2
    band_size = len(blocks) // BANDS
    bits = []
    for start in range(0, len(blocks), band_size):
        band = blocks[start:start + band_size]
        m = _median(band)
        # Blocks equal to the median go high only in bright bands
        bits.extend(
            "1" if v > m or (abs(v - m) < 1 and m > half_block_value) else "0"
            for v in band
        )
    return "".join(bits)


def compute_phash(data: bytes) -> PHashResult:
    """
    Compute the 64-bit perceptual hash of an encoded image.

    Raises:
        ValidationError: bytes are not a decodable image
    """
    img = _open(data)
    width, height = img.size
    rows = _pixel_rows(img)
    if width % GRID_SIZE == 0 and height % GRID_SIZE == 0:
        blocks, pixels_per_block = _even_blocks(rows, width, height)
    else:
        blocks, pixels_per_block = _weighted_blocks(rows, width, height)
    binary = _bits_from_blocks(blocks, pixels_per_block)
    result = PHashResult(binary=binary, hex=binary_to_hex(binary), floats=binary_to_floats(binary))
    logger.debug("Computed pHash %s for %dx%d image", result.hex, width, height)
    return result
