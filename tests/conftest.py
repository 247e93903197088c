"""
Shared pytest fixtures for trusthash tests.

Every store lives in a tmp_path SQLite file; no test touches the network.
"""

import io

import pytest
from PIL import Image

from trusthash.bit_vector import binary_to_floats
from trusthash.manifest_store import ManifestRecord, ManifestStore, SoftBindingRecord
from trusthash.softbinding import SOFT_BINDING_ALG_ID


def bits_with_ones(count: int) -> str:
    """64-bit binary string whose first ``count`` bits are set."""
    return "1" * count + "0" * (64 - count)


@pytest.fixture
def bits():
    """The bits_with_ones helper, as a fixture."""
    return bits_with_ones


@pytest.fixture
def store(tmp_path):
    """A freshly migrated manifest store."""
    s = ManifestStore(tmp_path / "provenance.db")
    yield s
    s.close()


@pytest.fixture
def make_record():
    """Factory for ManifestRecord with sensible defaults."""
    def _make(tx_id: str, manifest_id: str | None = None, binary: str | None = None, **kwargs):
        return ManifestRecord(
            manifest_tx_id=tx_id,
            manifest_id=manifest_id if manifest_id is not None else f"urn:uuid:{tx_id}",
            content_type=kwargs.pop("content_type", "application/c2pa"),
            phash=binary_to_floats(binary or bits_with_ones(0)),
            owner_address=kwargs.pop("owner_address", "owner-1"),
            **kwargs,
        )
    return _make


@pytest.fixture
def phash_binding():
    """Factory for a SoftBindingRecord of the pHash algorithm."""
    def _make(value_b64: str, scope_json: str | None = None):
        return SoftBindingRecord(alg=SOFT_BINDING_ALG_ID, value_b64=value_b64, scope_json=scope_json)
    return _make


@pytest.fixture
def webhook_tags():
    """Factory for a complete sidecar tag set, with per-test overrides."""
    def _make(
        manifest_id: str = "urn:uuid:test-1",
        phash: str = "a5a5a5a5a5a5a5a5",
        alg_tag: str = "C2PA-Soft-Binding-Alg",
        value_tag: str = "C2PA-Soft-Binding-Value",
        extra: list[dict] | None = None,
        omit: tuple[str, ...] = (),
    ) -> list[dict]:
        tags = [
            {"name": "Content-Type", "value": "application/c2pa"},
            {"name": "Manifest-Type", "value": "sidecar"},
            {"name": "C2PA-Manifest-ID", "value": manifest_id},
            {"name": "pHash", "value": phash},
            {"name": alg_tag, "value": SOFT_BINDING_ALG_ID},
            {"name": value_tag, "value": "paWlpaWlpaU="},
        ]
        tags = [t for t in tags if t["name"] not in omit]
        tags.extend(extra or [])
        return tags
    return _make


def _image_bytes(fmt: str, pattern: str = "split") -> bytes:
    img = Image.new("RGB", (64, 64), (255, 255, 255))
    if pattern == "split":
        for x in range(32):
            for y in range(64):
                img.putpixel((x, y), (0, 0, 0))
    buf = io.BytesIO()
    img.save(buf, format=fmt)
    return buf.getvalue()


@pytest.fixture
def png_bytes():
    """A 64x64 PNG, left half black, right half white."""
    return _image_bytes("PNG")


@pytest.fixture
def jpeg_bytes():
    return _image_bytes("JPEG")
