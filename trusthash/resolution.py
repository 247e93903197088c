"""
Soft-binding resolution protocol.

Three ways to find manifests for an asset:

- byBinding: exact (alg, value) match against ledger tags, via the gateway
- byContent: fingerprint uploaded image bytes, then similarity search
- byReference: fetch an image from a caller URL (SSRF-safe), then as byContent

The service holds no per-request state; it only composes the store, the
gateway client, the reference fetcher and the pHash primitive.
"""

import logging
import math
from typing import Any, Callable, Optional

from .errors import (
    FeatureNotImplemented,
    SizeLimitExceeded,
    UnsupportedMediaType,
    ValidationError,
)
from .bit_vector import parse_fingerprint
from .fetcher import ReferenceFetcher
from .gateway import DEFAULT_MAX_RESULTS, MAX_RESULTS_CAP, GatewayClient
from .manifest_store import ManifestStore
from .phash import PHashResult, compute_phash, validate_image
from .search import search_by_fingerprint
from .softbinding import (
    SOFT_BINDING_ALG_ID,
    binding_value_to_phash_hex,
    is_supported_algorithm,
    supported_algorithms,
)

logger = logging.getLogger(__name__)

REFERENCE_DISABLED_MESSAGE = "byReference not implemented yet"


def parse_max_results(value: Any) -> int:
    """Parse a maxResults parameter: missing or invalid means 10, capped at 100."""
    if value is None or value == "":
        return DEFAULT_MAX_RESULTS
    try:
        parsed = int(value)
    except (TypeError, ValueError):
        return DEFAULT_MAX_RESULTS
    if parsed < 1:
        return DEFAULT_MAX_RESULTS
    return min(parsed, MAX_RESULTS_CAP)


def require_image_type(content_type: Optional[str], message: str) -> str:
    """Return the bare media type, or raise 415 unless it is image/*."""
    media_type = (content_type or "").split(";")[0].strip().lower()
    if not media_type.startswith("image/"):
        raise UnsupportedMediaType(message)
    return media_type


def _resolve_alg(alg: Optional[str]) -> str:
    alg = alg or SOFT_BINDING_ALG_ID
    if not is_supported_algorithm(alg):
        raise ValidationError(f"Unsupported soft binding algorithm: {alg}")
    return alg


class ResolutionService:
    """Implements byBinding, byContent, byReference and supportedAlgorithms."""

    def __init__(
        self,
        store: ManifestStore,
        gateway: GatewayClient,
        fetcher: ReferenceFetcher,
        max_image_bytes: int,
        reference_enabled: bool = True,
        phash_provider: Callable[[bytes], PHashResult] = compute_phash,
    ):
        self._store = store
        self._gateway = gateway
        self._fetcher = fetcher
        self._phash = phash_provider
        self.max_image_bytes = max_image_bytes
        self.reference_enabled = reference_enabled

    @property
    def max_image_mb(self) -> int:
        return self.max_image_bytes // (1024 * 1024)

    def size_limit_message(self) -> str:
        return f"Content size exceeds {self.max_image_mb}MB limit"

    # -------------------------------------------------------------------------
    # byBinding
    # -------------------------------------------------------------------------

    def by_binding(self, alg: Optional[str], value: Optional[str], max_results: Any = None) -> dict:
        """
        Exact binding lookup against ledger tags.

        Raises:
            ValidationError: alg or value missing, or alg unsupported
            UpstreamTransportError: gateway failure (never an empty result)
        """
        if not alg or not value:
            raise ValidationError("alg and value are required")
        found = self._gateway.lookup_by_soft_binding(alg, value, parse_max_results(max_results))

        matches = []
        seen = set()
        for entry in found:
            match = entry.to_match()
            key = (match["manifestId"], match.get("endpoint", ""))
            if key not in seen:
                seen.add(key)
                matches.append(match)
        return {
            "matches": matches,
            "manifestResults": [entry.to_manifest_result() for entry in found],
        }

    # -------------------------------------------------------------------------
    # byContent / byReference
    # -------------------------------------------------------------------------

    def _match_image(
        self,
        data: bytes,
        max_results: int,
        hint_alg: Optional[str] = None,
        hint_value: Optional[str] = None,
    ) -> dict:
        validate_image(data)
        fingerprint = self._phash(data)
        binary = fingerprint.binary
        if hint_value:
            binary = parse_fingerprint(binding_value_to_phash_hex(hint_value))
            logger.debug("Using hint %s in place of computed %s", hint_alg, fingerprint.hex)
        return {"matches": search_by_fingerprint(self._store, binary, max_results)}

    def by_content(
        self,
        data: bytes,
        content_type: Optional[str],
        alg: Optional[str] = None,
        max_results: Any = None,
        hint_alg: Optional[str] = None,
        hint_value: Optional[str] = None,
    ) -> dict:
        """
        Fingerprint uploaded bytes and search the local index.

        The content type is checked before anything else, so non-images
        are rejected without hashing.

        Raises:
            UnsupportedMediaType: not image/*
            SizeLimitExceeded: body over the configured ceiling
            ValidationError: empty or undecodable body, hint misuse, unsupported alg
        """
        require_image_type(content_type, "Unsupported content type. Only images are supported.")
        if hint_value and not hint_alg:
            raise ValidationError("hintAlg is required when hintValue is provided")
        if hint_alg and not is_supported_algorithm(hint_alg):
            raise ValidationError(f"Unsupported soft binding algorithm: {hint_alg}")
        _resolve_alg(alg)
        if len(data) > self.max_image_bytes:
            raise SizeLimitExceeded(self.size_limit_message())
        if not data:
            raise ValidationError("Request body is empty")
        return self._match_image(data, parse_max_results(max_results), hint_alg, hint_value)

    def by_reference(
        self,
        reference_url: Optional[str],
        asset_length: Any,
        asset_type: Optional[str],
        alg: Optional[str] = None,
        max_results: Any = None,
    ) -> dict:
        """
        Fetch a caller-referenced image and search the local index.

        Raises:
            FeatureNotImplemented: lookup disabled for this deployment
            ValidationError / PrivateAddressError: bad input or forbidden host
            SizeLimitExceeded: declared or fetched size over the ceiling
            UnsupportedMediaType: assetType or fetched type not an image
            UpstreamTimeoutError: fetch exceeded the timeout
        """
        if not self.reference_enabled:
            raise FeatureNotImplemented(REFERENCE_DISABLED_MESSAGE)

        if not reference_url or asset_length is None or not asset_type:
            raise ValidationError("referenceUrl, assetLength, and assetType are required")
        try:
            length = float(asset_length)
        except (TypeError, ValueError):
            raise ValidationError("assetLength must be a positive number")
        if isinstance(asset_length, bool) or math.isnan(length) or length <= 0:
            raise ValidationError("assetLength must be a positive number")

        self._fetcher.validate_url(reference_url)
        if length > self.max_image_bytes:
            raise SizeLimitExceeded(f"Asset length exceeds {self.max_image_mb}MB limit")
        media_type = require_image_type(asset_type, "Unsupported assetType. Only images are supported.")
        _resolve_alg(alg)

        ceiling = min(self.max_image_bytes, int(length))
        asset = self._fetcher.fetch(reference_url, ceiling, expected_type=media_type)
        if not asset.content:
            raise ValidationError("Fetched asset was empty")
        logger.info("Fetched reference %s (%d bytes)", reference_url, len(asset.content))
        return self._match_image(asset.content, parse_max_results(max_results))

    def supported_algorithms(self) -> dict:
        return supported_algorithms()
