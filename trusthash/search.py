"""
Similarity search over the local manifest index.
"""

import logging
from dataclasses import dataclass
from typing import Optional

from .bit_vector import PHASH_BITS, binary_to_floats, floats_to_binary, parse_fingerprint
from .errors import FormatError, ValidationError
from .manifest_store import DEFAULT_LIMIT, DEFAULT_THRESHOLD, ManifestStore, SearchMatch
from .softbinding import binding_value_to_phash_hex, is_supported_algorithm

logger = logging.getLogger(__name__)


@dataclass
class SearchResult:
    query_phash: str
    threshold: int
    limit: int
    matches: list[SearchMatch]

    def to_dict(self) -> dict:
        return {
            "query": {"phash": self.query_phash, "threshold": self.threshold, "limit": self.limit},
            "results": [m.to_dict() for m in self.matches],
            "total": len(self.matches),
        }


def similarity_score(distance: int) -> int:
    """Percentage similarity for a Hamming distance on a 64-bit fingerprint."""
    return round(100 * max(0.0, 1 - distance / PHASH_BITS))


def search_similar(
    store: ManifestStore,
    phash: Optional[str] = None,
    tx_id: Optional[str] = None,
    threshold: int = DEFAULT_THRESHOLD,
    limit: int = DEFAULT_LIMIT,
) -> SearchResult:
    """
    Search by an explicit fingerprint, or by the stored fingerprint of an
    indexed transaction.

    Raises:
        ValidationError: neither phash nor tx_id, bad bounds, malformed phash
        NotFoundError: tx_id not indexed
    """
    if phash:
        try:
            vector = binary_to_floats(parse_fingerprint(phash))
        except FormatError:
            raise FormatError(f"Invalid pHash format: {phash}")
        matches = store.search_by_vector(vector, threshold, limit)
        query = phash
    elif tx_id:
        matches = store.search_by_tx_id(tx_id, threshold, limit)
        query = floats_to_binary(store.get_by_tx_id(tx_id).phash)
    else:
        raise ValidationError("Either phash or txId must be provided")

    logger.info("Search %s... threshold=%d found=%d", query[:16], threshold, len(matches))
    return SearchResult(query_phash=query, threshold=threshold, limit=limit, matches=matches)


def search_by_fingerprint(
    store: ManifestStore,
    binary: str,
    max_results: int = DEFAULT_LIMIT,
    threshold: int = DEFAULT_THRESHOLD,
) -> list[dict]:
    """Manifests near a binary fingerprint, as ``{manifestId, similarityScore}``."""
    matches = store.search_by_vector(binary_to_floats(binary), threshold, max_results)
    return [
        {"manifestId": m.record.manifest_id, "similarityScore": similarity_score(m.distance)}
        for m in matches
        if m.record.manifest_id
    ]


def search_by_soft_binding(
    store: ManifestStore,
    alg: str,
    value_b64: str,
    max_results: int = DEFAULT_LIMIT,
) -> list[dict]:
    """
    Similarity search seeded by a soft-binding value.

    Raises:
        ValidationError: unsupported algorithm
        FormatError: value is not a base64 64-bit fingerprint
    """
    if not is_supported_algorithm(alg):
        raise ValidationError(f"Unsupported soft binding algorithm: {alg}")
    binary = parse_fingerprint(binding_value_to_phash_hex(value_b64))
    return search_by_fingerprint(store, binary, max_results)


def get_search_stats(store: ManifestStore) -> dict:
    return {"totalManifests": store.count(), "indexStatus": "active"}
