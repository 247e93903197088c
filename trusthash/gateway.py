"""
HTTP client for the ledger gateway.

Wraps the gateway's GraphQL tag-search surface and its raw transaction
endpoint. Used by the resolution service (byBinding) and the manifest
locator.

Transport failures (timeouts, non-2xx, non-JSON bodies, GraphQL error lists)
raise UpstreamTransportError, which callers map to 502/504. "No matching
transactions" is an empty result, never an error.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Iterable, Optional
from urllib.parse import quote

import httpx

from .errors import (
    NotFoundError,
    SizeLimitExceeded,
    UpstreamTimeoutError,
    UpstreamTransportError,
    ValidationError,
)
from .softbinding import is_supported_algorithm
from .streams import parse_content_length
from .tags import (
    MANIFEST_FETCH_URL_TAGS,
    MANIFEST_ID_TAGS,
    MANIFEST_REPO_URL_TAGS,
    SOFT_BINDING_TAG_FAMILIES,
    tag_value,
)

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 10.0
DEFAULT_MAX_RESULTS = 10
MAX_RESULTS_CAP = 100
LOCATOR_QUERY_SIZE = 5
DEFAULT_MAX_TRANSACTION_BYTES = 50 * 1024 * 1024

TRANSACTION_QUERY = """
query TransactionsByTags($first: Int!, $tags: [TagFilter!]!) {
  transactions(first: $first, sort: HEIGHT_DESC, tags: $tags) {
    edges {
      node {
        id
        tags {
          name
          value
        }
        block {
          height
          timestamp
        }
      }
    }
  }
}
"""


@dataclass
class TransactionNode:
    """A transaction returned by a tag query."""
    id: str
    tags: list[dict]
    block_height: Optional[int] = None
    block_timestamp: Optional[int] = None

    @property
    def sortable_height(self) -> int:
        return self.block_height if self.block_height is not None else -1


@dataclass
class SoftBindingMatch:
    """A manifest located through an exact soft-binding tag match."""
    manifest_id: str
    manifest_tx_id: str
    repo_url: Optional[str] = None
    fetch_url: Optional[str] = None

    def to_match(self) -> dict:
        out = {"manifestId": self.manifest_id}
        if self.repo_url:
            out["endpoint"] = self.repo_url
        return out

    def to_manifest_result(self) -> dict:
        out = {"manifestId": self.manifest_id}
        if self.repo_url:
            out["repoUrl"] = self.repo_url
        if self.fetch_url:
            out["fetchUrl"] = self.fetch_url
        return out


@dataclass
class ManifestLocation:
    """Most recent ledger location of a manifest id."""
    manifest_id: str
    manifest_tx_id: str
    repo_url: Optional[str] = None
    fetch_url: Optional[str] = None


def clamp_max_results(value: Optional[int]) -> int:
    """Cap to [1, 100]; None means the default of 10."""
    if value is None:
        return DEFAULT_MAX_RESULTS
    return max(1, min(int(value), MAX_RESULTS_CAP))


def dedupe_and_sort(nodes: Iterable[TransactionNode]) -> list[TransactionNode]:
    """
    One node per transaction id, keeping the highest observed block height,
    sorted by descending height then ascending id.
    """
    by_id: dict[str, TransactionNode] = {}
    for node in nodes:
        existing = by_id.get(node.id)
        if existing is None or node.sortable_height > existing.sortable_height:
            by_id[node.id] = node
    return sorted(by_id.values(), key=lambda n: (-n.sortable_height, n.id))


def _parse_node(raw: dict) -> Optional[TransactionNode]:
    if not isinstance(raw, dict) or not raw.get("id"):
        return None
    block = raw.get("block") or {}
    height = block.get("height")
    timestamp = block.get("timestamp")
    tags = [t for t in (raw.get("tags") or []) if isinstance(t, dict)]
    return TransactionNode(
        id=str(raw["id"]),
        tags=tags,
        block_height=height if isinstance(height, int) and not isinstance(height, bool) else None,
        block_timestamp=timestamp if isinstance(timestamp, int) else None,
    )


class GatewayClient:
    """HTTP client for the ledger gateway (GraphQL + raw transactions)."""

    def __init__(
        self,
        gateway_url: str,
        *,
        timeout: float = DEFAULT_TIMEOUT,
        max_transaction_bytes: int = DEFAULT_MAX_TRANSACTION_BYTES,
    ):
        self._gateway_url = gateway_url.rstrip("/")
        self._max_transaction_bytes = max_transaction_bytes
        self._client = httpx.Client(
            timeout=timeout,
            headers={"Content-Type": "application/json"},
            follow_redirects=False,
        )

    @property
    def gateway_url(self) -> str:
        return self._gateway_url

    @property
    def graphql_url(self) -> str:
        if self._gateway_url.endswith("/graphql"):
            return self._gateway_url
        return f"{self._gateway_url}/graphql"

    @property
    def data_url(self) -> str:
        """Base URL for raw transaction data."""
        return self._gateway_url.removesuffix("/graphql")

    # -------------------------------------------------------------------------
    # GraphQL
    # -------------------------------------------------------------------------

    def _post_graphql(self, query: str, variables: dict) -> dict:
        try:
            resp = self._client.post(
                self.graphql_url, json={"query": query, "variables": variables},
            )
        except httpx.TimeoutException as e:
            raise UpstreamTimeoutError("Gateway GraphQL request timed out") from e
        except httpx.HTTPError as e:
            raise UpstreamTransportError(f"Gateway GraphQL request failed: {e}") from e

        if resp.status_code < 200 or resp.status_code >= 300:
            raise UpstreamTransportError(
                f"Gateway GraphQL request failed with status {resp.status_code}"
            )

        try:
            body = resp.json()
        except ValueError as e:
            raise UpstreamTransportError("Gateway GraphQL returned non-JSON response") from e

        if not isinstance(body, dict):
            raise UpstreamTransportError("Gateway GraphQL returned an unexpected payload")
        errors = body.get("errors")
        if errors:
            first = errors[0] if isinstance(errors, list) and errors else {}
            message = (first.get("message") if isinstance(first, dict) else None) or "Unknown GraphQL error"
            raise UpstreamTransportError(f"Gateway GraphQL error: {message}")
        data = body.get("data")
        if not isinstance(data, dict):
            raise UpstreamTransportError("Gateway GraphQL returned empty data payload")
        return data

    def query_transactions(self, tags: list[dict], first: int) -> list[TransactionNode]:
        """Transactions matching every tag filter ({name, values})."""
        data = self._post_graphql(TRANSACTION_QUERY, {"tags": tags, "first": first})
        edges = (data.get("transactions") or {}).get("edges") or []
        nodes = []
        for edge in edges:
            node = _parse_node((edge or {}).get("node"))
            if node is not None:
                nodes.append(node)
        return nodes

    def lookup_by_soft_binding(
        self,
        alg: str,
        value_b64: str,
        max_results: Optional[int] = None,
    ) -> list[SoftBindingMatch]:
        """
        Manifests whose ledger tags carry exactly this (alg, value) binding.

        Queries every accepted tag-name family, merges, dedupes by
        transaction id, and returns at most ``max_results`` entries.
        """
        alg = (alg or "").strip()
        value_b64 = (value_b64 or "").strip()
        if not alg or not value_b64:
            raise ValidationError("alg and value are required")
        if not is_supported_algorithm(alg):
            raise ValidationError(f"Unsupported soft binding algorithm: {alg}")
        limit = clamp_max_results(max_results)

        nodes: list[TransactionNode] = []
        for alg_tag, value_tag, _scope_tag in SOFT_BINDING_TAG_FAMILIES:
            nodes.extend(self.query_transactions(
                [{"name": alg_tag, "values": [alg]}, {"name": value_tag, "values": [value_b64]}],
                limit,
            ))

        results: list[SoftBindingMatch] = []
        seen: set[tuple] = set()
        for node in dedupe_and_sort(nodes):
            manifest_id = tag_value(node.tags, MANIFEST_ID_TAGS)
            if not manifest_id:
                continue
            match = SoftBindingMatch(
                manifest_id=manifest_id,
                manifest_tx_id=node.id,
                repo_url=tag_value(node.tags, MANIFEST_REPO_URL_TAGS),
                fetch_url=tag_value(node.tags, MANIFEST_FETCH_URL_TAGS),
            )
            key = (match.manifest_id, match.repo_url or "", match.fetch_url or "")
            if key in seen:
                continue
            seen.add(key)
            results.append(match)
            if len(results) >= limit:
                break

        logger.info("Soft binding lookup %s: %d nodes, %d results", alg, len(nodes), len(results))
        return results

    def lookup_manifest_locator(self, manifest_id: str) -> Optional[ManifestLocation]:
        """Most recent transaction tagged with ``manifest_id``, or None."""
        manifest_id = (manifest_id or "").strip()
        if not manifest_id:
            raise ValidationError("manifestId is required")

        nodes: list[TransactionNode] = []
        for tag_name in MANIFEST_ID_TAGS:
            nodes.extend(self.query_transactions(
                [{"name": tag_name, "values": [manifest_id]}], LOCATOR_QUERY_SIZE,
            ))

        ordered = dedupe_and_sort(nodes)
        if not ordered:
            return None
        latest = ordered[0]
        return ManifestLocation(
            manifest_id=tag_value(latest.tags, MANIFEST_ID_TAGS) or manifest_id,
            manifest_tx_id=latest.id,
            repo_url=tag_value(latest.tags, MANIFEST_REPO_URL_TAGS),
            fetch_url=tag_value(latest.tags, MANIFEST_FETCH_URL_TAGS),
        )

    # -------------------------------------------------------------------------
    # Raw transactions
    # -------------------------------------------------------------------------

    def fetch_transaction(self, tx_id: str) -> bytes:
        """
        Raw bytes of a transaction from the gateway.

        Raises:
            NotFoundError: gateway answered 404
            UpstreamTransportError: any other failure
            SizeLimitExceeded: body larger than max_transaction_bytes
        """
        url = f"{self.data_url}/{quote(tx_id, safe='')}"
        try:
            with self._client.stream("GET", url) as resp:
                if resp.status_code == 404:
                    raise NotFoundError(f"Manifest not available on gateway: {tx_id}")
                if resp.status_code < 200 or resp.status_code >= 300:
                    raise UpstreamTransportError(
                        f"Gateway returned {resp.status_code} for transaction {tx_id}"
                    )
                declared = parse_content_length(resp.headers.get("content-length"))
                if declared is not None and declared > self._max_transaction_bytes:
                    raise SizeLimitExceeded(f"Transaction {tx_id} exceeds size limit")
                buf = bytearray()
                for chunk in resp.iter_bytes():
                    if len(buf) + len(chunk) > self._max_transaction_bytes:
                        raise SizeLimitExceeded(f"Transaction {tx_id} exceeds size limit")
                    buf.extend(chunk)
                return bytes(buf)
        except httpx.TimeoutException as e:
            raise UpstreamTimeoutError(f"Gateway timed out fetching {tx_id}") from e
        except httpx.HTTPError as e:
            raise UpstreamTransportError(f"Gateway fetch failed for {tx_id}: {e}") from e

    def close(self) -> None:
        """Close the HTTP client."""
        self._client.close()
