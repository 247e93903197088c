"""
Webhook ingestion.

The gateway pushes one notification per tagged transaction (or a batch of
them). Each notification is normalized into a WebhookRecord, checked
against the tag contract, and indexed when it describes a sidecar manifest.

Per-item outcomes are reported, never raised: many ledger transactions are
simply not manifests, and the sender must not retry on partial failure.
"""

import json
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Optional

from .bit_vector import binary_to_floats, parse_fingerprint
from .errors import ConflictError, FormatError, SidecarError, ValidationError, log_exception
from .manifest_store import ManifestRecord, ManifestStore, SoftBindingRecord
from .softbinding import is_supported_algorithm
from .tags import (
    APP_NAME_TAG,
    CONTENT_TYPE_TAG,
    HAS_PRIOR_MANIFEST_TAG,
    MANIFEST_CONTENT_TYPE,
    MANIFEST_ID_TAGS,
    MANIFEST_TYPE_TAG,
    ORIGINAL_HASH_TAG,
    PHASH_TAG,
    SIDECAR_MANIFEST_TYPE,
    soft_binding_tags,
    tag_value,
)

logger = logging.getLogger(__name__)

INDEXED = "indexed"
SKIPPED = "skipped"
ERROR = "error"

REASON_ALREADY_INDEXED = "Already indexed"
REASON_MISSING_TAGS = "Missing required tags"
REASON_NON_SIDECAR = "Non-sidecar manifest"
REASON_BINDING_MISMATCH = "Soft binding alg/value tag count mismatch"
REASON_NO_SUPPORTED_ALG = "No supported soft binding algorithm"
REASON_MISSING_TX_ID = "Missing transaction ID in payload"
REASON_DUPLICATE_MANIFEST_ID = "Manifest ID already indexed by another transaction"

# canonical field -> accepted payload keys, first present wins
FIELD_ALIASES = {
    "tx_id": ("tx_id", "txId", "id"),
    "tags": ("tags",),
    "owner": ("owner", "owner_address", "ownerAddress"),
    "block_height": ("block_height", "blockHeight", "height"),
    "block_timestamp": ("block_timestamp", "blockTimestamp", "timestamp"),
}


@dataclass
class WebhookRecord:
    """A webhook item in canonical shape."""
    tx_id: Optional[str]
    tags: list[dict] = field(default_factory=list)
    owner: Optional[str] = None
    block_height: Optional[int] = None
    block_timestamp: Optional[int] = None

    @classmethod
    def from_payload(cls, payload: dict) -> "WebhookRecord":
        def pick(canonical: str) -> Any:
            for key in FIELD_ALIASES[canonical]:
                value = payload.get(key)
                if value is not None and value != "":
                    return value
            return None

        raw_tags = pick("tags") or []
        tags = [
            {"name": str(t["name"]), "value": "" if t.get("value") is None else str(t["value"])}
            for t in raw_tags
            if isinstance(t, dict) and t.get("name")
        ] if isinstance(raw_tags, list) else []

        tx_id = pick("tx_id")
        owner = pick("owner")
        return cls(
            tx_id=str(tx_id) if tx_id is not None else None,
            tags=tags,
            owner=str(owner) if owner is not None else None,
            block_height=_as_int(pick("block_height")),
            block_timestamp=_as_int(pick("block_timestamp")),
        )


@dataclass
class WebhookResult:
    action: str
    tx_id: Optional[str] = None
    reason: Optional[str] = None

    @property
    def success(self) -> bool:
        return self.action != ERROR

    def to_dict(self) -> dict:
        out: dict = {"txId": self.tx_id, "action": self.action}
        if self.reason:
            out["reason"] = self.reason
        return out


@dataclass
class BatchSummary:
    results: list[WebhookResult]

    def count(self, action: str) -> int:
        return sum(1 for r in self.results if r.action == action)

    def to_dict(self) -> dict:
        errors = self.count(ERROR)
        return {
            "success": errors == 0,
            "data": {
                "total": len(self.results),
                "indexed": self.count(INDEXED),
                "skipped": self.count(SKIPPED),
                "errors": errors,
            },
            "results": [r.to_dict() for r in self.results],
        }


def _as_int(value: Any) -> Optional[int]:
    if value is None or isinstance(value, bool):
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


def _timestamp_iso(seconds: Optional[int]) -> Optional[str]:
    if seconds is None:
        return None
    try:
        return datetime.fromtimestamp(seconds, tz=timezone.utc).isoformat()
    except (OverflowError, OSError, ValueError):
        return None


def normalize_scope(raw: Optional[str]) -> Optional[str]:
    """Re-serialize JSON scope values; anything else is stored as a JSON string."""
    if raw is None or raw == "":
        return None
    try:
        return json.dumps(json.loads(raw), separators=(",", ":"), sort_keys=True)
    except ValueError:
        return json.dumps(raw)


def _parse_bool_tag(value: Optional[str]) -> bool:
    return (value or "").strip().lower() in ("true", "1", "yes")


class WebhookProcessor:
    """Validates webhook items against the tag contract and indexes them."""

    def __init__(self, store: ManifestStore):
        self._store = store

    def process(self, payload: Any) -> WebhookResult:
        if not isinstance(payload, dict):
            return WebhookResult(ERROR, reason="Webhook item must be an object")
        record = WebhookRecord.from_payload(payload)
        try:
            return self._process_record(record)
        except SidecarError as e:
            logger.warning("Webhook item %s failed: %s", record.tx_id, e.message)
            return WebhookResult(ERROR, record.tx_id, e.message)
        except Exception as e:
            log_exception(e, f"webhook {record.tx_id}")
            logger.error("Webhook item %s failed: %s", record.tx_id, e)
            return WebhookResult(ERROR, record.tx_id, str(e) or type(e).__name__)

    def _process_record(self, record: WebhookRecord) -> WebhookResult:
        if not record.tx_id:
            return WebhookResult(ERROR, reason=REASON_MISSING_TX_ID)
        tx_id = record.tx_id
        logger.info("Processing webhook %s (%d tags)", tx_id, len(record.tags))

        if self._store.exists(tx_id):
            logger.debug("Manifest %s already indexed, skipping", tx_id)
            return WebhookResult(SKIPPED, tx_id, REASON_ALREADY_INDEXED)

        tags = record.tags
        content_type = tag_value(tags, CONTENT_TYPE_TAG)
        manifest_type = tag_value(tags, MANIFEST_TYPE_TAG)
        manifest_id = tag_value(tags, MANIFEST_ID_TAGS)
        phash_value = tag_value(tags, PHASH_TAG)
        algs, values, scopes = soft_binding_tags(tags)

        if not (content_type and manifest_type and manifest_id and phash_value and algs and values):
            return WebhookResult(SKIPPED, tx_id, REASON_MISSING_TAGS)

        if content_type != MANIFEST_CONTENT_TYPE or manifest_type != SIDECAR_MANIFEST_TYPE:
            return WebhookResult(SKIPPED, tx_id, REASON_NON_SIDECAR)

        if len(algs) != len(values):
            return WebhookResult(SKIPPED, tx_id, REASON_BINDING_MISMATCH)

        if not any(is_supported_algorithm(a) for a in algs):
            return WebhookResult(SKIPPED, tx_id, REASON_NO_SUPPORTED_ALG)

        try:
            phash = binary_to_floats(parse_fingerprint(phash_value))
        except FormatError:
            logger.warning("Invalid pHash on %s: %r", tx_id, phash_value)
            return WebhookResult(ERROR, tx_id, f"Invalid pHash format: {phash_value}")

        # Scopes only pair positionally when every binding has one
        paired_scopes = scopes if len(scopes) == len(algs) else [None] * len(algs)
        bindings = [
            SoftBindingRecord(alg=a, value_b64=v, scope_json=normalize_scope(s))
            for a, v, s in zip(algs, values, paired_scopes)
        ]

        manifest = ManifestRecord(
            manifest_tx_id=tx_id,
            manifest_id=manifest_id,
            original_hash=tag_value(tags, ORIGINAL_HASH_TAG),
            content_type=content_type,
            phash=phash,
            has_prior_manifest=_parse_bool_tag(tag_value(tags, HAS_PRIOR_MANIFEST_TAG)),
            claim_generator=tag_value(tags, APP_NAME_TAG) or "External",
            owner_address=record.owner or "unknown",
            block_height=record.block_height,
            block_timestamp=_timestamp_iso(record.block_timestamp),
        )
        try:
            self._store.insert(manifest, bindings)
        except ConflictError:
            if self._store.exists(tx_id):
                # concurrent delivery of the same transaction
                return WebhookResult(SKIPPED, tx_id, REASON_ALREADY_INDEXED)
            return WebhookResult(SKIPPED, tx_id, REASON_DUPLICATE_MANIFEST_ID)

        logger.info("Manifest indexed from webhook: %s (%s, %d bindings)",
                    tx_id, manifest_id, len(bindings))
        return WebhookResult(INDEXED, tx_id)

    def process_batch(self, payloads: list) -> BatchSummary:
        logger.info("Processing webhook batch of %d", len(payloads))
        summary = BatchSummary([self.process(p) for p in payloads])
        logger.info("Webhook batch complete: %d indexed, %d skipped, %d errors",
                    summary.count(INDEXED), summary.count(SKIPPED), summary.count(ERROR))
        return summary


def split_payload(body: Any) -> tuple[bool, list]:
    """
    Classify a webhook body as single or batch.

    Returns (is_batch, items). Raises ValidationError for anything that is
    neither an object nor an array.
    """
    if isinstance(body, list):
        return True, body
    if isinstance(body, dict):
        return False, [body]
    raise ValidationError("Webhook payload must be a JSON object or array")
