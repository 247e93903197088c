"""
Manifest locator: resolve a manifest id to a redirect or to manifest bytes.

Resolution order:
1. Ledger tags, fetch URL  -> redirect ("fetch-url")
2. Ledger tags, repo URL   -> redirect to {repo}/manifests/{id} ("repo-url")
3. Local index record      -> raw transaction bytes from the gateway
                              ("fallback-manifest-store")

The ledger lookup is best-effort: transport failures are logged and the
local index is used instead.
"""

import logging
from dataclasses import dataclass
from typing import Optional
from urllib.parse import quote

from .errors import FeatureNotImplemented, NotFoundError, UpstreamTransportError, ValidationError
from .gateway import GatewayClient, ManifestLocation
from .manifest_store import ManifestStore

logger = logging.getLogger(__name__)

FETCH_URL = "fetch-url"
REPO_URL = "repo-url"
FALLBACK_MANIFEST_STORE = "fallback-manifest-store"

MANIFEST_MEDIA_TYPE = "application/c2pa"
RESOLUTION_HEADER = "X-Manifest-Resolution"


@dataclass
class LocatorResult:
    """Either a redirect target or a manifest payload."""
    method: str
    manifest_id: str
    redirect_url: Optional[str] = None
    content: Optional[bytes] = None
    manifest_tx_id: Optional[str] = None

    @property
    def is_redirect(self) -> bool:
        return self.redirect_url is not None


def repo_manifest_url(repo_url: str, manifest_id: str) -> str:
    return f"{repo_url.rstrip('/')}/manifests/{quote(manifest_id, safe='')}"


class ManifestLocator:
    def __init__(self, gateway: GatewayClient, store: ManifestStore):
        self._gateway = gateway
        self._store = store

    def _lookup_ledger(self, manifest_id: str) -> Optional[ManifestLocation]:
        try:
            return self._gateway.lookup_manifest_locator(manifest_id)
        except UpstreamTransportError as e:
            logger.warning("Ledger locator lookup failed for %s, using local index: %s",
                           manifest_id, e.message)
            return None

    def locate(self, manifest_id: str, return_active_manifest: bool = False) -> LocatorResult:
        """
        Raises:
            ValidationError: empty manifest id
            FeatureNotImplemented: return_active_manifest requested
            NotFoundError: not on the ledger and not in the local index
        """
        manifest_id = (manifest_id or "").strip()
        if not manifest_id:
            raise ValidationError("manifestId path parameter is required")
        if return_active_manifest:
            raise FeatureNotImplemented("returnActiveManifest not implemented yet")

        location = self._lookup_ledger(manifest_id)
        if location is not None:
            if location.fetch_url:
                return LocatorResult(FETCH_URL, manifest_id, redirect_url=location.fetch_url,
                                     manifest_tx_id=location.manifest_tx_id)
            if location.repo_url:
                return LocatorResult(REPO_URL, manifest_id,
                                     redirect_url=repo_manifest_url(location.repo_url, manifest_id),
                                     manifest_tx_id=location.manifest_tx_id)

        record = self._store.get_by_manifest_id(manifest_id)
        if record is None:
            raise NotFoundError(f"Manifest not found: {manifest_id}")
        content = self._gateway.fetch_transaction(record.manifest_tx_id)
        logger.info("Serving manifest %s from transaction %s (%d bytes)",
                    manifest_id, record.manifest_tx_id, len(content))
        return LocatorResult(FALLBACK_MANIFEST_STORE, manifest_id, content=content,
                             manifest_tx_id=record.manifest_tx_id)
