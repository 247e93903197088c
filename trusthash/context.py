"""
Explicit service container.

Everything a request handler needs is built once from the configuration
and passed around as one object, so there is no module-level database or
client state.
"""

import logging
from dataclasses import dataclass
from pathlib import Path

from .config import SidecarConfig
from .fetcher import ReferenceFetcher
from .gateway import GatewayClient
from .ingest import WebhookProcessor
from .locator import ManifestLocator
from .manifest_store import ManifestStore
from .resolution import ResolutionService

logger = logging.getLogger(__name__)


@dataclass
class SidecarContext:
    config: SidecarConfig
    store: ManifestStore
    gateway: GatewayClient
    fetcher: ReferenceFetcher
    resolution: ResolutionService
    locator: ManifestLocator
    webhooks: WebhookProcessor

    @classmethod
    def from_config(cls, config: SidecarConfig) -> "SidecarContext":
        """
        Open the database (running migrations) and build the services.

        Raises:
            MigrationError: schema upgrade failed; the process must not start
        """
        store = ManifestStore(Path(config.db_path))
        gateway = GatewayClient(
            config.gateway_url,
            timeout=config.reference_fetch_timeout,
            max_transaction_bytes=config.max_image_bytes,
        )
        fetcher = ReferenceFetcher(
            timeout=config.reference_fetch_timeout,
            allow_private=config.allow_insecure_reference_url,
        )
        if config.allow_insecure_reference_url:
            logger.warning("Insecure/private reference URLs are allowed; do not use in production")
        return cls(
            config=config,
            store=store,
            gateway=gateway,
            fetcher=fetcher,
            resolution=ResolutionService(
                store, gateway, fetcher,
                max_image_bytes=config.max_image_bytes,
                reference_enabled=config.reference_lookup_enabled,
            ),
            locator=ManifestLocator(gateway, store),
            webhooks=WebhookProcessor(store),
        )

    def close(self) -> None:
        self.gateway.close()
        self.store.close()
