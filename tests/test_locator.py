"""Tests for manifest locator resolution order."""

from unittest.mock import MagicMock

import pytest

from trusthash.errors import (
    FeatureNotImplemented,
    NotFoundError,
    UpstreamTimeoutError,
    UpstreamTransportError,
    ValidationError,
)
from trusthash.gateway import ManifestLocation
from trusthash.locator import (
    FALLBACK_MANIFEST_STORE,
    FETCH_URL,
    REPO_URL,
    ManifestLocator,
    repo_manifest_url,
)


@pytest.fixture
def gateway():
    gw = MagicMock()
    gw.lookup_manifest_locator.return_value = None
    return gw


@pytest.fixture
def locator(gateway, store):
    return ManifestLocator(gateway, store)


class TestLocate:
    def test_fetch_url_wins(self, locator, gateway):
        gateway.lookup_manifest_locator.return_value = ManifestLocation(
            "urn:a", "tx-1", repo_url="https://repo", fetch_url="https://cdn/m.c2pa",
        )
        result = locator.locate("urn:a")
        assert result.method == FETCH_URL
        assert result.is_redirect
        assert result.redirect_url == "https://cdn/m.c2pa"
        assert result.manifest_tx_id == "tx-1"

    def test_repo_url(self, locator, gateway):
        gateway.lookup_manifest_locator.return_value = ManifestLocation(
            "urn:c2pa:a/b", "tx-1", repo_url="https://repo/",
        )
        result = locator.locate("urn:c2pa:a/b")
        assert result.method == REPO_URL
        assert result.redirect_url == "https://repo/manifests/urn%3Ac2pa%3Aa%2Fb"

    def test_fallback_to_local_index(self, locator, gateway, store, make_record):
        store.insert(make_record("tx-local", manifest_id="urn:a"))
        gateway.lookup_manifest_locator.return_value = ManifestLocation("urn:a", "tx-ledger")
        gateway.fetch_transaction.return_value = b"\x00manifest"

        result = locator.locate("urn:a")
        assert result.method == FALLBACK_MANIFEST_STORE
        assert not result.is_redirect
        assert result.content == b"\x00manifest"
        gateway.fetch_transaction.assert_called_once_with("tx-local")

    def test_ledger_failure_degrades(self, locator, gateway, store, make_record):
        store.insert(make_record("tx-local", manifest_id="urn:a"))
        gateway.lookup_manifest_locator.side_effect = UpstreamTimeoutError("slow")
        gateway.fetch_transaction.return_value = b"m"
        assert locator.locate("urn:a").method == FALLBACK_MANIFEST_STORE

    def test_not_found(self, locator):
        with pytest.raises(NotFoundError, match="urn:missing"):
            locator.locate("urn:missing")

    def test_fallback_fetch_error_propagates(self, locator, gateway, store, make_record):
        store.insert(make_record("tx-local", manifest_id="urn:a"))
        gateway.fetch_transaction.side_effect = UpstreamTransportError("down")
        with pytest.raises(UpstreamTransportError):
            locator.locate("urn:a")

    def test_active_manifest_not_implemented(self, locator, gateway):
        with pytest.raises(FeatureNotImplemented):
            locator.locate("urn:a", return_active_manifest=True)
        gateway.lookup_manifest_locator.assert_not_called()

    def test_empty_id(self, locator):
        with pytest.raises(ValidationError):
            locator.locate("   ")


def test_repo_manifest_url():
    assert repo_manifest_url("https://r//", "id 1") == "https://r/manifests/id%201"
