"""Tests for configuration loading, environment overrides and validation."""

from pathlib import Path

import pytest

from trusthash.config import (
    ConfigError,
    SidecarConfig,
    apply_env_overrides,
    load_config,
    load_or_create_config,
    running_in_container,
    save_config,
    validate_gateway_for_container,
)


class TestDefaults:
    def test_values(self):
        config = SidecarConfig()
        assert config.gateway_url == "http://localhost:3000"
        assert config.port == 3003
        assert config.max_image_bytes == 50 * 1024 * 1024
        assert config.reference_fetch_timeout == 10.0
        assert config.allow_insecure_reference_url is False
        assert config.reference_lookup_enabled is True

    def test_graphql_url(self):
        assert SidecarConfig(gateway_url="http://gw:3000/").graphql_url == "http://gw:3000/graphql"
        assert SidecarConfig(gateway_url="http://gw/graphql").graphql_url == "http://gw/graphql"


class TestValidate:
    @pytest.mark.parametrize("kwargs", [
        {"gateway_url": "ftp://gw"},
        {"max_image_size_mb": 0},
        {"reference_fetch_timeout": 0},
        {"port": 70000},
        {"log_level": "chatty"},
    ])
    def test_rejects(self, kwargs):
        with pytest.raises(ConfigError):
            SidecarConfig(**kwargs).validate()


class TestEnvOverrides:
    def test_prefixed_names(self):
        config = apply_env_overrides(SidecarConfig(), {
            "TRUSTHASH_GATEWAY_URL": "https://gw.example",
            "TRUSTHASH_DB_PATH": "/tmp/x.db",
            "TRUSTHASH_PORT": "8080",
            "TRUSTHASH_LOG_LEVEL": "DEBUG",
            "TRUSTHASH_REFERENCE_LOOKUP_ENABLED": "false",
        })
        assert config.gateway_url == "https://gw.example"
        assert config.db_path == Path("/tmp/x.db")
        assert config.port == 8080
        assert config.log_level == "debug"
        assert config.reference_lookup_enabled is False

    def test_legacy_names(self):
        config = apply_env_overrides(SidecarConfig(), {
            "GATEWAY_URL": "http://gw:4000",
            "DUCKDB_PATH": "./legacy.db",
            "MAX_IMAGE_SIZE_MB": "5",
            "REFERENCE_FETCH_TIMEOUT_MS": "2500",
            "ALLOW_INSECURE_REFERENCE_URL": "true",
            "PORT": "9000",
        })
        assert config.gateway_url == "http://gw:4000"
        assert config.db_path == Path("./legacy.db")
        assert config.max_image_bytes == 5 * 1024 * 1024
        assert config.reference_fetch_timeout == 2.5
        assert config.allow_insecure_reference_url is True
        assert config.port == 9000

    def test_prefixed_wins(self):
        config = apply_env_overrides(SidecarConfig(), {
            "TRUSTHASH_PORT": "1111", "PORT": "2222",
            "TRUSTHASH_REFERENCE_FETCH_TIMEOUT": "3", "REFERENCE_FETCH_TIMEOUT_MS": "9000",
        })
        assert config.port == 1111
        assert config.reference_fetch_timeout == 3.0

    def test_empty_ignored(self):
        assert apply_env_overrides(SidecarConfig(), {"PORT": ""}).port == 3003

    def test_bad_values(self):
        with pytest.raises(ConfigError):
            apply_env_overrides(SidecarConfig(), {"PORT": "abc"})
        with pytest.raises(ConfigError):
            apply_env_overrides(SidecarConfig(), {"ALLOW_INSECURE_REFERENCE_URL": "maybe"})
        with pytest.raises(ConfigError):
            apply_env_overrides(SidecarConfig(), {"MAX_IMAGE_SIZE_MB": "-1"})

    def test_returns_copy(self):
        original = SidecarConfig()
        apply_env_overrides(original, {"PORT": "1"})
        assert original.port == 3003


class TestToml:
    def test_roundtrip(self, tmp_path):
        path = tmp_path / "conf" / "trusthash.toml"
        config = SidecarConfig(gateway_url="https://gw", port=4000, reference_lookup_enabled=False)
        save_config(config, path)
        loaded = load_config(path)
        assert loaded == config

    def test_partial_file(self, tmp_path):
        path = tmp_path / "trusthash.toml"
        path.write_text('[server]\nport = 5000\n\n[limits]\nmax_image_size_mb = 2\n')
        config = load_config(path)
        assert config.port == 5000
        assert config.max_image_size_mb == 2
        assert config.gateway_url == "http://localhost:3000"

    def test_missing_file(self, tmp_path):
        with pytest.raises(FileNotFoundError):
            load_config(tmp_path / "nope.toml")

    def test_newer_version(self, tmp_path):
        path = tmp_path / "trusthash.toml"
        path.write_text("[sidecar]\nversion = 99\n")
        with pytest.raises(ConfigError, match="newer"):
            load_config(path)

    def test_bad_value(self, tmp_path):
        path = tmp_path / "trusthash.toml"
        path.write_text('[server]\nport = "eighty"\n')
        with pytest.raises(ConfigError):
            load_config(path)

    def test_load_or_create_writes_defaults(self, tmp_path):
        path = tmp_path / "trusthash.toml"
        config = load_or_create_config(path, environ={})
        assert path.exists()
        assert config == SidecarConfig()

    def test_load_or_create_applies_env(self, tmp_path):
        path = tmp_path / "trusthash.toml"
        save_config(SidecarConfig(port=4000), path)
        assert load_or_create_config(path, environ={"PORT": "4001"}).port == 4001

    def test_no_path_writes_nothing(self, tmp_path, monkeypatch):
        monkeypatch.chdir(tmp_path)
        load_or_create_config(None, environ={})
        assert list(tmp_path.iterdir()) == []


class TestContainerGuard:
    @pytest.mark.parametrize("url", ["http://localhost:3000", "http://127.0.0.1:3000", "http://[::1]:3000"])
    def test_rejects_loopback_in_container(self, url):
        with pytest.raises(ConfigError):
            validate_gateway_for_container(SidecarConfig(gateway_url=url), in_container=True)

    def test_allows_loopback_outside_container(self):
        validate_gateway_for_container(SidecarConfig(), in_container=False)

    def test_allows_service_name(self):
        validate_gateway_for_container(SidecarConfig(gateway_url="http://gateway:3000"), in_container=True)

    def test_env_flag(self):
        assert running_in_container({"TRUSTHASH_IN_CONTAINER": "1"}) is True
        assert running_in_container({"TRUSTHASH_IN_CONTAINER": "false"}) is False
