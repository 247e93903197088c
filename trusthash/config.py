"""
Configuration management for the trusthash sidecar.

The configuration is stored as a TOML file (``trusthash.toml``) and can be
overridden field by field from the environment. Environment names follow
the ``TRUSTHASH_*`` scheme; the older unprefixed names are still honored.
"""

import os
import tomllib
from dataclasses import dataclass, replace
from pathlib import Path
from typing import Mapping, Optional
from urllib.parse import urlsplit

import tomli_w

CONFIG_FILENAME = "trusthash.toml"
CONFIG_VERSION = 1

LOG_LEVELS = ("debug", "info", "warning", "error")


class ConfigError(ValueError):
    """Invalid configuration value."""


@dataclass
class SidecarConfig:
    """Complete sidecar configuration."""
    gateway_url: str = "http://localhost:3000"
    db_path: Path = Path("./data/provenance.db")
    max_image_size_mb: int = 50
    reference_fetch_timeout: float = 10.0
    allow_insecure_reference_url: bool = False
    reference_lookup_enabled: bool = True
    host: str = "127.0.0.1"
    port: int = 3003
    log_level: str = "info"

    @property
    def max_image_bytes(self) -> int:
        return self.max_image_size_mb * 1024 * 1024

    @property
    def graphql_url(self) -> str:
        base = self.gateway_url.rstrip("/")
        return base if base.endswith("/graphql") else f"{base}/graphql"

    def validate(self) -> "SidecarConfig":
        scheme = urlsplit(self.gateway_url).scheme
        if scheme not in ("http", "https"):
            raise ConfigError(f"gateway_url must be an http(s) URL: {self.gateway_url}")
        if self.max_image_size_mb <= 0:
            raise ConfigError("max_image_size_mb must be positive")
        if self.reference_fetch_timeout <= 0:
            raise ConfigError("reference_fetch_timeout must be positive")
        if not 0 < self.port < 65536:
            raise ConfigError(f"port out of range: {self.port}")
        if self.log_level not in LOG_LEVELS:
            raise ConfigError(f"log_level must be one of {', '.join(LOG_LEVELS)}")
        return self


def _parse_bool(value: str) -> bool:
    lowered = value.strip().lower()
    if lowered in ("1", "true", "yes", "on"):
        return True
    if lowered in ("0", "false", "no", "off", ""):
        return False
    raise ConfigError(f"Expected a boolean, got {value!r}")


def _parse_int(value: str) -> int:
    try:
        return int(value)
    except ValueError:
        raise ConfigError(f"Expected an integer, got {value!r}")


def _parse_float(value: str) -> float:
    try:
        return float(value)
    except ValueError:
        raise ConfigError(f"Expected a number, got {value!r}")


def _parse_timeout_ms(value: str) -> float:
    return _parse_int(value) / 1000.0


# (field, env names in priority order, parser)
ENV_OVERRIDES = (
    ("gateway_url", ("TRUSTHASH_GATEWAY_URL", "GATEWAY_URL"), str),
    ("db_path", ("TRUSTHASH_DB_PATH", "DUCKDB_PATH"), Path),
    ("max_image_size_mb", ("TRUSTHASH_MAX_IMAGE_SIZE_MB", "MAX_IMAGE_SIZE_MB"), _parse_int),
    ("reference_fetch_timeout", ("TRUSTHASH_REFERENCE_FETCH_TIMEOUT",), _parse_float),
    ("reference_fetch_timeout", ("REFERENCE_FETCH_TIMEOUT_MS",), _parse_timeout_ms),
    ("allow_insecure_reference_url",
     ("TRUSTHASH_ALLOW_INSECURE_REFERENCE_URL", "ALLOW_INSECURE_REFERENCE_URL"), _parse_bool),
    ("reference_lookup_enabled", ("TRUSTHASH_REFERENCE_LOOKUP_ENABLED",), _parse_bool),
    ("host", ("TRUSTHASH_HOST", "HOST"), str),
    ("port", ("TRUSTHASH_PORT", "PORT"), _parse_int),
    ("log_level", ("TRUSTHASH_LOG_LEVEL", "LOG_LEVEL"), lambda v: v.strip().lower()),
)


def apply_env_overrides(
    config: SidecarConfig, environ: Optional[Mapping[str, str]] = None,
) -> SidecarConfig:
    """Return a copy of ``config`` with environment overrides applied."""
    environ = os.environ if environ is None else environ
    changes = {}
    for field_name, names, parse in ENV_OVERRIDES:
        if field_name in changes:
            continue
        for name in names:
            raw = environ.get(name)
            if raw is not None and raw != "":
                changes[field_name] = parse(raw)
                break
    return replace(config, **changes).validate()


def _from_toml(data: dict) -> SidecarConfig:
    version = data.get("sidecar", {}).get("version", 1)
    if version > CONFIG_VERSION:
        raise ConfigError(f"Config version {version} is newer than supported ({CONFIG_VERSION})")

    server = data.get("server", {})
    gateway = data.get("gateway", {})
    storage = data.get("storage", {})
    limits = data.get("limits", {})
    reference = data.get("reference", {})
    defaults = SidecarConfig()
    try:
        return SidecarConfig(
            gateway_url=str(gateway.get("url", defaults.gateway_url)),
            db_path=Path(storage.get("db_path", defaults.db_path)),
            max_image_size_mb=int(limits.get("max_image_size_mb", defaults.max_image_size_mb)),
            reference_fetch_timeout=float(
                limits.get("reference_fetch_timeout", defaults.reference_fetch_timeout)),
            allow_insecure_reference_url=bool(
                reference.get("allow_insecure", defaults.allow_insecure_reference_url)),
            reference_lookup_enabled=bool(
                reference.get("lookup_enabled", defaults.reference_lookup_enabled)),
            host=str(server.get("host", defaults.host)),
            port=int(server.get("port", defaults.port)),
            log_level=str(server.get("log_level", defaults.log_level)).lower(),
        )
    except (TypeError, ValueError) as e:
        raise ConfigError(f"Invalid config value: {e}") from e


def load_config(config_path: Path) -> SidecarConfig:
    """
    Load configuration from a TOML file.

    Raises:
        FileNotFoundError: If the file doesn't exist
        ConfigError: If a value is invalid
    """
    if not config_path.exists():
        raise FileNotFoundError(f"Config not found: {config_path}")
    with open(config_path, "rb") as f:
        data = tomllib.load(f)
    return _from_toml(data).validate()


def save_config(config: SidecarConfig, config_path: Path) -> None:
    """Write configuration as TOML, creating the parent directory."""
    config_path.parent.mkdir(parents=True, exist_ok=True)
    data = {
        "sidecar": {"version": CONFIG_VERSION},
        "server": {"host": config.host, "port": config.port, "log_level": config.log_level},
        "gateway": {"url": config.gateway_url},
        "storage": {"db_path": str(config.db_path)},
        "limits": {
            "max_image_size_mb": config.max_image_size_mb,
            "reference_fetch_timeout": config.reference_fetch_timeout,
        },
        "reference": {
            "allow_insecure": config.allow_insecure_reference_url,
            "lookup_enabled": config.reference_lookup_enabled,
        },
    }
    with open(config_path, "wb") as f:
        tomli_w.dump(data, f)


def load_or_create_config(
    config_path: Optional[Path] = None,
    environ: Optional[Mapping[str, str]] = None,
) -> SidecarConfig:
    """
    Load config (or write defaults if the file is missing), then apply
    environment overrides.

    This is the main entry point for config management. With no path,
    defaults plus environment are used and nothing is written.
    """
    if config_path is None:
        config = SidecarConfig()
    elif config_path.exists():
        config = load_config(config_path)
    else:
        config = SidecarConfig()
        save_config(config, config_path)
    return apply_env_overrides(config, environ)


def running_in_container(environ: Optional[Mapping[str, str]] = None) -> bool:
    environ = os.environ if environ is None else environ
    if environ.get("TRUSTHASH_IN_CONTAINER"):
        return _parse_bool(environ["TRUSTHASH_IN_CONTAINER"])
    return Path("/.dockerenv").exists()


def validate_gateway_for_container(
    config: SidecarConfig, in_container: Optional[bool] = None,
) -> None:
    """
    Refuse a localhost gateway URL inside a container, where it would
    point at the container itself rather than the gateway.
    """
    if in_container is None:
        in_container = running_in_container()
    if not in_container:
        return
    host = (urlsplit(config.gateway_url).hostname or "").lower()
    if host in ("localhost", "127.0.0.1", "::1"):
        raise ConfigError(
            f"gateway_url {config.gateway_url} points at the container itself; "
            "use the gateway's service name or host address"
        )
