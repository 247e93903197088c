"""
CLI interface for the trusthash sidecar.

Usage:
    trusthash serve
    trusthash migrate
    trusthash search --phash a5a5a5a5a5a5a5a5
    trusthash stats
"""

import json
import os
from pathlib import Path
from typing import Optional

import typer
from typing_extensions import Annotated

from . import __version__
from .config import ConfigError, SidecarConfig, load_or_create_config, validate_gateway_for_container
from .errors import MigrationError, SidecarError
from .logging_config import configure_logging, configure_ops_log, enable_debug_mode
from .manifest_store import DEFAULT_LIMIT, DEFAULT_THRESHOLD, ManifestStore
from .search import get_search_stats, search_similar

# Set TRUSTHASH_VERBOSE=1 to enable debug mode via environment
if os.environ.get("TRUSTHASH_VERBOSE") == "1":
    enable_debug_mode()


# Global state for CLI options
_verbose = False
_config_override: Optional[Path] = None


def _version_callback(value: bool):
    if value:
        print(f"trusthash {__version__}")
        raise typer.Exit()


def _verbose_callback(value: bool):
    global _verbose
    if value:
        _verbose = True
        enable_debug_mode()


def _config_callback(value: Optional[Path]):
    global _config_override
    if value is not None:
        _config_override = value


app = typer.Typer(
    name="trusthash",
    help="C2PA manifest provenance sidecar.",
    no_args_is_help=True,
    rich_markup_mode=None,
)


@app.callback()
def main_callback(
    verbose: Annotated[bool, typer.Option(
        "--verbose", "-v",
        help="Enable debug-level logging to stderr",
        callback=_verbose_callback,
        is_eager=True,
    )] = False,
    version: Annotated[Optional[bool], typer.Option(
        "--version",
        help="Show version and exit",
        callback=_version_callback,
        is_eager=True,
    )] = None,
    config: Annotated[Optional[Path], typer.Option(
        "--config", "-c",
        envvar="TRUSTHASH_CONFIG",
        help="Path to trusthash.toml",
        callback=_config_callback,
        is_eager=True,
    )] = None,
):
    """C2PA manifest provenance sidecar."""


def _load_config() -> SidecarConfig:
    try:
        return load_or_create_config(_config_override)
    except ConfigError as e:
        typer.echo(f"Error: invalid configuration: {e}", err=True)
        raise typer.Exit(1)


def _open_store(config: SidecarConfig) -> ManifestStore:
    try:
        return ManifestStore(Path(config.db_path))
    except MigrationError as e:
        typer.echo(f"Error: migration failed: {e}", err=True)
        raise typer.Exit(1)


@app.command()
def serve(
    host: Annotated[Optional[str], typer.Option("--host", help="Bind address")] = None,
    port: Annotated[Optional[int], typer.Option("--port", "-p", help="Listen port")] = None,
):
    """Apply migrations and run the HTTP API."""
    config = _load_config()
    if host:
        config.host = host
    if port:
        config.port = port
    configure_logging(config.log_level, verbose=_verbose)
    try:
        validate_gateway_for_container(config)
    except ConfigError as e:
        typer.echo(f"Error: {e}", err=True)
        raise typer.Exit(1)
    configure_ops_log(Path(config.db_path).parent)

    # Migrations run before the server accepts connections
    _open_store(config).close()

    from .server import run_server
    run_server(config)


@app.command()
def migrate():
    """Apply pending schema migrations and list the applied set."""
    config = _load_config()
    store = _open_store(config)
    try:
        for row in store.migrations.applied_migrations():
            typer.echo(f"{row['version']:>4}  {row['name']:<36} {row['appliedAt']}")
    finally:
        store.close()


@app.command()
def search(
    phash: Annotated[Optional[str], typer.Option("--phash", help="Hex or binary fingerprint")] = None,
    tx_id: Annotated[Optional[str], typer.Option("--tx-id", help="Indexed transaction to search near")] = None,
    threshold: Annotated[int, typer.Option("--threshold", "-t", help="Max Hamming distance")] = DEFAULT_THRESHOLD,
    limit: Annotated[int, typer.Option("--limit", "-n", help="Max results")] = DEFAULT_LIMIT,
):
    """Similarity search against the local index (JSON output)."""
    config = _load_config()
    store = _open_store(config)
    try:
        result = search_similar(store, phash=phash, tx_id=tx_id, threshold=threshold, limit=limit)
    except SidecarError as e:
        typer.echo(f"Error: {e.message}", err=True)
        raise typer.Exit(1)
    finally:
        store.close()
    typer.echo(json.dumps(result.to_dict(), indent=2))


@app.command()
def stats():
    """Show index statistics."""
    config = _load_config()
    store = _open_store(config)
    try:
        typer.echo(json.dumps(get_search_stats(store), indent=2))
    finally:
        store.close()


# -----------------------------------------------------------------------------

def main():
    try:
        app()
    except SystemExit:
        raise  # Let typer handle exit codes
    except KeyboardInterrupt:
        raise SystemExit(130)
    except Exception as e:
        from .errors import log_exception
        log_path = log_exception(e, context="trusthash CLI")
        typer.echo(f"Error: {e}", err=True)
        typer.echo(f"Details logged to {log_path}", err=True)
        raise SystemExit(1)


if __name__ == "__main__":
    main()
