"""
Error taxonomy and error logging for the trusthash sidecar.

Every error the core raises toward a caller is a SidecarError carrying a
machine-readable ``kind`` and the HTTP status the API layer maps it to.
Full tracebacks go to an error log file; callers only see the message.
"""

import os
import traceback
from datetime import datetime, timezone
from pathlib import Path


class SidecarError(Exception):
    """Base class for errors surfaced to API callers."""

    kind = "internal_error"
    status_code = 500

    def __init__(self, message: str = ""):
        super().__init__(message)
        self.message = message or self.__class__.__name__

    def to_dict(self) -> dict:
        return {"success": False, "error": self.message, "code": self.kind}


class ValidationError(SidecarError):
    """Malformed or missing required input."""

    kind = "validation_error"
    status_code = 400


class PrivateAddressError(ValidationError):
    """A reference URL resolved to a private or reserved network address."""

    kind = "private_address"


class FormatError(ValidationError, ValueError):
    """Malformed fingerprint encoding (hex/binary/float vector)."""

    kind = "format_error"


class NotFoundError(SidecarError):
    kind = "not_found"
    status_code = 404


class ConflictError(SidecarError):
    """Duplicate primary/natural key on insert."""

    kind = "conflict"
    status_code = 409


class SizeLimitExceeded(SidecarError):
    kind = "size_limit_exceeded"
    status_code = 413


class UnsupportedMediaType(SidecarError):
    kind = "unsupported_media_type"
    status_code = 415


class FeatureNotImplemented(SidecarError):
    kind = "not_implemented"
    status_code = 501


class UpstreamTransportError(SidecarError):
    """Gateway unreachable, non-2xx, malformed JSON or GraphQL error list."""

    kind = "upstream_error"
    status_code = 502


class UpstreamTimeoutError(UpstreamTransportError):
    kind = "upstream_timeout"
    status_code = 504


class InternalError(SidecarError):
    kind = "internal_error"
    status_code = 500


class MigrationError(Exception):
    """A schema migration failed. Fatal at startup."""

    def __init__(self, message: str, version: int | None = None):
        super().__init__(message)
        self.version = version


def _error_log_path() -> Path:
    """Resolve error log path, respecting TRUSTHASH_LOG_DIR."""
    log_dir = os.environ.get("TRUSTHASH_LOG_DIR")
    if log_dir:
        return Path(log_dir) / "trusthash-errors.log"
    return Path.home() / ".trusthash" / "trusthash-errors.log"


def log_exception(exc: Exception, context: str = "") -> Path:
    """
    Log exception with full traceback to file.

    Args:
        exc: The exception that occurred
        context: Optional context string (e.g., route or command name)

    Returns:
        Path to the error log file
    """
    log_path = _error_log_path()
    timestamp = datetime.now(timezone.utc).isoformat()
    try:
        log_path.parent.mkdir(parents=True, exist_ok=True)
        fd = os.open(log_path, os.O_WRONLY | os.O_CREAT | os.O_APPEND, 0o600)
        with os.fdopen(fd, "a") as f:
            f.write(f"\n{'='*60}\n")
            f.write(f"[{timestamp}]")
            if context:
                f.write(f" {context}")
            f.write(f" {type(exc).__name__}: {exc}\n")
            f.write("".join(traceback.format_exception(type(exc), exc, exc.__traceback__)))
    except OSError:
        pass  # error log is best-effort
    return log_path
