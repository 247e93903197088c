"""
SSRF-safe fetching of reference URLs.

Reference URLs come from API callers, so every fetch is treated as hostile:

- Only HTTPS, unless the insecure/private escape flag is set (then HTTP too).
- The hostname is resolved once and every candidate address is checked
  against explicit private/reserved ranges. Any private candidate fails the
  request before a connection is attempted.
- The connection is pinned to the validated address: the request goes to the
  IP literal, with the original Host header and TLS SNI/certificate name, so
  a second DNS answer can never redirect us (DNS rebinding).
- Redirects are never followed.
- The byte ceiling is enforced from Content-Length up front and again while
  streaming, whatever the server claims.
- The caller's timeout bounds the whole exchange, not just each socket read.
"""

import ipaddress
import logging
import socket
import time
from dataclasses import dataclass, field
from typing import Optional
from urllib.parse import urlsplit, urlunsplit

import httpx

from .errors import (
    PrivateAddressError,
    SizeLimitExceeded,
    UnsupportedMediaType,
    UpstreamTimeoutError,
    UpstreamTransportError,
    ValidationError,
)
from .streams import parse_content_length

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 10.0
CHUNK_SIZE = 65536

_PRIVATE_V4_NETWORKS = tuple(ipaddress.ip_network(n) for n in (
    "0.0.0.0/8",        # "this network"
    "10.0.0.0/8",       # RFC 1918
    "100.64.0.0/10",    # CGNAT
    "127.0.0.0/8",      # loopback
    "169.254.0.0/16",   # link-local
    "172.16.0.0/12",    # RFC 1918
    "192.0.0.0/24",     # IETF protocol assignments
    "192.0.2.0/24",     # TEST-NET-1
    "192.168.0.0/16",   # RFC 1918
    "198.18.0.0/15",    # benchmarking
    "198.51.100.0/24",  # TEST-NET-2
    "203.0.113.0/24",   # TEST-NET-3
    "224.0.0.0/3",      # multicast and reserved (>= 224)
))

_PRIVATE_V6_NETWORKS = tuple(ipaddress.ip_network(n) for n in (
    "::/128",           # unspecified
    "::1/128",          # loopback
    "fc00::/7",         # unique local
    "fe80::/10",        # link-local
    "2001:db8::/32",    # documentation
))

_BLOCKED_HOST_SUFFIXES = (".localhost", ".local", ".internal")
_BLOCKED_HOSTS = frozenset({"localhost", "metadata.google.internal"})


def is_private_address(address: str) -> bool:
    """True if an IP literal is private, reserved, or unparseable."""
    try:
        addr = ipaddress.ip_address(address.split("%", 1)[0])
    except ValueError:
        return True
    if isinstance(addr, ipaddress.IPv6Address):
        if addr.ipv4_mapped is not None:
            return is_private_address(str(addr.ipv4_mapped))
        return any(addr in net for net in _PRIVATE_V6_NETWORKS)
    return any(addr in net for net in _PRIVATE_V4_NETWORKS)


def is_blocked_hostname(hostname: str) -> bool:
    lower = hostname.lower().rstrip(".")
    return lower in _BLOCKED_HOSTS or lower.endswith(_BLOCKED_HOST_SUFFIXES)


@dataclass
class ResolvedTarget:
    """A URL whose host has been resolved and validated."""
    url: str
    scheme: str
    hostname: str
    port: Optional[int]
    address: str
    candidates: list[str] = field(default_factory=list)

    @property
    def host_header(self) -> str:
        host = f"[{self.hostname}]" if ":" in self.hostname else self.hostname
        return f"{host}:{self.port}" if self.port else host

    @property
    def pinned_url(self) -> str:
        """The original URL with its host replaced by the validated address."""
        parts = urlsplit(self.url)
        host = f"[{self.address}]" if ":" in self.address else self.address
        netloc = f"{host}:{self.port}" if self.port else host
        return urlunsplit((parts.scheme, netloc, parts.path or "/", parts.query, ""))


@dataclass
class FetchedAsset:
    url: str
    content: bytes
    content_type: str
    status_code: int
    declared_length: Optional[int] = None


def _remaining_timeout(deadline: float) -> httpx.Timeout:
    """Per-phase httpx timeout bounded by what is left of the whole fetch."""
    remaining = deadline - time.monotonic()
    if remaining <= 0:
        raise UpstreamTimeoutError("Reference fetch timed out")
    return httpx.Timeout(remaining)


class ReferenceFetcher:
    """
    Fetches caller-supplied URLs with SSRF protection.

    ``allow_private`` is the escape flag for controlled test environments:
    it permits plain HTTP and private addresses. The connection is still
    pinned to the resolved address.
    """

    def __init__(
        self,
        timeout: float = DEFAULT_TIMEOUT,
        allow_private: bool = False,
        user_agent: str = "trusthash-sidecar",
    ):
        """
        Args:
            timeout: Seconds allowed for the whole fetch
            allow_private: Permit HTTP and private addresses (tests only)
            user_agent: User-Agent header sent upstream
        """
        self.timeout = timeout
        self.allow_private = allow_private
        self.user_agent = user_agent

    def validate_url(self, url: str) -> tuple[str, str, Optional[int]]:
        """Check scheme and host; returns (scheme, hostname, port)."""
        try:
            parts = urlsplit(url)
            port = parts.port
        except ValueError:
            raise ValidationError("referenceUrl must be a valid URL")
        scheme = (parts.scheme or "").lower()
        if scheme not in ("http", "https") or not parts.hostname:
            if scheme in ("http", "https"):
                raise ValidationError("referenceUrl must be a valid URL")
            raise ValidationError("referenceUrl must use https")
        if scheme == "http" and not self.allow_private:
            raise ValidationError("referenceUrl must use https")
        if parts.username or parts.password:
            raise ValidationError("referenceUrl must not carry credentials")
        return scheme, parts.hostname, port

    def resolve(self, url: str) -> ResolvedTarget:
        """
        Resolve and validate the host of ``url``.

        Raises:
            ValidationError: bad scheme or unresolvable host
            PrivateAddressError: any candidate address is private/reserved
        """
        scheme, hostname, port = self.validate_url(url)

        if not self.allow_private and is_blocked_hostname(hostname):
            raise PrivateAddressError("referenceUrl host is not allowed")

        try:
            ipaddress.ip_address(hostname)
            candidates = [hostname]
        except ValueError:
            try:
                infos = socket.getaddrinfo(
                    hostname, port or (443 if scheme == "https" else 80),
                    type=socket.SOCK_STREAM,
                )
            except (socket.gaierror, UnicodeError):
                raise ValidationError("referenceUrl host could not be resolved")
            candidates = []
            for _, _, _, _, sockaddr in infos:
                if sockaddr[0] not in candidates:
                    candidates.append(sockaddr[0])
            if not candidates:
                raise ValidationError("referenceUrl host could not be resolved")

        if not self.allow_private:
            for candidate in candidates:
                if is_private_address(candidate):
                    logger.warning("Blocked reference to private address: %s -> %s",
                                   hostname, candidate)
                    raise PrivateAddressError("referenceUrl host resolves to a private address")

        # Prefer IPv4 when both families are offered
        v4 = [c for c in candidates if ":" not in c]
        address = v4[0] if v4 else candidates[0]
        return ResolvedTarget(
            url=url, scheme=scheme, hostname=hostname, port=port,
            address=address, candidates=candidates,
        )

    def fetch(
        self,
        url: str,
        max_bytes: int,
        expected_type: Optional[str] = None,
    ) -> FetchedAsset:
        """
        Fetch ``url`` without ever reading more than ``max_bytes``.

        Args:
            url: Reference URL supplied by the caller
            max_bytes: Hard ceiling on body size
            expected_type: If given, the response media type must match

        Raises:
            ValidationError / PrivateAddressError: rejected before connecting
            SizeLimitExceeded: declared or streamed size over the ceiling
            UnsupportedMediaType: response type differs from expected_type
            UpstreamTimeoutError: the fetch did not finish within the timeout
            UpstreamTransportError: connection-level failure
        """
        deadline = time.monotonic() + self.timeout
        target = self.resolve(url)

        headers = {"Host": target.host_header, "User-Agent": self.user_agent}
        extensions = {}
        if target.scheme == "https" and target.address != target.hostname:
            extensions["sni_hostname"] = target.hostname

        logger.debug("Fetching %s via pinned address %s", url, target.address)
        try:
            with httpx.Client(
                timeout=_remaining_timeout(deadline), follow_redirects=False, trust_env=False,
            ) as client:
                with client.stream(
                    "GET", target.pinned_url, headers=headers, extensions=extensions,
                ) as resp:
                    return self._read_response(resp, url, max_bytes, expected_type, deadline)
        except httpx.TimeoutException as e:
            raise UpstreamTimeoutError("Reference fetch timed out") from e
        except httpx.HTTPError as e:
            raise UpstreamTransportError(f"Failed to fetch reference asset: {e}") from e

    def _read_response(
        self,
        resp: httpx.Response,
        url: str,
        max_bytes: int,
        expected_type: Optional[str],
        deadline: float,
    ) -> FetchedAsset:
        if time.monotonic() > deadline:
            raise UpstreamTimeoutError("Reference fetch timed out")
        if 300 <= resp.status_code < 400:
            raise ValidationError(
                f"Failed to fetch reference asset: redirect ({resp.status_code}) not followed"
            )
        if resp.status_code >= 400:
            raise ValidationError(f"Failed to fetch reference asset: {resp.status_code}")

        declared = parse_content_length(resp.headers.get("content-length"))
        if declared is not None and declared > max_bytes:
            raise SizeLimitExceeded("Fetched asset size exceeds declared or maximum length")

        content_type = resp.headers.get("content-type", "").split(";")[0].strip().lower()
        if expected_type and content_type and content_type != expected_type.lower():
            raise UnsupportedMediaType(
                f"Fetched content-type ({content_type}) does not match assetType ({expected_type})"
            )

        buf = bytearray()
        for chunk in resp.iter_bytes(chunk_size=CHUNK_SIZE):
            if time.monotonic() > deadline:
                raise UpstreamTimeoutError("Reference fetch timed out")
            if len(buf) + len(chunk) > max_bytes:
                raise SizeLimitExceeded("Fetched asset size exceeds declared or maximum length")
            buf.extend(chunk)

        return FetchedAsset(
            url=url,
            content=bytes(buf),
            content_type=content_type,
            status_code=resp.status_code,
            declared_length=declared,
        )
