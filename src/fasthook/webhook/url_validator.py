"""Endpoint URL validation and SSRF-safe HTTP client for deliveries."""

import asyncio
import ipaddress
import socket
from collections.abc import Iterable
from typing import Any
from urllib.parse import urlparse

import httpcore
import httpx

# Private and reserved IP ranges that receivers may not live in
BLOCKED_IP_RANGES = [
    # Loopback
    ipaddress.ip_network("127.0.0.0/8"),
    ipaddress.ip_network("::1/128"),
    # Private networks (RFC 1918)
    ipaddress.ip_network("10.0.0.0/8"),
    ipaddress.ip_network("172.16.0.0/12"),
    ipaddress.ip_network("192.168.0.0/16"),
    # Unique local IPv6
    ipaddress.ip_network("fc00::/7"),
    # Link-local, includes the 169.254.169.254 cloud metadata service
    ipaddress.ip_network("169.254.0.0/16"),
    ipaddress.ip_network("fe80::/10"),
    # Carrier-grade NAT (RFC 6598)
    ipaddress.ip_network("100.64.0.0/10"),
    # Unspecified and broadcast
    ipaddress.ip_network("0.0.0.0/8"),
    ipaddress.ip_network("255.255.255.255/32"),
]

BLOCKED_HOSTNAMES = {
    "localhost",
    "localhost.localdomain",
    "ip6-localhost",
    "ip6-loopback",
    "metadata.google.internal",
    "metadata",
}


class UnsafeURLError(Exception):
    """Raised when an endpoint URL targets an address deliveries may not reach."""


def is_ip_blocked(ip_str: str) -> bool:
    """Check if an IP address is in a blocked range."""
    try:
        ip = ipaddress.ip_address(ip_str)
    except ValueError:
        return False
    return any(ip in network for network in BLOCKED_IP_RANGES)


def _is_domain_allowed(host: str, allowed_domains: Iterable[str]) -> bool:
    host_lower = host.lower()
    for allowed in allowed_domains:
        allowed = allowed.lower()
        if host_lower == allowed or host_lower.endswith("." + allowed):
            return True
    return False


def _check_host(host: str) -> None:
    if host.lower() in BLOCKED_HOSTNAMES:
        raise UnsafeURLError(f"Hostname '{host}' is blocked")
    if is_ip_blocked(host):
        raise UnsafeURLError(f"IP address '{host}' is in a blocked range")


def validate_webhook_url(
    url: str,
    resolve_dns: bool = False,
    allowed_domains: Iterable[str] = (),
) -> None:
    """Validate an endpoint URL before it is stored or called.

    Args:
        url: The URL to validate
        resolve_dns: Also resolve the hostname and check every address it maps to
        allowed_domains: Domains that bypass the address checks

    Raises:
        UnsafeURLError: If the URL points somewhere deliveries may not go
        ValueError: If the URL is malformed
    """
    try:
        parsed = urlparse(url)
        port = parsed.port
    except ValueError as e:
        raise ValueError(f"Invalid URL format: {e}") from e

    if parsed.scheme not in ("http", "https"):
        raise UnsafeURLError(f"URL scheme must be http or https, got: {parsed.scheme!r}")

    hostname = parsed.hostname
    if not hostname:
        raise UnsafeURLError("URL must have a hostname")

    if _is_domain_allowed(hostname, allowed_domains):
        return

    _check_host(hostname)

    if not resolve_dns:
        return

    try:
        ipaddress.ip_address(hostname)
        return
    except ValueError:
        pass

    try:
        addrinfo = socket.getaddrinfo(
            hostname,
            port or (443 if parsed.scheme == "https" else 80),
            proto=socket.IPPROTO_TCP,
        )
    except socket.gaierror:
        # Unresolvable now; the delivery attempt will fail and be retried
        return
    for _family, _, _, _, sockaddr in addrinfo:
        ip_str = str(sockaddr[0])
        if is_ip_blocked(ip_str):
            raise UnsafeURLError(f"Hostname '{hostname}' resolves to blocked IP '{ip_str}'")


class SSRFSafeAsyncConnectionPool(httpcore.AsyncConnectionPool):
    """Connection pool that re-validates the target address when connecting.

    Endpoint URLs are checked at registration, but DNS can change afterwards
    (rebinding), so the resolved addresses are checked again on every request.
    """

    def __init__(
        self,
        allowed_internal_domains: Iterable[str] = (),
        **kwargs: Any,
    ) -> None:
        super().__init__(**kwargs)
        self._allowed_domains = [d.lower() for d in allowed_internal_domains]

    async def handle_async_request(self, request: httpcore.Request) -> httpcore.Response:
        host = request.url.host
        if isinstance(host, bytes):
            host = host.decode("ascii")
        if not host:
            raise UnsafeURLError("Request has no host")

        if _is_domain_allowed(host, self._allowed_domains):
            return await super().handle_async_request(request)

        _check_host(host)

        try:
            ipaddress.ip_address(host)
        except ValueError:
            port = request.url.port or (443 if request.url.scheme == b"https" else 80)
            try:
                loop = asyncio.get_running_loop()
                addrinfo = await loop.getaddrinfo(host, port, proto=socket.IPPROTO_TCP)
            except socket.gaierror:
                # Let the connection attempt fail with the real error
                addrinfo = []
            for _family, _, _, _, sockaddr in addrinfo:
                ip_str = str(sockaddr[0])
                if is_ip_blocked(ip_str):
                    raise UnsafeURLError(f"Hostname '{host}' resolves to blocked IP '{ip_str}'")

        return await super().handle_async_request(request)


class SSRFSafeTransport(httpx.AsyncHTTPTransport):
    """httpx transport backed by SSRFSafeAsyncConnectionPool."""

    def __init__(self, allowed_internal_domains: Iterable[str] = (), **kwargs: Any) -> None:
        super().__init__(**kwargs)
        self._pool = SSRFSafeAsyncConnectionPool(
            allowed_internal_domains=allowed_internal_domains,
            **kwargs,
        )


def create_delivery_client(
    timeout: float,
    ssrf_protection: bool = True,
    allowed_internal_domains: Iterable[str] = (),
    limits: httpx.Limits | None = None,
) -> httpx.AsyncClient:
    """Create the httpx client the worker delivers with.

    Redirects are not followed so a receiver cannot bounce a signed payload
    to another host.
    """
    limits = limits or httpx.Limits(max_connections=20, max_keepalive_connections=10)
    transport = (
        SSRFSafeTransport(allowed_internal_domains=allowed_internal_domains)
        if ssrf_protection
        else None
    )
    return httpx.AsyncClient(
        transport=transport,
        timeout=timeout,
        limits=limits,
        follow_redirects=False,
    )
