"""Outbound URL trust policy (SSRF protection).

A fetch target must use HTTPS and must not resolve to a private, loopback,
link-local or cloud metadata address. Redirects are checked hop by hop and
may not leave the original host.
"""

import asyncio
import ipaddress
import logging
import socket
from typing import Awaitable, Callable, Optional
from urllib.parse import urlsplit

from .errors import SecurityError, ToolExecutionError

logger = logging.getLogger("claude-agent-mcp.url_guard")

Resolver = Callable[[str], Awaitable[list[str]]]

ALLOWED_SCHEME = "https"

BLOCKED_NETWORKS = [
    ipaddress.ip_network(cidr)
    for cidr in (
        "0.0.0.0/8",
        "10.0.0.0/8",
        "100.64.0.0/10",  # carrier-grade NAT
        "127.0.0.0/8",
        "169.254.0.0/16",
        "172.16.0.0/12",
        "192.168.0.0/16",
        "::/128",
        "::1/128",
        "fc00::/7",
        "fe80::/10",
    )
]

METADATA_ADDRESSES = {
    ipaddress.ip_address("169.254.169.254"),  # AWS, GCP, Azure, OpenStack
    ipaddress.ip_address("169.254.170.2"),  # AWS ECS task metadata
    ipaddress.ip_address("100.100.100.200"),  # Alibaba Cloud
    ipaddress.ip_address("fd00:ec2::254"),  # AWS IPv6
}

METADATA_HOSTNAMES = {
    "metadata",
    "metadata.google.internal",
    "metadata.goog",
    "instance-data",
    "instance-data.ec2.internal",
}


async def resolve_host(host: str) -> list[str]:
    """Resolve ``host`` to its IP addresses without blocking the event loop."""
    loop = asyncio.get_running_loop()
    infos = await loop.getaddrinfo(host, None, type=socket.SOCK_STREAM)
    return sorted({info[4][0] for info in infos})


def is_blocked_address(address: str) -> bool:
    """True if ``address`` is private, loopback, link-local or metadata."""
    ip = ipaddress.ip_address(address.split("%", 1)[0])
    if isinstance(ip, ipaddress.IPv6Address) and ip.ipv4_mapped is not None:
        ip = ip.ipv4_mapped
    if ip in METADATA_ADDRESSES:
        return True
    if ip.is_private or ip.is_loopback or ip.is_link_local or ip.is_unspecified:
        return True
    return any(ip in network for network in BLOCKED_NETWORKS if ip.version == network.version)


def _literal_ip(host: str) -> Optional[str]:
    try:
        return str(ipaddress.ip_address(host))
    except ValueError:
        return None


def get_hostname(url: str) -> str:
    """Lowercased hostname of ``url``, or a SecurityError if it has none."""
    try:
        parts = urlsplit(url)
        host = parts.hostname
    except ValueError as e:
        raise SecurityError(f"Invalid URL: {e}", code="invalid_url")
    if not host:
        raise SecurityError("URL has no host", code="invalid_url")
    return host.rstrip(".").lower()


async def assert_fetch_allowed(url: str, resolver: Optional[Resolver] = None) -> str:
    """Raise SecurityError unless ``url`` is safe to fetch.

    Returns the validated hostname.
    """
    if not isinstance(url, str) or not url.strip():
        raise SecurityError("URL cannot be empty", code="invalid_url")

    try:
        scheme = urlsplit(url).scheme.lower()
    except ValueError as e:
        raise SecurityError(f"Invalid URL: {e}", code="invalid_url")
    if scheme != ALLOWED_SCHEME:
        raise SecurityError(
            f"Only HTTPS URLs are allowed (got scheme '{scheme or 'none'}')",
            code="url_scheme_not_allowed",
        )

    host = get_hostname(url)
    if host in METADATA_HOSTNAMES or host == "localhost" or host.endswith(".localhost"):
        raise SecurityError(f"Access to host '{host}' is not allowed", code="url_host_blocked")

    literal = _literal_ip(host)
    if literal is not None:
        addresses = [literal]
    else:
        resolve = resolver or resolve_host
        try:
            addresses = await resolve(host)
        except (OSError, UnicodeError) as e:
            logger.info(f"DNS resolution failed for {host}: {e}")
            raise ToolExecutionError(f"Could not resolve host '{host}'", "web_fetch", code="dns_resolution_failed")
        if not addresses:
            raise ToolExecutionError(f"Could not resolve host '{host}'", "web_fetch", code="dns_resolution_failed")

    for address in addresses:
        if is_blocked_address(address):
            logger.warning(f"Blocked fetch to {host} resolving to {address}")
            raise SecurityError(
                f"Access to private or internal address is not allowed: {host}",
                code="url_private_address",
            )
    return host


async def assert_redirect_allowed(
    original_url: str,
    target_url: str,
    resolver: Optional[Resolver] = None,
) -> str:
    """Validate one redirect hop: same host as the origin, plus all fetch checks."""
    original_host = get_hostname(original_url)
    target_host = get_hostname(target_url)
    if original_host != target_host:
        raise SecurityError(
            f"Cross-domain redirect blocked: {original_host} -> {target_host}",
            code="redirect_cross_domain",
        )
    return await assert_fetch_allowed(target_url, resolver)
