"""Outbound URL checks for tenant-configured webhooks (SSRF guard)."""

import ipaddress
import socket
from urllib.parse import urlsplit, urlunsplit


class OutboundURLError(ValueError):
    """Raised when a tenant-supplied URL may not be called."""


def _is_public_address(ip: ipaddress.IPv4Address | ipaddress.IPv6Address) -> bool:
    # is_global excludes loopback, RFC1918, link-local, CGNAT and multicast.
    return ip.is_global and not ip.is_multicast


def _resolve_host(host: str, port: int) -> set[ipaddress.IPv4Address | ipaddress.IPv6Address]:
    try:
        infos = socket.getaddrinfo(host, port, type=socket.SOCK_STREAM)
    except (socket.gaierror, UnicodeError) as exc:
        raise OutboundURLError("Webhook URL host could not be resolved") from exc

    addresses = set()
    for info in infos:
        sockaddr = info[4]
        if not sockaddr:
            continue
        try:
            addresses.add(ipaddress.ip_address(sockaddr[0]))
        except ValueError:
            continue
    return addresses


def validate_outbound_url(url: str) -> str:
    """Validate a webhook/CRM URL and return it normalized.

    Rules:
    - https only, host required, no credentials, no fragment
    - IP literals and every DNS answer must be publicly routable

    Raises OutboundURLError with a message safe to show the owner.
    """
    candidate = (url or "").strip()
    if not candidate:
        raise OutboundURLError("Webhook URL is required")

    parts = urlsplit(candidate)
    scheme = (parts.scheme or "").lower()
    if scheme != "https":
        raise OutboundURLError("Webhook URL must start with https://")
    if parts.username or parts.password:
        raise OutboundURLError("Webhook URL must not include credentials")
    if parts.fragment:
        raise OutboundURLError("Webhook URL must not include a fragment")

    host = (parts.hostname or "").strip().lower().rstrip(".")
    if not host:
        raise OutboundURLError("Webhook URL must include a host")
    if host == "localhost" or host.endswith(".localhost") or host.endswith(".internal"):
        raise OutboundURLError("Webhook URL host is not allowed")

    try:
        port = parts.port or 443
    except ValueError as exc:
        raise OutboundURLError("Webhook URL port is invalid") from exc

    try:
        literal = ipaddress.ip_address(host)
    except ValueError:
        literal = None

    addresses = {literal} if literal is not None else _resolve_host(host, port)
    if not addresses:
        raise OutboundURLError("Webhook URL host could not be resolved")
    for address in addresses:
        if not _is_public_address(address):
            raise OutboundURLError("Webhook URL host is not allowed")

    return urlunsplit((scheme, parts.netloc, parts.path, parts.query, ""))
