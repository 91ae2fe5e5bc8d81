"""Webhook URL validation.

Rejects malformed URLs, non-HTTPS URLs where HTTPS is required, and hosts
on loopback, private or link-local networks so tenants cannot point
deliveries at internal services.
"""

from __future__ import annotations

import ipaddress
from urllib.parse import urlparse

import validators

from courier.exceptions import ValidationError

BLOCKED_HOSTNAMES = frozenset({"localhost", "localhost.localdomain", "metadata.google.internal"})
BLOCKED_HOST_SUFFIXES = (".localhost", ".local", ".internal")


def is_private_host(hostname: str) -> bool:
    """Check whether a hostname names a loopback, private or link-local target.

    Only literal IPs and well-known internal names are recognised; DNS is
    not resolved.
    """
    host = hostname.lower().rstrip(".")
    if host in BLOCKED_HOSTNAMES or host.endswith(BLOCKED_HOST_SUFFIXES):
        return True
    try:
        address = ipaddress.ip_address(host)
    except ValueError:
        return False
    return (
        address.is_private
        or address.is_loopback
        or address.is_link_local
        or address.is_unspecified
        or address.is_reserved
        or address.is_multicast
    )


def validate_webhook_url(
    url: str,
    *,
    require_https: bool = False,
    allow_private_hosts: bool = False,
) -> str:
    """Validate a webhook URL and return it stripped of surrounding whitespace.

    Args:
        url: Candidate URL.
        require_https: Reject plain http:// URLs.
        allow_private_hosts: Accept loopback and private network hosts.

    Returns:
        The validated URL.

    Raises:
        ValidationError: If the URL is rejected.
    """
    candidate = url.strip()
    if not candidate:
        raise ValidationError("url", "URL is required")

    try:
        parsed = urlparse(candidate)
    except ValueError as e:
        raise ValidationError("url", "Invalid URL format") from e
    scheme = parsed.scheme.lower()
    if scheme not in ("http", "https"):
        raise ValidationError("url", "URL must use http or https")
    if require_https and scheme != "https":
        raise ValidationError("url", "URL must use HTTPS")

    hostname = parsed.hostname
    if not hostname:
        raise ValidationError("url", "URL must include a host")
    if not allow_private_hosts and is_private_host(hostname):
        raise ValidationError("url", "URL must not point to a private or local address")

    if not validators.url(candidate, simple_host=allow_private_hosts):
        raise ValidationError("url", "Invalid URL format")

    return candidate


__all__ = ["is_private_host", "validate_webhook_url"]
