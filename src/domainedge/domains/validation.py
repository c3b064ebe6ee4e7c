"""Hostname normalization and validation for tenant domains."""

from __future__ import annotations

import re
from collections.abc import Iterable

_LABEL_RE = re.compile(r"^[a-z0-9]([a-z0-9-]{0,61}[a-z0-9])?$")
_SCHEME_RE = re.compile(r"^[a-z][a-z0-9+.-]*://", re.IGNORECASE)

MAX_HOSTNAME_LENGTH = 253
RESERVED_DOMAINS = frozenset({"localhost", "localhost.localdomain"})


def normalize_domain(domain: str) -> str:
    """Reduce user input to a bare lowercase hostname.

    Examples:
        >>> normalize_domain("  https://Shop.Example.com/about ")
        'shop.example.com'
        >>> normalize_domain("shop.example.com.")
        'shop.example.com'
        >>> normalize_domain("shop.example.com:8443")
        'shop.example.com'
    """
    value = domain.strip().lower()
    value = _SCHEME_RE.sub("", value)
    for separator in ("/", "?", "#"):
        value = value.split(separator, 1)[0]
    value = value.rsplit("@", 1)[-1]
    if ":" in value:
        value = value.split(":", 1)[0]
    return value.rstrip(".")


def validate_domain(domain: str, reserved: Iterable[str] = ()) -> list[str]:
    """Validate a normalized hostname.

    Args:
        domain: Hostname, already passed through normalize_domain().
        reserved: Extra hostnames that may not be attached; their
            subdomains are refused as well.

    Returns:
        List of error messages. Empty when the hostname is acceptable.
    """
    if not domain:
        return ["Domain is required"]

    errors: list[str] = []
    if len(domain) > MAX_HOSTNAME_LENGTH:
        errors.append(f"Domain must be at most {MAX_HOSTNAME_LENGTH} characters")

    labels = domain.split(".")
    if len(labels) < 2:
        errors.append("Domain must have at least two parts (e.g., example.com)")

    if any(not _LABEL_RE.match(label) for label in labels):
        errors.append("Invalid domain format")

    tld = labels[-1]
    if len(tld) < 2 or tld.isdigit():
        errors.append("Invalid top-level domain")

    blocked = set(RESERVED_DOMAINS)
    blocked.update(name.lower().rstrip(".") for name in reserved)
    if any(domain == name or domain.endswith(f".{name}") for name in blocked):
        errors.append("This domain is reserved and cannot be used")

    return errors


def is_valid_domain(domain: str, reserved: Iterable[str] = ()) -> bool:
    return not validate_domain(domain, reserved)
