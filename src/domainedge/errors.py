"""Error types.

Exceptions are reserved for configuration mistakes and invalid calls.
Expected outcomes of a domain check or a proxied request are reported
through ``ErrorKind`` values inside result objects instead.
"""

from __future__ import annotations

from enum import Enum


class ErrorKind(Enum):
    """Closed set of expected, non-exceptional failure outcomes."""

    DOMAIN_NOT_ALLOWED = "domain_not_allowed"
    DNS_LOOKUP_FAILED = "dns_lookup_failed"
    DNS_TIMEOUT = "dns_timeout"
    RATE_LIMITED = "rate_limited"
    CNAME_MISMATCH = "cname_mismatch"
    TXT_MISMATCH = "txt_mismatch"
    UPSTREAM_ERROR = "upstream_error"
    UPSTREAM_TIMEOUT = "upstream_timeout"

    @property
    def is_lookup_failure(self) -> bool:
        return self in (ErrorKind.DNS_LOOKUP_FAILED, ErrorKind.DNS_TIMEOUT)

    @property
    def is_mismatch(self) -> bool:
        return self in (ErrorKind.CNAME_MISMATCH, ErrorKind.TXT_MISMATCH)


class DomainEdgeError(Exception):
    """Base class for all domainedge exceptions."""


class ConfigError(DomainEdgeError):
    """Proxy configuration is missing or invalid."""


class InvalidDomainError(DomainEdgeError, ValueError):
    """A hostname failed validation."""

    def __init__(self, domain: str, errors: list[str]) -> None:
        self.domain = domain
        self.errors = errors
        super().__init__(f"Invalid domain {domain!r}: {'; '.join(errors)}")


class DomainConflictError(DomainEdgeError):
    """The domain is already attached to another site."""

    def __init__(self, domain: str, site_id: str) -> None:
        self.domain = domain
        self.site_id = site_id
        super().__init__(f"Domain {domain} is already attached to another site")


class SiteNotFoundError(DomainEdgeError, KeyError):
    """No domain record exists for the site."""

    def __init__(self, site_id: str) -> None:
        self.site_id = site_id
        super().__init__(site_id)

    def __str__(self) -> str:
        return f"Site {self.site_id} not found"


class DomainNotInitializedError(DomainEdgeError):
    """A check was requested for a site with no domain attachment in progress."""

    def __init__(self, site_id: str) -> None:
        self.site_id = site_id
        super().__init__(
            f"Domain configuration for site {site_id} is not initialized. "
            "Initialize a domain first."
        )


class InvalidTransitionError(DomainEdgeError):
    """A status change that the domain lifecycle does not allow."""

    def __init__(self, current: str, target: str) -> None:
        self.current = current
        self.target = target
        super().__init__(f"Cannot move domain from {current} to {target}")
