"""Data types shared by the domain lifecycle, the store and the verifier.

``SiteDomain`` mirrors the per-site domain columns owned by the tenant-data
store. Its ``to_dict`` keys are those column names and must not change:

    {
        "site_id": "site-123",
        "custom_domain": "shop.example.com",
        "custom_domain_status": "pending_verification",
        "dns_provider": "cloudflare",
        "dns_verification_token": "domainedge-site-verification=9f2c...",
        "dns_records": {"cname": {...}, "txt": {...}},
        "last_dns_check_at": "2024-01-15T10:30:00+00:00",
        "custom_domain_verified_at": null,
        "custom_domain_error": null
    }
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import Any

from domainedge.errors import ErrorKind

DEFAULT_PROXY_HOSTNAME = "edge.domainedge.app"
DEFAULT_VERIFICATION_PREFIX = "domainedge-verification"
DEFAULT_RECORD_TTL = 300
DNS_CHECK_RATE_LIMIT_SECONDS = 60.0


class DomainStatus(Enum):
    """Lifecycle status of a site's custom domain."""

    NOT_STARTED = "not_started"
    PENDING_VERIFICATION = "pending_verification"
    VERIFIED = "verified"
    FAILED = "failed"
    DISCONNECTED = "disconnected"


class DnsRecordType(Enum):
    CNAME = "CNAME"
    TXT = "TXT"
    A = "A"
    AAAA = "AAAA"


def _dt_to_str(value: datetime | None) -> str | None:
    return value.isoformat() if value else None


def _dt_from_str(value: str | None) -> datetime | None:
    return datetime.fromisoformat(value) if value else None


@dataclass(frozen=True)
class DnsRecord:
    """A DNS record the tenant must publish."""

    type: DnsRecordType
    name: str
    value: str
    ttl: int = DEFAULT_RECORD_TTL

    def to_dict(self) -> dict[str, Any]:
        return {
            "type": self.type.value,
            "name": self.name,
            "value": self.value,
            "ttl": self.ttl,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> DnsRecord:
        return cls(
            type=DnsRecordType(data["type"]),
            name=data["name"],
            value=data["value"],
            ttl=int(data.get("ttl", DEFAULT_RECORD_TTL)),
        )


@dataclass(frozen=True)
class DnsRecords:
    """The CNAME/TXT pair issued for one attach attempt."""

    cname: DnsRecord
    txt: DnsRecord

    def to_dict(self) -> dict[str, Any]:
        return {"cname": self.cname.to_dict(), "txt": self.txt.to_dict()}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> DnsRecords:
        return cls(
            cname=DnsRecord.from_dict(data["cname"]),
            txt=DnsRecord.from_dict(data["txt"]),
        )


@dataclass
class SiteDomain:
    """Domain fields of one site, as persisted by the tenant-data store."""

    site_id: str
    custom_domain: str | None = None
    custom_domain_status: DomainStatus = DomainStatus.NOT_STARTED
    dns_provider: str | None = None
    dns_verification_token: str | None = None
    dns_records: DnsRecords | None = None
    last_dns_check_at: datetime | None = None
    custom_domain_verified_at: datetime | None = None
    custom_domain_error: str | None = None

    @property
    def status(self) -> DomainStatus:
        return self.custom_domain_status

    @property
    def claims_domain(self) -> bool:
        """Whether this record holds its domain against other sites."""
        return self.custom_domain is not None and self.custom_domain_status in (
            DomainStatus.PENDING_VERIFICATION,
            DomainStatus.VERIFIED,
            DomainStatus.FAILED,
        )

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        return {
            "site_id": self.site_id,
            "custom_domain": self.custom_domain,
            "custom_domain_status": self.custom_domain_status.value,
            "dns_provider": self.dns_provider,
            "dns_verification_token": self.dns_verification_token,
            "dns_records": self.dns_records.to_dict() if self.dns_records else None,
            "last_dns_check_at": _dt_to_str(self.last_dns_check_at),
            "custom_domain_verified_at": _dt_to_str(self.custom_domain_verified_at),
            "custom_domain_error": self.custom_domain_error,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> SiteDomain:
        """Create from dictionary (JSON deserialization)."""
        records = data.get("dns_records")
        return cls(
            site_id=data["site_id"],
            custom_domain=data.get("custom_domain"),
            custom_domain_status=DomainStatus(
                data.get("custom_domain_status") or DomainStatus.NOT_STARTED.value
            ),
            dns_provider=data.get("dns_provider"),
            dns_verification_token=data.get("dns_verification_token"),
            dns_records=DnsRecords.from_dict(records) if records else None,
            last_dns_check_at=_dt_from_str(data.get("last_dns_check_at")),
            custom_domain_verified_at=_dt_from_str(data.get("custom_domain_verified_at")),
            custom_domain_error=data.get("custom_domain_error"),
        )


@dataclass(frozen=True)
class VerificationIssue:
    """One reason a verification attempt did not pass."""

    kind: ErrorKind
    record_type: DnsRecordType
    message: str


# Most specific first: a wrong value beats a missing record beats a timeout
_ISSUE_PRIORITY = (
    ErrorKind.CNAME_MISMATCH,
    ErrorKind.TXT_MISMATCH,
    ErrorKind.DNS_LOOKUP_FAILED,
    ErrorKind.DNS_TIMEOUT,
)


@dataclass
class VerificationDetails:
    """Expected vs. actual values shown to the tenant."""

    expected_cname: str | None = None
    actual_cname: str | None = None
    expected_txt: str | None = None
    actual_txt: str | None = None

    def to_dict(self) -> dict[str, str]:
        values = {
            "expectedCname": self.expected_cname,
            "actualCname": self.actual_cname,
            "expectedTxt": self.expected_txt,
            "actualTxt": self.actual_txt,
        }
        return {key: value for key, value in values.items() if value is not None}


@dataclass
class DomainVerificationResult:
    """Outcome of one live DNS verification."""

    domain: str
    cname_valid: bool
    txt_valid: bool
    issues: list[VerificationIssue] = field(default_factory=list)
    details: VerificationDetails = field(default_factory=VerificationDetails)

    @property
    def verified(self) -> bool:
        return self.cname_valid and self.txt_valid

    @property
    def errors(self) -> list[str]:
        return [issue.message for issue in self.issues]

    @property
    def has_lookup_failure(self) -> bool:
        return any(issue.kind.is_lookup_failure for issue in self.issues)

    def most_specific_issue(self) -> VerificationIssue | None:
        """The issue the tenant should fix first."""
        for kind in _ISSUE_PRIORITY:
            for issue in self.issues:
                if issue.kind is kind:
                    return issue
        return self.issues[0] if self.issues else None

    def to_dict(self) -> dict[str, Any]:
        return {
            "verified": self.verified,
            "cnameValid": self.cname_valid,
            "txtValid": self.txt_valid,
            "errors": self.errors,
            "details": self.details.to_dict(),
        }


@dataclass
class DomainInitializationResult:
    """What a tenant needs after starting a domain attachment."""

    site_id: str
    domain: str
    status: DomainStatus
    verification_token: str
    dns_records: DnsRecords
    dns_provider: str | None = None
    reused: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "site_id": self.site_id,
            "domain": self.domain,
            "status": self.status.value,
            "verification_token": self.verification_token,
            "dns_records": self.dns_records.to_dict(),
            "dns_provider": self.dns_provider,
            "reused": self.reused,
        }


@dataclass
class DomainStatusResult:
    """Status of a site's domain, optionally with a fresh verification."""

    site_id: str
    domain: str | None
    status: DomainStatus
    last_dns_check_at: datetime | None = None
    next_check_available: datetime | None = None
    verified_at: datetime | None = None
    error: str | None = None
    error_kind: ErrorKind | None = None
    dns_records: DnsRecords | None = None
    verification: DomainVerificationResult | None = None

    @property
    def verified(self) -> bool:
        return self.status == DomainStatus.VERIFIED

    @property
    def rate_limited(self) -> bool:
        return self.error_kind is ErrorKind.RATE_LIMITED

    def seconds_until_next_check(self, now: datetime) -> float:
        if self.next_check_available is None:
            return 0.0
        remaining: timedelta = self.next_check_available - now
        return max(0.0, remaining.total_seconds())

    def to_dict(self) -> dict[str, Any]:
        return {
            "site_id": self.site_id,
            "domain": self.domain,
            "status": self.status.value,
            "verified": self.verified,
            "rate_limited": self.rate_limited,
            "last_dns_check_at": _dt_to_str(self.last_dns_check_at),
            "next_check_available": _dt_to_str(self.next_check_available),
            "verified_at": _dt_to_str(self.verified_at),
            "error": self.error,
            "error_kind": self.error_kind.value if self.error_kind else None,
            "dns_records": self.dns_records.to_dict() if self.dns_records else None,
            "verification": self.verification.to_dict() if self.verification else None,
        }
