"""DNS verification for custom domain ownership.

Two records prove a tenant controls a domain:
1. CNAME record: routes the domain to the edge proxy
2. TXT record: carries the verification token issued for this attempt

Example DNS setup required by the tenant:
    # CNAME record (routes traffic)
    shop.example.com  CNAME  edge.domainedge.app

    # TXT record (proves ownership)
    _domainedge-verification.shop.example.com  TXT  "domainedge-site-verification=9f2c..."
"""

from __future__ import annotations

import asyncio
import hashlib
import secrets
import sys
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any

import aiodns
import structlog

from domainedge.domains.models import (
    DnsRecords,
    DnsRecordType,
    DomainVerificationResult,
    VerificationDetails,
    VerificationIssue,
)
from domainedge.domains.providers import match_provider
from domainedge.errors import ErrorKind

logger = structlog.get_logger()

TOKEN_PREFIX = "domainedge-site-verification"
DEFAULT_DNS_TIMEOUT = 5.0
MAX_CNAME_HOPS = 5

# c-ares status codes: ARES_ENODATA, ARES_ENOTFOUND / ARES_ETIMEOUT
_NOT_FOUND_CODES = frozenset({1, 4})
_TIMEOUT_CODES = frozenset({12})


def _clean_hostname(value: str) -> str:
    return value.strip().lower().rstrip(".")


def _as_text(value: Any) -> str | None:
    if isinstance(value, bytes):
        return value.decode("utf-8", errors="replace")
    return value if isinstance(value, str) else None


def _answers(result: Any) -> list[Any]:
    """Flatten a resolver response into its record payloads."""
    if result is None:
        return []
    answer = getattr(result, "answer", None)
    if isinstance(answer, (list, tuple)):
        return [getattr(record, "data", record) for record in answer]
    if isinstance(result, (list, tuple)):
        return list(result)
    return [result]


def _cname_of(payload: Any) -> str | None:
    return _as_text(getattr(payload, "cname", None))


def _txt_of(payload: Any) -> str | None:
    text = _as_text(getattr(payload, "text", None) or getattr(payload, "data", None))
    if text is None:
        return None
    return text.strip().strip('"').strip("'")


def _ns_of(payload: Any) -> str | None:
    return _as_text(getattr(payload, "host", None) or getattr(payload, "nsdname", None))


@dataclass
class LookupOutcome:
    """Values returned by one DNS query, or why there are none."""

    values: list[str] = field(default_factory=list)
    failure: ErrorKind | None = None
    reason: str | None = None

    @property
    def ok(self) -> bool:
        return self.failure is None


class DNSVerifier:
    """Verifies domain ownership via DNS records.

    Every query runs under ``timeout`` so a stalled resolver cannot hold a
    check open. CNAME and TXT lookups for one domain run concurrently.
    """

    def __init__(
        self,
        timeout: float = DEFAULT_DNS_TIMEOUT,
        resolver: aiodns.DNSResolver | None = None,
        max_cname_hops: int = MAX_CNAME_HOPS,
    ) -> None:
        """Initialize DNS verifier.

        Args:
            timeout: Seconds allowed for each individual lookup.
            resolver: Resolver to use. Created lazily when omitted.
            max_cname_hops: How far a CNAME chain is followed looking for
                the expected target.
        """
        self.timeout = timeout
        self.max_cname_hops = max_cname_hops
        self._resolver = resolver

    def _get_resolver(self) -> aiodns.DNSResolver:
        """Get or create DNS resolver with proper event loop handling."""
        if self._resolver is None:
            if sys.platform == "win32":
                try:
                    loop = asyncio.get_running_loop()
                except RuntimeError:
                    loop = asyncio.new_event_loop()
                self._resolver = aiodns.DNSResolver(loop=loop, timeout=self.timeout)
            else:
                self._resolver = aiodns.DNSResolver(timeout=self.timeout)
        return self._resolver

    @staticmethod
    def generate_verification_token(domain: str) -> str:
        """Generate an unpredictable verification token for a domain.

        Returns:
            A token string (e.g., "domainedge-site-verification=9f2c1a...")
        """
        salt = secrets.token_hex(16)
        digest = hashlib.sha256(f"{domain}:{salt}".encode()).hexdigest()[:32]
        return f"{TOKEN_PREFIX}={digest}"

    async def _lookup(
        self,
        name: str,
        record_type: str,
        extract: Callable[[Any], str | None],
    ) -> LookupOutcome:
        resolver = self._get_resolver()
        try:
            result = await asyncio.wait_for(
                resolver.query_dns(name, record_type), timeout=self.timeout
            )
        except TimeoutError:
            logger.debug("DNS lookup timed out", name=name, type=record_type)
            return LookupOutcome(failure=ErrorKind.DNS_TIMEOUT, reason="timed out")
        except aiodns.error.DNSError as e:
            code = e.args[0] if e.args else None
            if code in _TIMEOUT_CODES:
                return LookupOutcome(failure=ErrorKind.DNS_TIMEOUT, reason="timed out")
            if code in _NOT_FOUND_CODES:
                reason = "not found"
            else:
                reason = str(e.args[1]) if len(e.args) > 1 else "lookup failed"
            logger.debug("DNS lookup failed", name=name, type=record_type, code=code, reason=reason)
            return LookupOutcome(failure=ErrorKind.DNS_LOOKUP_FAILED, reason=reason)

        values = [value for value in (extract(p) for p in _answers(result)) if value]
        if not values:
            return LookupOutcome(failure=ErrorKind.DNS_LOOKUP_FAILED, reason="not found")
        return LookupOutcome(values=values)

    async def resolve_cname_chain(
        self, domain: str, stop_at: str | None = None
    ) -> tuple[list[str], LookupOutcome]:
        """Follow CNAME records from ``domain``.

        Args:
            domain: Hostname to start from.
            stop_at: Target that ends the walk early once seen.

        Returns:
            Tuple of (chain of targets in order, outcome of the first lookup).
        """
        chain: list[str] = []
        first: LookupOutcome | None = None
        current = _clean_hostname(domain)
        target_stop = _clean_hostname(stop_at) if stop_at else None

        for _ in range(self.max_cname_hops):
            outcome = await self._lookup(current, "CNAME", _cname_of)
            if first is None:
                first = outcome
            if not outcome.ok:
                break
            target = _clean_hostname(outcome.values[0])
            if target == current or target in chain:
                break
            chain.append(target)
            if target == target_stop:
                break
            current = target

        return chain, first or LookupOutcome(failure=ErrorKind.DNS_LOOKUP_FAILED, reason="not found")

    async def verify_cname(
        self, domain: str, expected: str
    ) -> tuple[bool, str | None, VerificationIssue | None]:
        """Verify the domain's CNAME leads to the expected target.

        Returns:
            Tuple of (is_valid, first_hop_target, issue).
        """
        expected_target = _clean_hostname(expected)
        chain, first = await self.resolve_cname_chain(domain, stop_at=expected_target)

        if not chain:
            kind = first.failure or ErrorKind.DNS_LOOKUP_FAILED
            if kind is ErrorKind.DNS_TIMEOUT:
                message = f"CNAME lookup for {domain} timed out"
            else:
                message = f"CNAME record for {domain} not found or could not be resolved"
            return False, None, VerificationIssue(kind, DnsRecordType.CNAME, message)

        actual = chain[0]
        if expected_target in chain:
            return True, actual, None

        message = f"CNAME record for {domain} points to {actual}, expected {expected_target}"
        return False, actual, VerificationIssue(ErrorKind.CNAME_MISMATCH, DnsRecordType.CNAME, message)

    async def verify_txt_record(
        self, name: str, expected_value: str
    ) -> tuple[bool, str | None, VerificationIssue | None]:
        """Verify a TXT record at ``name`` contains the expected value.

        Returns:
            Tuple of (is_valid, actual values joined, issue).
        """
        outcome = await self._lookup(name, "TXT", _txt_of)
        if not outcome.ok:
            kind = outcome.failure or ErrorKind.DNS_LOOKUP_FAILED
            if kind is ErrorKind.DNS_TIMEOUT:
                message = f"TXT lookup at {name} timed out"
            else:
                message = f"TXT verification record at {name} not found"
            return False, None, VerificationIssue(kind, DnsRecordType.TXT, message)

        actual = ", ".join(outcome.values)
        if expected_value in outcome.values:
            return True, actual, None

        message = f"TXT record at {name} does not contain the verification token"
        return False, actual, VerificationIssue(ErrorKind.TXT_MISMATCH, DnsRecordType.TXT, message)

    async def verify_domain(self, domain: str, expected: DnsRecords) -> DomainVerificationResult:
        """Perform full domain verification (CNAME + TXT).

        Args:
            domain: The tenant domain to verify.
            expected: The records issued when the attachment started.

        Returns:
            DomainVerificationResult; ``verified`` is true only when both
            records match.
        """
        (cname_valid, actual_cname, cname_issue), (txt_valid, actual_txt, txt_issue) = (
            await asyncio.gather(
                self.verify_cname(domain, expected.cname.value),
                self.verify_txt_record(expected.txt.name, expected.txt.value),
            )
        )

        issues = [issue for issue in (cname_issue, txt_issue) if issue is not None]
        result = DomainVerificationResult(
            domain=domain,
            cname_valid=cname_valid,
            txt_valid=txt_valid,
            issues=issues,
            details=VerificationDetails(
                expected_cname=expected.cname.value,
                actual_cname=actual_cname,
                expected_txt=expected.txt.value,
                actual_txt=actual_txt,
            ),
        )
        logger.info(
            "DNS verification finished",
            domain=domain,
            verified=result.verified,
            cname_valid=cname_valid,
            txt_valid=txt_valid,
            issues=[issue.kind.value for issue in issues],
        )
        return result

    async def lookup_nameservers(self, domain: str) -> list[str]:
        """Nameservers of the closest zone that has NS records.

        Walks from the domain towards its registrable parent
        (shop.example.co -> example.co), stopping at two labels.
        """
        labels = _clean_hostname(domain).split(".")
        for start in range(max(len(labels) - 1, 1)):
            zone = ".".join(labels[start:])
            if zone.count(".") < 1:
                break
            outcome = await self._lookup(zone, "NS", _ns_of)
            if outcome.ok:
                return [_clean_hostname(ns) for ns in outcome.values]
        return []

    async def detect_provider(self, domain: str) -> str | None:
        """Best-effort DNS host detection. Advisory only."""
        nameservers = await self.lookup_nameservers(domain)
        provider = match_provider(nameservers)
        logger.debug("DNS provider detected", domain=domain, provider=provider)
        return provider
