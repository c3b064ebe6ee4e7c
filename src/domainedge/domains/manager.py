"""Domain lifecycle for tenant sites.

This module provides the main interface for attaching custom domains:
- Initiation with a fresh verification token and the DNS records to publish
- Rate-limited DNS verification (CNAME + TXT)
- Detach and admin force-disconnect
- Status queries and scheduled re-checks

Usage:
    manager = DomainLifecycleManager(store, DNSVerifier())

    # Start attaching a domain
    init = await manager.initiate_domain("site-123", "shop.example.com")

    # After the tenant published the records
    status = await manager.check_domain("site-123")

    # Detach
    await manager.disconnect_domain("site-123")
"""

from __future__ import annotations

import asyncio
from collections import Counter
from collections.abc import AsyncIterator, Callable, Iterable
from contextlib import asynccontextmanager
from datetime import UTC, datetime

import structlog

from domainedge.domains.models import (
    DEFAULT_PROXY_HOSTNAME,
    DEFAULT_RECORD_TTL,
    DEFAULT_VERIFICATION_PREFIX,
    DNS_CHECK_RATE_LIMIT_SECONDS,
    DnsRecord,
    DnsRecords,
    DnsRecordType,
    DomainInitializationResult,
    DomainStatus,
    DomainStatusResult,
    DomainVerificationResult,
    SiteDomain,
    VerificationDetails,
    VerificationIssue,
)
from domainedge.domains.providers import provider_display_name
from domainedge.domains.ratelimit import check_gate
from domainedge.domains.storage import SiteDomainStore
from domainedge.domains.validation import normalize_domain, validate_domain
from domainedge.domains.verification import DNSVerifier
from domainedge.errors import (
    DomainConflictError,
    DomainEdgeError,
    DomainNotInitializedError,
    ErrorKind,
    InvalidDomainError,
    InvalidTransitionError,
    SiteNotFoundError,
)
from domainedge.observability.metrics import DOMAIN_CHECKS

logger = structlog.get_logger()

ALLOWED_TRANSITIONS: dict[DomainStatus, frozenset[DomainStatus]] = {
    DomainStatus.NOT_STARTED: frozenset({DomainStatus.PENDING_VERIFICATION}),
    DomainStatus.PENDING_VERIFICATION: frozenset(
        {DomainStatus.VERIFIED, DomainStatus.FAILED, DomainStatus.DISCONNECTED}
    ),
    DomainStatus.FAILED: frozenset(
        {DomainStatus.PENDING_VERIFICATION, DomainStatus.DISCONNECTED}
    ),
    DomainStatus.VERIFIED: frozenset({DomainStatus.DISCONNECTED}),
    DomainStatus.DISCONNECTED: frozenset({DomainStatus.PENDING_VERIFICATION}),
}

DEFAULT_CHECK_TIMEOUT = 30.0
DEFAULT_RECHECK_CONCURRENCY = 10


def _utc_now() -> datetime:
    """Return current UTC datetime."""
    return datetime.now(UTC)


def can_transition(current: DomainStatus, target: DomainStatus) -> bool:
    return target in ALLOWED_TRANSITIONS.get(current, frozenset())


class DomainLifecycleManager:
    """Drives a site's domain through not_started -> pending -> verified.

    Every status change goes through ``ALLOWED_TRANSITIONS``. Live DNS checks
    are gated per site by ``last_dns_check_at`` and ``check_window``.
    """

    def __init__(
        self,
        store: SiteDomainStore,
        verifier: DNSVerifier | None = None,
        proxy_hostname: str = DEFAULT_PROXY_HOSTNAME,
        verification_prefix: str = DEFAULT_VERIFICATION_PREFIX,
        record_ttl: int = DEFAULT_RECORD_TTL,
        check_window: float = DNS_CHECK_RATE_LIMIT_SECONDS,
        check_timeout: float = DEFAULT_CHECK_TIMEOUT,
        recheck_concurrency: int = DEFAULT_RECHECK_CONCURRENCY,
        reserved_domains: Iterable[str] = (),
        clock: Callable[[], datetime] = _utc_now,
    ) -> None:
        """Initialize the lifecycle manager.

        Args:
            store: Persistence for site domain records.
            verifier: DNS verifier. A default one is created when omitted.
            proxy_hostname: Public hostname tenants point their CNAME at.
            verification_prefix: Label prefix of the TXT record name.
            record_ttl: TTL suggested for both records.
            check_window: Minimum seconds between live checks of one site.
            check_timeout: Upper bound on one whole verification.
            recheck_concurrency: Parallel checks run by recheck_pending().
            reserved_domains: Hostnames tenants may never attach.
            clock: Source of the current time.
        """
        self.store = store
        self.verifier = verifier or DNSVerifier()
        self.proxy_hostname = proxy_hostname.lower().rstrip(".")
        self.verification_prefix = verification_prefix
        self.record_ttl = record_ttl
        self.check_window = check_window
        self.check_timeout = check_timeout
        self.recheck_concurrency = recheck_concurrency
        self.reserved_domains = (self.proxy_hostname, *reserved_domains)
        self._clock = clock
        self._locks: dict[str, asyncio.Lock] = {}
        self._lock_holders: Counter[str] = Counter()

    @asynccontextmanager
    async def _locked(self, *keys: str) -> AsyncIterator[None]:
        """Hold one lock per key, taken in sorted order.

        A lock lives only while someone holds or waits on it.
        """
        ordered = sorted(set(keys))
        for key in ordered:
            self._lock_holders[key] += 1
            self._locks.setdefault(key, asyncio.Lock())
        acquired: list[asyncio.Lock] = []
        try:
            for key in ordered:
                await self._locks[key].acquire()
                acquired.append(self._locks[key])
            yield
        finally:
            for lock in reversed(acquired):
                lock.release()
            for key in ordered:
                self._lock_holders[key] -= 1
                if not self._lock_holders[key]:
                    del self._lock_holders[key]
                    del self._locks[key]

    async def _require(self, site_id: str) -> SiteDomain:
        record = await self.store.get(site_id)
        if record is None:
            raise SiteNotFoundError(site_id)
        return record

    @staticmethod
    def _transition(record: SiteDomain, target: DomainStatus) -> None:
        current = record.custom_domain_status
        if not can_transition(current, target):
            raise InvalidTransitionError(current.value, target.value)
        record.custom_domain_status = target

    def build_dns_records(self, domain: str, token: str) -> DnsRecords:
        """The CNAME/TXT pair a tenant publishes for ``domain``."""
        return DnsRecords(
            cname=DnsRecord(
                type=DnsRecordType.CNAME,
                name=domain,
                value=self.proxy_hostname,
                ttl=self.record_ttl,
            ),
            txt=DnsRecord(
                type=DnsRecordType.TXT,
                name=f"_{self.verification_prefix}.{domain}",
                value=token,
                ttl=self.record_ttl,
            ),
        )

    def _status_result(
        self,
        record: SiteDomain,
        verification: DomainVerificationResult | None = None,
    ) -> DomainStatusResult:
        gate = check_gate(record.last_dns_check_at, self.check_window, self._clock())
        return DomainStatusResult(
            site_id=record.site_id,
            domain=record.custom_domain,
            status=record.custom_domain_status,
            last_dns_check_at=record.last_dns_check_at,
            next_check_available=gate.next_check_available,
            verified_at=record.custom_domain_verified_at,
            error=record.custom_domain_error,
            dns_records=record.dns_records,
            verification=verification,
        )

    async def _detect_provider(self, domain: str) -> str | None:
        try:
            return await self.verifier.detect_provider(domain)
        except Exception as e:
            logger.warning("DNS provider detection failed", domain=domain, error=str(e))
            return None

    async def _claim_checks(
        self, site_id: str, domain: str
    ) -> DomainInitializationResult | None:
        """Refuse a domain held elsewhere; return the pending attempt to reuse, if any."""
        record = await self._require(site_id)

        for other in await self.store.find_by_domain(domain):
            if other.site_id != site_id and other.claims_domain:
                raise DomainConflictError(domain, other.site_id)

        if (
            record.custom_domain_status is DomainStatus.PENDING_VERIFICATION
            and record.custom_domain == domain
            and record.dns_verification_token
            and record.dns_records
        ):
            logger.debug("Domain already pending, reusing token", site_id=site_id, domain=domain)
            return DomainInitializationResult(
                site_id=site_id,
                domain=domain,
                status=record.custom_domain_status,
                verification_token=record.dns_verification_token,
                dns_records=record.dns_records,
                dns_provider=record.dns_provider,
                reused=True,
            )
        if not can_transition(record.custom_domain_status, DomainStatus.PENDING_VERIFICATION):
            raise InvalidTransitionError(
                record.custom_domain_status.value, DomainStatus.PENDING_VERIFICATION.value
            )
        return None

    async def initiate_domain(self, site_id: str, domain: str) -> DomainInitializationResult:
        """Start attaching ``domain`` to a site.

        Calling this again for the domain a site is already verifying returns
        the same token and records without touching the store.

        Raises:
            InvalidDomainError: The hostname is malformed or reserved.
            SiteNotFoundError: The site has no record.
            DomainConflictError: Another site holds the domain.
            InvalidTransitionError: The site is verified, or verifying a
                different domain; disconnect first.
        """
        normalized = normalize_domain(domain)
        errors = validate_domain(normalized, reserved=self.reserved_domains)
        if errors:
            raise InvalidDomainError(domain, errors)

        reused = await self._claim_checks(site_id, normalized)
        if reused is not None:
            return reused

        # Advisory DNS traffic stays outside the locks
        provider = await self._detect_provider(normalized)

        async with self._locked(f"site:{site_id}", f"domain:{normalized}"):
            # Another call may have claimed the domain or the site meanwhile
            reused = await self._claim_checks(site_id, normalized)
            if reused is not None:
                return reused
            record = await self._require(site_id)
            self._transition(record, DomainStatus.PENDING_VERIFICATION)

            token = self.verifier.generate_verification_token(normalized)
            record.custom_domain = normalized
            record.dns_verification_token = token
            record.dns_records = self.build_dns_records(normalized, token)
            record.custom_domain_error = None
            record.custom_domain_verified_at = None
            record.dns_provider = provider
            await self.store.save(record)

        logger.info(
            "Domain verification started",
            site_id=site_id,
            domain=normalized,
            provider=record.dns_provider,
        )
        return DomainInitializationResult(
            site_id=site_id,
            domain=normalized,
            status=record.custom_domain_status,
            verification_token=token,
            dns_records=record.dns_records,
            dns_provider=record.dns_provider,
        )

    async def _verify(self, domain: str, expected: DnsRecords) -> DomainVerificationResult:
        try:
            return await asyncio.wait_for(
                self.verifier.verify_domain(domain, expected), timeout=self.check_timeout
            )
        except TimeoutError:
            logger.warning("DNS verification timed out", domain=domain, timeout=self.check_timeout)
            return DomainVerificationResult(
                domain=domain,
                cname_valid=False,
                txt_valid=False,
                issues=[
                    VerificationIssue(
                        ErrorKind.DNS_TIMEOUT,
                        DnsRecordType.CNAME,
                        f"DNS verification for {domain} timed out",
                    )
                ],
                details=VerificationDetails(
                    expected_cname=expected.cname.value,
                    expected_txt=expected.txt.value,
                ),
            )

    async def check_domain(self, site_id: str) -> DomainStatusResult:
        """Run a live DNS check for a site, at most once per window.

        Inside the window the persisted status comes back with
        ``rate_limited`` set and no DNS traffic. Otherwise the check time is
        stored first, then the lookup runs, then the outcome is applied
        unless the site was changed while the lookup ran.

        Raises:
            SiteNotFoundError: The site has no record.
            DomainNotInitializedError: No attachment is in progress.
        """
        # Read, gate and stamp must not interleave for one site.
        async with self._locked(f"site:{site_id}"):
            record = await self._require(site_id)

            if record.custom_domain_status is DomainStatus.VERIFIED:
                DOMAIN_CHECKS.labels(outcome="skipped").inc()
                return self._status_result(record)

            if (
                record.custom_domain_status
                in (DomainStatus.NOT_STARTED, DomainStatus.DISCONNECTED)
                or not record.custom_domain
                or record.dns_records is None
            ):
                raise DomainNotInitializedError(site_id)

            now = self._clock()
            gate = check_gate(record.last_dns_check_at, self.check_window, now)
            if not gate.allowed:
                DOMAIN_CHECKS.labels(outcome="rate_limited").inc()
                logger.debug(
                    "DNS check rate limited",
                    site_id=site_id,
                    retry_after=gate.retry_after,
                )
                result = self._status_result(record)
                result.error_kind = ErrorKind.RATE_LIMITED
                result.next_check_available = gate.next_check_available
                return result

            if record.custom_domain_status is DomainStatus.FAILED:
                self._transition(record, DomainStatus.PENDING_VERIFICATION)
            record.last_dns_check_at = now
            await self.store.save(record)

        domain = record.custom_domain
        token = record.dns_verification_token
        verification = await self._verify(domain, record.dns_records)

        current = await self.store.get(site_id)
        if (
            current is None
            or current.custom_domain_status is not DomainStatus.PENDING_VERIFICATION
            or current.custom_domain != domain
            or current.dns_verification_token != token
        ):
            logger.info("Discarding stale verification result", site_id=site_id, domain=domain)
            DOMAIN_CHECKS.labels(outcome="skipped").inc()
            return self._status_result(current or record)

        if verification.verified:
            self._transition(current, DomainStatus.VERIFIED)
            current.custom_domain_verified_at = self._clock()
            current.custom_domain_error = None
            DOMAIN_CHECKS.labels(outcome="verified").inc()
            logger.info("Domain verified", site_id=site_id, domain=domain)
        else:
            self._transition(current, DomainStatus.FAILED)
            issue = verification.most_specific_issue()
            current.custom_domain_error = issue.message if issue else "DNS verification failed"
            DOMAIN_CHECKS.labels(outcome="failed").inc()
            logger.info(
                "Domain verification failed",
                site_id=site_id,
                domain=domain,
                error=current.custom_domain_error,
            )
        await self.store.save(current)

        return self._status_result(current, verification=verification)

    async def disconnect_domain(self, site_id: str, reason: str | None = None) -> SiteDomain:
        """Detach a site's domain (tenant detach or admin force-disconnect).

        ``custom_domain`` and ``last_dns_check_at`` are kept for display and
        audit; everything tied to the attach attempt is cleared.
        """
        record = await self._require(site_id)
        if record.custom_domain_status is DomainStatus.DISCONNECTED:
            return record

        self._transition(record, DomainStatus.DISCONNECTED)
        record.dns_verification_token = None
        record.dns_records = None
        record.dns_provider = None
        record.custom_domain_error = None
        record.custom_domain_verified_at = None
        await self.store.save(record)

        logger.info(
            "Domain disconnected",
            site_id=site_id,
            domain=record.custom_domain,
            reason=reason,
        )
        return record

    async def get_domain_status(self, site_id: str) -> DomainStatusResult:
        """Persisted status of a site's domain, without DNS traffic."""
        return self._status_result(await self._require(site_id))

    async def list_domains(self, status: DomainStatus | None = None) -> list[SiteDomain]:
        if status is None:
            records = await self.store.list_all()
        else:
            records = await self.store.list_by_status(status)
        return sorted(records, key=lambda record: record.site_id)

    async def recheck_pending(self, concurrency: int | None = None) -> list[DomainStatusResult]:
        """Check every pending or failed site, bounded in parallelism.

        Each site still passes through the rate-limit gate, so a site checked
        moments ago comes back rate limited.
        """
        records = await self.store.list_by_status(
            DomainStatus.PENDING_VERIFICATION, DomainStatus.FAILED
        )
        semaphore = asyncio.Semaphore(concurrency or self.recheck_concurrency)

        async def _check(site_id: str) -> DomainStatusResult | None:
            async with semaphore:
                try:
                    return await self.check_domain(site_id)
                except DomainEdgeError as e:
                    logger.warning("Scheduled re-check skipped", site_id=site_id, error=str(e))
                    return None

        results = await asyncio.gather(*(_check(record.site_id) for record in records))
        return [result for result in results if result is not None]

    def dns_instructions(self, record: SiteDomain) -> str:
        """Generate DNS setup instructions for the tenant."""
        if not record.custom_domain or record.dns_records is None:
            raise DomainNotInitializedError(record.site_id)

        cname = record.dns_records.cname
        txt = record.dns_records.txt
        text = f"""Add the following DNS records:

1. CNAME Record (routes traffic to the edge proxy):
   Name: {cname.name}
   Type: CNAME
   Value: {cname.value}
   TTL: {cname.ttl}

2. TXT Record (verifies ownership):
   Name: {txt.name}
   Type: TXT
   Value: {txt.value}
   TTL: {txt.ttl}

After adding these records, run: domainedge domain check {record.site_id}"""

        if record.dns_provider:
            text += f"\n\nDetected DNS provider: {provider_display_name(record.dns_provider)}"
        return text
