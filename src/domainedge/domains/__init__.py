"""Custom domain lifecycle for tenant sites.

Tenants attach a domain they own (e.g., shop.example.com) to a hosted site.
Ownership is proven with two DNS records before the edge proxy routes
traffic for the domain.

Features:
- DNS verification (CNAME + TXT records) with bounded lookups
- A strict status machine (not_started, pending_verification, verified,
  failed, disconnected)
- Per-site rate limiting of live checks
- Advisory DNS provider detection
- JSON file storage for site records

Usage:
    from domainedge.domains import DomainLifecycleManager, DNSVerifier, JsonSiteStore

    store = JsonSiteStore("sites.json")
    manager = DomainLifecycleManager(store, DNSVerifier(timeout=5.0))

    await store.create_site("site-123")
    init = await manager.initiate_domain("site-123", "shop.example.com")
    status = await manager.check_domain("site-123")
"""

from domainedge.domains.manager import ALLOWED_TRANSITIONS, DomainLifecycleManager, can_transition
from domainedge.domains.models import (
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
from domainedge.domains.providers import match_provider, provider_display_name
from domainedge.domains.ratelimit import CheckGateResult, check_gate
from domainedge.domains.storage import JsonSiteStore, SiteDomainStore
from domainedge.domains.validation import is_valid_domain, normalize_domain, validate_domain
from domainedge.domains.verification import DNSVerifier

__all__ = [
    "DomainLifecycleManager",
    "ALLOWED_TRANSITIONS",
    "can_transition",
    "SiteDomain",
    "DomainStatus",
    "DnsRecord",
    "DnsRecords",
    "DnsRecordType",
    "DomainInitializationResult",
    "DomainStatusResult",
    "DomainVerificationResult",
    "VerificationDetails",
    "VerificationIssue",
    "SiteDomainStore",
    "JsonSiteStore",
    "DNSVerifier",
    "CheckGateResult",
    "check_gate",
    "normalize_domain",
    "validate_domain",
    "is_valid_domain",
    "match_provider",
    "provider_display_name",
]
