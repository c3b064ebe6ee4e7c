"""Storage for per-site domain records.

The lifecycle manager talks to the tenant-data store only through
``SiteDomainStore``. ``JsonSiteStore`` is the file-backed implementation used
by the CLI and by self-hosted deployments.

Storage file format (sites.json):
    {
        "sites": {
            "site-123": {
                "site_id": "site-123",
                "custom_domain": "shop.example.com",
                "custom_domain_status": "verified",
                "dns_provider": "cloudflare",
                "dns_verification_token": "domainedge-site-verification=9f2c...",
                "dns_records": {"cname": {...}, "txt": {...}},
                "last_dns_check_at": "2024-01-15T10:30:00+00:00",
                "custom_domain_verified_at": "2024-01-15T10:30:02+00:00",
                "custom_domain_error": null
            }
        }
    }
"""

from __future__ import annotations

import asyncio
import json
from abc import ABC, abstractmethod
from pathlib import Path

import structlog

from domainedge.domains.models import DomainStatus, SiteDomain

logger = structlog.get_logger()


class SiteDomainStore(ABC):
    """Persistence for the domain fields of each site."""

    @abstractmethod
    async def get(self, site_id: str) -> SiteDomain | None:
        """Get a site's domain record, or None if the site is unknown."""

    @abstractmethod
    async def save(self, record: SiteDomain) -> None:
        """Insert or replace a site's domain record."""

    @abstractmethod
    async def find_by_domain(self, domain: str) -> list[SiteDomain]:
        """All records whose ``custom_domain`` equals ``domain``."""

    @abstractmethod
    async def list_all(self) -> list[SiteDomain]:
        """All records."""

    async def create_site(self, site_id: str) -> SiteDomain:
        """Create an empty ``not_started`` record, or return the existing one."""
        existing = await self.get(site_id)
        if existing is not None:
            return existing
        record = SiteDomain(site_id=site_id)
        await self.save(record)
        return record

    async def list_by_status(self, *statuses: DomainStatus) -> list[SiteDomain]:
        records = await self.list_all()
        return [record for record in records if record.custom_domain_status in statuses]


class JsonSiteStore(SiteDomainStore):
    """JSON file-based storage for site domain records.

    Safe for concurrent tasks via an asyncio lock. Suitable for self-hosted
    deployments with moderate site counts; larger installations implement
    ``SiteDomainStore`` over their tenant database.
    """

    def __init__(self, storage_path: str | Path = "sites.json") -> None:
        """Initialize site store.

        Args:
            storage_path: Path to the JSON storage file.
        """
        self.storage_path = Path(storage_path)
        self._lock = asyncio.Lock()
        self._cache: dict[str, SiteDomain] | None = None

    async def _load(self) -> dict[str, SiteDomain]:
        """Load records from storage file."""
        if self._cache is not None:
            return self._cache

        if not self.storage_path.exists():
            self._cache = {}
            return self._cache

        try:
            content = await asyncio.to_thread(self.storage_path.read_text)
            data = json.loads(content)
            self._cache = {
                site_id: SiteDomain.from_dict(record)
                for site_id, record in data.get("sites", {}).items()
            }
        except (json.JSONDecodeError, KeyError, ValueError) as e:
            logger.warning("Site store unreadable, starting empty", path=str(self.storage_path), error=str(e))
            self._cache = {}

        return self._cache

    async def _save(self, sites: dict[str, SiteDomain]) -> None:
        """Save records to storage file."""
        data = {"sites": {site_id: record.to_dict() for site_id, record in sites.items()}}
        content = json.dumps(data, indent=2)
        await asyncio.to_thread(self.storage_path.write_text, content)
        self._cache = sites

    async def get(self, site_id: str) -> SiteDomain | None:
        async with self._lock:
            sites = await self._load()
            record = sites.get(site_id)
            # hand out copies so callers cannot mutate the cache behind the lock
            return SiteDomain.from_dict(record.to_dict()) if record else None

    async def save(self, record: SiteDomain) -> None:
        async with self._lock:
            sites = dict(await self._load())
            sites[record.site_id] = SiteDomain.from_dict(record.to_dict())
            await self._save(sites)

    async def find_by_domain(self, domain: str) -> list[SiteDomain]:
        async with self._lock:
            sites = await self._load()
            return [
                SiteDomain.from_dict(record.to_dict())
                for record in sites.values()
                if record.custom_domain == domain
            ]

    async def list_all(self) -> list[SiteDomain]:
        async with self._lock:
            sites = await self._load()
            return [SiteDomain.from_dict(record.to_dict()) for record in sites.values()]

    def invalidate_cache(self) -> None:
        """Invalidate the in-memory cache.

        Call this after external modifications to the storage file.
        """
        self._cache = None
