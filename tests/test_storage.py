"""Tests for the JSON site store."""

from __future__ import annotations

import asyncio
import json
import tempfile
from pathlib import Path

import pytest

from domainedge.domains import DomainStatus, JsonSiteStore, SiteDomain


class TestJsonSiteStore:
    """Tests for JsonSiteStore JSON storage."""

    @pytest.fixture
    def temp_storage(self):
        """Create a temporary storage file."""
        with tempfile.NamedTemporaryFile(mode="w", suffix=".json", delete=False) as f:
            f.write("{}")
            return Path(f.name)

    @pytest.mark.asyncio
    async def test_save_and_get(self, temp_storage):
        store = JsonSiteStore(temp_storage)

        await store.save(
            SiteDomain(
                site_id="site-123",
                custom_domain="shop.example.com",
                custom_domain_status=DomainStatus.PENDING_VERIFICATION,
            )
        )
        retrieved = await store.get("site-123")

        assert retrieved is not None
        assert retrieved.custom_domain == "shop.example.com"
        assert retrieved.status == DomainStatus.PENDING_VERIFICATION

    @pytest.mark.asyncio
    async def test_get_nonexistent(self, temp_storage):
        store = JsonSiteStore(temp_storage)

        assert await store.get("missing") is None

    @pytest.mark.asyncio
    async def test_returned_records_are_copies(self, temp_storage):
        """Mutating a fetched record does not change the store until saved."""
        store = JsonSiteStore(temp_storage)
        await store.save(SiteDomain(site_id="site-1"))

        record = await store.get("site-1")
        record.custom_domain = "changed.example.com"

        assert (await store.get("site-1")).custom_domain is None

    @pytest.mark.asyncio
    async def test_persistence(self, temp_storage):
        """Records survive a new store instance."""
        store1 = JsonSiteStore(temp_storage)
        await store1.save(SiteDomain(site_id="site-1", custom_domain="shop.example.com"))

        store2 = JsonSiteStore(temp_storage)
        retrieved = await store2.get("site-1")

        assert retrieved is not None
        assert retrieved.custom_domain == "shop.example.com"

    @pytest.mark.asyncio
    async def test_file_format(self, temp_storage):
        store = JsonSiteStore(temp_storage)
        await store.save(SiteDomain(site_id="site-1"))

        data = json.loads(temp_storage.read_text())

        assert data["sites"]["site-1"]["custom_domain_status"] == "not_started"

    @pytest.mark.asyncio
    async def test_create_site(self, temp_storage):
        store = JsonSiteStore(temp_storage)

        created = await store.create_site("site-1")
        created.custom_domain = "shop.example.com"
        await store.save(created)
        again = await store.create_site("site-1")

        assert again.custom_domain == "shop.example.com"

    @pytest.mark.asyncio
    async def test_find_by_domain_and_status(self, temp_storage):
        store = JsonSiteStore(temp_storage)
        await store.save(
            SiteDomain("site-1", "shop.example.com", DomainStatus.VERIFIED)
        )
        await store.save(
            SiteDomain("site-2", "shop.example.com", DomainStatus.DISCONNECTED)
        )
        await store.save(SiteDomain("site-3", "blog.example.com", DomainStatus.FAILED))

        matches = await store.find_by_domain("shop.example.com")
        failed = await store.list_by_status(DomainStatus.FAILED, DomainStatus.VERIFIED)

        assert {record.site_id for record in matches} == {"site-1", "site-2"}
        assert {record.site_id for record in failed} == {"site-1", "site-3"}
        assert len(await store.list_all()) == 3

    @pytest.mark.asyncio
    async def test_concurrent_saves(self, temp_storage):
        store = JsonSiteStore(temp_storage)

        await asyncio.gather(*(store.save(SiteDomain(site_id=f"site-{i}")) for i in range(20)))

        store.invalidate_cache()
        assert len(await store.list_all()) == 20

    @pytest.mark.asyncio
    async def test_missing_file_is_empty(self):
        store = JsonSiteStore(Path(tempfile.gettempdir()) / "domainedge-does-not-exist.json")

        assert await store.list_all() == []

    @pytest.mark.asyncio
    async def test_corrupt_file_is_empty(self, temp_storage):
        temp_storage.write_text("{not json")
        store = JsonSiteStore(temp_storage)

        assert await store.list_all() == []
