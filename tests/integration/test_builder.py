"""
Integration Tests for the Read-Model Builder
"""
import pytest
from sqlalchemy import distinct, func, select

from directory_sync.config import DirectorySettings
from directory_sync.database.connection import get_db
from directory_sync.database.models import (
    Category,
    CategoryListingRow,
    CategoryStatsRow,
    Listing,
    ListingCategory,
    ReadModelVersion,
    RefreshLogEntry,
    RefreshStatus,
)
from directory_sync.errors import RefreshError
from directory_sync.readmodel.builder import ReadModelBuilder
from directory_sync.refresh.coordinator import GLOBAL_SCOPE

pytestmark = pytest.mark.integration


async def flattened(scope=GLOBAL_SCOPE, version=None):
    async with get_db() as db:
        query = select(CategoryListingRow).where(CategoryListingRow.scope == scope)
        if version is not None:
            query = query.where(CategoryListingRow.version == version)
        return (await db.execute(query)).scalars().all()


async def stats_by_category(scope=GLOBAL_SCOPE, version=None):
    async with get_db() as db:
        query = select(CategoryStatsRow).where(CategoryStatsRow.scope == scope)
        if version is not None:
            query = query.where(CategoryStatsRow.version == version)
        return {s.category_id: s for s in (await db.execute(query)).scalars()}


class TestFlattenedView:
    """Flattened rows mirror associations of published listings"""

    async def test_counts_match_published_associations(self, catalog, builder):
        result = await builder.build(GLOBAL_SCOPE)
        rows = await flattened(version=result.version)

        async with get_db() as db:
            expected = (
                await db.execute(
                    select(ListingCategory.category_id, func.count())
                    .join(Listing, Listing.id == ListingCategory.listing_id)
                    .where(Listing.is_published.is_(True))
                    .group_by(ListingCategory.category_id)
                )
            ).all()

        per_category = {}
        for row in rows:
            per_category[row.category_id] = per_category.get(row.category_id, 0) + 1
        assert per_category == dict(expected)
        assert result.flattened_rows == len(rows) == 8

    async def test_unpublished_listing_excluded(self, catalog, builder):
        result = await builder.build(GLOBAL_SCOPE)
        rows = await flattened(version=result.version)
        assert "l4" not in {r.listing_id for r in rows}

    async def test_rows_carry_display_attributes(self, catalog, builder):
        result = await builder.build(GLOBAL_SCOPE)
        rows = {(r.category_id, r.listing_id): r for r in await flattened(version=result.version)}

        row = rows[("cat-hardware", "l1")]
        assert row.is_primary is True
        assert row.listing_name == "Acme Hardware"
        assert row.category_slug == "hardware-store"
        assert row.rating_avg == 4.5
        assert rows[("cat-garden", "l1")].is_primary is False

    async def test_deactivated_category_disappears(self, catalog, builder):
        async with get_db() as db:
            category = await db.get(Category, "cat-paint")
            category.is_active = False

        result = await builder.build(GLOBAL_SCOPE)

        assert "cat-paint" not in {r.category_id for r in await flattened(version=result.version)}
        assert "cat-paint" not in await stats_by_category(version=result.version)

    async def test_tenant_scope_only_holds_tenant_listings(self, catalog, builder):
        result = await builder.build("t2")
        rows = await flattened("t2", version=result.version)

        assert {r.listing_id for r in rows} == {"l3"}
        assert {r.tenant_id for r in rows} == {"t2"}


class TestStatsView:
    """Stats are derived from the same version's flattened rows"""

    async def test_store_count_equals_distinct_listings(self, catalog, builder):
        result = await builder.build(GLOBAL_SCOPE)
        stats = await stats_by_category(version=result.version)

        async with get_db() as db:
            distinct_counts = dict((
                await db.execute(
                    select(CategoryListingRow.category_id, func.count(distinct(CategoryListingRow.listing_id)))
                    .where(
                        CategoryListingRow.scope == GLOBAL_SCOPE,
                        CategoryListingRow.version == result.version,
                    )
                    .group_by(CategoryListingRow.category_id)
                )
            ).all())

        assert {cid: s.store_count for cid, s in stats.items()} == distinct_counts

    async def test_hardware_stats(self, catalog, builder):
        result = await builder.build(GLOBAL_SCOPE)
        hardware = (await stats_by_category(version=result.version))["cat-hardware"]

        assert hardware.store_count == 3
        assert hardware.primary_count == 2
        assert hardware.secondary_count == 1
        assert hardware.featured_count == 1
        assert hardware.total_items == 170
        assert hardware.avg_rating == pytest.approx(4.25)
        assert hardware.unique_locations == 3
        assert sorted(hardware.cities) == ["Austin", "Dallas", "Round Rock"]
        assert hardware.generated_at is not None

    async def test_category_without_listings_has_no_row(self, catalog, builder):
        result = await builder.build(GLOBAL_SCOPE)
        assert "cat-bakery" not in await stats_by_category(version=result.version)


class TestVersioning:
    """Pointer swaps, retention and failure isolation"""

    async def test_versions_increase_and_pointer_moves(self, catalog, builder):
        first = await builder.build(GLOBAL_SCOPE)
        second = await builder.build(GLOBAL_SCOPE)

        assert (first.previous_version, first.version) == (0, 1)
        assert (second.previous_version, second.version) == (1, 2)
        async with get_db() as db:
            pointer = await db.get(ReadModelVersion, GLOBAL_SCOPE)
        assert pointer.active_version == 2
        assert pointer.flattened_rows == second.flattened_rows
        assert pointer.built_at is not None

    async def test_only_retained_versions_kept(self, catalog, builder):
        for _ in range(4):
            await builder.build(GLOBAL_SCOPE)

        rows = await flattened()
        assert {r.version for r in rows} == {3, 4}
        assert {s.version for s in (await _all_stats())} == {3, 4}

    async def test_new_version_reflects_new_associations(self, catalog, builder, assign_categories):
        first = await builder.build(GLOBAL_SCOPE)
        await assign_categories("l5", "t1", "cat-paint", ["cat-garden"])
        second = await builder.build(GLOBAL_SCOPE)

        old_garden = {r.listing_id for r in await flattened(version=first.version) if r.category_id == "cat-garden"}
        new_garden = {r.listing_id for r in await flattened(version=second.version) if r.category_id == "cat-garden"}
        assert old_garden == {"l1", "l3"}
        assert new_garden == {"l1", "l3", "l5"}

    async def test_failed_build_keeps_previous_version(self, catalog, directory_settings, monkeypatch):
        builder = ReadModelBuilder(settings=directory_settings)
        good = await builder.build(GLOBAL_SCOPE)

        async def broken_stats(*args, **kwargs):
            raise RuntimeError("aggregation exploded")

        monkeypatch.setattr(builder, "build_stats", broken_stats)
        with pytest.raises(RefreshError) as exc_info:
            await builder.build(GLOBAL_SCOPE)

        assert exc_info.value.scope == GLOBAL_SCOPE
        async with get_db() as db:
            pointer = await db.get(ReadModelVersion, GLOBAL_SCOPE)
        assert pointer.active_version == good.version
        # The half-built version was rolled back with the transaction
        assert {r.version for r in await flattened()} == {good.version}

    async def test_every_attempt_is_logged(self, catalog, builder, monkeypatch):
        await builder.build(GLOBAL_SCOPE)

        async def broken_flattened(*args, **kwargs):
            raise RuntimeError("lost connection")

        monkeypatch.setattr(builder, "build_flattened", broken_flattened)
        with pytest.raises(RefreshError):
            await builder.build(GLOBAL_SCOPE)

        async with get_db() as db:
            log = (
                await db.execute(select(RefreshLogEntry).order_by(RefreshLogEntry.id))
            ).scalars().all()
        assert [entry.status for entry in log] == [RefreshStatus.COMPLETED, RefreshStatus.FAILED]
        assert log[0].flattened_rows == 8
        assert "lost connection" in log[1].error

    async def test_retention_setting(self, catalog, directory_settings):
        settings = DirectorySettings(**{**directory_settings.model_dump(), "retained_versions": 1})
        builder = ReadModelBuilder(settings=settings)
        await builder.build(GLOBAL_SCOPE)
        await builder.build(GLOBAL_SCOPE)
        assert {r.version for r in await flattened()} == {2}


class TestKnownScopes:

    async def test_global_first_then_built_scopes(self, catalog, builder):
        await builder.build("t1")
        assert await builder.known_scopes() == [GLOBAL_SCOPE, "t1"]

    async def test_tenants_listed_when_enabled(self, catalog, directory_settings):
        settings = DirectorySettings(**{**directory_settings.model_dump(), "tenant_scopes": True})
        scopes = await ReadModelBuilder(settings=settings).known_scopes()
        assert scopes[0] == GLOBAL_SCOPE
        assert set(scopes) == {GLOBAL_SCOPE, "t1", "t2"}


async def _all_stats():
    async with get_db() as db:
        return (await db.execute(select(CategoryStatsRow))).scalars().all()
