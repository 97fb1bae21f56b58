"""
End-to-End Scenarios

Write path -> refresh coordinator -> builder -> query service, on SQLite.
"""
import asyncio

import pytest

from directory_sync.database.connection import get_db
from directory_sync.errors import ValidationError
from directory_sync.projection.service import CategorySyncService
from directory_sync.readmodel.builder import ReadModelBuilder
from directory_sync.refresh.coordinator import GLOBAL_SCOPE, RefreshCoordinator

pytestmark = pytest.mark.integration


class CountingBuilder(ReadModelBuilder):
    """Real builder that counts cycles and can fail on demand"""

    def __init__(self, settings, fail_times=0):
        super().__init__(settings=settings)
        self.builds = 0
        self.fail_times = fail_times

    async def build(self, scope):
        self.builds += 1
        if self.fail_times > 0:
            self.fail_times -= 1
            raise RuntimeError("simulated store outage")
        return await super().build(scope)


@pytest.fixture
async def pipeline(seeded, projector, directory_settings):
    builder = CountingBuilder(directory_settings)
    coordinator = RefreshCoordinator(builder, settings=directory_settings)
    service = CategorySyncService(projector, coordinator, tenant_scopes=False)
    yield service, coordinator, builder
    await coordinator.stop()


async def store_counts(query_service):
    async with get_db() as db:
        return {c.category_id: c.store_count for c in await query_service.list_categories(db)}


async def settle(coordinator):
    await coordinator.wait_until_idle(GLOBAL_SCOPE, timeout=coordinator.max_staleness_seconds)


class TestScenarios:

    async def test_initial_assignment_is_visible_after_refresh(self, pipeline, query_service, make_event):
        """One primary plus two secondaries: three rows, each category gains a store"""
        service, coordinator, _ = pipeline
        await service.apply(make_event("l2", "t1", "cat-garden", []))
        await settle(coordinator)
        before = await store_counts(query_service)

        result = await service.apply(make_event("l1", "t1", "cat-hardware", ["cat-garden", "cat-paint"]))
        await settle(coordinator)
        after = await store_counts(query_service)

        assert len(result.inserted) == 3
        assert after["cat-hardware"] == before.get("cat-hardware", 0) + 1
        assert after["cat-garden"] == before["cat-garden"] + 1
        assert after["cat-paint"] == before.get("cat-paint", 0) + 1

        async with get_db() as db:
            page = await query_service.list_listings_for_category(db, "cat-hardware")
        assert [(i.listing_id, i.is_primary) for i in page.items] == [("l1", True)]

    async def test_removing_secondary_decrements_count(self, pipeline, query_service, make_event):
        service, coordinator, _ = pipeline
        await service.apply(make_event("l1", "t1", "cat-hardware", ["cat-garden", "cat-paint"]))
        await service.apply(make_event("l2", "t1", "cat-paint", []))
        await settle(coordinator)
        assert (await store_counts(query_service))["cat-paint"] == 2

        await service.apply(make_event("l1", "t1", "cat-hardware", ["cat-garden"]))
        await settle(coordinator)

        counts = await store_counts(query_service)
        assert counts["cat-paint"] == 1
        assert counts["cat-hardware"] == 1
        assert counts["cat-garden"] == 1

    async def test_burst_of_mutations_builds_once(self, pipeline, query_service, make_event):
        """Two listings changed inside one window: one build reflects both"""
        service, coordinator, builder = pipeline
        coordinator.debounce_seconds = 0.5

        await service.apply(make_event("l1", "t1", "cat-hardware", []))
        await asyncio.sleep(0.1)
        await service.apply(make_event("l3", "t2", "cat-hardware", ["cat-garden"]))
        await settle(coordinator)

        assert builder.builds == 1
        counts = await store_counts(query_service)
        assert counts == {"cat-hardware": 2, "cat-garden": 1}

    async def test_change_visible_within_staleness_bound(self, pipeline, query_service, make_event):
        service, coordinator, _ = pipeline
        loop = asyncio.get_running_loop()

        started = loop.time()
        await service.apply(make_event("l1", "t1", "cat-hardware", []))
        while "cat-hardware" not in await store_counts(query_service):
            assert loop.time() - started < coordinator.max_staleness_seconds
            await asyncio.sleep(0.02)

    async def test_rejected_mutation_schedules_nothing(self, pipeline, make_event):
        service, coordinator, builder = pipeline

        with pytest.raises(ValidationError):
            await service.apply(make_event("l1", "t1", "cat-missing", []))

        await asyncio.sleep(coordinator.debounce_seconds * 3)
        assert builder.builds == 0

    async def test_failed_build_serves_previous_version_then_recovers(
        self, seeded, projector, directory_settings, query_service, make_event
    ):
        builder = CountingBuilder(directory_settings)
        coordinator = RefreshCoordinator(builder, settings=directory_settings)
        coordinator.backoff_base_seconds = coordinator.backoff_max_seconds = 1.0
        service = CategorySyncService(projector, coordinator, tenant_scopes=False)
        try:
            await service.apply(make_event("l1", "t1", "cat-hardware", []))
            await settle(coordinator)
            assert await store_counts(query_service) == {"cat-hardware": 1}

            builder.fail_times = 1
            await service.apply(make_event("l2", "t1", "cat-hardware", []))
            await asyncio.sleep(directory_settings.debounce_seconds + 0.2)

            # The failed cycle leaves the old version in place
            assert await store_counts(query_service) == {"cat-hardware": 1}

            await settle(coordinator)
            assert await store_counts(query_service) == {"cat-hardware": 2}
            status = coordinator.status()[0]
            assert status.failed_cycles == 1
            assert status.consecutive_failures == 0
        finally:
            await coordinator.stop()

    async def test_caller_owned_transaction(self, pipeline, query_service, make_event):
        """project_in leaves commit and scheduling to the caller"""
        service, coordinator, builder = pipeline

        async with get_db() as db:
            await service.project_in(db, make_event("l1", "t1", "cat-paint", []))
        service.schedule_refresh("t1")
        await settle(coordinator)

        assert builder.builds == 1
        assert await store_counts(query_service) == {"cat-paint": 1}
