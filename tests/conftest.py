"""
Test Suite Configuration
"""
from datetime import datetime
from typing import AsyncGenerator, Iterable, Optional

import pytest

from directory_sync.config import DirectorySettings
from directory_sync.database.connection import close_database, get_db, init_database
from directory_sync.database.models import Category, CategoryScope, Listing
from directory_sync.ingestion.events import ListingCategoryChanged
from directory_sync.projection.projector import AssociationProjector, ProjectionResult
from directory_sync.readmodel.builder import ReadModelBuilder
from directory_sync.serving.query_service import QueryService


def listing_event(
    listing_id: str,
    tenant_id: str,
    primary: Optional[str],
    secondaries: Iterable[str] = (),
    published: bool = True,
) -> ListingCategoryChanged:
    """Build a mutation event for one listing"""
    return ListingCategoryChanged(
        listing_id=listing_id,
        tenant_id=tenant_id,
        primary_category_id=primary,
        secondary_category_ids=list(secondaries),
        published=published,
    )


async def assign(
    projector: AssociationProjector,
    listing_id: str,
    tenant_id: str,
    primary: Optional[str],
    secondaries: Iterable[str] = (),
) -> ProjectionResult:
    """Project a selection in its own committed transaction"""
    async with get_db() as db:
        return await projector.project(db, listing_event(listing_id, tenant_id, primary, secondaries))


@pytest.fixture
def directory_settings() -> DirectorySettings:
    """Fast timings; SQLite does not take REPEATABLE READ"""
    return DirectorySettings(
        debounce_seconds=0.05,
        build_timeout_seconds=5.0,
        backoff_base_seconds=0.05,
        backoff_max_seconds=0.2,
        max_concurrent_builds=4,
        tenant_scopes=False,
        snapshot_isolation=None,
        retained_versions=2,
        max_page_size=50,
        max_related_limit=20,
    )


@pytest.fixture
async def database(tmp_path) -> AsyncGenerator[None, None]:
    """File-backed SQLite database with the full schema"""
    await init_database(f"sqlite+aiosqlite:///{tmp_path / 'directory.db'}", create_schema=True)
    yield
    await close_database()


@pytest.fixture
async def seeded(database) -> None:
    """
    Categories:
        cat-hardware, cat-garden, cat-paint, cat-bakery  platform, active
        cat-closed                                       platform, inactive
        cat-t1-tools                                     tenant t1
        cat-t2-feed                                      tenant t2

    Listings:
        l1  t1  Austin, TX       4.5 / 10 ratings, 100 items, featured
        l2  t1  Round Rock, TX   4.0 / 4 ratings, 50 items
        l3  t2  Dallas, TX       unrated, 20 items
        l4  t2  Austin, TX       unpublished
        l5  t1  no location      3.0 / 2 ratings, 5 items
    """
    async with get_db() as db:
        db.add_all([
            Category(id="cat-hardware", name="Hardware Store", slug="hardware-store",
                     external_ref="gcid:hardware_store"),
            Category(id="cat-garden", name="Garden Center", slug="garden-center"),
            Category(id="cat-paint", name="Paint Store", slug="paint-store"),
            Category(id="cat-bakery", name="Bakery", slug="bakery"),
            Category(id="cat-closed", name="Video Rental", slug="video-rental", is_active=False),
            Category(id="cat-t1-tools", name="Tool Rental", slug="tool-rental",
                     scope=CategoryScope.TENANT, tenant_id="t1"),
            Category(id="cat-t2-feed", name="Feed Store", slug="feed-store",
                     scope=CategoryScope.TENANT, tenant_id="t2"),
        ])
        db.add_all([
            Listing(id="l1", tenant_id="t1", name="Acme Hardware", slug="acme-hardware",
                    city="Austin", state="TX", latitude=30.2672, longitude=-97.7431,
                    rating_avg=4.5, rating_count=10, item_count=100, is_featured=True,
                    is_published=True, created_at=datetime(2024, 1, 1), updated_at=datetime(2024, 6, 1)),
            Listing(id="l2", tenant_id="t1", name="Round Rock Supply", slug="round-rock-supply",
                    city="Round Rock", state="TX", latitude=30.5083, longitude=-97.6789,
                    rating_avg=4.0, rating_count=4, item_count=50,
                    is_published=True, created_at=datetime(2024, 3, 1), updated_at=datetime(2024, 7, 1)),
            Listing(id="l3", tenant_id="t2", name="Dallas Depot", slug="dallas-depot",
                    city="Dallas", state="TX", latitude=32.7767, longitude=-96.7970,
                    rating_avg=None, rating_count=0, item_count=20,
                    is_published=True, created_at=datetime(2024, 2, 1), updated_at=datetime(2024, 5, 1)),
            Listing(id="l4", tenant_id="t2", name="Hidden Shop", slug="hidden-shop",
                    city="Austin", state="TX", latitude=30.27, longitude=-97.74,
                    rating_avg=5.0, rating_count=1, item_count=1,
                    is_published=False, created_at=datetime(2024, 4, 1), updated_at=datetime(2024, 4, 1)),
            Listing(id="l5", tenant_id="t1", name="Mobile Paint Co", slug="mobile-paint-co",
                    rating_avg=3.0, rating_count=2, item_count=5,
                    is_published=True, created_at=datetime(2024, 5, 1), updated_at=datetime(2024, 8, 1)),
        ])


@pytest.fixture
def projector() -> AssociationProjector:
    return AssociationProjector(max_secondary_categories=None)


@pytest.fixture
def builder(directory_settings) -> ReadModelBuilder:
    return ReadModelBuilder(settings=directory_settings)


@pytest.fixture
def query_service(directory_settings) -> QueryService:
    return QueryService(settings=directory_settings)


@pytest.fixture
def make_event():
    return listing_event


@pytest.fixture
def assign_categories(projector, seeded):
    """Project selections through the default projector on the seeded data"""
    async def _assign(listing_id, tenant_id, primary, secondaries=()):
        return await assign(projector, listing_id, tenant_id, primary, secondaries)
    return _assign


@pytest.fixture
async def catalog(assign_categories):
    """
    l1: hardware (primary), garden, paint
    l2: hardware (primary), t1 tools
    l3: garden (primary), hardware
    l4: hardware (primary)   unpublished
    l5: paint (primary)      no location
    """
    await assign_categories("l1", "t1", "cat-hardware", ["cat-garden", "cat-paint"])
    await assign_categories("l2", "t1", "cat-hardware", ["cat-t1-tools"])
    await assign_categories("l3", "t2", "cat-garden", ["cat-hardware"])
    await assign_categories("l4", "t2", "cat-hardware", [])
    await assign_categories("l5", "t1", "cat-paint", [])
