"""
Directory Query Service

Read-only access to the directory read models. Every query resolves the
scope's active version pointer first and reads only rows of that version,
so a request never mixes two builds. Results are cached under
version-qualified keys.
"""

import math
from typing import Any, Dict, List, Optional

import structlog
from prometheus_client import Counter
from sqlalchemy import func, or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from directory_sync.common.geo import distance_between
from directory_sync.config import DirectorySettings, get_settings
from directory_sync.database.models import (
    Category,
    CategoryListingRow,
    CategoryStatsRow,
    Listing,
    ReadModelVersion,
)
from directory_sync.errors import NotFoundError, QueryError
from directory_sync.refresh.coordinator import GLOBAL_SCOPE
from directory_sync.serving.cache import CacheManager, directory_cache
from directory_sync.serving.schemas import (
    CategoryListing,
    CategoryRef,
    CategoryStats,
    ListingPage,
    RelatedListing,
)

logger = structlog.get_logger(__name__)

QUERIES = Counter(
    "directory_queries_total",
    "Read-model queries served",
    ["query", "outcome"],
)

_row = CategoryListingRow

SORT_ORDERS = {
    "relevance": [
        _row.is_primary.desc(),
        _row.rating_avg.desc().nulls_last(),
        _row.item_count.desc(),
        _row.listing_created_at.desc().nulls_last(),
        _row.listing_id,
    ],
    "rating": [
        _row.rating_avg.desc().nulls_last(),
        _row.rating_count.desc(),
        _row.listing_id,
    ],
    "newest": [
        _row.listing_created_at.desc().nulls_last(),
        _row.listing_id,
    ],
    "products": [
        _row.item_count.desc(),
        _row.listing_id,
    ],
    "featured": [
        _row.is_featured.desc(),
        _row.rating_avg.desc().nulls_last(),
        _row.listing_id,
    ],
    "name": [
        _row.listing_name,
        _row.listing_id,
    ],
}

DEFAULT_SORT = "relevance"

# Largest row offset a browse query may reach (signed 32-bit)
MAX_OFFSET = 2 ** 31 - 1


class QueryService:
    """
    Serves category browsing and related-listing queries.

    Example:
        service = QueryService()
        async with get_db() as db:
            page = await service.list_listings_for_category(db, "cat-hardware")
    """

    def __init__(
        self,
        cache: Optional[CacheManager] = None,
        settings: Optional[DirectorySettings] = None,
    ):
        settings = settings or get_settings().directory
        self.cache = cache or directory_cache
        self.max_page_size = settings.max_page_size
        self.max_related_limit = settings.max_related_limit

    # =========================================================================
    # CATEGORY STATS
    # =========================================================================

    async def list_categories(self, db: AsyncSession, scope: str = GLOBAL_SCOPE) -> List[CategoryStats]:
        """All categories with listings in the active version, largest first."""
        pointer = await self.active_version(db, scope)
        if pointer is None:
            QUERIES.labels(query="categories", outcome="unbuilt").inc()
            return []

        async def load() -> List[Dict[str, Any]]:
            rows = (
                await db.execute(
                    select(CategoryStatsRow)
                    .where(
                        CategoryStatsRow.scope == scope,
                        CategoryStatsRow.version == pointer.active_version,
                    )
                    .order_by(CategoryStatsRow.store_count.desc(), CategoryStatsRow.category_name)
                )
            ).scalars().all()
            return [CategoryStats.model_validate(r).model_dump(mode="json") for r in rows]

        cached = await self.cache.get_or_set(f"{scope}:v{pointer.active_version}:categories", load)
        QUERIES.labels(query="categories", outcome="ok").inc()
        return [CategoryStats.model_validate(item) for item in cached]

    async def get_category_stats(
        self,
        db: AsyncSession,
        id_or_slug: str,
        scope: str = GLOBAL_SCOPE,
    ) -> CategoryStats:
        """
        Stats of one category, looked up by id or slug.

        A category that exists but has no listings in the active version
        gets a zero row.

        Raises:
            NotFoundError: no category has that id or slug
        """
        category = await self._resolve_category(db, id_or_slug)
        if category is None:
            QUERIES.labels(query="category_stats", outcome="not_found").inc()
            raise NotFoundError("Category not found", details={"category": id_or_slug})

        pointer = await self.active_version(db, scope)
        row = None
        if pointer is not None:
            row = (
                await db.execute(
                    select(CategoryStatsRow).where(
                        CategoryStatsRow.scope == scope,
                        CategoryStatsRow.version == pointer.active_version,
                        CategoryStatsRow.category_id == category.id,
                    )
                )
            ).scalar_one_or_none()

        QUERIES.labels(query="category_stats", outcome="ok").inc()
        if row is not None:
            return CategoryStats.model_validate(row)
        return CategoryStats(
            category_id=category.id,
            name=category.name,
            slug=category.slug,
            store_count=0,
            primary_count=0,
            secondary_count=0,
            featured_count=0,
            total_items=0,
            avg_items_per_store=0.0,
            total_ratings=0,
            unique_locations=0,
            generated_at=pointer.built_at if pointer else None,
        )

    # =========================================================================
    # CATEGORY BROWSING
    # =========================================================================

    async def list_listings_for_category(
        self,
        db: AsyncSession,
        category_id: str,
        page: int = 1,
        page_size: int = 20,
        sort: str = DEFAULT_SORT,
        scope: str = GLOBAL_SCOPE,
        primary_only: bool = False,
    ) -> ListingPage:
        """
        One page of the listings filed under a category.

        Raises:
            QueryError: bad page, page size or sort key
            NotFoundError: the category id does not exist
        """
        self._check_page(page, page_size)
        if sort not in SORT_ORDERS:
            raise QueryError(
                "Unknown sort order",
                details={"sort": sort, "allowed": sorted(SORT_ORDERS)},
            )

        category = await db.get(Category, category_id)
        if category is None:
            QUERIES.labels(query="category_listings", outcome="not_found").inc()
            raise NotFoundError("Category not found", details={"category_id": category_id})

        ref = CategoryRef(category_id=category.id, name=category.name, slug=category.slug)
        pointer = await self.active_version(db, scope)
        if pointer is None:
            QUERIES.labels(query="category_listings", outcome="unbuilt").inc()
            return ListingPage(
                category=ref, items=[], total=0, page=page,
                page_size=page_size, total_pages=0, sort=sort,
            )

        async def load() -> Dict[str, Any]:
            conditions = [
                _row.scope == scope,
                _row.version == pointer.active_version,
                _row.category_id == category_id,
            ]
            if primary_only:
                conditions.append(_row.is_primary.is_(True))

            total = (
                await db.execute(select(func.count()).select_from(_row).where(*conditions))
            ).scalar() or 0

            rows = (
                await db.execute(
                    select(_row)
                    .where(*conditions)
                    .order_by(*SORT_ORDERS[sort])
                    .offset((page - 1) * page_size)
                    .limit(page_size)
                )
            ).scalars().all()

            return ListingPage(
                category=ref,
                items=[CategoryListing.model_validate(r) for r in rows],
                total=total,
                page=page,
                page_size=page_size,
                total_pages=(total + page_size - 1) // page_size,
                sort=sort,
                version=pointer.active_version,
                built_at=pointer.built_at,
            ).model_dump(mode="json")

        key = (
            f"{scope}:v{pointer.active_version}:category:{category_id}"
            f":{sort}:{int(primary_only)}:{page}:{page_size}"
        )
        cached = await self.cache.get_or_set(key, load)
        QUERIES.labels(query="category_listings", outcome="ok").inc()
        return ListingPage.model_validate(cached)

    # =========================================================================
    # RELATED LISTINGS
    # =========================================================================

    async def related_listings(
        self,
        db: AsyncSession,
        listing_id: str,
        radius_km: Optional[float] = None,
        limit: int = 10,
        scope: str = GLOBAL_SCOPE,
    ) -> List[RelatedListing]:
        """
        Listings sharing at least one category with the given listing.

        Ordered by distance (unknown distances last), then rating. With a
        radius, candidates without coordinates are left out.

        Raises:
            QueryError: bad limit or radius, or a radius for a listing with no coordinates
            NotFoundError: the listing does not exist
        """
        if limit < 1 or limit > self.max_related_limit:
            raise QueryError(
                "limit out of range",
                details={"limit": limit, "min": 1, "max": self.max_related_limit},
            )
        if radius_km is not None and (not math.isfinite(radius_km) or radius_km <= 0):
            raise QueryError(
                "radius_km must be a positive finite number",
                details={"radius_km": radius_km if math.isfinite(radius_km) else str(radius_km)},
            )

        source = await db.get(Listing, listing_id)
        if source is None:
            QUERIES.labels(query="related", outcome="not_found").inc()
            raise NotFoundError("Listing not found", details={"listing_id": listing_id})
        if radius_km is not None and (source.latitude is None or source.longitude is None):
            raise QueryError(
                "Listing has no coordinates for a radius search",
                details={"listing_id": listing_id},
            )

        pointer = await self.active_version(db, scope)
        if pointer is None:
            QUERIES.labels(query="related", outcome="unbuilt").inc()
            return []

        async def load() -> List[Dict[str, Any]]:
            in_version = (_row.scope == scope, _row.version == pointer.active_version)
            source_categories = (
                select(_row.category_id)
                .where(*in_version, _row.listing_id == listing_id)
                .scalar_subquery()
            )
            rows = (
                await db.execute(
                    select(_row)
                    .where(
                        *in_version,
                        _row.listing_id != listing_id,
                        _row.category_id.in_(source_categories),
                    )
                    .order_by(_row.listing_id, _row.category_id)
                )
            ).scalars().all()

            candidates: Dict[str, Dict[str, Any]] = {}
            for row in rows:
                candidate = candidates.get(row.listing_id)
                if candidate is None:
                    candidate = candidates[row.listing_id] = {
                        "listing_id": row.listing_id,
                        "tenant_id": row.tenant_id,
                        "name": row.listing_name,
                        "slug": row.listing_slug,
                        "city": row.city,
                        "state": row.state,
                        "rating_avg": row.rating_avg,
                        "rating_count": row.rating_count or 0,
                        "item_count": row.item_count or 0,
                        "is_featured": bool(row.is_featured),
                        "distance_km": distance_between(
                            source.latitude, source.longitude, row.latitude, row.longitude
                        ),
                        "shared_category_ids": [],
                    }
                candidate["shared_category_ids"].append(row.category_id)

            results = list(candidates.values())
            if radius_km is not None:
                results = [
                    c for c in results
                    if c["distance_km"] is not None and c["distance_km"] <= radius_km
                ]
            for c in results:
                if c["distance_km"] is not None:
                    c["distance_km"] = round(c["distance_km"], 3)

            results.sort(key=lambda c: (
                c["distance_km"] is None,
                c["distance_km"] or 0.0,
                c["rating_avg"] is None,
                -(c["rating_avg"] or 0.0),
                c["listing_id"],
            ))
            return results[:limit]

        key = f"{scope}:v{pointer.active_version}:related:{listing_id}:{radius_km}:{limit}"
        cached = await self.cache.get_or_set(key, load)
        QUERIES.labels(query="related", outcome="ok").inc()
        return [RelatedListing.model_validate(item) for item in cached]

    # =========================================================================
    # HELPERS
    # =========================================================================

    async def active_version(self, db: AsyncSession, scope: str) -> Optional[ReadModelVersion]:
        """The scope's version pointer, or None until the first build lands."""
        pointer = await db.get(ReadModelVersion, scope)
        if pointer is None or pointer.active_version <= 0:
            return None
        return pointer

    def _check_page(self, page: int, page_size: int) -> None:
        if page < 1:
            raise QueryError("page must be >= 1", details={"page": page})
        if page_size < 1 or page_size > self.max_page_size:
            raise QueryError(
                "page_size out of range",
                details={"page_size": page_size, "min": 1, "max": self.max_page_size},
            )
        if (page - 1) * page_size > MAX_OFFSET:
            raise QueryError(
                "page is beyond the last reachable offset",
                details={"page": page, "page_size": page_size, "max_offset": MAX_OFFSET},
            )

    async def _resolve_category(self, db: AsyncSession, id_or_slug: str) -> Optional[Category]:
        # Ids win over slugs; platform categories win over tenant ones on a shared slug
        return (
            await db.execute(
                select(Category)
                .where(or_(Category.id == id_or_slug, Category.slug == id_or_slug))
                .order_by((Category.id == id_or_slug).desc(), Category.scope, Category.id)
                .limit(1)
            )
        ).scalars().first()
