"""
Read-Model Builder

Builds the two directory read models for one scope:

1. Flattened view: listing_categories joined with published listings and
   active categories, one row per surviving association.
2. Category stats: grouped from the rows built in step 1, strictly after it.

A build writes a brand-new version next to the active one and swaps the
scope's version pointer in the same transaction, so readers see either the
old or the new complete view. Old versions beyond the retention window are
dropped after the swap.
"""

import time
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, List, Optional

import structlog
from sqlalchemy import delete, func, insert, select
from sqlalchemy.ext.asyncio import AsyncSession

from directory_sync.config import DirectorySettings, get_settings
from directory_sync.database.connection import get_db, get_snapshot_db
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
from directory_sync.readmodel.aggregates import aggregate_category_stats, stamp_stats
from directory_sync.refresh.coordinator import GLOBAL_SCOPE

logger = structlog.get_logger(__name__)


@dataclass
class BuildResult:
    """Outcome of one successful build cycle"""
    scope: str
    version: int
    previous_version: int
    flattened_rows: int
    stats_rows: int
    started_at: datetime
    completed_at: datetime
    duration_ms: float


class ReadModelBuilder:
    """
    Builds and swaps in versioned read models.

    Example:
        builder = ReadModelBuilder()
        result = await builder.build(GLOBAL_SCOPE)
    """

    def __init__(self, settings: Optional[DirectorySettings] = None):
        settings = settings or get_settings().directory
        self.isolation_level = settings.snapshot_isolation
        self.retained_versions = settings.retained_versions
        self.tenant_scopes = settings.tenant_scopes

    async def build(self, scope: str) -> BuildResult:
        """
        Build a new version of both views for a scope and make it active.

        Raises:
            RefreshError: the build failed; the previous version stays active
        """
        started_at = datetime.utcnow()
        t0 = time.perf_counter()
        version: Optional[int] = None
        log = logger.bind(scope=scope)

        try:
            async with get_snapshot_db(self.isolation_level) as db:
                pointer = await self._lock_pointer(db, scope)
                previous_version = pointer.active_version
                version = await self._next_version(db, scope, previous_version)

                flattened = await self.build_flattened(db, scope, version)
                stats = await self.build_stats(db, scope, version, flattened)

                completed_at = datetime.utcnow()
                duration_ms = round((time.perf_counter() - t0) * 1000, 2)
                pointer.active_version = version
                pointer.flattened_rows = len(flattened)
                pointer.stats_rows = len(stats)
                pointer.built_at = completed_at
                pointer.build_duration_ms = duration_ms

                await self._drop_expired_versions(db, scope, version)
        except Exception as e:
            log.error("Read-model build failed", version=version, error=str(e), error_type=type(e).__name__)
            await self._record_attempt(
                scope=scope,
                version=version,
                status=RefreshStatus.FAILED,
                started_at=started_at,
                duration_ms=round((time.perf_counter() - t0) * 1000, 2),
                error=f"{type(e).__name__}: {e}",
            )
            raise RefreshError("Read-model build failed", scope=scope, details={"version": version}) from e

        result = BuildResult(
            scope=scope,
            version=version,
            previous_version=previous_version,
            flattened_rows=len(flattened),
            stats_rows=len(stats),
            started_at=started_at,
            completed_at=completed_at,
            duration_ms=duration_ms,
        )
        await self._record_attempt(
            scope=scope,
            version=version,
            status=RefreshStatus.COMPLETED,
            started_at=started_at,
            duration_ms=duration_ms,
            flattened_rows=result.flattened_rows,
            stats_rows=result.stats_rows,
        )
        log.info(
            "Read-model version swapped in",
            version=version,
            previous_version=previous_version,
            flattened_rows=result.flattened_rows,
            stats_rows=result.stats_rows,
            duration_ms=duration_ms,
        )
        return result

    async def build_flattened(self, db: AsyncSession, scope: str, version: int) -> List[Dict[str, Any]]:
        """Insert the flattened rows of a new version and return them."""
        query = (
            select(
                ListingCategory.listing_id,
                ListingCategory.category_id,
                ListingCategory.is_primary,
                Listing.tenant_id,
                Listing.name,
                Listing.slug,
                Listing.city,
                Listing.state,
                Listing.latitude,
                Listing.longitude,
                Listing.rating_avg,
                Listing.rating_count,
                Listing.item_count,
                Listing.is_featured,
                Listing.created_at,
                Listing.updated_at,
                Category.name.label("category_name"),
                Category.slug.label("category_slug"),
            )
            .join(Listing, Listing.id == ListingCategory.listing_id)
            .join(Category, Category.id == ListingCategory.category_id)
            .where(Listing.is_published.is_(True), Category.is_active.is_(True))
            .order_by(ListingCategory.category_id, ListingCategory.listing_id)
        )
        if scope != GLOBAL_SCOPE:
            query = query.where(Listing.tenant_id == scope)

        rows = [
            {
                "scope": scope,
                "version": version,
                "category_id": r.category_id,
                "listing_id": r.listing_id,
                "tenant_id": r.tenant_id,
                "category_name": r.category_name,
                "category_slug": r.category_slug,
                "is_primary": bool(r.is_primary),
                "listing_name": r.name,
                "listing_slug": r.slug,
                "city": r.city,
                "state": r.state,
                "latitude": r.latitude,
                "longitude": r.longitude,
                "rating_avg": r.rating_avg,
                "rating_count": r.rating_count or 0,
                "item_count": r.item_count or 0,
                "is_featured": bool(r.is_featured),
                "listing_created_at": r.created_at,
                "listing_updated_at": r.updated_at,
            }
            for r in (await db.execute(query)).all()
        ]

        if rows:
            await db.execute(insert(CategoryListingRow), rows)
        logger.debug("Flattened view built", scope=scope, version=version, rows=len(rows))
        return rows

    async def build_stats(
        self,
        db: AsyncSession,
        scope: str,
        version: int,
        flattened: List[Dict[str, Any]],
    ) -> List[Dict[str, Any]]:
        """Insert the stats rows aggregated from a version's flattened rows."""
        stats = stamp_stats(aggregate_category_stats(flattened), scope, version, datetime.utcnow())
        if stats:
            await db.execute(insert(CategoryStatsRow), stats)
        logger.debug("Category stats built", scope=scope, version=version, rows=len(stats))
        return stats

    async def known_scopes(self) -> List[str]:
        """Scopes to refresh at startup: global, every built scope, every tenant if enabled."""
        scopes = [GLOBAL_SCOPE]
        async with get_db() as db:
            scopes.extend((await db.execute(select(ReadModelVersion.scope))).scalars())
            if self.tenant_scopes:
                scopes.extend(
                    (await db.execute(select(Listing.tenant_id).distinct())).scalars()
                )
        return list(dict.fromkeys(scopes))

    async def _lock_pointer(self, db: AsyncSession, scope: str) -> ReadModelVersion:
        pointer = (
            await db.execute(
                select(ReadModelVersion).where(ReadModelVersion.scope == scope).with_for_update()
            )
        ).scalar_one_or_none()
        if pointer is None:
            pointer = ReadModelVersion(scope=scope, active_version=0, flattened_rows=0, stats_rows=0)
            db.add(pointer)
            await db.flush()
        return pointer

    async def _next_version(self, db: AsyncSession, scope: str, active_version: int) -> int:
        highest_flattened = (
            await db.execute(
                select(func.max(CategoryListingRow.version)).where(CategoryListingRow.scope == scope)
            )
        ).scalar()
        highest_stats = (
            await db.execute(
                select(func.max(CategoryStatsRow.version)).where(CategoryStatsRow.scope == scope)
            )
        ).scalar()
        return max(active_version, highest_flattened or 0, highest_stats or 0) + 1

    async def _drop_expired_versions(self, db: AsyncSession, scope: str, version: int) -> None:
        # The previous generation stays readable for requests that resolved
        # the pointer just before the swap
        oldest_kept = version - self.retained_versions + 1
        for model in (CategoryListingRow, CategoryStatsRow):
            await db.execute(
                delete(model).where(model.scope == scope, model.version < oldest_kept)
            )

    async def _record_attempt(
        self,
        scope: str,
        version: Optional[int],
        status: RefreshStatus,
        started_at: datetime,
        duration_ms: float,
        flattened_rows: int = 0,
        stats_rows: int = 0,
        error: Optional[str] = None,
    ) -> None:
        try:
            async with get_db() as db:
                db.add(
                    RefreshLogEntry(
                        scope=scope,
                        version=version,
                        status=status,
                        started_at=started_at,
                        completed_at=datetime.utcnow(),
                        duration_ms=duration_ms,
                        flattened_rows=flattened_rows,
                        stats_rows=stats_rows,
                        error=error[:2000] if error else None,
                    )
                )
        except Exception as e:
            # The build outcome stands even if the log row cannot be written
            logger.warning("Failed to write refresh log entry", scope=scope, error=str(e))
