"""
Association Projector

Translates a listing's current category selection into rows of the
normalized listing_categories table. Runs inside the caller's transaction:
the listing mutation is not durable until the projection has been flushed.

Example:
    projector = AssociationProjector()
    async with get_db() as db:
        result = await projector.project(db, event)
"""

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

import structlog
from prometheus_client import Counter
from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from directory_sync.config import get_settings
from directory_sync.database.models import Category, CategoryScope, Listing, ListingCategory
from directory_sync.errors import ProjectionError, ValidationError
from directory_sync.ingestion.events import ListingCategoryChanged

logger = structlog.get_logger(__name__)


PROJECTIONS = Counter(
    "directory_projections_total",
    "Listing category projections by outcome",
    ["outcome"],
)

ASSOCIATION_WRITES = Counter(
    "directory_association_writes_total",
    "Association rows written by the projector",
    ["operation"],
)


_FROM_SETTINGS: Any = object()


@dataclass
class ProjectionResult:
    """What a projection changed for one listing."""
    listing_id: str
    tenant_id: str
    inserted: List[str] = field(default_factory=list)
    updated: List[str] = field(default_factory=list)
    deleted: List[str] = field(default_factory=list)

    @property
    def changed(self) -> bool:
        return bool(self.inserted or self.updated or self.deleted)


def desired_associations(
    primary_category_id: Optional[str],
    secondary_category_ids: List[str],
) -> Dict[str, bool]:
    """
    Desired association set for a selection, as category_id -> is_primary.

    A secondary that repeats the primary collapses into the primary.
    """
    desired: Dict[str, bool] = {}
    for category_id in secondary_category_ids:
        desired[category_id] = False
    if primary_category_id:
        desired[primary_category_id] = True
    return desired


class AssociationProjector:
    """
    Keeps listing_categories exactly consistent with the source selection.

    The whole mutation is validated before anything is written; a rejected
    event leaves the table untouched.
    """

    def __init__(self, max_secondary_categories: Optional[int] = _FROM_SETTINGS):
        # None means the unlimited (product taxonomy) policy
        if max_secondary_categories is _FROM_SETTINGS:
            max_secondary_categories = get_settings().directory.max_secondary_categories
        self.max_secondary_categories = max_secondary_categories

    async def _validate(
        self,
        session: AsyncSession,
        event: ListingCategoryChanged,
        desired: Dict[str, bool],
    ) -> None:
        secondary_count = sum(1 for is_primary in desired.values() if not is_primary)

        if not event.primary_category_id and secondary_count:
            raise ValidationError(
                "Secondary categories require a primary category",
                details={"listing_id": event.listing_id},
            )

        if self.max_secondary_categories is not None and secondary_count > self.max_secondary_categories:
            raise ValidationError(
                f"At most {self.max_secondary_categories} secondary categories are allowed",
                details={
                    "listing_id": event.listing_id,
                    "secondary_count": secondary_count,
                    "max_secondary_categories": self.max_secondary_categories,
                },
            )

        listing = (
            await session.execute(
                select(Listing).where(Listing.id == event.listing_id).with_for_update()
            )
        ).scalar_one_or_none()
        if listing is None:
            raise ValidationError("Unknown listing", details={"listing_id": event.listing_id})
        if listing.tenant_id != event.tenant_id:
            raise ValidationError(
                "Listing belongs to a different tenant",
                details={"listing_id": event.listing_id, "tenant_id": event.tenant_id},
            )
        if listing.is_published != event.published:
            # Visibility comes from the listing row at build time
            logger.warning(
                "Event publish state disagrees with listing",
                listing_id=event.listing_id,
                event_published=event.published,
                listing_published=listing.is_published,
            )

        if not desired:
            return

        categories = {
            c.id: c
            for c in (
                await session.execute(select(Category).where(Category.id.in_(list(desired))))
            ).scalars()
        }

        unknown = sorted(cid for cid in desired if cid not in categories)
        inactive = sorted(cid for cid, c in categories.items() if not c.is_active)
        foreign = sorted(
            cid
            for cid, c in categories.items()
            if c.scope == CategoryScope.TENANT and c.tenant_id != event.tenant_id
        )

        if unknown or inactive or foreign:
            raise ValidationError(
                "Mutation references categories that cannot be assigned",
                details={
                    "listing_id": event.listing_id,
                    "unknown_category_ids": unknown,
                    "inactive_category_ids": inactive,
                    "foreign_category_ids": foreign,
                },
            )

    async def project(self, session: AsyncSession, event: ListingCategoryChanged) -> ProjectionResult:
        """
        Diff the desired association set against the stored rows and apply it.

        Raises:
            ValidationError: the event is rejected, nothing was written
            ProjectionError: the store failed while writing
        """
        desired = desired_associations(event.primary_category_id, event.secondary_category_ids)
        result = ProjectionResult(listing_id=event.listing_id, tenant_id=event.tenant_id)

        try:
            await self._validate(session, event, desired)

            existing = {
                row.category_id: row
                for row in (
                    await session.execute(
                        select(ListingCategory)
                        .where(ListingCategory.listing_id == event.listing_id)
                        .with_for_update()
                    )
                ).scalars()
            }

            result.deleted = sorted(cid for cid in existing if cid not in desired)
            for category_id, is_primary in desired.items():
                row = existing.get(category_id)
                if row is None:
                    result.inserted.append(category_id)
                elif row.is_primary != is_primary:
                    result.updated.append(category_id)
            result.inserted.sort()
            result.updated.sort()

            for category_id in result.deleted:
                await session.delete(existing[category_id])
            for category_id in result.updated:
                existing[category_id].is_primary = desired[category_id]
            for category_id in result.inserted:
                session.add(
                    ListingCategory(
                        listing_id=event.listing_id,
                        category_id=category_id,
                        is_primary=desired[category_id],
                    )
                )

            if result.changed:
                await session.flush()

        except ValidationError:
            PROJECTIONS.labels(outcome="rejected").inc()
            logger.warning(
                "Listing category mutation rejected",
                listing_id=event.listing_id,
                tenant_id=event.tenant_id,
            )
            raise
        except SQLAlchemyError as e:
            PROJECTIONS.labels(outcome="error").inc()
            logger.error(
                "Association projection failed",
                listing_id=event.listing_id,
                error=str(e),
                error_type=type(e).__name__,
            )
            raise ProjectionError(
                "Failed to write listing category associations",
                details={"listing_id": event.listing_id},
            ) from e

        ASSOCIATION_WRITES.labels(operation="insert").inc(len(result.inserted))
        ASSOCIATION_WRITES.labels(operation="update").inc(len(result.updated))
        ASSOCIATION_WRITES.labels(operation="delete").inc(len(result.deleted))
        PROJECTIONS.labels(outcome="changed" if result.changed else "unchanged").inc()

        logger.info(
            "Listing categories projected",
            listing_id=event.listing_id,
            tenant_id=event.tenant_id,
            inserted=len(result.inserted),
            updated=len(result.updated),
            deleted=len(result.deleted),
        )
        return result
