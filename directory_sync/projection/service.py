"""
Category Sync Service

Write-path entry point. Projects a listing mutation synchronously and,
once the caller's transaction has committed, schedules a read-model
refresh. It never runs a rebuild inline.
"""

from typing import List, Optional

import structlog
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from directory_sync.config import get_settings
from directory_sync.database.connection import get_db
from directory_sync.errors import ProjectionError
from directory_sync.ingestion.events import ListingCategoryChanged
from directory_sync.projection.projector import AssociationProjector, ProjectionResult
from directory_sync.refresh.coordinator import GLOBAL_SCOPE, RefreshCoordinator

logger = structlog.get_logger(__name__)


def scopes_for_tenant(tenant_id: str, tenant_scopes: Optional[bool] = None) -> List[str]:
    """Read-model scopes a mutation of one tenant's listing affects."""
    if tenant_scopes is None:
        tenant_scopes = get_settings().directory.tenant_scopes
    if tenant_scopes:
        return [GLOBAL_SCOPE, tenant_id]
    return [GLOBAL_SCOPE]


class CategorySyncService:
    """
    Projector + coordinator wiring for listing mutations.

    Example:
        service = CategorySyncService(AssociationProjector(), coordinator)

        # standalone: opens and commits its own transaction
        await service.apply(event)

        # inside the listing editor's transaction
        result = await service.project_in(session, event)
        await session.commit()
        service.schedule_refresh(event.tenant_id)
    """

    def __init__(
        self,
        projector: AssociationProjector,
        coordinator: RefreshCoordinator,
        tenant_scopes: Optional[bool] = None,
    ):
        self.projector = projector
        self.coordinator = coordinator
        self.tenant_scopes = (
            tenant_scopes if tenant_scopes is not None else get_settings().directory.tenant_scopes
        )

    async def project_in(self, session: AsyncSession, event: ListingCategoryChanged) -> ProjectionResult:
        """Project into the caller's transaction. The caller commits and schedules."""
        return await self.projector.project(session, event)

    def schedule_refresh(self, tenant_id: str) -> List[str]:
        scopes = scopes_for_tenant(tenant_id, self.tenant_scopes)
        for scope in scopes:
            self.coordinator.trigger(scope)
        return scopes

    async def apply(
        self,
        event: ListingCategoryChanged,
        session: Optional[AsyncSession] = None,
    ) -> ProjectionResult:
        """
        Project a mutation and schedule the refresh after it commits.

        With a session the caller owns the transaction and it is committed
        here before the trigger is scheduled.

        Raises:
            ValidationError: rejected, nothing written
            ProjectionError: write failed, transaction rolled back
        """
        try:
            if session is None:
                async with get_db() as db:
                    result = await self.projector.project(db, event)
            else:
                try:
                    result = await self.projector.project(session, event)
                    await session.commit()
                except Exception:
                    await session.rollback()
                    raise
        except SQLAlchemyError as e:
            # Commit-time failures (serialization, dropped connection)
            logger.error(
                "Commit of listing category associations failed",
                listing_id=event.listing_id,
                error=str(e),
                error_type=type(e).__name__,
            )
            raise ProjectionError(
                "Failed to commit listing category associations",
                details={"listing_id": event.listing_id},
            ) from e

        scopes = self.schedule_refresh(event.tenant_id)
        logger.debug(
            "Refresh scheduled after projection",
            listing_id=event.listing_id,
            scopes=scopes,
            changed=result.changed,
        )
        return result
