"""
Internal API Endpoints

Operator and service-to-service hooks:
- Forced read-model refresh (skips the debounce window)
- Listing category mutations pushed over HTTP instead of Kafka
"""

from typing import Dict, List, Optional

from fastapi import APIRouter, Depends, status
from pydantic import BaseModel, Field
import structlog

from directory_sync.ingestion.events import ListingCategoryChanged
from directory_sync.projection.service import CategorySyncService, scopes_for_tenant
from directory_sync.refresh.coordinator import GLOBAL_SCOPE, RefreshCoordinator
from directory_sync.serving.api.dependencies import get_coordinator, get_sync_service

logger = structlog.get_logger(__name__)
router = APIRouter()


class RefreshRequest(BaseModel):
    """Scopes to rebuild; defaults to the global scope"""
    scopes: List[str] = Field(default_factory=lambda: [GLOBAL_SCOPE], min_length=1)


class RefreshAccepted(BaseModel):
    accepted: bool
    scopes: Dict[str, str]
    max_staleness_seconds: float


class ProjectionResponse(BaseModel):
    listing_id: str
    tenant_id: str
    changed: bool
    inserted: List[str]
    updated: List[str]
    deleted: List[str]
    refresh_scopes: List[str]


@router.post(
    "/refresh",
    response_model=RefreshAccepted,
    status_code=status.HTTP_202_ACCEPTED,
)
async def force_refresh(
    body: Optional[RefreshRequest] = None,
    coordinator: RefreshCoordinator = Depends(get_coordinator),
) -> RefreshAccepted:
    """
    Rebuild read models now.

    A scope with a build in flight gets one follow-up build queued behind it.
    """
    body = body or RefreshRequest()
    outcome = {}
    for scope in dict.fromkeys(body.scopes):
        started = coordinator.force_refresh(scope)
        outcome[scope] = "started" if started else "queued"

    logger.info("Forced refresh requested", scopes=outcome)
    return RefreshAccepted(
        accepted=True,
        scopes=outcome,
        max_staleness_seconds=coordinator.max_staleness_seconds,
    )


@router.post("/events/listing-category-changed", response_model=ProjectionResponse)
async def listing_category_changed(
    event: ListingCategoryChanged,
    service: CategorySyncService = Depends(get_sync_service),
) -> ProjectionResponse:
    """
    Project a listing's category selection and schedule a refresh.

    Rejected mutations answer 422 and write nothing; store failures answer
    503 and may be retried.
    """
    result = await service.apply(event)
    return ProjectionResponse(
        listing_id=result.listing_id,
        tenant_id=result.tenant_id,
        changed=result.changed,
        inserted=result.inserted,
        updated=result.updated,
        deleted=result.deleted,
        refresh_scopes=scopes_for_tenant(event.tenant_id, service.tenant_scopes),
    )
