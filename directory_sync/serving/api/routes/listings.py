"""
Listing API Endpoints
"""

from typing import List, Optional

from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from directory_sync.database.connection import get_db_dependency
from directory_sync.refresh.coordinator import GLOBAL_SCOPE
from directory_sync.serving.api.dependencies import get_query_service
from directory_sync.serving.query_service import QueryService
from directory_sync.serving.schemas import RelatedListing

router = APIRouter()


@router.get("/{listing_id}/related", response_model=List[RelatedListing])
async def related_listings(
    listing_id: str,
    radius_km: Optional[float] = Query(None, alias="radiusKm"),
    limit: int = Query(10),
    scope: str = Query(GLOBAL_SCOPE, max_length=64),
    db: AsyncSession = Depends(get_db_dependency),
    service: QueryService = Depends(get_query_service),
) -> List[RelatedListing]:
    """Listings sharing a category with this one, nearest first."""
    return await service.related_listings(
        db, listing_id, radius_km=radius_km, limit=limit, scope=scope
    )
