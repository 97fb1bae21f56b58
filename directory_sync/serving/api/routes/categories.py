"""
Category API Endpoints

Category statistics and category browsing over the active read-model version.
"""

from typing import List

from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from directory_sync.database.connection import get_db_dependency
from directory_sync.refresh.coordinator import GLOBAL_SCOPE
from directory_sync.serving.api.dependencies import get_query_service
from directory_sync.serving.query_service import DEFAULT_SORT, QueryService
from directory_sync.serving.schemas import CategoryStats, ListingPage

router = APIRouter()


@router.get("", response_model=List[CategoryStats])
async def list_categories(
    scope: str = Query(GLOBAL_SCOPE, max_length=64),
    db: AsyncSession = Depends(get_db_dependency),
    service: QueryService = Depends(get_query_service),
) -> List[CategoryStats]:
    """Categories that have listings, largest first."""
    return await service.list_categories(db, scope=scope)


@router.get("/{id_or_slug}/stats", response_model=CategoryStats)
async def get_category_stats(
    id_or_slug: str,
    scope: str = Query(GLOBAL_SCOPE, max_length=64),
    db: AsyncSession = Depends(get_db_dependency),
    service: QueryService = Depends(get_query_service),
) -> CategoryStats:
    """Stats of one category by id or slug."""
    return await service.get_category_stats(db, id_or_slug, scope=scope)


@router.get("/{category_id}/listings", response_model=ListingPage)
async def list_category_listings(
    category_id: str,
    page: int = Query(1),
    size: int = Query(20),
    sort: str = Query(DEFAULT_SORT),
    primary_only: bool = Query(False, alias="primaryOnly"),
    scope: str = Query(GLOBAL_SCOPE, max_length=64),
    db: AsyncSession = Depends(get_db_dependency),
    service: QueryService = Depends(get_query_service),
) -> ListingPage:
    """
    Browse listings filed under a category.

    Bad paging or sort values answer 400; an unknown category answers 404;
    a known category with no listings answers an empty page.
    """
    return await service.list_listings_for_category(
        db,
        category_id,
        page=page,
        page_size=size,
        sort=sort,
        scope=scope,
        primary_only=primary_only,
    )
