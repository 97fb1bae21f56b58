"""
Read-Model Response Schemas
"""

from datetime import datetime
from typing import List, Optional

from pydantic import AliasChoices, BaseModel, ConfigDict, Field


class CategoryStats(BaseModel):
    """Per-category statistics from the active stats version"""
    model_config = ConfigDict(from_attributes=True)

    category_id: str
    name: str = Field(validation_alias=AliasChoices("category_name", "name"))
    slug: str = Field(validation_alias=AliasChoices("category_slug", "slug"))
    store_count: int
    primary_count: int
    secondary_count: int
    featured_count: int
    total_items: int
    avg_items_per_store: float
    avg_rating: Optional[float] = None
    total_ratings: int
    unique_locations: int
    cities: List[str] = Field(default_factory=list)
    states: List[str] = Field(default_factory=list)
    first_store_added: Optional[datetime] = None
    last_store_updated: Optional[datetime] = None
    generated_at: Optional[datetime] = None


class CategoryRef(BaseModel):
    category_id: str
    name: str
    slug: str


class CategoryListing(BaseModel):
    """One flattened row: a listing as it appears under a category"""
    model_config = ConfigDict(from_attributes=True)

    listing_id: str
    tenant_id: str
    category_id: str
    is_primary: bool
    name: str = Field(validation_alias=AliasChoices("listing_name", "name"))
    slug: str = Field(validation_alias=AliasChoices("listing_slug", "slug"))
    city: Optional[str] = None
    state: Optional[str] = None
    latitude: Optional[float] = None
    longitude: Optional[float] = None
    rating_avg: Optional[float] = None
    rating_count: int = 0
    item_count: int = 0
    is_featured: bool = False
    created_at: Optional[datetime] = Field(default=None, validation_alias=AliasChoices("listing_created_at", "created_at"))


class ListingPage(BaseModel):
    """Paginated listings of one category"""
    category: CategoryRef
    items: List[CategoryListing]
    total: int
    page: int
    page_size: int
    total_pages: int
    sort: str
    version: Optional[int] = None
    built_at: Optional[datetime] = None


class RelatedListing(BaseModel):
    """A listing sharing at least one category with the source listing"""
    listing_id: str
    tenant_id: str
    name: str
    slug: str
    city: Optional[str] = None
    state: Optional[str] = None
    rating_avg: Optional[float] = None
    rating_count: int = 0
    item_count: int = 0
    is_featured: bool = False
    distance_km: Optional[float] = None
    shared_category_ids: List[str]


class ReadModelVersionInfo(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    scope: str
    active_version: int
    flattened_rows: int
    stats_rows: int
    built_at: Optional[datetime] = None
    build_duration_ms: Optional[float] = None
