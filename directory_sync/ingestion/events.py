"""
Listing Mutation Events

Payloads the source store emits when a listing's category selection or
publish state changes.
"""

from datetime import datetime
from typing import List, Optional
import uuid

from pydantic import BaseModel, ConfigDict, Field, field_validator


class ListingCategoryChanged(BaseModel):
    """A listing's current category selection (full state, not a delta)."""

    model_config = ConfigDict(extra="ignore", str_strip_whitespace=True)

    event_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    event_timestamp: datetime = Field(default_factory=datetime.utcnow)

    listing_id: str = Field(min_length=1)
    tenant_id: str = Field(min_length=1)
    primary_category_id: Optional[str] = None
    secondary_category_ids: List[str] = Field(default_factory=list)
    # Informational; the builder reads Listing.is_published
    published: bool = True

    @field_validator("primary_category_id")
    @classmethod
    def blank_primary_is_none(cls, v: Optional[str]) -> Optional[str]:
        return v or None

    @field_validator("secondary_category_ids")
    @classmethod
    def drop_blank_ids(cls, v: List[str]) -> List[str]:
        return [c.strip() for c in v if c and c.strip()]
