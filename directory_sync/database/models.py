"""
Database Models - Directory Category Read Models

Source tables (owned by the tenant-facing platform, read-only here):
- Listing: published business locations
- Category: platform and tenant taxonomy entries

Normalized table (written only by the AssociationProjector):
- ListingCategory: listing x category with the primary flag

Derived tables (rebuilt wholesale by the ReadModelBuilder):
- CategoryListingRow: flattened listing-per-category rows, versioned
- CategoryStatsRow: per-category aggregate, versioned
- ReadModelVersion: active version pointer per scope
- RefreshLogEntry: one row per build attempt
"""

from datetime import datetime
from enum import Enum
from typing import Optional, List

from sqlalchemy import (
    JSON,
    Boolean,
    DateTime,
    Enum as SQLEnum,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    func,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship


class Base(DeclarativeBase):
    """Base class for all database models"""
    pass


# =============================================================================
# ENUMERATIONS
# =============================================================================

class CategoryScope(str, Enum):
    """Who owns a category"""
    PLATFORM = "platform"
    TENANT = "tenant"


class RefreshStatus(str, Enum):
    """Outcome of a build attempt"""
    COMPLETED = "completed"
    FAILED = "failed"


# =============================================================================
# SOURCE TABLES
# =============================================================================

class Listing(Base):
    """
    Directory Listing

    A published business location. Mutated by the tenant-facing editing
    flows; the sync engine only reads it.
    """
    __tablename__ = "directory_listings"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    tenant_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    name: Mapped[str] = mapped_column(String(200), nullable=False)
    slug: Mapped[str] = mapped_column(String(200), nullable=False)

    # Location
    city: Mapped[Optional[str]] = mapped_column(String(100))
    state: Mapped[Optional[str]] = mapped_column(String(100))
    latitude: Mapped[Optional[float]] = mapped_column(Float)
    longitude: Mapped[Optional[float]] = mapped_column(Float)

    # Display metrics
    rating_avg: Mapped[Optional[float]] = mapped_column(Float)
    rating_count: Mapped[int] = mapped_column(Integer, default=0)
    item_count: Mapped[int] = mapped_column(Integer, default=0)
    is_featured: Mapped[bool] = mapped_column(Boolean, default=False)
    is_published: Mapped[bool] = mapped_column(Boolean, default=False)

    created_at: Mapped[datetime] = mapped_column(DateTime, server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, server_default=func.now(), onupdate=func.now()
    )

    associations: Mapped[List["ListingCategory"]] = relationship(
        back_populates="listing", cascade="all, delete-orphan", passive_deletes=True
    )


class Category(Base):
    """
    Taxonomy Category

    Platform-wide entries (e.g. seeded from an external business taxonomy)
    and tenant-custom entries. Seeded externally.
    """
    __tablename__ = "directory_categories"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    scope: Mapped[CategoryScope] = mapped_column(
        SQLEnum(CategoryScope), default=CategoryScope.PLATFORM, nullable=False
    )
    tenant_id: Mapped[Optional[str]] = mapped_column(String(64), index=True)
    name: Mapped[str] = mapped_column(String(200), nullable=False)
    slug: Mapped[str] = mapped_column(String(200), nullable=False, index=True)
    external_ref: Mapped[Optional[str]] = mapped_column(String(100))  # e.g. "gcid:hardware_store"
    parent_id: Mapped[Optional[str]] = mapped_column(
        String(64), ForeignKey("directory_categories.id", ondelete="SET NULL")
    )
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)

    created_at: Mapped[datetime] = mapped_column(DateTime, server_default=func.now())

    associations: Mapped[List["ListingCategory"]] = relationship(
        back_populates="category", cascade="all, delete-orphan", passive_deletes=True
    )


# =============================================================================
# NORMALIZED ASSOCIATION
# =============================================================================

class ListingCategory(Base):
    """
    Listing/Category Association

    At most one row per (listing, category). Written only by the
    AssociationProjector.
    """
    __tablename__ = "listing_categories"

    listing_id: Mapped[str] = mapped_column(
        String(64), ForeignKey("directory_listings.id", ondelete="CASCADE"), primary_key=True
    )
    category_id: Mapped[str] = mapped_column(
        String(64), ForeignKey("directory_categories.id", ondelete="CASCADE"), primary_key=True
    )
    is_primary: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)

    created_at: Mapped[datetime] = mapped_column(DateTime, server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, server_default=func.now(), onupdate=func.now()
    )

    listing: Mapped["Listing"] = relationship(back_populates="associations")
    category: Mapped["Category"] = relationship(back_populates="associations")

    __table_args__ = (
        Index("ix_listing_categories_category", "category_id"),
    )


# =============================================================================
# READ MODELS
# =============================================================================

class CategoryListingRow(Base):
    """
    Flattened Category Listing

    One row per association of a published listing with an active
    category, denormalized for browsing. Rows are tagged with the build
    version; readers only see the version the scope's pointer names.
    """
    __tablename__ = "directory_category_listings"

    scope: Mapped[str] = mapped_column(String(64), primary_key=True)
    version: Mapped[int] = mapped_column(Integer, primary_key=True)
    category_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    listing_id: Mapped[str] = mapped_column(String(64), primary_key=True)

    tenant_id: Mapped[str] = mapped_column(String(64), nullable=False)
    category_name: Mapped[str] = mapped_column(String(200), nullable=False)
    category_slug: Mapped[str] = mapped_column(String(200), nullable=False)
    is_primary: Mapped[bool] = mapped_column(Boolean, nullable=False)

    listing_name: Mapped[str] = mapped_column(String(200), nullable=False)
    listing_slug: Mapped[str] = mapped_column(String(200), nullable=False)
    city: Mapped[Optional[str]] = mapped_column(String(100))
    state: Mapped[Optional[str]] = mapped_column(String(100))
    latitude: Mapped[Optional[float]] = mapped_column(Float)
    longitude: Mapped[Optional[float]] = mapped_column(Float)
    rating_avg: Mapped[Optional[float]] = mapped_column(Float)
    rating_count: Mapped[int] = mapped_column(Integer, default=0)
    item_count: Mapped[int] = mapped_column(Integer, default=0)
    is_featured: Mapped[bool] = mapped_column(Boolean, default=False)
    listing_created_at: Mapped[Optional[datetime]] = mapped_column(DateTime)
    listing_updated_at: Mapped[Optional[datetime]] = mapped_column(DateTime)

    __table_args__ = (
        Index("ix_dcl_scope_version_listing", "scope", "version", "listing_id"),
    )


class CategoryStatsRow(Base):
    """
    Category Statistics Aggregate

    Grouped from the flattened rows of the same build version.
    """
    __tablename__ = "directory_category_stats"

    scope: Mapped[str] = mapped_column(String(64), primary_key=True)
    version: Mapped[int] = mapped_column(Integer, primary_key=True)
    category_id: Mapped[str] = mapped_column(String(64), primary_key=True)

    category_name: Mapped[str] = mapped_column(String(200), nullable=False)
    category_slug: Mapped[str] = mapped_column(String(200), nullable=False)

    # Counts
    store_count: Mapped[int] = mapped_column(Integer, default=0)
    primary_count: Mapped[int] = mapped_column(Integer, default=0)
    secondary_count: Mapped[int] = mapped_column(Integer, default=0)
    featured_count: Mapped[int] = mapped_column(Integer, default=0)

    # Items
    total_items: Mapped[int] = mapped_column(Integer, default=0)
    avg_items_per_store: Mapped[float] = mapped_column(Float, default=0)

    # Ratings
    avg_rating: Mapped[Optional[float]] = mapped_column(Float)
    total_ratings: Mapped[int] = mapped_column(Integer, default=0)

    # Geography
    unique_locations: Mapped[int] = mapped_column(Integer, default=0)
    cities: Mapped[list] = mapped_column(JSON, default=list)
    states: Mapped[list] = mapped_column(JSON, default=list)

    first_store_added: Mapped[Optional[datetime]] = mapped_column(DateTime)
    last_store_updated: Mapped[Optional[datetime]] = mapped_column(DateTime)
    generated_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)

    __table_args__ = (
        Index("ix_dcs_scope_version_count", "scope", "version", "store_count"),
    )


class ReadModelVersion(Base):
    """
    Version Pointer

    Names the complete view version readers of a scope should use.
    Swapped in the same transaction that finishes a build.
    """
    __tablename__ = "read_model_versions"

    scope: Mapped[str] = mapped_column(String(64), primary_key=True)
    active_version: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    flattened_rows: Mapped[int] = mapped_column(Integer, default=0)
    stats_rows: Mapped[int] = mapped_column(Integer, default=0)
    built_at: Mapped[Optional[datetime]] = mapped_column(DateTime)
    build_duration_ms: Mapped[Optional[float]] = mapped_column(Float)


class RefreshLogEntry(Base):
    """Read-model refresh log: one row per build attempt."""
    __tablename__ = "read_model_refresh_log"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    scope: Mapped[str] = mapped_column(String(64), nullable=False)
    version: Mapped[Optional[int]] = mapped_column(Integer)
    status: Mapped[RefreshStatus] = mapped_column(SQLEnum(RefreshStatus), nullable=False)
    started_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    completed_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    duration_ms: Mapped[float] = mapped_column(Float, default=0)
    flattened_rows: Mapped[int] = mapped_column(Integer, default=0)
    stats_rows: Mapped[int] = mapped_column(Integer, default=0)
    error: Mapped[Optional[str]] = mapped_column(Text)

    __table_args__ = (
        Index("ix_refresh_log_scope_started", "scope", "started_at"),
    )
