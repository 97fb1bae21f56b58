"""
Event Ingestion Module

The Kafka consumer lives in ``directory_sync.ingestion.stream_consumer``.
"""
from .events import ListingCategoryChanged

__all__ = ["ListingCategoryChanged"]
