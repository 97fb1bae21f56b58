"""
API Routes Module
"""
from .health import router as health_router
from .categories import router as categories_router
from .listings import router as listings_router
from .internal import router as internal_router

__all__ = [
    "health_router",
    "categories_router",
    "listings_router",
    "internal_router",
]
