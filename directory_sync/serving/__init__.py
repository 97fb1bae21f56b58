"""
Serving Module
"""
from .cache import init_redis, close_redis, get_redis, directory_cache
from .query_service import QueryService

__all__ = [
    "init_redis",
    "close_redis",
    "get_redis",
    "directory_cache",
    "QueryService",
]
