"""
Shared helpers
"""
from .geo import haversine_km, distance_between

__all__ = ["haversine_km", "distance_between"]
