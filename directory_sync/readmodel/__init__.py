"""
Read-Model Build Module
"""
from .aggregates import aggregate_category_stats
from .builder import BuildResult, ReadModelBuilder

__all__ = ["aggregate_category_stats", "BuildResult", "ReadModelBuilder"]
