"""
Directory Category Sync Engine

Keeps listing/category associations consistent with the directory's
flattened and per-category statistics read models.
"""

__version__ = "1.0.0"
