"""
Directory Category Sync Engine
Configuration Module
"""
from .settings import Settings, DirectorySettings, get_settings

__all__ = ["Settings", "DirectorySettings", "get_settings"]
