"""
Refresh Coordination Module
"""
from .coordinator import GLOBAL_SCOPE, RefreshCoordinator, ScopeState, ScopeStatus

__all__ = ["GLOBAL_SCOPE", "RefreshCoordinator", "ScopeState", "ScopeStatus"]
