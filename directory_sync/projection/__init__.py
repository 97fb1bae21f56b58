"""
Association Projection Module
"""
from .projector import AssociationProjector, ProjectionResult, desired_associations
from .service import CategorySyncService, scopes_for_tenant

__all__ = [
    "AssociationProjector",
    "ProjectionResult",
    "desired_associations",
    "CategorySyncService",
    "scopes_for_tenant",
]
