"""
Route Dependencies

Long-lived services are created in the application lifespan and kept on
``app.state``; routes receive them through these dependencies.
"""

from fastapi import Request

from directory_sync.errors import DirectoryError
from directory_sync.projection.service import CategorySyncService
from directory_sync.refresh.coordinator import RefreshCoordinator
from directory_sync.serving.query_service import QueryService


class ServiceUnavailable(DirectoryError):
    error_code = "service_unavailable"
    status_code = 503


def _state(request: Request, name: str):
    service = getattr(request.app.state, name, None)
    if service is None:
        raise ServiceUnavailable(f"{name} is not running", details={"service": name})
    return service


def get_query_service(request: Request) -> QueryService:
    return _state(request, "query_service")


def get_sync_service(request: Request) -> CategorySyncService:
    return _state(request, "sync_service")


def get_coordinator(request: Request) -> RefreshCoordinator:
    return _state(request, "coordinator")
