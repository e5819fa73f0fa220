"""
Route modules for the persona SMS server.

- **webhook_routes**
    - `/webhook/sms`: inbound SMS from the delivery provider
    - `/webhook/billing`: payment lifecycle events
- **admin_routes**
    - `/health`: liveness
    - `/debug/personas`, `/debug/users`, `/debug/queue`: admin reads (x-api-key)
    - `/internal/scheduled`: periodic maintenance trigger (x-api-key)
"""

from fastapi import APIRouter

from ..service_context import ServiceContext
from .admin_routes import init_admin_routes
from .webhook_routes import init_webhook_routes


def init_routes(service_context: ServiceContext) -> APIRouter:
    """
    Create the combined router for every endpoint.

    Args:
        service_context: Running service context

    Returns:
        APIRouter: Router with all endpoints.
    """
    router = APIRouter()
    router.include_router(init_webhook_routes(service_context))
    router.include_router(init_admin_routes(service_context))
    return router


__all__ = ["init_routes", "init_webhook_routes", "init_admin_routes"]
