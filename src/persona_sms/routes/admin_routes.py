"""Health, admin read and scheduled maintenance routes."""

from datetime import datetime, timezone

from fastapi import APIRouter, Request
from starlette.responses import JSONResponse

from ..service_context import ServiceContext


def _authorized(request: Request, service_context: ServiceContext) -> bool:
    expected = service_context.config.server.admin_api_key
    return bool(expected) and request.headers.get("x-api-key") == expected


def _unauthorized() -> JSONResponse:
    return JSONResponse({"error": "Unauthorized"}, status_code=401)


def init_admin_routes(service_context: ServiceContext) -> APIRouter:
    """
    Create routes for health checks, admin listings and maintenance.

    Admin endpoints require the ``x-api-key`` header to match
    ``server.admin_api_key``; with no key configured they always refuse.

    Args:
        service_context: Running service context

    Returns:
        APIRouter: Router with admin endpoints.
    """
    router = APIRouter(tags=["admin"])

    @router.get("/health")
    async def health():
        return JSONResponse(
            {"status": "ok", "timestamp": datetime.now(timezone.utc).isoformat()}
        )

    @router.get("/debug/personas")
    async def list_personas(request: Request):
        """All personas with their counters."""
        if not _authorized(request, service_context):
            return _unauthorized()
        personas = await service_context.store.list_personas()
        return JSONResponse([p.model_dump(mode="json") for p in personas])

    @router.get("/debug/users")
    async def list_users(request: Request):
        """The 50 most recently created users."""
        if not _authorized(request, service_context):
            return _unauthorized()
        return JSONResponse(await service_context.store.list_users(limit=50))

    @router.get("/debug/queue")
    async def queue_status(request: Request):
        if not _authorized(request, service_context):
            return _unauthorized()
        return JSONResponse(service_context.pool.stats())

    @router.post("/internal/scheduled")
    async def run_maintenance(request: Request):
        """Entry point for the hosting platform's periodic trigger."""
        if not _authorized(request, service_context):
            return _unauthorized()
        report = await service_context.maintenance.run()
        return JSONResponse(
            {
                "started_at": report.started_at.isoformat(),
                "results": report.results,
                "failures": report.failures,
            },
            status_code=200 if report.ok else 500,
        )

    return router
