"""Inbound webhook routes: SMS delivery provider and billing."""

from fastapi import APIRouter, Request
from loguru import logger
from pydantic import ValidationError
from starlette.responses import JSONResponse, PlainTextResponse

from ..exceptions import PayloadError
from ..models import BillingEvent, InboundMessage
from ..service_context import ServiceContext


async def _parse(request: Request, model):
    try:
        data = await request.json()
    except ValueError as e:
        raise PayloadError(f"Invalid JSON: {e}") from e
    if not isinstance(data, dict):
        raise PayloadError("Payload must be a JSON object")
    try:
        return model.model_validate(data)
    except ValidationError as e:
        raise PayloadError(f"Invalid payload: {e.error_count()} field error(s)") from e


def init_webhook_routes(service_context: ServiceContext) -> APIRouter:
    """
    Create routes for the SMS and billing webhooks.

    Args:
        service_context: Running service context

    Returns:
        APIRouter: Router with webhook endpoints.
    """
    router = APIRouter(tags=["webhooks"])

    @router.post("/webhook/sms")
    async def sms_webhook(request: Request):
        """
        Accept an inbound SMS.

        Responds ``OK`` once the message is durably recorded; the reply is
        generated in the background. Blocked senders, unknown destinations
        and duplicate deliveries are acknowledged the same way.
        """
        try:
            message = await _parse(request, InboundMessage)
        except PayloadError as e:
            logger.error(f"Failed to parse incoming message: {e}")
            return PlainTextResponse("Invalid JSON", status_code=400)

        await service_context.router.handle_inbound(message)
        return PlainTextResponse("OK")

    @router.post("/webhook/billing")
    async def billing_webhook(request: Request):
        """Apply a payment lifecycle event."""
        try:
            event = await _parse(request, BillingEvent)
        except PayloadError as e:
            logger.error(f"Failed to parse billing event: {e}")
            return JSONResponse({"error": str(e)}, status_code=400)

        outcome = await service_context.billing.handle(event)
        return JSONResponse(
            {
                "status": outcome.status,
                "user_status": outcome.user.status.value if outcome.user else None,
            }
        )

    return router
