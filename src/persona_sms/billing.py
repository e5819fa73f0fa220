"""Billing webhook handling.

Maps payment lifecycle events onto lifecycle triggers. Each event id is used
as an idempotency key, so a redelivered webhook changes nothing.
"""

from __future__ import annotations

from dataclasses import dataclass

from loguru import logger

from .lifecycle import (
    LifecycleService,
    PaymentCompleted,
    PaymentStarted,
    SubscriptionCanceled,
    SubscriptionLapsed,
    TransitionResult,
    Trigger,
)
from .models import BillingEvent, BillingEventType, ConversionEvent, ConversionEventType, User
from .storage.sqlite_store import SQLiteStore


@dataclass
class BillingOutcome:
    status: str  # applied | duplicate | unknown_user
    user: User | None = None
    result: TransitionResult | None = None


def trigger_for(event: BillingEvent) -> Trigger:
    """Translate a billing event into the lifecycle trigger it represents."""
    if event.type == BillingEventType.TRIAL_STARTED:
        return PaymentCompleted(
            trialing=True,
            period_end=event.current_period_end,
            customer_id=event.customer_id,
            subscription_id=event.subscription_id,
        )
    if event.type == BillingEventType.CHECKOUT_STARTED:
        return PaymentStarted()
    if event.type == BillingEventType.PAYMENT_SUCCEEDED:
        return PaymentCompleted(
            period_end=event.current_period_end,
            customer_id=event.customer_id,
            subscription_id=event.subscription_id,
        )
    if event.type == BillingEventType.PAYMENT_FAILED:
        if event.terminal:
            return SubscriptionCanceled(reason=event.reason or "payment_failed")
        return SubscriptionLapsed()
    if event.type == BillingEventType.SUBSCRIPTION_CANCELED:
        return SubscriptionCanceled(reason=event.reason or "canceled")
    raise ValueError(f"Unsupported billing event type: {event.type}")


class BillingHandler:
    """Applies billing events to the users they belong to."""

    def __init__(self, store: SQLiteStore, lifecycle: LifecycleService | None = None):
        self.store = store
        self.lifecycle = lifecycle or LifecycleService(store)

    async def _resolve_user(self, event: BillingEvent) -> User | None:
        if event.user_id:
            user = await self.store.get_user(event.user_id)
            if user is not None:
                return user
        return await self.store.get_user_by_billing_ids(
            customer_id=event.customer_id, subscription_id=event.subscription_id
        )

    async def handle(self, event: BillingEvent) -> BillingOutcome:
        user = await self._resolve_user(event)
        if user is None:
            logger.warning(
                f"Billing event {event.id} ({event.type.value}) matches no user "
                f"(customer={event.customer_id}, subscription={event.subscription_id})"
            )
            return BillingOutcome(status="unknown_user")

        persona = await self.store.get_persona(user.persona_id)
        max_free_messages = persona.max_free_messages if persona else 50
        trigger = trigger_for(event)

        async with self.store.transaction():
            if not await self.store.claim_delivery(f"billing:{event.id}", user.id):
                logger.warning(f"Duplicate billing event {event.id}, skipping")
                return BillingOutcome(status="duplicate", user=user)

            if event.type == BillingEventType.PAYMENT_FAILED:
                await self.store.insert_event(
                    ConversionEvent(
                        user_id=user.id,
                        persona_id=user.persona_id,
                        event_type=ConversionEventType.PAYMENT_FAILED,
                        metadata={"terminal": event.terminal, "reason": event.reason},
                    )
                )
            outcome = await self.lifecycle.apply(user, trigger, max_free_messages)

        logger.info(
            f"Billing event {event.id} ({event.type.value}) applied to user {user.id}: "
            f"{outcome.result.previous.value} -> {outcome.result.status.value}"
        )
        return BillingOutcome(status="applied", user=outcome.user, result=outcome.result)
