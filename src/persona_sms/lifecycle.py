"""User lifecycle state machine.

``transition()`` is a pure function from (state, trigger) to the next status
plus the effects needed to get there. ``LifecycleService`` applies those
effects to storage atomically and idempotently.

    free -> hooked -> converting -> active -> paused -> churned
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Union

from loguru import logger

from .models import (
    ENTITLED_SUBSCRIPTIONS,
    ConversionEvent,
    ConversionEventType,
    SubscriptionStatus,
    User,
    UserStatus,
)
from .storage.sqlite_store import SQLiteStore

# ---------------------------------------------------------------------------
# Triggers
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class MessageReceived:
    """An inbound message from the user."""


@dataclass(frozen=True)
class PaymentStarted:
    """The user began checkout."""


@dataclass(frozen=True)
class PaymentCompleted:
    """A payment or trial start succeeded."""

    trialing: bool = False
    period_end: datetime | None = None
    customer_id: str | None = None
    subscription_id: str | None = None


@dataclass(frozen=True)
class SubscriptionLapsed:
    """The subscription left good standing but is recoverable."""

    subscription_status: SubscriptionStatus = SubscriptionStatus.PAST_DUE


@dataclass(frozen=True)
class SubscriptionCanceled:
    """Explicit cancellation or terminal billing failure."""

    reason: str = "canceled"


Trigger = Union[
    MessageReceived, PaymentStarted, PaymentCompleted, SubscriptionLapsed, SubscriptionCanceled
]

# ---------------------------------------------------------------------------
# Effects
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class BumpFreeMessages:
    """Add one to the user's free message counter."""


@dataclass(frozen=True)
class SetFields:
    fields: dict[str, Any]


@dataclass(frozen=True)
class EmitEvent:
    event_type: ConversionEventType
    metadata: dict[str, Any] | None = None


Effect = Union[BumpFreeMessages, SetFields, EmitEvent]


@dataclass(frozen=True)
class LifecycleState:
    status: UserStatus
    subscription_status: SubscriptionStatus = SubscriptionStatus.NONE
    free_messages: int = 0

    @classmethod
    def from_user(cls, user: User) -> "LifecycleState":
        return cls(
            status=UserStatus.parse(user.status),
            subscription_status=user.subscription_status,
            free_messages=user.free_messages,
        )


@dataclass(frozen=True)
class TransitionResult:
    previous: UserStatus
    status: UserStatus
    effects: tuple[Effect, ...] = ()

    @property
    def changed(self) -> bool:
        return self.previous != self.status

    @property
    def events(self) -> list[ConversionEventType]:
        return [e.event_type for e in self.effects if isinstance(e, EmitEvent)]


def transition(
    state: LifecycleState,
    trigger: Trigger,
    max_free_messages: int,
    now: datetime | None = None,
) -> TransitionResult:
    """Compute the next lifecycle status and the effects that realize it.

    Args:
        state: Current status, subscription status and free message count
        trigger: What happened
        max_free_messages: The persona's free-tier threshold
        now: Timestamp recorded in field updates

    Returns:
        TransitionResult; ``effects`` is empty when nothing changes
    """
    now = now or datetime.now(timezone.utc)
    status = state.status

    def stay(*effects: Effect) -> TransitionResult:
        return TransitionResult(status, status, tuple(effects))

    def move(to: UserStatus, fields: dict[str, Any], *events: EmitEvent) -> TransitionResult:
        return TransitionResult(status, to, (SetFields({"status": to, **fields}), *events))

    if isinstance(trigger, MessageReceived):
        if status == UserStatus.FREE:
            count = state.free_messages + 1
            if count >= max_free_messages:
                return TransitionResult(
                    status,
                    UserStatus.HOOKED,
                    (
                        BumpFreeMessages(),
                        SetFields({"status": UserStatus.HOOKED}),
                        EmitEvent(ConversionEventType.ENGAGED, {"free_messages": count}),
                    ),
                )
            return stay(BumpFreeMessages())
        if status == UserStatus.ACTIVE and state.subscription_status not in ENTITLED_SUBSCRIPTIONS:
            return move(
                UserStatus.PAUSED,
                {},
                EmitEvent(
                    ConversionEventType.SUBSCRIPTION_PAUSED,
                    {"subscription_status": state.subscription_status.value},
                ),
            )
        return stay()

    if isinstance(trigger, PaymentStarted):
        if status == UserStatus.HOOKED:
            return move(UserStatus.CONVERTING, {}, EmitEvent(ConversionEventType.PAYMENT_STARTED))
        return stay()

    if isinstance(trigger, PaymentCompleted):
        subscription = SubscriptionStatus.TRIALING if trigger.trialing else SubscriptionStatus.ACTIVE
        fields: dict[str, Any] = {"subscription_status": subscription}
        if trigger.period_end is not None:
            fields["subscription_current_period_end"] = trigger.period_end
        if trigger.customer_id:
            fields["stripe_customer_id"] = trigger.customer_id
        if trigger.subscription_id:
            fields["stripe_subscription_id"] = trigger.subscription_id
        if status == UserStatus.ACTIVE:
            return stay(SetFields(fields))
        fields["subscription_started_at"] = now
        if status in (UserStatus.FREE, UserStatus.HOOKED, UserStatus.CONVERTING):
            fields["converted_at"] = now
        return move(
            UserStatus.ACTIVE,
            fields,
            EmitEvent(ConversionEventType.PAYMENT_COMPLETED, {"trialing": trigger.trialing}),
        )

    if isinstance(trigger, SubscriptionLapsed):
        fields = {"subscription_status": trigger.subscription_status}
        if status == UserStatus.ACTIVE:
            return move(
                UserStatus.PAUSED,
                fields,
                EmitEvent(
                    ConversionEventType.SUBSCRIPTION_PAUSED,
                    {"subscription_status": trigger.subscription_status.value},
                ),
            )
        if state.subscription_status == trigger.subscription_status:
            return stay()
        return stay(SetFields(fields))

    if isinstance(trigger, SubscriptionCanceled):
        if status in (UserStatus.ACTIVE, UserStatus.PAUSED):
            return move(
                UserStatus.CHURNED,
                {
                    "subscription_status": SubscriptionStatus.CANCELED,
                    "subscription_canceled_at": now,
                    "churned_at": now,
                    "churn_reason": trigger.reason,
                },
                EmitEvent(ConversionEventType.SUBSCRIPTION_CANCELED, {"reason": trigger.reason}),
                EmitEvent(ConversionEventType.CHURNED, {"reason": trigger.reason}),
            )
        if state.subscription_status == SubscriptionStatus.CANCELED:
            return stay()
        return stay(
            SetFields(
                {
                    "subscription_status": SubscriptionStatus.CANCELED,
                    "subscription_canceled_at": now,
                }
            )
        )

    raise TypeError(f"Unknown lifecycle trigger: {trigger!r}")


@dataclass
class LifecycleOutcome:
    result: TransitionResult
    user: User


class LifecycleService:
    """Applies lifecycle transitions to storage.

    Each ``apply`` runs in one store transaction: the idempotency key claim,
    counter bump, field updates and events commit together or not at all.
    """

    def __init__(self, store: SQLiteStore):
        self._store = store

    async def apply(
        self,
        user: User,
        trigger: Trigger,
        max_free_messages: int,
        delivery_key: str | None = None,
        now: datetime | None = None,
    ) -> LifecycleOutcome | None:
        """Evaluate ``trigger`` against the stored user and persist the result.

        Args:
            user: User to transition (re-read inside the transaction)
            trigger: What happened
            max_free_messages: The persona's free-tier threshold
            delivery_key: Idempotency key; a repeat returns None untouched

        Returns:
            LifecycleOutcome with the refreshed user, or None for a duplicate
        """
        async with self._store.transaction():
            if delivery_key and not await self._store.claim_delivery(delivery_key, user.id):
                logger.warning(
                    f"Duplicate delivery {delivery_key} for user {user.id}, skipping transition"
                )
                return None

            current = await self._store.get_user(user.id) or user
            result = transition(LifecycleState.from_user(current), trigger, max_free_messages, now)

            for effect in result.effects:
                if isinstance(effect, BumpFreeMessages):
                    await self._store.increment_free_messages(current.id)
                elif isinstance(effect, SetFields):
                    await self._store.update_user(current.id, **effect.fields)
                elif isinstance(effect, EmitEvent):
                    await self._store.insert_event(
                        ConversionEvent(
                            user_id=current.id,
                            persona_id=current.persona_id,
                            event_type=effect.event_type,
                            metadata=effect.metadata,
                        )
                    )

            refreshed = await self._store.get_user(current.id) or current

        if result.changed:
            logger.info(
                f"User {current.id} transitioned {result.previous.value} -> "
                f"{result.status.value} on {type(trigger).__name__}"
            )
        return LifecycleOutcome(result=result, user=refreshed)
