"""Core persisted records: personas, users, turns, events and inbound payloads."""

from __future__ import annotations

import hashlib
from datetime import datetime, timezone
from enum import Enum
from typing import Any
from uuid import uuid4

from loguru import logger
from pydantic import BaseModel, Field, field_validator, model_validator


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_id() -> str:
    return str(uuid4())


class UserStatus(str, Enum):
    FREE = "free"
    HOOKED = "hooked"
    CONVERTING = "converting"
    ACTIVE = "active"
    PAUSED = "paused"
    CHURNED = "churned"

    @classmethod
    def parse(cls, value: Any) -> "UserStatus":
        """Parse a stored status, treating unknown or unset values as FREE."""
        if isinstance(value, cls):
            return value
        try:
            return cls(value)
        except ValueError:
            logger.warning(f"Unknown user status {value!r}, treating as 'free'")
            return cls.FREE


class SubscriptionStatus(str, Enum):
    NONE = "none"
    TRIALING = "trialing"
    ACTIVE = "active"
    PAST_DUE = "past_due"
    CANCELED = "canceled"


ENTITLED_SUBSCRIPTIONS = frozenset({SubscriptionStatus.TRIALING, SubscriptionStatus.ACTIVE})


def is_status_consistent(status: UserStatus, subscription_status: SubscriptionStatus) -> bool:
    """``active`` users must hold a trialing or active subscription."""
    if status == UserStatus.ACTIVE:
        return subscription_status in ENTITLED_SUBSCRIPTIONS
    return True


class MessageSender(str, Enum):
    USER = "user"
    PERSONA = "persona"


class TurnRole(str, Enum):
    USER = "user"
    ASSISTANT = "assistant"


class ConversionEventType(str, Enum):
    FIRST_MESSAGE = "first_message"
    ENGAGED = "engaged"
    HOOK_SENT = "hook_sent"
    HOOK_CLICKED = "hook_clicked"
    VERIFICATION_STARTED = "verification_started"
    VERIFICATION_COMPLETED = "verification_completed"
    VERIFICATION_UNDERAGE = "verification_underage"
    PAYMENT_STARTED = "payment_started"
    PAYMENT_COMPLETED = "payment_completed"
    SUBSCRIPTION_PAUSED = "subscription_paused"
    CHURNED = "churned"
    SUBSCRIPTION_CANCELED = "subscription_canceled"
    PAYMENT_FAILED = "payment_failed"


class Persona(BaseModel):
    """The chat identity users talk to."""

    id: str = Field(default_factory=new_id)
    name: str
    slug: str
    phone_number: str | None = None
    tagline: str | None = None
    personality_prompt: str
    active: bool = True
    max_free_messages: int = 50
    total_users: int = 0
    total_conversations: int = 0
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)


class User(BaseModel):
    """One relationship between a phone number and a persona."""

    id: str = Field(default_factory=new_id)
    phone_number: str
    persona_id: str
    status: UserStatus = UserStatus.FREE
    free_messages: int = 0

    converted_at: datetime | None = None
    churned_at: datetime | None = None
    churn_reason: str | None = None

    stripe_customer_id: str | None = None
    stripe_subscription_id: str | None = None
    subscription_status: SubscriptionStatus = SubscriptionStatus.NONE
    subscription_started_at: datetime | None = None
    subscription_current_period_end: datetime | None = None
    subscription_canceled_at: datetime | None = None

    messages_this_month: int = 0
    messages_total: int = 0
    last_message_at: datetime | None = None
    last_message_from: MessageSender | None = None
    memory_initialized: bool = False

    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    @field_validator("status", mode="before")
    @classmethod
    def _parse_status(cls, value: Any) -> UserStatus:
        return UserStatus.parse(value)

    @field_validator("subscription_status", mode="before")
    @classmethod
    def _parse_subscription(cls, value: Any) -> Any:
        return value or SubscriptionStatus.NONE


class ConversationTurn(BaseModel):
    """A single raw turn in the conversation log."""

    id: int | None = None
    user_id: str
    persona_id: str
    role: TurnRole
    content: str
    tokens_in: int | None = None
    tokens_out: int | None = None
    model_used: str | None = None
    processed_for_memory: bool = False
    created_at: datetime = Field(default_factory=utcnow)

    def to_chat_message(self) -> dict[str, str]:
        return {"role": self.role.value, "content": self.content}


class ConversionEvent(BaseModel):
    """Durable analytics event."""

    id: str = Field(default_factory=new_id)
    user_id: str
    persona_id: str
    event_type: ConversionEventType
    metadata: dict[str, Any] | None = None
    created_at: datetime = Field(default_factory=utcnow)


class InboundMessage(BaseModel):
    """Inbound SMS webhook payload."""

    from_number: str = Field(min_length=1)
    to_number: str = Field(min_length=1)
    content: str = ""
    media_url: str | None = None
    message_type: str = "message"
    date_sent: str | None = None
    message_handle: str | None = None

    @model_validator(mode="after")
    def _identifiable(self) -> "InboundMessage":
        # The payload hash needs date_sent to tell repeated bodies apart
        if not self.message_handle and not self.date_sent:
            raise ValueError("message_handle or date_sent is required")
        return self

    def delivery_key(self) -> str:
        """Idempotency key identifying this delivery across webhook retries."""
        if self.message_handle:
            return f"sms:{self.message_handle}"
        raw = "\x1f".join(
            [self.from_number, self.to_number, self.content, self.date_sent]
        )
        return "sms:" + hashlib.sha256(raw.encode("utf-8")).hexdigest()


class BillingEventType(str, Enum):
    TRIAL_STARTED = "trial_started"
    CHECKOUT_STARTED = "checkout_started"
    PAYMENT_SUCCEEDED = "payment_succeeded"
    PAYMENT_FAILED = "payment_failed"
    SUBSCRIPTION_CANCELED = "subscription_canceled"


class BillingEvent(BaseModel):
    """Payment lifecycle event from the billing collaborator."""

    id: str = Field(min_length=1)
    type: BillingEventType
    customer_id: str | None = None
    subscription_id: str | None = None
    user_id: str | None = None
    current_period_end: datetime | None = None
    terminal: bool = False
    reason: str | None = None
