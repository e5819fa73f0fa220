"""
Message Router.

``handle_inbound`` runs before the webhook is acknowledged: it resolves the
persona and user, bootstraps memory, logs the inbound turn and evaluates the
lifecycle machine, all inside the user's critical section and one store
transaction. The reply itself is produced by ``process_message`` on the
worker pool, which converts any failure into the fallback reply.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Awaitable, Callable

from loguru import logger

from .config import AppConfig
from .conversation_log import ConversationLog
from .lifecycle import LifecycleService, MessageReceived
from .locks import UserLocks
from .memory.context_assembler import ContextAssembler, GenerationContext
from .memory.store import MemoryStore
from .models import (
    ConversionEvent,
    ConversionEventType,
    InboundMessage,
    MessageSender,
    Persona,
    TurnRole,
    User,
    UserStatus,
)
from .services.delivery import DeliveryClient
from .services.generation import ReplyGenerator
from .storage.sqlite_store import SQLiteStore
from .worker_pool import WorkerPool


def _preview(text: str, limit: int = 50) -> str:
    return text if len(text) <= limit else text[:limit] + "..."


@dataclass
class ReplyJob:
    """Everything the background step needs to answer one inbound message."""

    persona: Persona
    user: User
    content: str
    inbound_turn_id: int
    is_new_user: bool = False
    delivery_key: str | None = None


@dataclass
class InboundOutcome:
    """Result of the foreground step.

    ``accepted`` is False when the message was intentionally dropped; the
    transport is acknowledged either way.
    """

    accepted: bool
    reason: str
    job: ReplyJob | None = None
    queued: bool = False


# ---------------------------------------------------------------------------
# Reply policies
# ---------------------------------------------------------------------------

ReplyPolicy = Callable[[ContextAssembler, ReplyJob], Awaitable[GenerationContext]]


async def full_access_policy(assembler: ContextAssembler, job: ReplyJob) -> GenerationContext:
    """Complete memory access for free, hooked, converting and active users."""
    return await assembler.build(
        job.persona,
        job.user,
        job.content,
        before_turn_id=job.inbound_turn_id,
        is_new_user=job.is_new_user,
    )


async def degraded_access_policy(assembler: ContextAssembler, job: ReplyJob) -> GenerationContext:
    """Paused and churned users.

    Same assembly as full access for now; the status travels with the
    context so generation can adjust tone.
    """
    return await assembler.build(
        job.persona,
        job.user,
        job.content,
        before_turn_id=job.inbound_turn_id,
        is_new_user=False,
    )


POLICIES: dict[UserStatus, ReplyPolicy] = {
    UserStatus.FREE: full_access_policy,
    UserStatus.HOOKED: full_access_policy,
    UserStatus.CONVERTING: full_access_policy,
    UserStatus.ACTIVE: full_access_policy,
    UserStatus.PAUSED: degraded_access_policy,
    UserStatus.CHURNED: degraded_access_policy,
}


def select_policy(status: UserStatus | str) -> ReplyPolicy:
    return POLICIES[UserStatus.parse(status)]


# ---------------------------------------------------------------------------
# Router
# ---------------------------------------------------------------------------


class MessageRouter:
    """Orchestrates one inbound message end to end."""

    def __init__(
        self,
        config: AppConfig,
        store: SQLiteStore,
        assembler: ContextAssembler,
        generator: ReplyGenerator,
        delivery: DeliveryClient,
        pool: WorkerPool | None = None,
        locks: UserLocks | None = None,
    ):
        self.config = config
        self.store = store
        self.memory = MemoryStore(store)
        self.log = ConversationLog(store)
        self.lifecycle = LifecycleService(store)
        self.assembler = assembler
        self.generator = generator
        self.delivery = delivery
        self.pool = pool
        self.locks = locks or UserLocks()

    async def handle_inbound(
        self, message: InboundMessage, now: datetime | None = None
    ) -> InboundOutcome:
        """Durably record an inbound message and queue the reply.

        Returns once the inbound turn, user record and lifecycle effects are
        committed. If the worker pool refuses the job, the fallback reply is
        sent before returning.
        """
        now = now or datetime.now(timezone.utc)
        logger.info(
            f"Incoming: {message.from_number} -> {message.to_number}: {_preview(message.content)}"
        )

        # 1. Drop blocked origins and unknown destinations
        if await self.store.is_blocked(message.from_number):
            logger.warning(f"Blocked number attempted contact: {message.from_number}")
            return InboundOutcome(accepted=False, reason="blocked")

        persona = await self.store.get_persona_by_number(message.to_number)
        if persona is None:
            logger.warning(f"Unknown persona number: {message.to_number}")
            return InboundOutcome(accepted=False, reason="unknown_persona")

        delivery_key = message.delivery_key()
        async with self.locks.hold(UserLocks.key(persona.id, message.from_number)):
            async with self.store.transaction():
                # 2. Idempotency
                if not await self.store.claim_delivery(delivery_key):
                    logger.warning(f"Duplicate delivery {delivery_key}, acknowledging only")
                    return InboundOutcome(accepted=False, reason="duplicate")

                # 3. Resolve or create the user
                user = await self.store.get_user_by_phone(message.from_number, persona.id)
                is_new_user = user is None
                if user is None:
                    user = await self.store.create_user(
                        User(phone_number=message.from_number, persona_id=persona.id)
                    )
                    await self.store.insert_event(
                        ConversionEvent(
                            user_id=user.id,
                            persona_id=persona.id,
                            event_type=ConversionEventType.FIRST_MESSAGE,
                        )
                    )
                    await self.store.increment_persona_stat(persona.id, "total_users")
                    logger.info(f"New user created: {user.id} for persona {persona.name}")

                # 4. Memory bootstrap before anything reads memory
                if not user.memory_initialized:
                    await self.memory.ensure_initialized(user)

                # 5. Inbound turn and bookkeeping
                turn = await self.log.append(user.id, persona.id, TurnRole.USER, message.content)
                await self.store.record_user_message(user.id, MessageSender.USER.value, now)
                await self.store.record_usage(
                    user.id, persona.id, now.date().isoformat(), messages_received=1
                )

                # 6. Lifecycle
                outcome = await self.lifecycle.apply(
                    user, MessageReceived(), persona.max_free_messages, now=now
                )
                if outcome is not None:
                    user = outcome.user

        job = ReplyJob(
            persona=persona,
            user=user,
            content=message.content,
            inbound_turn_id=turn.id,
            is_new_user=is_new_user,
            delivery_key=delivery_key,
        )
        queued = self.submit(job)
        if not queued and self.pool is not None:
            await self._send_fallback(job, "queue")
        return InboundOutcome(
            accepted=True, reason="queued" if queued else "not_queued", job=job, queued=queued
        )

    def submit(self, job: ReplyJob) -> bool:
        """Queue the reply; False when there is no pool or it refused the job."""
        if self.pool is None:
            return False
        return self.pool.submit(f"reply:{job.user.id}", lambda: self.process_message(job))

    async def process_message(self, job: ReplyJob) -> bool:
        """Generate and deliver the reply for ``job``.

        Returns:
            bool: True if the generated reply was sent, False if the
                fallback path was taken
        """
        persona, user = job.persona, job.user
        stage = "policy"
        try:
            policy = select_policy(user.status)

            stage = "assemble"
            context = await policy(self.assembler, job)
            logger.info(
                f"Context for user {user.id}: {context.token_count}/{context.budget_tokens} tokens, "
                f"people={len(context.people)}, conversations={len(context.conversations)}"
            )

            stage = "generate"
            result = await self.generator.generate(context)

            stage = "deliver"
            await self.delivery.send(persona, user.phone_number, result.text)
        except Exception:
            logger.exception(
                f"Error processing message (user_id={user.id}, persona_id={persona.id}, stage={stage})"
            )
            await self._send_fallback(job, stage)
            return False

        logger.info(f"Reply sent to user {user.id}: {_preview(result.text)}")
        try:
            await self._record_reply(
                job, result.text, result.tokens_in, result.tokens_out, result.model
            )
        except Exception:
            # Reply already delivered, no fallback.
            logger.exception(
                f"Failed to record reply (user_id={user.id}, persona_id={persona.id}, stage=record)"
            )
        return True

    async def _record_reply(
        self,
        job: ReplyJob,
        text: str,
        tokens_in: int | None,
        tokens_out: int | None,
        model: str | None,
    ) -> None:
        persona, user = job.persona, job.user
        now = datetime.now(timezone.utc)
        async with self.locks.hold(UserLocks.key(persona.id, user.phone_number)):
            async with self.store.transaction():
                await self.log.append(
                    user.id,
                    persona.id,
                    TurnRole.ASSISTANT,
                    text,
                    tokens_in=tokens_in,
                    tokens_out=tokens_out,
                    model_used=model,
                )
                await self.store.record_user_message(user.id, MessageSender.PERSONA.value, now)
                await self.store.record_usage(
                    user.id,
                    persona.id,
                    now.date().isoformat(),
                    messages_sent=1,
                    tokens_in=tokens_in or 0,
                    tokens_out=tokens_out or 0,
                )
                await self.store.increment_persona_stat(persona.id, "total_conversations")

    async def _send_fallback(self, job: ReplyJob, stage: str) -> None:
        try:
            await self.delivery.send(job.persona, job.user.phone_number, self.config.fallback_reply)
        except Exception:
            logger.exception(
                f"Fallback reply failed (user_id={job.user.id}, persona_id={job.persona.id}, "
                f"stage={stage})"
            )
            return
        logger.warning(f"Fallback reply sent to user {job.user.id} after {stage} failure")
