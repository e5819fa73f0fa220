"""Tests for the Message Router: foreground recording and background replies."""

import asyncio

import pytest
from pydantic import ValidationError

from persona_sms.exceptions import DeliveryError, GenerationError
from persona_sms.models import (
    ConversionEventType,
    InboundMessage,
    MessageSender,
    Persona,
    TurnRole,
    UserStatus,
)
from persona_sms.router import (
    MessageRouter,
    degraded_access_policy,
    full_access_policy,
    select_policy,
)
from persona_sms.worker_pool import WorkerPool

PERSONA_NUMBER = "+15550000001"
USER_NUMBER = "+15551234567"

FALLBACK = "Sorry, I got distracted for a second. What were you saying?"


def inbound(content="hey", handle=None, from_number=USER_NUMBER, to_number=PERSONA_NUMBER):
    return InboundMessage(
        from_number=from_number, to_number=to_number, content=content, message_handle=handle
    )


async def user_turns(store, user_id):
    return [t for t in await store.get_recent_turns(user_id, 1000) if t.role == TurnRole.USER]


# ---------------------------------------------------------------------------
# Foreground
# ---------------------------------------------------------------------------


class TestHandleInbound:
    async def test_first_contact_bootstraps_user(self, router, store, persona):
        outcome = await router.handle_inbound(inbound("hi there", handle="h1"))

        assert outcome.accepted
        assert outcome.job.is_new_user
        user = await store.get_user_by_phone(USER_NUMBER, persona.id)
        assert user.memory_initialized
        assert user.free_messages == 1
        assert user.messages_total == 1
        assert user.last_message_from == MessageSender.USER
        assert await store.get_hot_memory(persona.id, user.id) is not None

        events = [e.event_type for e in await store.list_events(user.id)]
        assert events == [ConversionEventType.FIRST_MESSAGE]
        assert (await store.get_persona(persona.id)).total_users == 1
        assert [t.content for t in await user_turns(store, user.id)] == ["hi there"]

    async def test_returning_user_not_new(self, router, persona):
        await router.handle_inbound(inbound(handle="h1"))
        outcome = await router.handle_inbound(inbound(handle="h2"))
        assert not outcome.job.is_new_user

    async def test_blocked_number_dropped(self, router, store, persona):
        await store.block_number(USER_NUMBER, reason="abuse")
        outcome = await router.handle_inbound(inbound(handle="h1"))
        assert not outcome.accepted
        assert outcome.reason == "blocked"
        assert await store.get_user_by_phone(USER_NUMBER, persona.id) is None

    async def test_unknown_persona_dropped(self, router, store, persona):
        outcome = await router.handle_inbound(inbound(to_number="+19999999999", handle="h1"))
        assert outcome.reason == "unknown_persona"
        assert await store.list_users() == []

    async def test_duplicate_delivery_acknowledged_once(self, router, store, persona):
        first = await router.handle_inbound(inbound(handle="dup"))
        second = await router.handle_inbound(inbound(handle="dup"))
        assert first.accepted
        assert not second.accepted and second.reason == "duplicate"

        user = await store.get_user_by_phone(USER_NUMBER, persona.id)
        assert user.free_messages == 1
        assert len(await user_turns(store, user.id)) == 1

    async def test_duplicate_without_handle_uses_payload(self, router, store, persona):
        message = InboundMessage(
            from_number=USER_NUMBER, to_number=PERSONA_NUMBER, content="yo", date_sent="2026-03-01T10:00:00Z"
        )
        assert (await router.handle_inbound(message)).accepted
        assert (await router.handle_inbound(message)).reason == "duplicate"

    async def test_concurrent_messages_counted_exactly(self, store, config, assembler, generator, delivery):
        roomy = await store.upsert_persona(
            Persona(
                name="Rae",
                slug="rae",
                phone_number="+15550000002",
                personality_prompt="You are Rae.",
                max_free_messages=100,
            )
        )
        router = MessageRouter(config, store, assembler, generator, delivery)
        n = 12
        outcomes = await asyncio.gather(
            *[
                router.handle_inbound(inbound(f"msg {i}", handle=f"c{i}", to_number=roomy.phone_number))
                for i in range(n)
            ]
        )
        assert all(o.accepted for o in outcomes)
        assert sum(o.job.is_new_user for o in outcomes) == 1

        user = await store.get_user_by_phone(USER_NUMBER, roomy.id)
        assert user.free_messages == n
        assert user.messages_total == n
        assert len(await user_turns(store, user.id)) == n
        assert (await store.get_persona(roomy.id)).total_users == 1

    async def test_threshold_reached_then_stays_hooked(self, router, store, persona):
        for i in range(4):
            await router.handle_inbound(inbound(f"m{i}", handle=f"t{i}"))
        user = await store.get_user_by_phone(USER_NUMBER, persona.id)
        assert user.status == UserStatus.FREE
        assert user.free_messages == 4

        outcome = await router.handle_inbound(inbound("fifth", handle="t4"))
        assert outcome.job.user.status == UserStatus.HOOKED

        for i in range(5, 8):
            outcome = await router.handle_inbound(inbound(f"m{i}", handle=f"t{i}"))
            assert outcome.job.user.status == UserStatus.HOOKED

        user = await store.get_user(user.id)
        assert user.free_messages == 5
        events = [e.event_type for e in await store.list_events(user.id)]
        assert events.count(ConversionEventType.ENGAGED) == 1

    async def test_failed_memory_init_still_accepts(self, router, store, persona, monkeypatch):
        async def broken(*args, **kwargs):
            raise RuntimeError("bucket unavailable")

        monkeypatch.setattr(store, "put_hot_memory", broken)
        outcome = await router.handle_inbound(inbound(handle="h1"))

        assert outcome.accepted
        user = await store.get_user_by_phone(USER_NUMBER, persona.id)
        assert not user.memory_initialized
        assert len(await user_turns(store, user.id)) == 1


# ---------------------------------------------------------------------------
# Background
# ---------------------------------------------------------------------------


class TestProcessMessage:
    async def test_reply_generated_sent_and_recorded(self, router, store, persona, generator, delivery):
        outcome = await router.handle_inbound(inbound("my interview is tomorrow", handle="h1"))
        assert await router.process_message(outcome.job) is True

        context = generator.generate.await_args.args[0]
        assert context.user_message == "my interview is tomorrow"
        assert context.is_new_user
        assert context.recent_messages == []
        assert context.user_status == UserStatus.FREE

        delivery.send.assert_awaited_once()
        sent_persona, number, text = delivery.send.await_args.args
        assert sent_persona.id == persona.id
        assert number == USER_NUMBER
        assert text == "hey you, how was the interview?"

        user = await store.get_user(outcome.job.user.id)
        turns = await store.get_recent_turns(user.id, 10)
        assert [t.role for t in turns] == [TurnRole.USER, TurnRole.ASSISTANT]
        assert turns[1].tokens_out == 9
        assert user.last_message_from == MessageSender.PERSONA
        assert (await store.get_persona(persona.id)).total_conversations == 1

    async def test_generation_failure_sends_fallback(self, router, store, generator, delivery):
        generator.generate.side_effect = GenerationError("upstream 529")
        outcome = await router.handle_inbound(inbound(handle="h1"))

        assert await router.process_message(outcome.job) is False
        delivery.send.assert_awaited_once()
        assert delivery.send.await_args.args[2] == FALLBACK
        turns = await store.get_recent_turns(outcome.job.user.id, 10)
        assert [t.role for t in turns] == [TurnRole.USER]

    async def test_delivery_failure_sends_fallback(self, router, delivery):
        delivery.send.side_effect = [DeliveryError("timeout"), None]
        outcome = await router.handle_inbound(inbound(handle="h1"))

        assert await router.process_message(outcome.job) is False
        assert delivery.send.await_count == 2
        assert delivery.send.await_args.args[2] == FALLBACK

    async def test_fallback_failure_is_contained(self, router, delivery):
        delivery.send.side_effect = DeliveryError("provider down")
        outcome = await router.handle_inbound(inbound(handle="h1"))
        assert await router.process_message(outcome.job) is False

    async def test_missing_hot_memory_still_replies(self, router, store, generator, delivery):
        outcome = await router.handle_inbound(inbound(handle="h1"))
        await store._db.execute("DELETE FROM hot_memories")
        await store._db.commit()

        assert await router.process_message(outcome.job) is True
        context = generator.generate.await_args.args[0]
        assert context.hot_memory_degraded
        assert context.hot_memory.core.facts == {}
        delivery.send.assert_awaited_once()

    async def test_recent_window_excludes_current_message(self, router, generator):
        await router.handle_inbound(inbound("first", handle="h1"))
        outcome = await router.handle_inbound(inbound("second", handle="h2"))
        await router.process_message(outcome.job)

        context = generator.generate.await_args.args[0]
        assert context.recent_messages == [{"role": "user", "content": "first"}]
        assert context.messages()[-1]["content"] == "second"

    async def test_queued_on_worker_pool(self, config, store, assembler, generator, delivery, persona):
        pool = WorkerPool(config.workers)
        await pool.start()
        router = MessageRouter(config, store, assembler, generator, delivery, pool=pool)
        try:
            outcome = await router.handle_inbound(inbound(handle="h1"))
            assert outcome.queued
            await pool.join()
        finally:
            await pool.stop()
        delivery.send.assert_awaited_once()
        assert pool.total_processed == 1

    async def test_refused_by_worker_pool_sends_fallback(
        self, config, store, assembler, generator, delivery, persona
    ):
        pool = WorkerPool(config.workers)  # never started
        router = MessageRouter(config, store, assembler, generator, delivery, pool=pool)

        outcome = await router.handle_inbound(inbound(handle="h1"))

        assert outcome.accepted and not outcome.queued
        assert outcome.reason == "not_queued"
        generator.generate.assert_not_awaited()
        delivery.send.assert_awaited_once()
        assert delivery.send.await_args.args[1:] == (USER_NUMBER, FALLBACK)
        assert len(await user_turns(store, outcome.job.user.id)) == 1

    async def test_same_body_sent_twice_both_answered(self, router, store, persona):
        first = InboundMessage(
            from_number=USER_NUMBER, to_number=PERSONA_NUMBER, content="ok", date_sent="2026-03-01T10:00:00Z"
        )
        second = first.model_copy(update={"date_sent": "2026-03-01T10:05:00Z"})

        assert (await router.handle_inbound(first)).accepted
        assert (await router.handle_inbound(second)).accepted
        user = await store.get_user_by_phone(USER_NUMBER, persona.id)
        assert [t.content for t in await user_turns(store, user.id)] == ["ok", "ok"]

    def test_message_without_handle_or_date_rejected(self):
        with pytest.raises(ValidationError):
            InboundMessage(from_number=USER_NUMBER, to_number=PERSONA_NUMBER, content="ok")


class TestPolicies:
    @pytest.mark.parametrize(
        "status", [UserStatus.FREE, UserStatus.HOOKED, UserStatus.CONVERTING, UserStatus.ACTIVE]
    )
    def test_full_access(self, status):
        assert select_policy(status) is full_access_policy

    @pytest.mark.parametrize("status", [UserStatus.PAUSED, UserStatus.CHURNED])
    def test_degraded_access(self, status):
        assert select_policy(status) is degraded_access_policy

    def test_unknown_status_gets_free_policy(self):
        assert select_policy("legacy") is full_access_policy

    async def test_churned_user_still_answered(self, router, store, generator, delivery):
        outcome = await router.handle_inbound(inbound(handle="h1"))
        await store.update_user(outcome.job.user.id, status=UserStatus.CHURNED)
        outcome = await router.handle_inbound(inbound("still there?", handle="h2"))

        assert await router.process_message(outcome.job) is True
        assert generator.generate.await_args.args[0].user_status == UserStatus.CHURNED
