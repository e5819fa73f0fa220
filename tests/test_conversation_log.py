"""Tests for the append-only conversation log."""

from persona_sms.conversation_log import ConversationLog
from persona_sms.models import TurnRole


async def test_recent_window_is_chronological(store, persona, user):
    log = ConversationLog(store)
    for i in range(15):
        role = TurnRole.USER if i % 2 == 0 else TurnRole.ASSISTANT
        await log.append(user.id, persona.id, role, f"turn {i}")

    recent = await log.recent(user.id, limit=10)
    assert [t.content for t in recent] == [f"turn {i}" for i in range(5, 15)]
    assert recent[0].role == TurnRole.ASSISTANT


async def test_recent_before_turn(store, persona, user):
    log = ConversationLog(store)
    first = await log.append(user.id, persona.id, "user", "one")
    second = await log.append(user.id, persona.id, "assistant", "two")
    await log.append(user.id, persona.id, "user", "three")

    recent = await log.recent(user.id, limit=10, before_id=second.id)
    assert [t.id for t in recent] == [first.id]
    assert await log.recent(user.id, limit=0) == []


async def test_assistant_turn_metadata(store, persona, user):
    log = ConversationLog(store)
    turn = await log.append(
        user.id, persona.id, TurnRole.ASSISTANT, "hi!", tokens_in=50, tokens_out=3, model_used="m"
    )
    stored = (await log.recent(user.id))[0]
    assert stored.id == turn.id
    assert (stored.tokens_in, stored.tokens_out, stored.model_used) == (50, 3, "m")
    assert not stored.processed_for_memory


async def test_mark_processed(store, persona, user):
    log = ConversationLog(store)
    turns = [await log.append(user.id, persona.id, "user", f"m{i}") for i in range(3)]

    assert await log.mark_processed([turns[0].id, turns[1].id]) == 2
    remaining = await log.unprocessed(user.id)
    assert [t.id for t in remaining] == [turns[2].id]
    assert await log.mark_processed([]) == 0
