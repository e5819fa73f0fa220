"""Append-only log of raw conversation turns."""

from __future__ import annotations

from loguru import logger

from .models import ConversationTurn, TurnRole
from .storage.sqlite_store import SQLiteStore


class ConversationLog:
    """Ordered (role, content) turns per user.

    Turns are never edited except for the ``processed_for_memory`` flag set
    by the consolidation process.
    """

    def __init__(self, store: SQLiteStore):
        self._store = store

    async def append(
        self,
        user_id: str,
        persona_id: str,
        role: TurnRole | str,
        content: str,
        tokens_in: int | None = None,
        tokens_out: int | None = None,
        model_used: str | None = None,
    ) -> ConversationTurn:
        turn = ConversationTurn(
            user_id=user_id,
            persona_id=persona_id,
            role=TurnRole(role),
            content=content,
            tokens_in=tokens_in,
            tokens_out=tokens_out,
            model_used=model_used,
        )
        turn.id = await self._store.insert_turn(turn)
        logger.debug(f"Turn logged: user={user_id} role={turn.role.value} id={turn.id}")
        return turn

    async def recent(
        self, user_id: str, limit: int = 10, before_id: int | None = None
    ) -> list[ConversationTurn]:
        """The last ``limit`` turns in chronological order.

        Args:
            before_id: Only consider turns logged before this one
        """
        return await self._store.get_recent_turns(user_id, limit, before_id)

    async def unprocessed(self, user_id: str, limit: int = 100) -> list[ConversationTurn]:
        """Turns not yet folded into memory, oldest first."""
        return await self._store.get_unprocessed_turns(user_id, limit)

    async def mark_processed(self, turn_ids: list[int]) -> int:
        count = await self._store.mark_turns_processed(turn_ids)
        logger.debug(f"Marked {count} turns processed for memory")
        return count
