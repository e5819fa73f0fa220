"""Memory Store: per-(persona, user) hot, warm and cold memory.

Wraps the SQLite backend with the memory data model. Hot memory is a single
document read in full for every reply; people and summaries are rows.
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Callable

from loguru import logger

from ..exceptions import HotMemoryMissingError, MemoryInitializationError
from ..models import User
from ..storage.sqlite_store import SQLiteStore
from .models import (
    RELATIONSHIP_NOTE_KINDS,
    ActiveThread,
    ConversationSummary,
    ExpansionMonth,
    FlirtLevel,
    HotMemory,
    PersonMemory,
    Sentiment,
    TrustLevel,
    Vibe,
    shift_level,
    slugify,
)

_LEVEL_TYPES = {"vibe": Vibe, "trust_level": TrustLevel, "flirt_level": FlirtLevel}


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _hot_document(hot: HotMemory) -> dict:
    return {
        "core": hot.core.model_dump(mode="json"),
        "relationship": hot.relationship.model_dump(mode="json"),
        "threads": [t.model_dump(mode="json") for t in hot.threads],
    }


def month_keys(now: datetime, count: int) -> list[str]:
    """``count`` calendar months ending at ``now``'s month, newest first."""
    year, month = now.year, now.month
    keys = []
    for _ in range(count):
        keys.append(f"{year:04d}-{month:02d}")
        month -= 1
        if month == 0:
            year, month = year - 1, 12
    return keys


class MemoryStore:
    """Read and write operations over the three memory tiers."""

    def __init__(self, store: SQLiteStore):
        self._store = store

    # ------------------------------------------------------------------
    # Bootstrap
    # ------------------------------------------------------------------

    async def initialize_user_memory(
        self, persona_id: str, user_id: str, at: datetime | None = None
    ) -> None:
        """Create the empty hot memory scaffold and mark the user initialized.

        Running it again never overwrites existing memory. The user's
        ``memory_initialized`` flag is set only after the scaffold is stored.

        Raises:
            MemoryInitializationError: If either step fails
        """
        try:
            created = await self._store.put_hot_memory(
                persona_id, user_id, _hot_document(HotMemory.empty(at)), only_if_absent=True
            )
            await self._store.update_user(user_id, memory_initialized=True)
        except Exception as e:
            raise MemoryInitializationError(persona_id, user_id, str(e)) from e

        if created:
            logger.info(f"Memory initialized for user {user_id} (persona {persona_id})")
        else:
            logger.debug(f"Memory already present for user {user_id}, left untouched")

    async def ensure_initialized(self, user: User) -> bool:
        """Bootstrap memory if the user's flag is unset; False on failure."""
        if user.memory_initialized:
            return True
        try:
            await self.initialize_user_memory(user.persona_id, user.id)
        except MemoryInitializationError as e:
            logger.error(f"{e} (stage=memory_init)")
            return False
        user.memory_initialized = True
        return True

    # ------------------------------------------------------------------
    # Hot tier
    # ------------------------------------------------------------------

    async def load_hot_memory(self, persona_id: str, user_id: str) -> HotMemory:
        """Load the full hot memory.

        Raises:
            HotMemoryMissingError: If no scaffold exists for the pair
        """
        document = await self._store.get_hot_memory(persona_id, user_id)
        if document is None:
            raise HotMemoryMissingError(persona_id, user_id)
        return HotMemory.model_validate(document)

    async def save_hot_memory(self, persona_id: str, user_id: str, hot: HotMemory) -> None:
        await self._store.put_hot_memory(persona_id, user_id, _hot_document(hot))

    async def _mutate_hot(
        self, persona_id: str, user_id: str, change: Callable[[HotMemory], Any]
    ) -> Any:
        async with self._store.transaction():
            hot = await self.load_hot_memory(persona_id, user_id)
            result = change(hot)
            await self.save_hot_memory(persona_id, user_id, hot)
        return result

    async def set_core_fact(self, persona_id: str, user_id: str, field: str, value: Any) -> None:
        """Set (or with ``None``, forget) a recognized core identity field."""
        await self._mutate_hot(persona_id, user_id, lambda hot: hot.core.set(field, value))
        logger.debug(f"Core fact set for user {user_id}: {field}")

    async def add_core_fact(self, persona_id: str, user_id: str, field: str, item: str) -> bool:
        """Append to a list-valued core field; False if already known."""
        return await self._mutate_hot(persona_id, user_id, lambda hot: hot.core.add(field, item))

    async def move_relationship(
        self,
        persona_id: str,
        user_id: str,
        vibe: Vibe | str | None = None,
        trust_level: TrustLevel | str | None = None,
        flirt_level: FlirtLevel | str | None = None,
    ) -> HotMemory:
        """Explicitly set relationship levels. Unspecified levels are kept."""
        requested = {"vibe": vibe, "trust_level": trust_level, "flirt_level": flirt_level}

        def change(hot: HotMemory) -> HotMemory:
            for name, value in requested.items():
                if value is not None:
                    setattr(hot.relationship, name, _LEVEL_TYPES[name](value))
            hot.relationship.last_updated = _utcnow()
            return hot

        hot = await self._mutate_hot(persona_id, user_id, change)
        logger.info(
            f"Relationship moved for user {user_id}: vibe={hot.relationship.vibe.value}, "
            f"trust={hot.relationship.trust_level.value}, "
            f"flirt={hot.relationship.flirt_level.value}"
        )
        return hot

    async def shift_relationship(
        self, persona_id: str, user_id: str, dimension: str, steps: int
    ) -> HotMemory:
        """Move one relationship level ``steps`` positions along its order."""
        if dimension not in _LEVEL_TYPES:
            raise ValueError(f"Unknown relationship dimension: {dimension!r}")

        def change(hot: HotMemory) -> HotMemory:
            current = getattr(hot.relationship, dimension)
            setattr(hot.relationship, dimension, shift_level(current, steps))
            hot.relationship.last_updated = _utcnow()
            return hot

        return await self._mutate_hot(persona_id, user_id, change)

    async def add_relationship_note(
        self, persona_id: str, user_id: str, kind: str, text: str
    ) -> bool:
        """Add an inside joke, boundary, highlight or noticed pattern."""
        if kind not in RELATIONSHIP_NOTE_KINDS:
            raise ValueError(f"Unknown relationship note kind: {kind!r}")

        def change(hot: HotMemory) -> bool:
            notes = getattr(hot.relationship, kind)
            if text in notes:
                return False
            notes.append(text)
            hot.relationship.last_updated = _utcnow()
            return True

        return await self._mutate_hot(persona_id, user_id, change)

    async def open_thread(
        self, persona_id: str, user_id: str, topic: str, prompt: str
    ) -> ActiveThread:
        thread = ActiveThread(topic=topic, prompt=prompt)

        def change(hot: HotMemory) -> ActiveThread:
            hot.threads.append(thread)
            return thread

        await self._mutate_hot(persona_id, user_id, change)
        logger.debug(f"Thread opened for user {user_id}: {topic}")
        return thread

    async def touch_thread(
        self, persona_id: str, user_id: str, thread_id: str, resolve: bool = False
    ) -> ActiveThread | None:
        """Mark a thread referenced, and optionally resolved.

        Returns:
            The updated thread, or None if the id is unknown
        """

        def change(hot: HotMemory) -> ActiveThread | None:
            for thread in hot.threads:
                if thread.id == thread_id:
                    thread.last_referenced = _utcnow()
                    thread.resolved = thread.resolved or resolve
                    return thread
            return None

        return await self._mutate_hot(persona_id, user_id, change)

    # ------------------------------------------------------------------
    # Warm tier
    # ------------------------------------------------------------------

    async def record_person_mention(
        self,
        persona_id: str,
        user_id: str,
        name: str,
        relationship_to_user: str | None = None,
        facts: list[str] | None = None,
        sentiment: Sentiment | str | None = None,
        at: datetime | None = None,
    ) -> PersonMemory:
        """Create a person on first mention, or fold a new mention in."""
        at = at or _utcnow()
        if at.tzinfo is None:
            at = at.replace(tzinfo=timezone.utc)
        slug = slugify(name)
        async with self._store.transaction():
            existing = await self._store.get_person(persona_id, user_id, slug)
            if existing is None:
                person = PersonMemory(
                    slug=slug,
                    name=name,
                    relationship_to_user=relationship_to_user or "unknown",
                    key_facts=list(dict.fromkeys(facts or [])),
                    sentiment=Sentiment(sentiment) if sentiment else Sentiment.NEUTRAL,
                    first_mentioned=at,
                    last_mentioned=at,
                    mention_count=1,
                )
            else:
                person = PersonMemory.model_validate(existing)
                for fact in facts or []:
                    if fact not in person.key_facts:
                        person.key_facts.append(fact)
                if relationship_to_user:
                    person.relationship_to_user = relationship_to_user
                if sentiment:
                    person.sentiment = Sentiment(sentiment)
                if at > person.last_mentioned:
                    person.last_mentioned = at
                person.mention_count += 1
            await self._store.put_person(persona_id, user_id, person.model_dump(mode="json"))

        logger.debug(
            f"Person mention recorded for user {user_id}: {slug} "
            f"(count={person.mention_count})"
        )
        return person

    async def list_people(self, persona_id: str, user_id: str) -> list[PersonMemory]:
        rows = await self._store.get_people(persona_id, user_id)
        return [PersonMemory.model_validate(r) for r in rows]

    # ------------------------------------------------------------------
    # Cold tier
    # ------------------------------------------------------------------

    async def append_summary(
        self, persona_id: str, user_id: str, summary: ConversationSummary
    ) -> str:
        document = summary.model_dump(mode="json")
        document["month"] = summary.month
        return await self._store.insert_summary(persona_id, user_id, document)

    async def load_expansion_months(
        self,
        persona_id: str,
        user_id: str,
        months: int = 6,
        now: datetime | None = None,
    ) -> list[ExpansionMonth]:
        """Summaries of the last ``months`` calendar months, newest month first."""
        keys = month_keys(now or _utcnow(), months)
        rows = await self._store.get_summaries(persona_id, user_id, keys)

        grouped: dict[str, list[ConversationSummary]] = {key: [] for key in keys}
        for row in rows:
            grouped[row["month"]].append(ConversationSummary.model_validate(row))

        return [
            ExpansionMonth(month=key, conversations=items)
            for key, items in grouped.items()
            if items
        ]
