"""Context assembler.

Builds the per-reply GenerationContext from the memory tiers and the recent
conversation window, keeping it within a fixed token budget.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import TYPE_CHECKING

from loguru import logger

from ..config import ContextConfig
from ..models import Persona, User, UserStatus
from .models import ConversationSummary, HotMemory, PersonMemory
from .selection import PersonSelection, SummarySelection, extract_keywords, select_people, select_summaries
from .token_counter import TokenCounter

if TYPE_CHECKING:
    from ..conversation_log import ConversationLog
    from .store import MemoryStore


@dataclass
class GenerationContext:
    """Ephemeral input to one reply generation.

    ``hot_memory`` and ``recent_messages`` are never trimmed; ``people`` and
    ``conversations`` are whatever survived the budget.
    """

    system_prompt: str
    hot_memory: HotMemory
    user_message: str
    user_status: UserStatus
    people: list[PersonMemory] = field(default_factory=list)
    conversations: list[ConversationSummary] = field(default_factory=list)
    recent_messages: list[dict] = field(default_factory=list)
    is_new_user: bool = False
    hot_memory_degraded: bool = False

    token_count: int = 0
    budget_tokens: int = 0
    over_budget: bool = False
    dropped_people: int = 0
    dropped_conversations: int = 0

    def system_content(self) -> str:
        """Persona prompt followed by every memory tier."""
        parts = [self.system_prompt]

        hot = self.hot_memory.format_for_context()
        if hot:
            parts.append(hot)

        if self.people:
            lines = "\n".join(f"- {p.format_for_context()}" for p in self.people)
            parts.append(f"[People in their life]\n{lines}")

        if self.conversations:
            lines = "\n".join(f"- {c.format_for_context()}" for c in self.conversations)
            parts.append(f"[Past conversations]\n{lines}")

        return "\n\n".join(parts)

    def messages(self) -> list[dict]:
        """Recent window followed by the current user message."""
        return [*self.recent_messages, {"role": "user", "content": self.user_message}]


class ContextAssembler:
    """Assembles GenerationContext objects within a token budget.

    Trimming order when warm and cold selections do not fit:
    1. Cold summaries, oldest selected first
    2. Warm people, lowest mention_count first

    The persona prompt, hot memory, recent window and current message are
    never trimmed.
    """

    def __init__(
        self,
        token_counter: TokenCounter,
        config: ContextConfig | None = None,
        memory_store: "MemoryStore | None" = None,
        conversation_log: "ConversationLog | None" = None,
    ):
        """Initialize context assembler.

        Args:
            token_counter: Token counter for text measurement
            config: Selection bounds and budget (defaults to ContextConfig)
            memory_store: Source of hot, warm and cold memory for build()
            conversation_log: Source of the recent window for build()
        """
        self.token_counter = token_counter
        self.config = config or ContextConfig()
        self.memory_store = memory_store
        self.conversation_log = conversation_log

        logger.debug(
            f"ContextAssembler initialized: budget={self.config.budget_tokens}tok, "
            f"warm_top_k={self.config.warm_top_k}, cold_max={self.config.cold_max}, "
            f"recent_window={self.config.recent_window}"
        )

    def measure(self, ctx: GenerationContext) -> int:
        """Token size of a context as it will be handed to generation."""
        return self.token_counter.count(ctx.system_content()) + self.token_counter.count_messages(
            ctx.messages()
        )

    def assemble(
        self,
        system_prompt: str,
        hot_memory: HotMemory,
        user_message: str,
        user_status: UserStatus,
        people: list[PersonSelection] | None = None,
        conversations: list[SummarySelection] | None = None,
        recent_messages: list[dict] | None = None,
        is_new_user: bool = False,
    ) -> GenerationContext:
        """Combine selected memory into a context that fits the budget.

        Args:
            system_prompt: Persona personality prompt
            hot_memory: Full hot memory snapshot
            user_message: Current inbound message
            user_status: Lifecycle status, passed through unchanged
            people: Warm selections, highest mention_count first
            conversations: Cold selections, most recent first
            recent_messages: Chronological recent window
            is_new_user: Whether this is the first exchange

        Returns:
            GenerationContext within ``budget_tokens`` unless the untrimmable
            parts alone exceed it, in which case ``over_budget`` is set
        """
        budget = self.config.budget_tokens
        ctx = GenerationContext(
            system_prompt=system_prompt,
            hot_memory=hot_memory,
            user_message=user_message,
            user_status=user_status,
            people=[s.person for s in people or []],
            conversations=[s.summary for s in conversations or []],
            recent_messages=list(recent_messages or []),
            is_new_user=is_new_user,
            budget_tokens=budget,
        )

        used = self.measure(ctx)
        while used > budget and ctx.conversations:
            ctx.conversations.pop()
            ctx.dropped_conversations += 1
            used = self.measure(ctx)

        if used > budget and ctx.people:
            ctx.people.sort(
                key=lambda p: (p.mention_count, p.last_mentioned.timestamp()),
                reverse=True,
            )
        while used > budget and ctx.people:
            ctx.people.pop()
            ctx.dropped_people += 1
            used = self.measure(ctx)

        ctx.token_count = used
        ctx.over_budget = used > budget

        if ctx.over_budget:
            logger.warning(
                f"Context exceeds budget with only untrimmable parts: "
                f"{used}/{budget} tokens"
            )
        elif ctx.dropped_conversations or ctx.dropped_people:
            logger.info(
                f"Context trimmed to budget: dropped "
                f"{ctx.dropped_conversations} summaries, {ctx.dropped_people} people"
            )

        logger.debug(
            f"Context assembled: people={len(ctx.people)}, "
            f"conversations={len(ctx.conversations)}, "
            f"recent={len(ctx.recent_messages)}, total={used}/{budget} "
            f"({used / budget * 100:.1f}%)"
        )
        return ctx

    async def build(
        self,
        persona: Persona,
        user: User,
        user_message: str,
        before_turn_id: int | None = None,
        is_new_user: bool = False,
        now: datetime | None = None,
    ) -> GenerationContext:
        """Load every tier for ``user`` and assemble the reply context.

        A missing or unreadable hot memory degrades to an empty scaffold
        instead of failing the request.
        """
        if self.memory_store is None or self.conversation_log is None:
            raise RuntimeError("ContextAssembler.build() needs a memory store and conversation log")

        now = now or datetime.now(timezone.utc)
        degraded = False
        try:
            hot_memory = await self.memory_store.load_hot_memory(persona.id, user.id)
        except Exception as e:
            logger.warning(
                f"Hot memory unavailable for user={user.id} persona={persona.id}, "
                f"continuing with empty memory: {e}"
            )
            hot_memory = HotMemory.empty(now)
            degraded = True

        keywords = extract_keywords(user_message)

        people_records = await self.memory_store.list_people(persona.id, user.id)
        people = select_people(
            people_records,
            user_message,
            keywords,
            now=now,
            top_k=self.config.warm_top_k,
            recency_days=self.config.warm_recency_days,
        )

        months = await self.memory_store.load_expansion_months(
            persona.id, user.id, months=self.config.cold_months, now=now
        )
        conversations = select_summaries(
            months,
            keywords,
            hot_memory.open_threads(),
            max_count=self.config.cold_max,
        )

        turns = await self.conversation_log.recent(
            user.id, limit=self.config.recent_window, before_id=before_turn_id
        )

        ctx = self.assemble(
            system_prompt=persona.personality_prompt,
            hot_memory=hot_memory,
            user_message=user_message,
            user_status=user.status,
            people=people,
            conversations=conversations,
            recent_messages=[t.to_chat_message() for t in turns],
            is_new_user=is_new_user,
        )
        ctx.hot_memory_degraded = degraded
        return ctx
