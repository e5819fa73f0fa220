"""Tiered memory data models.

Hot tier: CoreIdentity, RelationshipState and ActiveThread, bundled as HotMemory.
Warm tier: PersonMemory, one per third party the user mentions.
Cold tier: ConversationSummary, grouped into ExpansionMonth batches.
"""

from __future__ import annotations

import re
from datetime import datetime, timezone
from enum import Enum
from typing import Any
from uuid import uuid4

from pydantic import BaseModel, Field, field_validator

from ..exceptions import InvalidCoreFieldError


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _uuid() -> str:
    return str(uuid4())


def slugify(name: str) -> str:
    return re.sub(r"[^a-z0-9]+", "-", name.strip().lower()).strip("-")


# ---------------------------------------------------------------------------
# Core identity
# ---------------------------------------------------------------------------

SCALAR = "scalar"
LIST = "list"
MAPPING = "mapping"

CORE_FIELDS: dict[str, str] = {
    "name": SCALAR,
    "age": SCALAR,
    "location": SCALAR,
    "job": MAPPING,
    "relationship_status": SCALAR,
    "living_situation": SCALAR,
    "interests": LIST,
    "values": LIST,
    "communication_style": MAPPING,
    "likes": LIST,
    "dislikes": LIST,
    "pet_peeves": LIST,
    "goals": LIST,
    "fears": LIST,
    "quirks": LIST,
}


class CoreIdentity(BaseModel):
    """Sparse, incrementally learned facts about the user.

    Stored as a mapping of recognized field name to value. A field that has
    not been learned is simply absent.
    """

    facts: dict[str, Any] = Field(default_factory=dict)
    last_updated: datetime | None = None

    @field_validator("facts")
    @classmethod
    def _known_fields_only(cls, facts: dict[str, Any]) -> dict[str, Any]:
        for key in facts:
            if key not in CORE_FIELDS:
                raise ValueError(f"unrecognized core identity field: {key!r}")
        return facts

    @staticmethod
    def _check(field: str) -> str:
        if field not in CORE_FIELDS:
            raise InvalidCoreFieldError(field)
        return CORE_FIELDS[field]

    def get(self, field: str, default: Any = None) -> Any:
        self._check(field)
        return self.facts.get(field, default)

    def set(self, field: str, value: Any, at: datetime | None = None) -> None:
        """Set a fact. ``None`` or an empty value forgets it."""
        kind = self._check(field)
        if value is None or value == "" or value == [] or value == {}:
            self.facts.pop(field, None)
        elif kind == LIST:
            items = value if isinstance(value, list) else [value]
            self.facts[field] = list(dict.fromkeys(str(i) for i in items))
        elif kind == MAPPING:
            if not isinstance(value, dict):
                raise ValueError(f"core field {field!r} expects a mapping")
            merged = {**self.facts.get(field, {}), **value}
            self.facts[field] = {k: v for k, v in merged.items() if v is not None}
        else:
            self.facts[field] = value
        self.last_updated = at or _utcnow()

    def add(self, field: str, item: str, at: datetime | None = None) -> bool:
        """Append to a list field; returns False if already present."""
        if self._check(field) != LIST:
            raise ValueError(f"core field {field!r} is not a list field")
        items = self.facts.setdefault(field, [])
        if item in items:
            return False
        items.append(item)
        self.last_updated = at or _utcnow()
        return True

    def format_for_context(self) -> str:
        parts = []
        for field in CORE_FIELDS:
            value = self.facts.get(field)
            if not value:
                continue
            label = field.replace("_", " ")
            if isinstance(value, list):
                parts.append(f"{label}: {', '.join(value)}")
            elif isinstance(value, dict):
                inner = ", ".join(f"{k}={v}" for k, v in value.items())
                parts.append(f"{label}: {inner}")
            else:
                parts.append(f"{label}: {value}")
        return "\n".join(parts)


# ---------------------------------------------------------------------------
# Relationship state
# ---------------------------------------------------------------------------


class Vibe(str, Enum):
    NEW = "new"
    FRIENDLY = "friendly"
    CLOSE = "close"
    INTIMATE = "intimate"
    DISTANT = "distant"
    TENSE = "tense"


class TrustLevel(str, Enum):
    NEW = "new"
    BUILDING = "building"
    ESTABLISHED = "established"
    DEEP = "deep"
    BROKEN = "broken"


class FlirtLevel(str, Enum):
    NONE = "none"
    LIGHT = "light"
    PLAYFUL = "playful"
    FLIRTY = "flirty"
    SPICY = "spicy"


def shift_level(level: Enum, steps: int) -> Enum:
    """Move ``steps`` positions along the enum's declared order, clamped."""
    members = list(type(level))
    index = members.index(level) + steps
    return members[max(0, min(index, len(members) - 1))]


RELATIONSHIP_NOTE_KINDS = ("inside_jokes", "boundaries_set", "highlights", "patterns_noticed")


class RelationshipState(BaseModel):
    first_contact: datetime = Field(default_factory=_utcnow)
    vibe: Vibe = Vibe.NEW
    trust_level: TrustLevel = TrustLevel.NEW
    flirt_level: FlirtLevel = FlirtLevel.NONE
    inside_jokes: list[str] = Field(default_factory=list)
    boundaries_set: list[str] = Field(default_factory=list)
    highlights: list[str] = Field(default_factory=list)
    patterns_noticed: list[str] = Field(default_factory=list)
    last_updated: datetime = Field(default_factory=_utcnow)

    def format_for_context(self) -> str:
        parts = [
            f"vibe: {self.vibe.value}",
            f"trust: {self.trust_level.value}",
            f"flirt: {self.flirt_level.value}",
        ]
        for kind in RELATIONSHIP_NOTE_KINDS:
            notes = getattr(self, kind)
            if notes:
                parts.append(f"{kind.replace('_', ' ')}: {'; '.join(notes)}")
        return "\n".join(parts)


# ---------------------------------------------------------------------------
# Active threads
# ---------------------------------------------------------------------------


class ActiveThread(BaseModel):
    """An open conversational hook worth bringing back up."""

    id: str = Field(default_factory=_uuid)
    topic: str
    prompt: str
    created_at: datetime = Field(default_factory=_utcnow)
    last_referenced: datetime | None = None
    resolved: bool = False


class HotMemory(BaseModel):
    """Always-loaded, bounded per-user state."""

    core: CoreIdentity = Field(default_factory=CoreIdentity)
    relationship: RelationshipState = Field(default_factory=RelationshipState)
    threads: list[ActiveThread] = Field(default_factory=list)

    @classmethod
    def empty(cls, at: datetime | None = None) -> "HotMemory":
        """Scaffold with nothing learned and relationship at initial levels."""
        at = at or _utcnow()
        return cls(relationship=RelationshipState(first_contact=at, last_updated=at))

    def open_threads(self) -> list[ActiveThread]:
        return [t for t in self.threads if not t.resolved]

    def format_for_context(self) -> str:
        sections = []
        core = self.core.format_for_context()
        if core:
            sections.append(f"[What you know about them]\n{core}")
        sections.append(f"[Your relationship]\n{self.relationship.format_for_context()}")
        open_threads = self.open_threads()
        if open_threads:
            lines = "\n".join(f"- {t.topic}: {t.prompt}" for t in open_threads)
            sections.append(f"[Open threads]\n{lines}")
        return "\n\n".join(sections)


# ---------------------------------------------------------------------------
# Warm and cold tiers
# ---------------------------------------------------------------------------


class Sentiment(str, Enum):
    POSITIVE = "positive"
    NEGATIVE = "negative"
    NEUTRAL = "neutral"
    COMPLICATED = "complicated"


class PersonMemory(BaseModel):
    """A third party the user has talked about."""

    slug: str
    name: str
    relationship_to_user: str = "unknown"
    key_facts: list[str] = Field(default_factory=list)
    sentiment: Sentiment = Sentiment.NEUTRAL
    first_mentioned: datetime = Field(default_factory=_utcnow)
    last_mentioned: datetime = Field(default_factory=_utcnow)
    mention_count: int = 1

    def format_for_context(self) -> str:
        line = f"{self.name} ({self.relationship_to_user}, {self.sentiment.value})"
        if self.key_facts:
            line += ": " + "; ".join(self.key_facts)
        return line


class ConversationSummary(BaseModel):
    """Immutable digest of one past conversation."""

    id: str = Field(default_factory=_uuid)
    date: datetime = Field(default_factory=_utcnow)
    summary: str
    topics: list[str] = Field(default_factory=list)
    people: list[str] = Field(default_factory=list)
    vibe: str = ""
    emotion: str = ""
    memorable_quote: str | None = None

    model_config = {"frozen": True}

    @property
    def month(self) -> str:
        return self.date.strftime("%Y-%m")

    def format_for_context(self) -> str:
        line = f"{self.date.date().isoformat()}: {self.summary}"
        if self.topics:
            line += f" (topics: {', '.join(self.topics)})"
        if self.memorable_quote:
            line += f' They said: "{self.memorable_quote}"'
        return line


class ExpansionMonth(BaseModel):
    """All conversation summaries of one calendar month."""

    month: str
    conversations: list[ConversationSummary] = Field(default_factory=list)
