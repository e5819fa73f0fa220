"""Relevance ranking for the warm and cold memory tiers.

Everything here is pure: callers hand in already-loaded records and the
pre-extracted keyword set of the current message, so ranking policy can
change without touching storage.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Iterable

from .models import ActiveThread, ConversationSummary, ExpansionMonth, PersonMemory

_WORD = re.compile(r"[a-z0-9']+")

STOPWORDS = frozenset(
    """
    a about above after again all also am an and any are as at be because been
    before being below between both but by can could did do does doing down
    during each few for from further had has have having he her here hers him
    his how i if in into is it its itself just let me more most my myself no
    nor not now of off on once only or other our ours out over own same she
    should so some such than that the their theirs them then there these they
    this those through to too under until up very was we were what when where
    which while who whom why will with would you your yours yourself
    im i'm dont don't yeah yes ok okay lol haha like really just got get gonna
    wanna thing things stuff today tonight
    """.split()
)


def extract_keywords(text: str) -> set[str]:
    """Lowercase content words of at least three characters."""
    words = _WORD.findall(text.lower())
    return {w.strip("'") for w in words if len(w) >= 3 and w not in STOPWORDS}


def _topic_keywords(topics: Iterable[str]) -> set[str]:
    keywords: set[str] = set()
    for topic in topics:
        keywords |= extract_keywords(topic)
    return keywords


def _aware(value: datetime) -> datetime:
    return value if value.tzinfo else value.replace(tzinfo=timezone.utc)


# ---------------------------------------------------------------------------
# Warm tier
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class PersonSelection:
    person: PersonMemory
    referenced: bool
    salient: bool


def is_person_referenced(person: PersonMemory, message_lower: str, keywords: set[str]) -> bool:
    """Name or a key fact of ``person`` appears in the message.

    Matches the full name as a case-insensitive substring, any capitalized
    token of the name or a key fact as a keyword, or a whole key fact as a
    substring.
    """
    if person.name and person.name.lower() in message_lower:
        return True
    for fact in person.key_facts:
        fact_lower = fact.lower().strip()
        if fact_lower and fact_lower in message_lower:
            return True
    entities = {
        token.lower()
        for text in [person.name, *person.key_facts]
        for token in re.findall(r"\b[A-Z][a-zA-Z']{2,}\b", text)
    }
    return bool(entities & keywords)


def _salience_key(person: PersonMemory) -> tuple[int, datetime]:
    return (person.mention_count, _aware(person.last_mentioned))


def select_people(
    people: list[PersonMemory],
    message: str,
    keywords: set[str],
    now: datetime,
    top_k: int = 3,
    recency_days: int = 30,
) -> list[PersonSelection]:
    """Pick the warm-tier records worth feeding into this reply.

    A person is included when referenced by the current message, or when they
    rank among the ``top_k`` most-mentioned people last mentioned within
    ``recency_days``. Ranking ties fall to the most recent ``last_mentioned``.

    Returns:
        Selections ordered by mention_count then last_mentioned, descending
    """
    message_lower = message.lower()
    cutoff = _aware(now) - timedelta(days=recency_days)

    recent = [p for p in people if _aware(p.last_mentioned) >= cutoff]
    recent.sort(key=_salience_key, reverse=True)
    salient_slugs = {p.slug for p in recent[:top_k]} if top_k > 0 else set()

    selections = []
    for person in people:
        referenced = is_person_referenced(person, message_lower, keywords)
        salient = person.slug in salient_slugs
        if referenced or salient:
            selections.append(PersonSelection(person, referenced, salient))

    selections.sort(key=lambda s: _salience_key(s.person), reverse=True)
    return selections


# ---------------------------------------------------------------------------
# Cold tier
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class SummarySelection:
    summary: ConversationSummary
    keyword_match: bool
    thread_match: bool


def select_summaries(
    months: list[ExpansionMonth],
    keywords: set[str],
    open_threads: list[ActiveThread],
    max_count: int = 3,
) -> list[SummarySelection]:
    """Pick past conversation summaries relevant to the current message.

    A summary qualifies when its topics share a keyword with the message, or
    with the topic of an unresolved thread. At most ``max_count`` are
    returned, most recent first.
    """
    if max_count <= 0:
        return []

    thread_keywords = _topic_keywords(t.topic for t in open_threads if not t.resolved)

    selections = []
    for month in months:
        for summary in month.conversations:
            topic_keywords = _topic_keywords(summary.topics)
            keyword_match = bool(topic_keywords & keywords)
            thread_match = bool(topic_keywords & thread_keywords)
            if keyword_match or thread_match:
                selections.append(SummarySelection(summary, keyword_match, thread_match))

    selections.sort(key=lambda s: _aware(s.summary.date), reverse=True)
    return selections[:max_count]
