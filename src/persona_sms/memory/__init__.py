"""
Tiered per-user memory.

Hot memory (identity, relationship state, open threads) is loaded for every
reply; warm (people) and cold (monthly conversation summaries) memory are
selected by relevance and trimmed to a token budget.
"""

from .models import (
    ActiveThread,
    ConversationSummary,
    CoreIdentity,
    ExpansionMonth,
    FlirtLevel,
    HotMemory,
    PersonMemory,
    RelationshipState,
    Sentiment,
    TrustLevel,
    Vibe,
)
from .token_counter import TokenCounter
from .selection import extract_keywords, select_people, select_summaries
from .context_assembler import ContextAssembler, GenerationContext
from .store import MemoryStore

__all__ = [
    "ActiveThread",
    "ConversationSummary",
    "CoreIdentity",
    "ExpansionMonth",
    "FlirtLevel",
    "HotMemory",
    "PersonMemory",
    "RelationshipState",
    "Sentiment",
    "TrustLevel",
    "Vibe",
    "TokenCounter",
    "extract_keywords",
    "select_people",
    "select_summaries",
    "ContextAssembler",
    "GenerationContext",
    "MemoryStore",
]
