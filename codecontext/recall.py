"""
Recall Engine
=============

Turns a free-text prompt into a ranked, de-duplicated list of memory
fragments drawn from conversations, architectural decisions and code
patterns.

This is a recency + substring heuristic, not semantic search:

1. The prompt is tokenized (punctuation stripped, lower-cased, tokens of
   length <= 2 and stop words dropped).
2. The 20 most recent conversation turns are always included.
3. For every token, up to 5 decisions (newest first) and up to 5 patterns
   (most frequent first) containing the token are added. Decisions match on
   decision and rationale; patterns on the pattern text and the stored JSON
   context, so a token such as "python" also matches the language field.
4. Fragments are de-duplicated on (kind, first 50 characters of content)
   and truncated to the recall limit (15 by default).

No relevance score is computed across fragment kinds, so the order above is
the ranking.

Usage:
    from codecontext.recall import RecallEngine

    engine = RecallEngine(store)
    fragments = await engine.recall("why does the auth token expire?")
"""

import logging
import re
from dataclasses import dataclass, asdict
from datetime import datetime
from enum import Enum
from typing import Callable, Iterable, Optional, TypeVar

from codecontext.project_memory import ProjectMemoryStore

logger = logging.getLogger(__name__)

T = TypeVar("T")

RECENT_TURN_LIMIT = 20
PER_TERM_LIMIT = 5
DEDUP_PREFIX_LENGTH = 50
MIN_TERM_LENGTH = 3

STOP_WORDS = frozenset({
    "the", "and", "for", "are", "you", "can", "how", "what", "why", "when", "where",
})

_PUNCTUATION = re.compile(r"[^\w\s]")


class FragmentKind(Enum):
    CONVERSATION = "conversation"
    DECISION = "decision"
    PATTERN = "pattern"


@dataclass
class MemoryFragment:
    """A single piece of recalled memory."""
    kind: str                               # FragmentKind value
    content: str
    timestamp: Optional[datetime] = None
    ai_assistant: Optional[str] = None      # conversations
    rationale: Optional[str] = None         # decisions
    context: Optional[str] = None           # patterns
    language: Optional[str] = None          # patterns
    frequency: Optional[int] = None         # patterns

    def to_dict(self) -> dict:
        data = {k: v for k, v in asdict(self).items() if v is not None}
        if self.timestamp is not None:
            data["timestamp"] = self.timestamp.isoformat()
        return data


def extract_search_terms(text: str) -> list[str]:
    """
    Extract meaningful search terms from free text.

    Returns unique terms in first-seen order.
    """
    cleaned = _PUNCTUATION.sub(" ", text.lower())
    terms: list[str] = []
    for term in cleaned.split():
        if len(term) < MIN_TERM_LENGTH or term in STOP_WORDS:
            continue
        if term not in terms:
            terms.append(term)
    return terms


def dedup_key(kind: str, content: Optional[str]) -> tuple[str, str]:
    return kind, (content or "")[:DEDUP_PREFIX_LENGTH]


def deduplicate_by(items: Iterable[T], key: Callable[[T], tuple[str, Optional[str]]]) -> list[T]:
    """
    Keep the first item for each (kind, content prefix) key.

    ``key`` returns the item's kind and full content; only the first 50
    characters of the content take part in the comparison.
    """
    seen: set[tuple[str, str]] = set()
    unique: list[T] = []
    for item in items:
        marker = dedup_key(*key(item))
        if marker in seen:
            continue
        seen.add(marker)
        unique.append(item)
    return unique


def deduplicate(fragments: Iterable[MemoryFragment]) -> list[MemoryFragment]:
    return deduplicate_by(fragments, key=lambda f: (f.kind, f.content))


def contains_term(term: str, *texts: Optional[str]) -> bool:
    """Case-insensitive substring containment over any of ``texts``."""
    return any(term in (text or "").lower() for text in texts)


class RecallEngine:
    """
    Recalls project memory relevant to a prompt.

    The engine only reads through the ProjectMemoryStore it is given.
    """

    def __init__(self, store: ProjectMemoryStore, limit: Optional[int] = None):
        self.store = store
        self.limit = limit if limit is not None else store.config.recall_limit

    async def recall(self, prompt: str) -> list[MemoryFragment]:
        """
        Recall memory fragments for a prompt.

        Args:
            prompt: Free text from the chat front end

        Returns:
            Up to ``limit`` fragments: recent conversation turns first, then
            matching decisions, then matching patterns.
        """
        terms = extract_search_terms(prompt)
        fragments: list[MemoryFragment] = []

        for conversation, message in await self.store.get_recent_turns(RECENT_TURN_LIMIT):
            fragments.append(MemoryFragment(
                kind=FragmentKind.CONVERSATION.value,
                content=f"{message.role}: {message.content}",
                timestamp=conversation.timestamp,
                ai_assistant=conversation.ai_assistant,
            ))

        if terms:
            decisions = await self.store.get_decisions()
            for term in terms:
                matches = [d for d in decisions if contains_term(term, d.decision, d.rationale)]
                for decision in matches[:PER_TERM_LIMIT]:
                    fragments.append(MemoryFragment(
                        kind=FragmentKind.DECISION.value,
                        content=decision.decision,
                        rationale=decision.rationale,
                        timestamp=decision.timestamp,
                    ))

            patterns = await self.store.get_patterns()
            for term in terms:
                # The context blob is matched as stored JSON text, keys included
                matches = [p for p in patterns if contains_term(term, p.pattern, p.context)]
                for pattern in matches[:PER_TERM_LIMIT]:
                    fragments.append(MemoryFragment(
                        kind=FragmentKind.PATTERN.value,
                        content=pattern.pattern,
                        context=pattern.context_data.get("context"),
                        language=pattern.language,
                        frequency=pattern.frequency,
                    ))

        unique = deduplicate(fragments)
        logger.debug(
            "Recall for %d terms: %d candidates, %d unique", len(terms), len(fragments), len(unique)
        )
        return unique[:self.limit]
