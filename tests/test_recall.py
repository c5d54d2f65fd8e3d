"""
Tests for the Recall Engine
===========================

Tests for recall.py - term extraction, de-duplication and the
recency + substring recall ordering.
"""

import pytest
import pytest_asyncio

from codecontext.config import MemoryConfig
from codecontext.project_memory import ProjectMemoryStore
from codecontext.recall import (
    FragmentKind,
    MemoryFragment,
    RecallEngine,
    deduplicate,
    extract_search_terms,
)


@pytest_asyncio.fixture
async def store(temp_project, clock):
    store = ProjectMemoryStore(temp_project, config=MemoryConfig(), clock=clock)
    await store.initialize()
    yield store
    await store.close()


async def _seed_conversations(store, clock, count: int) -> None:
    for i in range(count):
        clock.advance(seconds=1)
        await store.store_conversation(f"question number {i}", f"answer number {i}", ai_provider="claude")


# =============================================================================
# Term Extraction
# =============================================================================

class TestExtractSearchTerms:
    """Tests for prompt tokenization."""

    def test_strips_punctuation_and_case(self):
        assert extract_search_terms("Why does Auth-Token expire?!") == ["does", "auth", "token", "expire"]

    def test_drops_short_tokens_and_stop_words(self):
        """Tokens of length <= 2 and stop words are discarded."""
        assert extract_search_terms("how can you fix the db on a VM and the cache") == ["fix", "cache"]

    def test_unique_in_first_seen_order(self):
        assert extract_search_terms("cache miss cache hit miss") == ["cache", "miss", "hit"]

    def test_empty_prompt(self):
        assert extract_search_terms("?? ... !!") == []


class TestDeduplicate:
    """Tests for (kind, content prefix) de-duplication."""

    def test_same_prefix_same_kind_collapses(self):
        prefix = "x" * 50
        fragments = [
            MemoryFragment(kind="decision", content=prefix + " first tail"),
            MemoryFragment(kind="decision", content=prefix + " second tail"),
        ]
        assert len(deduplicate(fragments)) == 1
        assert deduplicate(fragments)[0].content.endswith("first tail")

    def test_different_kinds_kept(self):
        fragments = [
            MemoryFragment(kind="decision", content="Use Redis"),
            MemoryFragment(kind="pattern", content="Use Redis"),
        ]
        assert len(deduplicate(fragments)) == 2

    def test_to_dict_omits_empty_fields(self):
        data = MemoryFragment(kind="pattern", content="x", frequency=2).to_dict()
        assert data == {"kind": "pattern", "content": "x", "frequency": 2}


# =============================================================================
# Recall
# =============================================================================

class TestRecall:
    """Tests for RecallEngine.recall."""

    @pytest.mark.asyncio
    async def test_recent_turns_always_included(self, store, clock):
        """The 20 most recent turns are recalled even if no token matches."""
        await _seed_conversations(store, clock, 12)

        fragments = await RecallEngine(store, limit=50).recall("authentication bug")

        assert len(fragments) == 20
        assert all(f.kind == FragmentKind.CONVERSATION.value for f in fragments)
        # Newest conversation first, its turns in recorded order
        assert fragments[0].content == "user: question number 11"
        assert fragments[1].content == "assistant: answer number 11"
        assert fragments[-1].content == "assistant: answer number 2"

    @pytest.mark.asyncio
    async def test_default_limit_truncates(self, store, clock):
        """Results are truncated to the configured recall limit."""
        await _seed_conversations(store, clock, 12)

        fragments = await RecallEngine(store).recall("anything")
        assert len(fragments) == 15

    @pytest.mark.asyncio
    async def test_stored_pattern_is_recalled_by_context_token(self, store):
        """A token from a pattern's context surfaces that pattern."""
        await store.store_code_pattern(
            "for attempt in range(3): ...", "python", "exponential backoff for flaky network", True
        )

        fragments = await RecallEngine(store).recall("Need a backoff strategy")

        patterns = [f for f in fragments if f.kind == FragmentKind.PATTERN.value]
        assert len(patterns) == 1
        assert patterns[0].content == "for attempt in range(3): ..."
        assert patterns[0].language == "python"
        assert patterns[0].frequency == 1
        assert patterns[0].context == "exponential backoff for flaky network"

    @pytest.mark.asyncio
    async def test_matches_stored_context_text(self, store):
        """Matching runs over the stored JSON text, field names and values alike."""
        await store.store_code_pattern("x = 1", "python", "assignment", True)
        await store.store_code_pattern("let y = 2", "rust", "binding", False)

        by_language = await RecallEngine(store).recall("python")
        by_key = await RecallEngine(store).recall("language")

        assert [f.content for f in by_language] == ["x = 1"]
        assert sorted(f.content for f in by_key) == ["let y = 2", "x = 1"]

    @pytest.mark.asyncio
    async def test_non_ascii_context_is_searchable(self, store):
        await store.store_code_pattern("fetch(url)", "javascript", "récupération réseau", True)

        fragments = await RecallEngine(store).recall("récupération")
        assert [f.content for f in fragments] == ["fetch(url)"]

    @pytest.mark.asyncio
    async def test_decisions_match_rationale_newest_first(self, store, clock):
        """Decisions matching a token are recalled newest first, at most 5 per token."""
        for i in range(7):
            clock.advance(minutes=1)
            await store.record_architectural_decision(f"Decision {i}", rationale="improves caching")
        await store.record_architectural_decision("Unrelated", rationale="nothing here")

        fragments = await RecallEngine(store).recall("caching")

        assert [f.content for f in fragments] == [f"Decision {i}" for i in (6, 5, 4, 3, 2)]
        assert all(f.rationale == "improves caching" for f in fragments)

    @pytest.mark.asyncio
    async def test_ordering_conversations_decisions_patterns(self, store, clock):
        """Conversations come first, then decisions, then patterns."""
        await store.store_code_pattern("redis.get(key)", "python", "redis cache lookup", True)
        await store.record_architectural_decision("Adopt Redis", rationale="shared cache")
        clock.advance(seconds=1)
        await store.store_conversation("tell me about redis", "it is a cache", ai_provider="claude")

        fragments = await RecallEngine(store).recall("redis")

        assert [f.kind for f in fragments] == ["conversation", "conversation", "decision", "pattern"]
        assert fragments[0].ai_assistant == "claude"

    @pytest.mark.asyncio
    async def test_duplicates_across_tokens_removed(self, store):
        """A decision matched by two tokens appears once."""
        await store.record_architectural_decision("Use Postgres replicas", rationale="read scaling")

        fragments = await RecallEngine(store).recall("postgres replicas")
        assert len(fragments) == 1

    @pytest.mark.asyncio
    async def test_patterns_limited_per_token(self, store):
        """At most 5 patterns are taken for each token."""
        for i in range(8):
            await store.store_code_pattern(f"retry variant {i}", "go", "retry loop", True)

        fragments = await RecallEngine(store).recall("retry")

        assert [f.content for f in fragments] == [f"retry variant {i}" for i in range(5)]

    @pytest.mark.asyncio
    async def test_empty_store(self, store):
        assert await RecallEngine(store).recall("anything at all") == []
