"""
Tests for the reflection engine. Uses the deterministic hash embedder,
so no model download is needed.
"""

import os
import sqlite3
import tempfile
from datetime import datetime, timedelta, timezone

import pytest

from mams.embeddings import HashEmbedder
from mams.models import LinkType, ReflectionRequest
from mams.reflection import (
    DEGRADED_INSIGHT, DEGRADED_RECOMMENDATION, ReflectionEngine,
    confidence_score, jaccard_similarity,
)
from mams.errors import ValidationError
from mams.system import MemorySystem

SIMILAR_A = "the quick brown fox jumps over the lazy dog"
SIMILAR_B = "the quick brown fox jumps over the lazy cat"


class FakeClock:
    def __init__(self):
        self.now = datetime(2025, 1, 1, tzinfo=timezone.utc)

    def __call__(self):
        return self.now

    def advance(self, hours: float):
        self.now += timedelta(hours=hours)


def _fresh(clock=None):
    tmp = tempfile.mkdtemp()
    return MemorySystem(db_path=os.path.join(tmp, "test.db"), embedder=HashEmbedder(64), clock=clock)


def _request(scope, depth="medium", focus=None):
    return ReflectionRequest.create(scope, depth, focus)


# ── Jaccard ───────────────────────────────────────────────

def test_jaccard_of_cat_sentences():
    # {cat, on, mat} shared out of 7 distinct tokens
    assert jaccard_similarity("the cat sat on the mat", "a cat sits on a mat") == pytest.approx(3 / 7)


def test_jaccard_case_folds_and_handles_empty():
    assert jaccard_similarity("Hello World", "hello world") == 1.0
    assert jaccard_similarity("", "") == 0.0
    assert jaccard_similarity(SIMILAR_A, SIMILAR_B) == pytest.approx(7 / 9)


# ── Requests ──────────────────────────────────────────────

def test_request_validation():
    with pytest.raises(ValidationError):
        ReflectionRequest.create([], "medium")
    with pytest.raises(ValidationError):
        ReflectionRequest.create(["semantic_stm", "nowhere"], "medium")
    with pytest.raises(ValidationError):
        ReflectionRequest.create(["semantic_stm"], "profound")


# ── Connection discovery ──────────────────────────────────

def test_dissimilar_pair_produces_no_link():
    system = _fresh()
    system.remember("episodic_stm", "the cat sat on the mat", source="chat")
    system.remember("episodic_stm", "a cat sits on a mat", source="chat")

    result = system.reflection.generate(_request(["episodic_stm"]), "conductor")

    assert result.new_connections == []
    assert system.links.count() == 0


def test_similar_pair_produces_semantic_link():
    system = _fresh()
    a = system.remember("episodic_stm", SIMILAR_A, source="chat")
    b = system.remember("episodic_stm", SIMILAR_B, source="chat")

    result = system.reflection.generate(_request(["episodic_stm"]), "conductor")

    assert len(result.new_connections) == 1
    link = result.new_connections[0]
    assert link.link_type == LinkType.SEMANTIC
    assert link.strength == pytest.approx(7 / 9)
    assert {link.source_id, link.target_id} == {a.id, b.id}
    assert link.metadata["discovered_by"] == "reflection_engine"
    assert system.links.count() == 1


def test_rerun_never_duplicates_a_pair():
    system = _fresh()
    system.remember("episodic_stm", SIMILAR_A, source="chat")
    system.remember("episodic_stm", SIMILAR_B, source="chat")

    system.reflection.generate(_request(["episodic_stm"]), "conductor")
    second = system.reflection.generate(_request(["episodic_stm"]), "conductor")

    assert second.new_connections == []
    assert system.links.count() == 1


def test_candidates_only_when_not_persisting():
    system = _fresh()
    system.remember("episodic_stm", SIMILAR_A, source="chat")
    system.remember("episodic_stm", SIMILAR_B, source="chat")
    engine = ReflectionEngine(system.store, system.links, persist_links=False)

    chunks = engine.gather(["episodic_stm"])
    candidates = engine.discover_connections(chunks)

    assert len(candidates) == 1
    assert candidates[0].id is None
    assert system.links.count() == 0


def test_comparison_window_limits_pairs():
    system = _fresh()
    system.remember("semantic_stm", SIMILAR_A, source="chat")
    for i in range(3):
        system.remember("semantic_stm", f"unrelated filler number {i}", source="chat")
    system.remember("semantic_stm", SIMILAR_B, source="chat")
    chunks = system.store.get_chunks_from_bucket("semantic_stm", limit=10)
    first = next(c for c in chunks if c.text == SIMILAR_A)
    last = next(c for c in chunks if c.text == SIMILAR_B)
    ordered = [first] + [c for c in chunks if c.id not in (first.id, last.id)] + [last]

    narrow = ReflectionEngine(system.store, system.links, persist_links=False, comparison_window=2)
    wide = ReflectionEngine(system.store, system.links, persist_links=False, comparison_window=0)

    assert narrow.discover_connections(ordered) == []
    assert len(wide.discover_connections(ordered)) == 1


# ── Insights ──────────────────────────────────────────────

def _seed_topics(system):
    for text in (
        "planning the garden layout for spring",
        "compost notes for the garden beds",
        "recipe ideas using garden tomatoes",
        "watering schedule for summer months",
    ):
        system.remember("semantic_stm", text, source="notes")


def test_insight_caps_by_depth():
    system = _fresh()
    _seed_topics(system)
    focus = ["garden", "compost", "recipe", "watering", "spring"]

    shallow = system.reflection.generate(_request(["semantic_stm"], "shallow", focus), None)
    medium = system.reflection.generate(_request(["semantic_stm"], "medium", focus), None)

    assert len(shallow.insights) == 5
    assert shallow.insights[0].startswith("Most active information sources: notes (4)")
    assert len(medium.insights) == 8
    assert medium.insights[:5] == shallow.insights
    assert "3 memories relate to focus area: garden" in medium.insights


def test_medium_depth_reports_most_accessed():
    system = _fresh()
    _seed_topics(system)
    favourite = system.remember("semantic_stm", "the favourite memory of all", source="notes")
    system.store.boost(favourite.id)
    system.store.boost(favourite.id)

    result = system.reflection.generate(_request(["semantic_stm"], "medium"), None)

    assert 'Most frequently accessed memory: "the favourite memory of all..." (2 accesses)' in result.insights


def test_deep_depth_adds_metacognition():
    system = _fresh()
    system.remember("procedural_stm", "practice scales every morning", source="learning_app")
    system.remember("procedural_stm", "study chord shapes", source="chat",
                    metadata={"category": "skill_development"})

    result = system.reflection.generate(_request(["procedural_stm"], "deep"), None)

    assert "Learning-related memories comprise 100% of analyzed memories" in result.insights
    assert any(r.startswith("Continue reinforcing learning-related memories") for r in result.recommendations)


def test_recent_and_weekly_formation():
    clock = FakeClock()
    system = _fresh(clock)
    system.remember("episodic_stm", "from three days ago", source="chat")
    clock.advance(72)
    system.remember("episodic_stm", "from just now", source="chat")

    result = system.reflection.generate(_request(["episodic_stm"]), None)

    assert "1 new memories formed in the last 24 hours" in result.insights
    assert "Memory formation has been consistent over the past week (1 additional memories)" in result.insights


def test_recommends_diversifying_sources():
    system = _fresh()
    system.remember("semantic_stm", "single source memory", source="chat")
    result = system.reflection.generate(_request(["semantic_stm"]), None)
    assert result.recommendations == [
        "Consider diversifying information sources to build a more comprehensive knowledge base"
    ]


# ── Persistence / confidence ──────────────────────────────

def test_persists_at_most_twenty_reflections():
    system = _fresh()
    for i in range(25):
        system.remember("semantic_stm", f"memory number {i}", source=f"src{i % 4}")

    system.reflection.generate(_request(["semantic_stm"]), "conductor-1")

    records = system.reflection.recent_reflections(50)
    assert len(records) == 20
    assert all(r.conductor_id == "conductor-1" for r in records)


def test_confidence_formula():
    system = _fresh()
    chunks = [system.remember("semantic_stm", f"note {i}", source="chat") for i in range(5)]
    # 0.3 * 5/50 + 0.3 * 4/10 + 0.4 * 1.0/2
    assert confidence_score(chunks, ["a", "b", "c", "d"]) == pytest.approx(0.35)
    assert confidence_score([], []) == 0.0


def test_empty_scope_gives_zero_confidence():
    system = _fresh()
    result = system.reflection.generate(_request(["diary_rl"]), None)
    assert not result.degraded
    assert result.insights == []
    assert result.confidence_score == 0.0


# ── Failure handling ──────────────────────────────────────

def test_internal_failure_returns_degraded_result(monkeypatch):
    system = _fresh()
    system.remember("semantic_stm", "anything", source="chat")

    def broken(buckets):
        raise RuntimeError("storage exploded")

    monkeypatch.setattr(system.reflection, "gather", broken)
    result = system.reflection.generate(_request(["semantic_stm"]), None)

    assert result.degraded is True
    assert result.insights == [DEGRADED_INSIGHT]
    assert result.recommendations == [DEGRADED_RECOMMENDATION]
    assert result.new_connections == []
    assert result.confidence_score == 0.0


def test_deadline_returns_degraded_result():
    system = _fresh()
    system.remember("semantic_stm", "anything", source="chat")
    system.reflection.deadline_seconds = -1

    result = system.reflection.generate(_request(["semantic_stm"]), None)

    assert result.degraded is True
    assert system.reflection.recent_reflections() == []


def test_failed_persist_leaves_no_discovered_links(monkeypatch):
    """Links found by a pass that then fails are not left in the graph."""
    system = _fresh()
    system.remember("semantic_stm", SIMILAR_A, source="chat")
    system.remember("semantic_stm", SIMILAR_B, source="chat")

    def locked(*args, **kwargs):
        raise sqlite3.OperationalError("database is locked")

    monkeypatch.setattr(system.store, "add_reflections", locked)
    result = system.reflection.generate(_request(["semantic_stm"]), "conductor")

    assert result.degraded is True
    assert result.new_connections == []
    assert system.links.count() == 0


def test_reflection_write_failure_rolls_back_links():
    """Links and reflection rows share a transaction."""
    system = _fresh()
    system.remember("semantic_stm", SIMILAR_A, source="chat")
    system.remember("semantic_stm", SIMILAR_B, source="chat")
    conn = sqlite3.connect(system.db_path)
    conn.execute("DROP TABLE reflections")
    conn.commit()
    conn.close()

    result = system.reflection.generate(_request(["semantic_stm"]), "conductor")

    assert result.degraded is True
    assert system.links.count() == 0


def test_deadline_after_discovery_leaves_no_links(monkeypatch):
    system = _fresh()
    system.remember("semantic_stm", SIMILAR_A, source="chat")
    system.remember("semantic_stm", SIMILAR_B, source="chat")
    engine = system.reflection
    discover = engine.discover_connections

    def slow_discovery(memories, started=None):
        found = discover(memories, started=started)
        engine.deadline_seconds = -1
        return found

    monkeypatch.setattr(engine, "discover_connections", slow_discovery)
    result = engine.generate(_request(["semantic_stm"]), "conductor")

    assert result.degraded is True
    assert system.links.count() == 0
    assert engine.recent_reflections() == []


def test_persisted_links_get_ids():
    system = _fresh()
    system.remember("semantic_stm", SIMILAR_A, source="chat")
    system.remember("semantic_stm", SIMILAR_B, source="chat")

    link = system.reflection.generate(_request(["semantic_stm"]), "conductor").new_connections[0]

    assert link.id is not None
    assert system.links.find_link(link.source_id, link.target_id).id == link.id


# ── Scheduling ────────────────────────────────────────────

def test_schedule_enqueues_task_due_in_five_minutes():
    clock = FakeClock()
    system = _fresh(clock)
    system.remember("episodic_stm", "something to think about", source="chat")

    task_id = system.reflection.schedule(_request(["episodic_stm"], "shallow", ["topics"]), "conductor")

    pending = system.tasks.pending()
    assert [t["id"] for t in pending] == [task_id]
    assert pending[0]["type"] == "reflection"
    assert pending[0]["priority"] == 3
    assert pending[0]["params"]["memory_scope"] == ["episodic_stm"]
    assert pending[0]["params"]["trigger_type"] == "scheduled"
    assert system.tasks.due() == []
    assert system.reflection.recent_reflections() == []

    clock.advance(0.1)
    task = system.tasks.process_next(system.task_handlers())

    assert task["id"] == task_id
    assert task["status"] == "completed"
    assert task["result"]["degraded"] is False
    assert len(system.reflection.recent_reflections()) == 1


def test_auto_reflect_covers_short_term_buckets():
    system = _fresh()
    system.remember("semantic_stm", "a fact", source="chat")
    system.remember("episodic_stm", "a conversation", source="chat")
    system.remember("semantic_ltm", "long term, not included", source="chat")

    result = system.reflection.auto_reflect("conductor")

    assert not result.degraded
    assert result.insights[0] == "Most active information sources: chat (2)"
