"""
MAMS Reflection Engine
======================
Periodic or on-demand sense-making over a bounded memory sample.

One pass, no persisted intermediate state:
  1. Gather:    top chunks per bucket, blended by score and recency
  2. Analyze:   patterns, temporal, topics (+ deep / metacognitive by depth)
  3. Discover:  Jaccard-similar chunk pairs become candidate semantic links
  4. Recommend: threshold-driven suggestions
  5. Persist:   candidate links plus one reflection record per top chunk,
               in one transaction
  6. Confidence

Best-effort analytics: a pass that fails for any reason returns a
degraded, zero-confidence result instead of raising. Callers are chat
loops and scheduled jobs that must never be blocked by it.
"""

import math
import time
from collections import Counter
from datetime import datetime, timedelta
from typing import Optional

from mams.config import (
    AUTO_REFLECT_FOCUS, AUTO_REFLECT_SCOPE, DEFAULT_MIN_SCORE,
    REFLECTION_COMPARISON_WINDOW, REFLECTION_DEADLINE_SECONDS,
    REFLECTION_GATHER_PER_BUCKET, REFLECTION_INSIGHT_CAPS,
    REFLECTION_MAX_CONNECTIONS, REFLECTION_MAX_RECOMMENDATIONS,
    REFLECTION_PERSIST_LIMIT, REFLECTION_PERSIST_LINKS,
    REFLECTION_RECENCY_WEIGHT, REFLECTION_SAMPLE_SIZE,
    REFLECTION_SCHEDULE_DELAY_SECONDS, REFLECTION_SCORE_WEIGHT,
    REFLECTION_SIMILARITY_THRESHOLD, REFLECTION_TASK_PRIORITY,
)
from mams.errors import DeadlineExceeded, MamsError
from mams.links import LinkGraph
from mams.log import log, timed
from mams.models import (
    LinkType, MemoryChunk, MemoryLink, ReflectionRequest, ReflectionResult,
)
from mams.store import MemoryStore
from mams.tasks import TaskQueue

DEGRADED_INSIGHT = "Error generating reflection insights"
DEGRADED_RECOMMENDATION = "Unable to generate recommendations at this time"

LEARNING_WORDS = ("learn", "study", "practice")


# ── Helpers ──────────────────────────────────────────────

def jaccard_similarity(text_a: str, text_b: str) -> float:
    """|A ∩ B| / |A ∪ B| over lower-cased whitespace tokens."""
    words_a = set(text_a.lower().split())
    words_b = set(text_b.lower().split())
    union = words_a | words_b
    if not union:
        return 0.0
    return len(words_a & words_b) / len(union)


def recency_term(chunk: MemoryChunk, now: datetime) -> float:
    """1 for a chunk touched just now, falling towards 0 with hours since access."""
    hours = max(0.0, (now - chunk.last_accessed).total_seconds() / 3600)
    return 1.0 / (1.0 + hours)


def blended_score(chunk: MemoryChunk, now: datetime) -> float:
    return REFLECTION_SCORE_WEIGHT * chunk.score + REFLECTION_RECENCY_WEIGHT * recency_term(chunk, now)


def confidence_score(memories: list[MemoryChunk], insights: list[str]) -> float:
    if not memories:
        return 0.0
    mean_score = sum(m.score for m in memories) / len(memories)
    score = (
        0.3 * min(len(memories) / 50, 1)
        + 0.3 * min(len(insights) / 10, 1)
        + 0.4 * min(mean_score / 2, 1)
    )
    return max(0.0, min(score, 1.0))


def degraded_result() -> ReflectionResult:
    return ReflectionResult(
        insights=[DEGRADED_INSIGHT],
        new_connections=[],
        recommendations=[DEGRADED_RECOMMENDATION],
        confidence_score=0.0,
        degraded=True,
    )


def _is_learning(chunk: MemoryChunk) -> bool:
    return "learning" in chunk.source or chunk.metadata.get("category") == "skill_development"


# ── Analysis ─────────────────────────────────────────────

def identify_patterns(memories: list[MemoryChunk]) -> list[str]:
    patterns = []
    top_sources = Counter(m.source for m in memories).most_common(3)
    if top_sources:
        listed = ", ".join(f"{source} ({count})" for source, count in top_sources)
        patterns.append(f"Most active information sources: {listed}")

    reinforced = [m for m in memories if m.score > 2.0]
    if reinforced:
        patterns.append(
            f"{len(reinforced)} memories have been significantly reinforced through repeated access"
        )
    return patterns


def analyze_temporal(memories: list[MemoryChunk], now: datetime) -> list[str]:
    insights = []
    day_ago = now - timedelta(days=1)
    week_ago = now - timedelta(days=7)
    recent = [m for m in memories if m.timestamp > day_ago]
    week = [m for m in memories if m.timestamp > week_ago]

    if recent:
        insights.append(f"{len(recent)} new memories formed in the last 24 hours")
    if len(week) > len(recent):
        insights.append(
            f"Memory formation has been consistent over the past week "
            f"({len(week) - len(recent)} additional memories)"
        )
    return insights


def analyze_topics(memories: list[MemoryChunk], focus_areas) -> list[str]:
    insights = []
    keywords = Counter(
        word
        for m in memories
        for word in m.text.lower().split()
        if len(word) > 3
    )
    top = keywords.most_common(5)
    if top:
        insights.append("Dominant topics in memory: " + ", ".join(f"{w} ({c})" for w, c in top))

    for area in focus_areas:
        needle = area.lower()
        related = sum(1 for m in memories if needle in m.text.lower())
        if related:
            insights.append(f"{related} memories relate to focus area: {area}")
    return insights


def deep_analysis(memories: list[MemoryChunk]) -> list[str]:
    insights = []
    accessed = [m for m in memories if m.access_count > 1]
    if accessed:
        most = max(accessed, key=lambda m: m.access_count)
        insights.append(
            f'Most frequently accessed memory: "{most.text[:50]}..." ({most.access_count} accesses)'
        )

    resistant = [m for m in memories if m.score > 1.5 and m.access_count > 2]
    if resistant:
        insights.append(
            f"{len(resistant)} memories show strong resistance to decay, indicating high importance"
        )
    return insights


def metacognitive_analysis(memories: list[MemoryChunk]) -> list[str]:
    insights = []
    learning = [m for m in memories if _is_learning(m)]
    if learning:
        pct = math.floor(len(learning) / len(memories) * 100 + 0.5)
        insights.append(f"Learning-related memories comprise {pct}% of analyzed memories")

    consolidated = [m for m in memories if m.score > 2.0 and m.access_count > 3]
    if consolidated:
        insights.append(
            f"{len(consolidated)} memories show signs of knowledge consolidation through repeated reinforcement"
        )
    return insights


def generate_recommendations(insights: list[str], memories: list[MemoryChunk]) -> list[str]:
    recommendations = []
    low = [m for m in memories if m.score < 0.5]
    if len(low) > 10:
        recommendations.append(
            "Consider reviewing and reinforcing important memories that are showing signs of decay"
        )

    if any(word in m.text.lower() for m in memories for word in LEARNING_WORDS):
        recommendations.append(
            "Continue reinforcing learning-related memories through active recall and application"
        )

    if len({m.source for m in memories}) < 3:
        recommendations.append(
            "Consider diversifying information sources to build a more comprehensive knowledge base"
        )
    return recommendations[:REFLECTION_MAX_RECOMMENDATIONS]


# ── Engine ───────────────────────────────────────────────

class ReflectionEngine:
    """
    Mines a scoped memory sample for insights, links similar chunks,
    and records what it found.
    """

    def __init__(
        self,
        store: MemoryStore,
        links: LinkGraph,
        task_queue: Optional[TaskQueue] = None,
        persist_links: bool = REFLECTION_PERSIST_LINKS,
        comparison_window: int = REFLECTION_COMPARISON_WINDOW,
        deadline_seconds: Optional[float] = REFLECTION_DEADLINE_SECONDS,
    ):
        self.store = store
        self.links = links
        self.task_queue = task_queue
        self.persist_links = persist_links
        self.comparison_window = comparison_window
        self.deadline_seconds = deadline_seconds

    def _check_deadline(self, started: float):
        if self.deadline_seconds is not None and time.monotonic() - started > self.deadline_seconds:
            raise DeadlineExceeded(f"Reflection pass exceeded {self.deadline_seconds:.0f}s")

    # ── Pipeline ─────────────────────────────────────────

    def generate(self, request: ReflectionRequest, conductor_id: Optional[str]) -> ReflectionResult:
        """
        Run one full reflection pass.

        Never raises. On any internal failure, logs it and returns the
        degraded result (confidence 0, placeholder insight/recommendation).
        """
        started = time.monotonic()
        try:
            with timed("reflection"):
                memories = self.gather(request.memory_scope)
                self._check_deadline(started)

                insights = self.analyze(memories, request.reflection_depth, request.focus_areas)
                self._check_deadline(started)

                connections = self.discover_connections(memories, started=started)
                recommendations = generate_recommendations(insights, memories)
                confidence = confidence_score(memories, insights)
                self._check_deadline(started)

                # Last step: links and reflections commit together or not at all
                top = memories[:REFLECTION_PERSIST_LIMIT]
                self.store.add_reflections(
                    [m.id for m in top], insights, conductor_id,
                    links=connections if self.persist_links else (),
                )
        except Exception:
            log.exception("Reflection pass failed for scope %s", ", ".join(request.memory_scope))
            return degraded_result()

        log.info(
            "Reflection (%s): %d memories, %d insights, %d connections, confidence %.2f",
            request.reflection_depth, len(memories), len(insights), len(connections), confidence,
        )
        return ReflectionResult(
            insights=insights,
            new_connections=connections,
            recommendations=recommendations,
            confidence_score=confidence,
        )

    def gather(self, buckets) -> list[MemoryChunk]:
        """Top chunks of each bucket merged, blended by score and recency, top 100."""
        memories: list[MemoryChunk] = []
        for bucket in buckets:
            memories.extend(
                self.store.get_chunks_from_bucket(
                    bucket, limit=REFLECTION_GATHER_PER_BUCKET, min_score=DEFAULT_MIN_SCORE,
                )
            )
        now = self.store.now()
        memories.sort(key=lambda m: blended_score(m, now), reverse=True)
        return memories[:REFLECTION_SAMPLE_SIZE]

    def analyze(self, memories: list[MemoryChunk], depth: str, focus_areas=()) -> list[str]:
        """Insights in fixed order: patterns, temporal, topics, deep, metacognitive."""
        now = self.store.now()
        insights = []
        insights.extend(identify_patterns(memories))
        insights.extend(analyze_temporal(memories, now))
        insights.extend(analyze_topics(memories, focus_areas))
        if depth in ("medium", "deep"):
            insights.extend(deep_analysis(memories))
        if depth == "deep":
            insights.extend(metacognitive_analysis(memories))
        return insights[:REFLECTION_INSIGHT_CAPS[depth]]

    def discover_connections(self, memories: list[MemoryChunk], started: Optional[float] = None) -> list[MemoryLink]:
        """
        Propose links between textually similar chunks. Writes nothing.

        Each chunk is compared with the next `comparison_window` chunks in
        sample order (0 compares all pairs). Pairs above the Jaccard
        threshold with no existing edge either way become candidate semantic
        links, at most REFLECTION_MAX_CONNECTIONS per pass.
        """
        connections: list[MemoryLink] = []
        seen_pairs = set()
        n = len(memories)
        for i in range(n - 1):
            if started is not None:
                self._check_deadline(started)
            end = n if self.comparison_window <= 0 else min(n, i + 1 + self.comparison_window)
            for j in range(i + 1, end):
                a, b = memories[i], memories[j]
                pair = frozenset((a.id, b.id))
                if a.id == b.id or pair in seen_pairs:
                    continue
                similarity = jaccard_similarity(a.text, b.text)
                if similarity <= REFLECTION_SIMILARITY_THRESHOLD:
                    continue
                if self.links.find_link(a.id, b.id) is not None:
                    continue
                seen_pairs.add(pair)
                connections.append(self._propose_link(a.id, b.id, similarity))
                if len(connections) >= REFLECTION_MAX_CONNECTIONS:
                    return connections
        return connections

    def _propose_link(self, source_id: int, target_id: int, similarity: float) -> MemoryLink:
        """Candidate semantic link. It gets an id once generate() persists it."""
        return MemoryLink(
            id=None,
            source_id=source_id,
            target_id=target_id,
            link_type=LinkType.SEMANTIC,
            strength=similarity,
            metadata={"discovered_by": "reflection_engine", "similarity": similarity},
            created_at=self.store.now(),
        )

    # ── Scheduling ───────────────────────────────────────

    def schedule(self, request: ReflectionRequest, conductor_id: Optional[str]) -> str:
        """
        Hand a reflection off to the task queue instead of running it now.

        Returns:
            The queued task id. The task is due in five minutes.
        """
        if self.task_queue is None:
            raise MamsError("No task queue configured for scheduled reflections")
        payload = request.to_payload()
        payload["trigger_type"] = "scheduled"
        payload["conductor_id"] = conductor_id
        return self.task_queue.add_task(
            "reflection", "generate", payload,
            priority=REFLECTION_TASK_PRIORITY,
            delay_seconds=REFLECTION_SCHEDULE_DELAY_SECONDS,
        )

    def run_scheduled(self, params: dict) -> dict:
        """Task queue handler for reflection/generate tasks."""
        request = ReflectionRequest.create(
            params.get("memory_scope", []),
            params.get("reflection_depth", "medium"),
            params.get("focus_areas", []),
            params.get("trigger_type", "scheduled"),
        )
        return self.generate(request, params.get("conductor_id")).to_dict()

    def auto_reflect(self, conductor_id: Optional[str]) -> ReflectionResult:
        """Shallow pass over the short-term buckets."""
        request = ReflectionRequest.create(
            AUTO_REFLECT_SCOPE, "shallow", AUTO_REFLECT_FOCUS, trigger_type="scheduled",
        )
        return self.generate(request, conductor_id)

    def recent_reflections(self, limit: int = 10):
        return self.store.recent_reflections(limit)
