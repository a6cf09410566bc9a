"""
MAMS Memory System
==================
One object that owns a store and everything built on it. Servers, the
daemon and the CLI each construct one and pass it around; nothing in
the package holds a module-level instance.
"""

from datetime import datetime
from typing import Callable, Optional

from mams.config import DEFAULT_MIN_SCORE, SEARCH_LIMIT
from mams.decay import DecayScheduler
from mams.embeddings import Embedder, embed_metadata, get_embedder
from mams.errors import ValidationError
from mams.links import LinkGraph
from mams.models import MemoryChunk, SearchResult
from mams.reflection import ReflectionEngine
from mams.retrieval import RetrievalEngine
from mams.store import MemoryStore
from mams.tasks import TaskQueue, queue_dir_for


class MemorySystem:

    def __init__(
        self,
        db_path: Optional[str] = None,
        embedder: Optional[Embedder] = None,
        clock: Optional[Callable[[], datetime]] = None,
        queue_dir: Optional[str] = None,
        dimension: Optional[int] = None,
    ):
        self.embedder = embedder or get_embedder(dimension=dimension)
        self.store = MemoryStore(db_path, dimension=self.embedder.dimension, clock=clock)
        if queue_dir is None:
            queue_dir = queue_dir_for(db_path)
        self.tasks = TaskQueue(queue_dir, clock=clock)
        self.links = LinkGraph(self.store)
        self.retrieval = RetrievalEngine(self.store)
        self.decay = DecayScheduler(self.store)
        self.reflection = ReflectionEngine(self.store, self.links, self.tasks)

    @property
    def db_path(self) -> str:
        return self.store.db_path

    def remember(
        self,
        bucket: str,
        text: str,
        source: str = "manual",
        agent_id: Optional[str] = None,
        metadata: Optional[dict] = None,
    ) -> MemoryChunk:
        """Embed text and metadata, then store the chunk."""
        if not isinstance(text, str) or not text.strip():
            raise ValidationError("text is required")
        embedding = self.embedder.embed(text)
        meta_vector = embed_metadata(self.embedder, metadata)
        return self.store.add_chunk(bucket, text, embedding, meta_vector, source, agent_id, metadata)

    def recall(
        self,
        query: Optional[str] = None,
        buckets: Optional[list[str]] = None,
        limit: int = SEARCH_LIMIT,
        min_score: float = DEFAULT_MIN_SCORE,
    ) -> list[SearchResult]:
        """Search by meaning. Without a query, ranks by score alone."""
        query_vec = self.embedder.embed(query) if query and query.strip() else None
        return self.retrieval.search_by_similarity(query_vec, buckets, limit, min_score)

    def run_decay_task(self, params: dict) -> dict:
        return self.decay.apply_decay().to_dict()

    def task_handlers(self) -> dict:
        """(type, action) -> handler map for TaskQueue.process_next."""
        return {
            ("reflection", "generate"): self.reflection.run_scheduled,
            ("memory", "decay"): self.run_decay_task,
        }

    def stats(self) -> dict:
        stats = self.store.stats()
        stats["pending_tasks"] = len(self.tasks.pending())
        stats["embedding_dimension"] = self.embedder.dimension
        return stats
