"""
MAMS Retrieval Engine
Turns a query vector into a ranked set of chunks across buckets.

Not read-only: every candidate page is pulled through the store's
bucket read, so retrieved chunks are recorded as accessed.
"""

import math
from typing import Optional

from mams.config import BUCKET_NAMES, DEFAULT_MIN_SCORE, SEARCH_LIMIT
from mams.errors import ValidationError
from mams.log import log, timed
from mams.models import SearchResult
from mams.store import MemoryStore
from mams.vectors import as_vector, cosine_similarity


class RetrievalEngine:

    def __init__(self, store: MemoryStore):
        self.store = store

    def search_by_similarity(
        self,
        query_embedding=None,
        bucket_names: Optional[list[str]] = None,
        limit: int = SEARCH_LIMIT,
        min_score: float = DEFAULT_MIN_SCORE,
    ) -> list[SearchResult]:
        """
        Similarity search within and across buckets.

        Each bucket contributes at most ceil(limit / bucket_count) chunks so
        results spread across buckets. Ranked by cosine similarity to the
        query, or by score when no query vector is given.

        Raises:
            NotFound: any requested bucket is not registered (checked before
                anything is read or touched).
        """
        if isinstance(limit, bool) or not isinstance(limit, int) or limit < 1:
            raise ValidationError("limit must be a positive integer")
        buckets = list(bucket_names) if bucket_names else list(BUCKET_NAMES)
        for name in buckets:
            self.store.get_bucket(name)

        query = as_vector(query_embedding) if query_embedding is not None else None
        if query is not None and query.size == 0:
            query = None

        per_bucket = math.ceil(limit / len(buckets))
        results: list[SearchResult] = []
        with timed("search_by_similarity"):
            for name in buckets:
                for chunk in self.store.get_chunks_from_bucket(name, limit=per_bucket, min_score=min_score):
                    sim = cosine_similarity(query, chunk.embedding) if query is not None else None
                    results.append(SearchResult(chunk=chunk, similarity=sim))

        results.sort(key=lambda r: r.rank_key, reverse=True)
        log.debug("Search over %d bucket(s) returned %d candidate(s)", len(buckets), len(results))
        return results[:limit]
