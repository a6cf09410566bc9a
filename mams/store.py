"""
MAMS Memory Store
=================
The durable home for buckets and chunks. The only component that
creates or deletes chunks.

Ten canonical buckets, each typed. A chunk's decay rate is fixed at
write time from its bucket's type. Reading a bucket counts as an access:
every returned chunk gets its last_accessed and access_count bumped,
which is what the decay math keys off.
"""

import json
import sqlite3
import threading
from datetime import datetime, timezone
from pathlib import Path
from typing import Callable, Optional, Sequence

import numpy as np

from mams.config import (
    BUCKETS, BUCKET_PAGE_SIZE, DB_PATH, DECAY_RATES, DEFAULT_BOOST,
    DEFAULT_MIN_SCORE, DEFAULT_SCORE, EMBEDDING_DIMENSION, ensure_home,
)
from mams.errors import NotFound, ValidationError
from mams.log import log
from mams.migrations import run_migrations
from mams.models import (
    CHUNK_METADATA_KEYS, BucketType, MemoryBucket, MemoryChunk,
    MemoryLink, MemoryReflection, ensure_finite, validate_metadata,
)
from mams.vectors import as_vector, from_blob, to_blob


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def to_iso(dt: datetime) -> str:
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc).isoformat(timespec="microseconds")


def from_iso(value: str) -> datetime:
    dt = datetime.fromisoformat(value)
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt


_CHUNK_SELECT = """
    SELECT c.*, b.name AS bucket_name
    FROM chunks c JOIN buckets b ON b.id = c.bucket_id
"""


class MemoryStore:
    """
    Bucketed chunk storage on SQLite.

    One connection per operation (WAL, busy timeout), writes serialised by
    a process-local lock. Increments are single UPDATE statements so they
    stay atomic at the storage layer.
    """

    def __init__(
        self,
        db_path: Optional[str] = None,
        dimension: Optional[int] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        if db_path is None:
            ensure_home()
        else:
            Path(db_path).parent.mkdir(parents=True, exist_ok=True)
        self.db_path = str(db_path or DB_PATH)
        self.dimension = int(dimension or EMBEDDING_DIMENSION)
        self.clock = clock or utcnow
        self._write_lock = threading.Lock()
        self._init_db()
        self.initialize_buckets()

    @property
    def write_lock(self) -> threading.Lock:
        return self._write_lock

    # ── DB Connection ────────────────────────────────────

    def connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self.db_path, timeout=10)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA journal_mode=WAL")
        conn.execute("PRAGMA busy_timeout=10000")
        return conn

    def _init_db(self):
        conn = self.connect()
        try:
            conn.executescript("""
                CREATE TABLE IF NOT EXISTS buckets (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    name TEXT NOT NULL UNIQUE,
                    description TEXT NOT NULL DEFAULT '',
                    bucket_type TEXT NOT NULL,
                    created_at TEXT NOT NULL
                );

                CREATE TABLE IF NOT EXISTS chunks (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    bucket_id INTEGER NOT NULL,
                    text TEXT NOT NULL,
                    embedding BLOB,
                    meta_vector BLOB,
                    score REAL NOT NULL DEFAULT 1.0,
                    timestamp TEXT NOT NULL,
                    last_accessed TEXT NOT NULL,
                    source TEXT NOT NULL,
                    agent_id TEXT,
                    metadata TEXT NOT NULL DEFAULT '{}',
                    access_count INTEGER NOT NULL DEFAULT 0,
                    decay_rate REAL NOT NULL,
                    FOREIGN KEY (bucket_id) REFERENCES buckets(id)
                );

                -- Back-references only: endpoints may be evicted by decay.
                CREATE TABLE IF NOT EXISTS links (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    source_id INTEGER NOT NULL,
                    target_id INTEGER NOT NULL,
                    link_type TEXT NOT NULL,
                    strength REAL NOT NULL DEFAULT 1.0,
                    metadata TEXT NOT NULL DEFAULT '{}',
                    created_at TEXT NOT NULL
                );

                CREATE TABLE IF NOT EXISTS reflections (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    chunk_id INTEGER NOT NULL,
                    reflection TEXT NOT NULL,
                    insights TEXT NOT NULL DEFAULT '[]',
                    conductor_id TEXT,
                    created_at TEXT NOT NULL
                );
            """)
            # ALTER TABLE is not idempotent, check before adding
            existing_cols = {row[1] for row in conn.execute("PRAGMA table_info(chunks)").fetchall()}
            if "decayed_at" not in existing_cols:
                conn.execute("ALTER TABLE chunks ADD COLUMN decayed_at TEXT")
            conn.commit()
            run_migrations(conn)
        finally:
            conn.close()

    def now(self) -> datetime:
        dt = self.clock()
        return dt if dt.tzinfo is not None else dt.replace(tzinfo=timezone.utc)

    # ── Buckets ──────────────────────────────────────────

    def initialize_buckets(self) -> int:
        """
        Create any canonical bucket that doesn't exist yet.

        Idempotent. A concurrent creator winning the race shows up here as a
        UNIQUE violation, which is treated as "already exists". Any other
        integrity failure propagates.

        Returns:
            Number of buckets created by this call.
        """
        created = 0
        with self.write_lock:
            conn = self.connect()
            try:
                for name, bucket_type, description in BUCKETS:
                    if conn.execute("SELECT 1 FROM buckets WHERE name = ?", (name,)).fetchone():
                        continue
                    try:
                        conn.execute(
                            "INSERT INTO buckets (name, description, bucket_type, created_at) "
                            "VALUES (?, ?, ?, ?)",
                            (name, description, bucket_type, to_iso(self.now())),
                        )
                        conn.commit()
                        created += 1
                    except sqlite3.IntegrityError as e:
                        conn.rollback()
                        if "UNIQUE" not in str(e).upper():
                            raise
                        log.debug("Bucket %s created concurrently, skipping", name)
            finally:
                conn.close()
        if created:
            log.info("Initialized %d memory bucket(s)", created)
        return created

    def _row_to_bucket(self, row) -> MemoryBucket:
        return MemoryBucket(
            id=row["id"],
            name=row["name"],
            description=row["description"],
            bucket_type=BucketType(row["bucket_type"]),
            created_at=from_iso(row["created_at"]),
        )

    def get_bucket(self, name: str) -> MemoryBucket:
        conn = self.connect()
        try:
            row = conn.execute("SELECT * FROM buckets WHERE name = ?", (name,)).fetchone()
        finally:
            conn.close()
        if row is None:
            raise NotFound(f"Memory bucket {name} not found")
        return self._row_to_bucket(row)

    def list_buckets(self) -> list[MemoryBucket]:
        conn = self.connect()
        try:
            rows = conn.execute("SELECT * FROM buckets ORDER BY id").fetchall()
        finally:
            conn.close()
        return [self._row_to_bucket(r) for r in rows]

    # ── Chunks ───────────────────────────────────────────

    def _row_to_chunk(self, row) -> MemoryChunk:
        return MemoryChunk(
            id=row["id"],
            bucket_id=row["bucket_id"],
            bucket_name=row["bucket_name"],
            text=row["text"],
            embedding=from_blob(row["embedding"]),
            meta_vector=from_blob(row["meta_vector"]),
            score=row["score"],
            timestamp=from_iso(row["timestamp"]),
            last_accessed=from_iso(row["last_accessed"]),
            source=row["source"],
            agent_id=row["agent_id"],
            metadata=json.loads(row["metadata"] or "{}"),
            access_count=row["access_count"],
            decay_rate=row["decay_rate"],
        )

    def _check_vector(self, values, name: str) -> np.ndarray:
        try:
            vec = as_vector(values)
        except (TypeError, ValueError) as e:
            raise ValidationError(f"{name} must be a sequence of numbers: {e}") from e
        if vec.shape[0] != self.dimension:
            raise ValidationError(f"{name} has dimension {vec.shape[0]}, expected {self.dimension}")
        if not np.all(np.isfinite(vec)):
            raise ValidationError(f"{name} contains non-finite values")
        return vec

    def add_chunk(
        self,
        bucket_name: str,
        text: str,
        embedding,
        meta_vector,
        source: str,
        agent_id: Optional[str] = None,
        metadata: Optional[dict] = None,
    ) -> MemoryChunk:
        """
        Write one chunk into a bucket.

        Raises:
            NotFound: bucket_name is not a registered bucket.
            ValidationError: missing text/source, bad vectors or metadata.
        """
        if not isinstance(text, str) or not text.strip():
            raise ValidationError("text is required")
        if not isinstance(source, str) or not source.strip():
            raise ValidationError("source is required")
        if agent_id is not None and not isinstance(agent_id, str):
            raise ValidationError("agent_id must be a string")
        emb = self._check_vector(embedding, "embedding")
        meta_vec = self._check_vector(meta_vector, "meta_vector")
        meta = validate_metadata(metadata, CHUNK_METADATA_KEYS, "chunk")

        bucket = self.get_bucket(bucket_name)
        decay_rate = DECAY_RATES[bucket.bucket_type.value]
        now = self.now()

        with self.write_lock:
            conn = self.connect()
            try:
                cursor = conn.execute(
                    """
                    INSERT INTO chunks
                        (bucket_id, text, embedding, meta_vector, score, timestamp,
                         last_accessed, source, agent_id, metadata, access_count, decay_rate)
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, 0, ?)
                    """,
                    (
                        bucket.id, text, to_blob(emb), to_blob(meta_vec), DEFAULT_SCORE,
                        to_iso(now), to_iso(now), source, agent_id,
                        json.dumps(meta, ensure_ascii=False), decay_rate,
                    ),
                )
                conn.commit()
                chunk_id = cursor.lastrowid
            finally:
                conn.close()

        log.debug("Stored chunk %d in %s (source=%s)", chunk_id, bucket.name, source)
        return MemoryChunk(
            id=chunk_id,
            bucket_id=bucket.id,
            bucket_name=bucket.name,
            text=text,
            embedding=emb,
            meta_vector=meta_vec,
            score=DEFAULT_SCORE,
            timestamp=now,
            last_accessed=now,
            source=source,
            agent_id=agent_id,
            metadata=meta,
            access_count=0,
            decay_rate=decay_rate,
        )

    def get_chunk(self, chunk_id: int) -> MemoryChunk:
        """Fetch one chunk by id. Not an access: nothing is touched."""
        conn = self.connect()
        try:
            row = conn.execute(_CHUNK_SELECT + " WHERE c.id = ?", (chunk_id,)).fetchone()
        finally:
            conn.close()
        if row is None:
            raise NotFound(f"Memory chunk {chunk_id} not found")
        return self._row_to_chunk(row)

    def boost(self, chunk_id: int, amount: float = DEFAULT_BOOST) -> MemoryChunk:
        """
        Positive reinforcement: score += amount, plus an access.

        Raises:
            NotFound: no such chunk.
            ValidationError: amount is negative or not a finite number.
        """
        amount = ensure_finite(amount, "amount")
        if amount < 0:
            raise ValidationError("boost amount must be >= 0")
        with self.write_lock:
            conn = self.connect()
            try:
                cursor = conn.execute(
                    "UPDATE chunks SET score = score + ?, last_accessed = ?, "
                    "access_count = access_count + 1 WHERE id = ?",
                    (amount, to_iso(self.now()), chunk_id),
                )
                conn.commit()
                updated = cursor.rowcount
            finally:
                conn.close()
        if not updated:
            raise NotFound(f"Memory chunk {chunk_id} not found")
        return self.get_chunk(chunk_id)

    def get_chunks_from_bucket(
        self,
        bucket_name: str,
        limit: int = BUCKET_PAGE_SIZE,
        min_score: float = DEFAULT_MIN_SCORE,
    ) -> list[MemoryChunk]:
        """
        Top chunks of a bucket by score, then by last access.

        Every returned chunk is recorded as accessed. The returned objects
        carry the values they were ranked on (before this access).

        Raises:
            NotFound: bucket_name is not a registered bucket.
        """
        bucket = self.get_bucket(bucket_name)
        if isinstance(limit, bool) or not isinstance(limit, int) or limit < 0:
            raise ValidationError("limit must be a non-negative integer")
        min_score = ensure_finite(min_score, "min_score")
        if limit == 0:
            return []

        now = to_iso(self.now())
        with self.write_lock:
            conn = self.connect()
            try:
                # Rank and touch under one write transaction
                conn.execute("BEGIN IMMEDIATE")
                rows = conn.execute(
                    _CHUNK_SELECT
                    + " WHERE c.bucket_id = ? AND c.score >= ?"
                    " ORDER BY c.score DESC, c.last_accessed DESC, c.id DESC LIMIT ?",
                    (bucket.id, min_score, limit),
                ).fetchall()
                conn.executemany(
                    "UPDATE chunks SET last_accessed = ?, access_count = access_count + 1 WHERE id = ?",
                    [(now, r["id"]) for r in rows],
                )
                conn.commit()
            finally:
                conn.close()

        return [self._row_to_chunk(r) for r in rows]

    def delete_chunk(self, chunk_id: int):
        with self.write_lock:
            conn = self.connect()
            try:
                cursor = conn.execute("DELETE FROM chunks WHERE id = ?", (chunk_id,))
                conn.commit()
                deleted = cursor.rowcount
            finally:
                conn.close()
        if not deleted:
            raise NotFound(f"Memory chunk {chunk_id} not found")

    # ── Decay support ────────────────────────────────────

    def decay_rows(self, bucket_name: str) -> list[sqlite3.Row]:
        """Raw (id, score, decay_rate, last_accessed, decayed_at) rows of one bucket."""
        bucket = self.get_bucket(bucket_name)
        conn = self.connect()
        try:
            return conn.execute(
                "SELECT id, score, decay_rate, last_accessed, decayed_at FROM chunks "
                "WHERE bucket_id = ? ORDER BY id",
                (bucket.id,),
            ).fetchall()
        finally:
            conn.close()

    def write_decay(self, updates: list[tuple[int, float]], deletions: list[int], decayed_at: datetime):
        """
        Persist one bucket's decay outcome in a single transaction.

        Updated chunks are stamped with decayed_at so the next pass only
        applies the time elapsed since this one.
        """
        if not updates and not deletions:
            return
        stamp = to_iso(decayed_at)
        with self.write_lock:
            conn = self.connect()
            try:
                conn.executemany(
                    "UPDATE chunks SET score = ?, decayed_at = ? WHERE id = ?",
                    [(score, stamp, cid) for cid, score in updates],
                )
                conn.executemany("DELETE FROM chunks WHERE id = ?", [(cid,) for cid in deletions])
                conn.commit()
            except sqlite3.Error:
                conn.rollback()
                raise
            finally:
                conn.close()

    # ── Reflections ──────────────────────────────────────

    def add_reflections(
        self,
        chunk_ids: list[int],
        insights: list[str],
        conductor_id: Optional[str],
        links: Sequence[MemoryLink] = (),
    ) -> int:
        """
        One reflection row per chunk, each carrying the full insight list.

        Links discovered by the same pass are inserted in the same
        transaction, so either both land or neither does. Each link gets
        its row id assigned in place.
        """
        if not chunk_ids and not links:
            return 0
        reflection_text = "; ".join(insights)
        insights_json = json.dumps(list(insights), ensure_ascii=False)
        now = to_iso(self.now())
        with self.write_lock:
            conn = self.connect()
            try:
                assigned = []
                for link in links:
                    cursor = conn.execute(
                        "INSERT INTO links (source_id, target_id, link_type, strength, metadata, created_at) "
                        "VALUES (?, ?, ?, ?, ?, ?)",
                        (link.source_id, link.target_id, link.link_type.value, link.strength,
                         json.dumps(link.metadata, ensure_ascii=False), to_iso(link.created_at)),
                    )
                    assigned.append(cursor.lastrowid)
                conn.executemany(
                    "INSERT INTO reflections (chunk_id, reflection, insights, conductor_id, created_at) "
                    "VALUES (?, ?, ?, ?, ?)",
                    [(cid, reflection_text, insights_json, conductor_id, now) for cid in chunk_ids],
                )
                conn.commit()
                for link, link_id in zip(links, assigned):
                    link.id = link_id
            finally:
                conn.close()
        return len(chunk_ids)

    def recent_reflections(self, limit: int = 10) -> list[MemoryReflection]:
        conn = self.connect()
        try:
            rows = conn.execute(
                "SELECT * FROM reflections ORDER BY created_at DESC, id DESC LIMIT ?",
                (limit,),
            ).fetchall()
        finally:
            conn.close()
        return [
            MemoryReflection(
                id=r["id"],
                chunk_id=r["chunk_id"],
                reflection=r["reflection"],
                insights=json.loads(r["insights"] or "[]"),
                conductor_id=r["conductor_id"],
                created_at=from_iso(r["created_at"]),
            )
            for r in rows
        ]

    # ── Stats ────────────────────────────────────────────

    def stats(self) -> dict:
        conn = self.connect()
        try:
            total_chunks = conn.execute("SELECT COUNT(*) FROM chunks").fetchone()[0]
            total_links = conn.execute("SELECT COUNT(*) FROM links").fetchone()[0]
            total_reflections = conn.execute("SELECT COUNT(*) FROM reflections").fetchone()[0]
            buckets = conn.execute(
                "SELECT b.name, b.bucket_type, COUNT(c.id) AS chunk_count "
                "FROM buckets b LEFT JOIN chunks c ON c.bucket_id = b.id "
                "GROUP BY b.id ORDER BY b.id"
            ).fetchall()
        finally:
            conn.close()
        return {
            "total_chunks": total_chunks,
            "total_links": total_links,
            "total_reflections": total_reflections,
            "buckets": [
                {"name": b["name"], "type": b["bucket_type"], "chunk_count": b["chunk_count"]}
                for b in buckets
            ],
            "db_path": self.db_path,
        }
