"""
MAMS Link Graph
===============
Directed, typed, weighted edges between chunk ids.

Links hold back-references only. A chunk evicted by decay leaves its
edges in place; readers treat the missing endpoint as a miss, not an error.
"""

import json
from typing import Optional

from mams.errors import ValidationError
from mams.models import (
    LINK_METADATA_KEYS, LinkSet, LinkType, MemoryLink,
    ensure_finite, validate_metadata,
)
from mams.store import MemoryStore, from_iso, to_iso


def _row_to_link(row) -> MemoryLink:
    return MemoryLink(
        id=row["id"],
        source_id=row["source_id"],
        target_id=row["target_id"],
        link_type=LinkType(row["link_type"]),
        strength=row["strength"],
        metadata=json.loads(row["metadata"] or "{}"),
        created_at=from_iso(row["created_at"]),
    )


def parse_link_type(link_type) -> LinkType:
    try:
        return LinkType(link_type)
    except ValueError:
        valid = ", ".join(t.value for t in LinkType)
        raise ValidationError(f"link_type must be one of {valid}, got {link_type!r}") from None


class LinkGraph:
    """Adjacency over the links table of a MemoryStore."""

    def __init__(self, store: MemoryStore):
        self.store = store

    def create_link(
        self,
        source_id: int,
        target_id: int,
        link_type="semantic",
        strength: float = 1.0,
        metadata: Optional[dict] = None,
    ) -> MemoryLink:
        """
        Insert an edge. No deduplication: callers that care use find_link first.

        Raises:
            ValidationError: unknown link type, non-finite strength, bad metadata.
        """
        ltype = parse_link_type(link_type)
        strength = ensure_finite(strength, "strength")
        for name, value in (("source_id", source_id), ("target_id", target_id)):
            if isinstance(value, bool) or not isinstance(value, int):
                raise ValidationError(f"{name} must be an integer chunk id")
        meta = validate_metadata(metadata, LINK_METADATA_KEYS, "link")
        now = self.store.now()

        with self.store.write_lock:
            conn = self.store.connect()
            try:
                cursor = conn.execute(
                    "INSERT INTO links (source_id, target_id, link_type, strength, metadata, created_at) "
                    "VALUES (?, ?, ?, ?, ?, ?)",
                    (source_id, target_id, ltype.value, strength,
                     json.dumps(meta, ensure_ascii=False), to_iso(now)),
                )
                conn.commit()
                link_id = cursor.lastrowid
            finally:
                conn.close()

        return MemoryLink(
            id=link_id,
            source_id=source_id,
            target_id=target_id,
            link_type=ltype,
            strength=strength,
            metadata=meta,
            created_at=now,
        )

    def get_links(self, chunk_id: int) -> LinkSet:
        """All edges leaving and entering a chunk. Empty lists when there are none."""
        conn = self.store.connect()
        try:
            outgoing = conn.execute(
                "SELECT * FROM links WHERE source_id = ? ORDER BY id", (chunk_id,)
            ).fetchall()
            incoming = conn.execute(
                "SELECT * FROM links WHERE target_id = ? ORDER BY id", (chunk_id,)
            ).fetchall()
        finally:
            conn.close()
        return LinkSet(
            outgoing=[_row_to_link(r) for r in outgoing],
            incoming=[_row_to_link(r) for r in incoming],
        )

    def find_link(self, a: int, b: int) -> Optional[MemoryLink]:
        """Existing edge between a and b in either direction, if any."""
        conn = self.store.connect()
        try:
            row = conn.execute(
                "SELECT * FROM links WHERE (source_id = ? AND target_id = ?) "
                "OR (source_id = ? AND target_id = ?) ORDER BY id LIMIT 1",
                (a, b, b, a),
            ).fetchone()
        finally:
            conn.close()
        return _row_to_link(row) if row else None

    def count(self) -> int:
        conn = self.store.connect()
        try:
            return conn.execute("SELECT COUNT(*) FROM links").fetchone()[0]
        finally:
            conn.close()
