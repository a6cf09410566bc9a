"""
MAMS data models.

Buckets, chunks, links and reflections as they come out of the store,
plus the request/result shapes of the retrieval, decay and reflection
passes. Metadata maps are validated against a closed set of keys per
context before anything is written.
"""

import math
from dataclasses import asdict, dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Optional

import numpy as np

from mams.config import BUCKET_NAMES
from mams.errors import ValidationError


class BucketType(str, Enum):
    STM = "STM"
    LTM = "LTM"
    RL = "RL"
    DOCS = "DOCS"
    MISC = "MISC"


class LinkType(str, Enum):
    SEMANTIC = "semantic"
    CAUSAL = "causal"
    TEMPORAL = "temporal"
    ASSOCIATIVE = "associative"


VALID_DEPTHS = ("shallow", "medium", "deep")
VALID_TRIGGERS = ("scheduled", "threshold", "user_request")

_NUMBER = (int, float)

CHUNK_METADATA_KEYS = {
    "category": str,
    "tags": list,
    "importance": _NUMBER,
    "user_id": str,
    "task_id": str,
    "session_id": str,
    "user_personality": str,
    "rating": int,
    "title": str,
    "url": str,
}

LINK_METADATA_KEYS = {
    "discovered_by": str,
    "similarity": _NUMBER,
    "reason": str,
    "note": str,
}


def validate_metadata(metadata: Optional[dict], allowed: dict, context: str) -> dict:
    """Check a metadata map against its context's key set. Returns a copy."""
    if metadata is None:
        return {}
    if not isinstance(metadata, dict):
        raise ValidationError(f"{context} metadata must be a mapping, got {type(metadata).__name__}")
    clean = {}
    for key, value in metadata.items():
        expected = allowed.get(key)
        if expected is None:
            raise ValidationError(
                f"Unknown {context} metadata key '{key}'. Allowed: {', '.join(sorted(allowed))}"
            )
        # bool is an int subclass; never accept it where a number is expected
        if isinstance(value, bool) or not isinstance(value, expected):
            raise ValidationError(f"{context} metadata '{key}' has invalid type {type(value).__name__}")
        if key == "tags" and not all(isinstance(t, str) for t in value):
            raise ValidationError(f"{context} metadata 'tags' must be a list of strings")
        if isinstance(value, float) and not math.isfinite(value):
            raise ValidationError(f"{context} metadata '{key}' must be finite")
        clean[key] = list(value) if isinstance(value, list) else value
    return clean


@dataclass
class MemoryBucket:
    id: int
    name: str
    description: str
    bucket_type: BucketType
    created_at: datetime


@dataclass
class MemoryChunk:
    """One atomic unit of remembered text with its vectors and reinforcement state."""

    id: int
    bucket_id: int
    bucket_name: str
    text: str
    embedding: np.ndarray
    meta_vector: np.ndarray
    score: float
    timestamp: datetime
    last_accessed: datetime
    source: str
    agent_id: Optional[str]
    metadata: dict
    access_count: int
    decay_rate: float

    def to_dict(self, include_vectors: bool = False) -> dict:
        out = {
            "id": self.id,
            "bucket": self.bucket_name,
            "text": self.text,
            "score": round(self.score, 6),
            "timestamp": self.timestamp.isoformat(),
            "last_accessed": self.last_accessed.isoformat(),
            "source": self.source,
            "agent_id": self.agent_id,
            "metadata": dict(self.metadata),
            "access_count": self.access_count,
            "decay_rate": self.decay_rate,
        }
        if include_vectors:
            out["embedding"] = self.embedding.tolist()
            out["meta_vector"] = self.meta_vector.tolist()
        return out


@dataclass
class MemoryLink:
    id: Optional[int]
    source_id: int
    target_id: int
    link_type: LinkType
    strength: float
    metadata: dict
    created_at: datetime

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "source_id": self.source_id,
            "target_id": self.target_id,
            "link_type": self.link_type.value,
            "strength": self.strength,
            "metadata": dict(self.metadata),
            "created_at": self.created_at.isoformat(),
        }


@dataclass
class MemoryReflection:
    id: int
    chunk_id: int
    reflection: str
    insights: list
    conductor_id: Optional[str]
    created_at: datetime

    def to_dict(self) -> dict:
        d = asdict(self)
        d["created_at"] = self.created_at.isoformat()
        return d


@dataclass
class LinkSet:
    outgoing: list = field(default_factory=list)
    incoming: list = field(default_factory=list)


@dataclass
class SearchResult:
    chunk: MemoryChunk
    similarity: Optional[float] = None

    @property
    def rank_key(self) -> float:
        return self.similarity if self.similarity is not None else self.chunk.score


@dataclass
class DecayResult:
    processed: int = 0
    decayed: int = 0
    deleted: int = 0
    errors: int = 0
    timed_out: bool = False

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass(frozen=True)
class ReflectionRequest:
    memory_scope: tuple
    reflection_depth: str = "medium"
    focus_areas: tuple = ()
    trigger_type: str = "user_request"

    @classmethod
    def create(
        cls,
        memory_scope,
        reflection_depth: str = "medium",
        focus_areas=None,
        trigger_type: str = "user_request",
    ) -> "ReflectionRequest":
        """Validate caller input and build a request."""
        if not memory_scope or isinstance(memory_scope, str):
            raise ValidationError("memory_scope must be a non-empty list of bucket names")
        invalid = [b for b in memory_scope if b not in BUCKET_NAMES]
        if invalid:
            raise ValidationError(f"Invalid memory buckets: {', '.join(map(str, invalid))}")
        if reflection_depth not in VALID_DEPTHS:
            raise ValidationError(f"reflection_depth must be one of {', '.join(VALID_DEPTHS)}")
        if trigger_type not in VALID_TRIGGERS:
            raise ValidationError(f"trigger_type must be one of {', '.join(VALID_TRIGGERS)}")
        focus = tuple(str(f) for f in (focus_areas or ()) if str(f).strip())
        return cls(tuple(memory_scope), reflection_depth, focus, trigger_type)

    def to_payload(self) -> dict:
        return {
            "memory_scope": list(self.memory_scope),
            "reflection_depth": self.reflection_depth,
            "focus_areas": list(self.focus_areas),
            "trigger_type": self.trigger_type,
        }


@dataclass
class ReflectionResult:
    insights: list
    new_connections: list
    recommendations: list
    confidence_score: float
    degraded: bool = False

    def to_dict(self) -> dict:
        return {
            "insights": list(self.insights),
            "new_connections": [c.to_dict() for c in self.new_connections],
            "recommendations": list(self.recommendations),
            "confidence_score": self.confidence_score,
            "degraded": self.degraded,
        }


def ensure_finite(value: Any, name: str) -> float:
    try:
        number = float(value)
    except (TypeError, ValueError):
        raise ValidationError(f"{name} must be a number") from None
    if isinstance(value, bool) or not math.isfinite(number):
        raise ValidationError(f"{name} must be a finite number")
    return number
