"""
MAMS Embedding Backends
Turns text (and metadata) into fixed-dimension vectors.

Two backends, picked by MAMS_EMBEDDING_BACKEND:
  hash:                  deterministic bag-of-words feature hashing (default, no model)
  sentence-transformers: real semantic vectors (pip install mams[embeddings])
"""

import hashlib
import json
import os
import re
from typing import Optional, Protocol

import numpy as np

from mams.config import EMBEDDING_BACKEND, EMBEDDING_DIMENSION, EMBEDDING_MODEL
from mams.log import log
from mams.vectors import normalize

_TOKEN = re.compile(r"[a-z0-9_]+")


class Embedder(Protocol):
    dimension: int

    def embed(self, text: str) -> np.ndarray: ...


class HashEmbedder:
    """
    Signed feature hashing over lower-cased word tokens.

    Same text, same vector, in every process. Texts sharing words land
    near each other, so cosine ranking is meaningful without a model.
    """

    def __init__(self, dimension: int = EMBEDDING_DIMENSION):
        self.dimension = int(dimension)

    def embed(self, text: str) -> np.ndarray:
        vec = np.zeros(self.dimension, dtype=np.float32)
        for token in _TOKEN.findall(text.lower()):
            digest = hashlib.md5(token.encode("utf-8")).digest()
            index = int.from_bytes(digest[:4], "little") % self.dimension
            sign = 1.0 if digest[4] & 1 else -1.0
            vec[index] += sign
        return normalize(vec)


class SentenceTransformerEmbedder:
    """Lazy-loaded sentence-transformers model. First embed() pays the load."""

    def __init__(self, model_name: str = EMBEDDING_MODEL, dimension: int = EMBEDDING_DIMENSION):
        self.model_name = model_name
        self.dimension = int(dimension)
        self._model = None

    def get_model(self):
        if self._model is None:
            os.environ.setdefault("TOKENIZERS_PARALLELISM", "false")
            from sentence_transformers import SentenceTransformer

            log.info("Loading embedding model: %s", self.model_name)
            self._model = SentenceTransformer(self.model_name)
            log.info("Model loaded. Dimension: %d", self.dimension)
        return self._model

    def embed(self, text: str) -> np.ndarray:
        model = self.get_model()
        return np.array(model.encode(text, normalize_embeddings=True), dtype=np.float32)


def get_embedder(backend: Optional[str] = None, dimension: Optional[int] = None) -> Embedder:
    backend = (backend or EMBEDDING_BACKEND).lower()
    dimension = int(dimension or EMBEDDING_DIMENSION)
    if backend == "hash":
        return HashEmbedder(dimension)
    if backend in ("sentence-transformers", "torch"):
        return SentenceTransformerEmbedder(EMBEDDING_MODEL, dimension)
    raise ValueError(f"Unknown MAMS_EMBEDDING_BACKEND: {backend}")


def embed_metadata(embedder: Embedder, metadata: Optional[dict]) -> np.ndarray:
    """Meta-vector: the embedding of the metadata's canonical JSON form."""
    return embedder.embed(json.dumps(metadata or {}, sort_keys=True, ensure_ascii=False))
