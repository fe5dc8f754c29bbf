"""Embedding provider and vector helpers.

This module provides the EmbeddingProvider class which produces text
embeddings with FastEmbed. A missing vector is a valid outcome: patterns
without one are stored and listed, but are not semantically searchable.
"""

import asyncio
import struct
from typing import Optional, Protocol, Sequence

import numpy as np
from loguru import logger

from nanojournal.config.schema import EmbeddingConfig


class Embedder(Protocol):
    """Produces a vector for text, or None when no vector is available."""

    async def embed(self, text: str) -> Optional[list[float]]:
        ...


class EmbeddingProvider:
    """
    Provider for text embeddings using FastEmbed.

    Uses lazy loading - the model is downloaded on first use, not at startup.
    """

    def __init__(self, config: EmbeddingConfig):
        """
        Initialize the embedding provider.

        Args:
            config: Embedding configuration
        """
        self.config = config
        self._model = None  # Lazy loaded
        self._load_failed = False

        if not config.lazy_load:
            self._ensure_model()

        logger.info(f"EmbeddingProvider initialized (provider: {config.provider}, lazy: {config.lazy_load})")

    @property
    def model_name(self) -> Optional[str]:
        """Name recorded alongside stored vectors."""
        if self.config.provider == "local":
            return self.config.local_model
        return None

    def _ensure_model(self):
        """Load the FastEmbed model once; remember a failure so we don't retry every call."""
        if self._model is not None or self._load_failed:
            return
        if self.config.provider != "local":
            return

        try:
            from fastembed import TextEmbedding

            logger.info(f"Loading embedding model: {self.config.local_model}")
            self._model = TextEmbedding(self.config.local_model)
            logger.info("Embedding model loaded successfully")
        except Exception as e:
            self._load_failed = True
            logger.error(f"Failed to load local embedding model: {e}")

    def embed_sync(self, text: str) -> Optional[list[float]]:
        """
        Generate an embedding for text (blocking).

        Args:
            text: Text to embed

        Returns:
            Embedding vector, or None when no vector can be produced
        """
        if not text or not text.strip():
            return None

        self._ensure_model()
        if self._model is None:
            logger.warning("Embedding unavailable, storing without vector")
            return None

        try:
            # FastEmbed returns a generator, take the only result
            embeddings = list(self._model.embed([text]))
        except Exception as e:
            logger.error(f"Local embedding failed: {e}")
            return None

        if not embeddings:
            logger.error("FastEmbed returned empty result")
            return None
        return embeddings[0].tolist()

    async def embed(self, text: str) -> Optional[list[float]]:
        """Embed without blocking the event loop."""
        return await asyncio.to_thread(self.embed_sync, text)

    def is_ready(self) -> bool:
        """Check if the provider can produce embeddings."""
        self._ensure_model()
        return self._model is not None


def pack_embedding(embedding: Sequence[float]) -> bytes:
    """
    Pack embedding vector into bytes for storage.

    Args:
        embedding: Sequence of floats

    Returns:
        Packed bytes
    """
    return struct.pack(f'{len(embedding)}f', *embedding)


def unpack_embedding(data: Optional[bytes]) -> Optional[list[float]]:
    """
    Unpack embedding vector from bytes.

    Args:
        data: Packed bytes

    Returns:
        List of floats, or None when nothing was stored
    """
    if not data:
        return None

    num_floats = len(data) // 4  # 4 bytes per float
    return list(struct.unpack(f'{num_floats}f', data))


def cosine_similarity(a: Sequence[float], b: Sequence[float]) -> float:
    """
    Calculate cosine similarity between two vectors.

    Args:
        a: First vector
        b: Second vector

    Returns:
        Cosine similarity (-1 to 1); 0.0 for empty, zero or mismatched vectors
    """
    if len(a) != len(b) or len(a) == 0:
        return 0.0

    va = np.asarray(a, dtype=np.float64)
    vb = np.asarray(b, dtype=np.float64)
    norm_a = np.linalg.norm(va)
    norm_b = np.linalg.norm(vb)

    if norm_a == 0 or norm_b == 0:
        return 0.0

    return float(np.dot(va, vb) / (norm_a * norm_b))


def cosine_similarities(query: Sequence[float], vectors: list[Sequence[float]]) -> list[float]:
    """
    Cosine similarity of ``query`` against many vectors at once.

    Vectors whose length differs from the query score 0.0.
    """
    if not vectors:
        return []

    q = np.asarray(query, dtype=np.float64)
    q_norm = np.linalg.norm(q)
    if q_norm == 0:
        return [0.0] * len(vectors)

    same_dim = [i for i, v in enumerate(vectors) if len(v) == len(q)]
    scores = [0.0] * len(vectors)
    if same_dim:
        matrix = np.asarray([vectors[i] for i in same_dim], dtype=np.float64)
        norms = np.linalg.norm(matrix, axis=1)
        dots = matrix @ q
        with np.errstate(divide="ignore", invalid="ignore"):
            sims = np.where(norms > 0, dots / (norms * q_norm), 0.0)
        for idx, sim in zip(same_dim, sims):
            scores[idx] = float(sim)
    return scores
