"""Tests for embedding helpers and the FastEmbed provider."""

import pytest

from nanojournal.config.schema import EmbeddingConfig
from nanojournal.memory.embeddings import (
    EmbeddingProvider,
    cosine_similarities,
    cosine_similarity,
    pack_embedding,
    unpack_embedding,
)
from nanojournal.memory.token_counter import TokenCounter


class TestVectorHelpers:
    """Tests for BLOB packing and cosine similarity."""

    def test_pack_unpack(self):
        data = pack_embedding([0.5, -1.0, 0.25])
        assert len(data) == 12
        assert unpack_embedding(data) == [0.5, -1.0, 0.25]

    def test_unpack_empty(self):
        assert unpack_embedding(None) is None
        assert unpack_embedding(b"") is None

    def test_cosine_similarity(self):
        assert cosine_similarity([1.0, 0.0], [1.0, 0.0]) == pytest.approx(1.0)
        assert cosine_similarity([1.0, 0.0], [0.0, 1.0]) == pytest.approx(0.0)
        assert cosine_similarity([1.0, 0.0], [-1.0, 0.0]) == pytest.approx(-1.0)

    def test_cosine_degenerate_inputs(self):
        assert cosine_similarity([], []) == 0.0
        assert cosine_similarity([0.0, 0.0], [1.0, 0.0]) == 0.0
        assert cosine_similarity([1.0, 0.0], [1.0, 0.0, 0.0]) == 0.0

    def test_batch_matches_pairwise(self):
        query = [0.6, 0.8, 0.0]
        vectors = [[1.0, 0.0, 0.0], [0.0, 0.0, 1.0], [0.6, 0.8, 0.0], [1.0, 0.0], [0.0, 0.0, 0.0]]

        sims = cosine_similarities(query, vectors)

        assert sims[0] == pytest.approx(0.6)
        assert sims[1] == pytest.approx(0.0)
        assert sims[2] == pytest.approx(1.0)
        assert sims[3] == 0.0
        assert sims[4] == 0.0
        assert cosine_similarities(query, []) == []


class TestEmbeddingProvider:
    """Tests for the provider without loading a model."""

    @pytest.mark.asyncio
    async def test_disabled_provider_returns_none(self):
        provider = EmbeddingProvider(EmbeddingConfig(provider="none"))

        assert await provider.embed("hello") is None
        assert provider.model_name is None
        assert provider.is_ready() is False

    def test_blank_text_returns_none(self):
        provider = EmbeddingProvider(EmbeddingConfig(provider="none"))
        assert provider.embed_sync("   ") is None

    def test_local_model_name(self):
        provider = EmbeddingProvider(EmbeddingConfig(lazy_load=True))
        assert provider.model_name == "BAAI/bge-small-en-v1.5"


class TestTokenCounter:
    """Tests for token counting."""

    def test_empty_text(self):
        assert TokenCounter().count_tokens("") == 0

    def test_counts_are_positive(self):
        assert TokenCounter().count_tokens("I went for a run this morning") > 0
