from __future__ import annotations

import asyncio
import logging
import math
import sys
from collections.abc import Sequence

import pytest

from memcore.core.errors import ModelUnavailableError
from memcore.memory.embedder import (
    DeterministicEmbedder,
    Embedder,
    EmbeddingCache,
    EmbeddingPipeline,
    SentenceTransformerEmbedder,
    create_embedder,
    hash_embedding,
)
from memcore.memory.types import EmbeddedText

DIM = 16


class CountingEmbedder(Embedder):
    """Embedder with a slow load and call counters."""

    provider = "counting"
    model_name = "counting-v1"
    dimension = DIM

    def __init__(self, load_delay: float = 0.0) -> None:
        self._loaded = False
        self._load_delay = load_delay
        self.load_calls = 0
        self.embed_calls = 0

    @property
    def ready(self) -> bool:
        return self._loaded

    async def load(self) -> None:
        self.load_calls += 1
        await asyncio.sleep(self._load_delay)
        self._loaded = True

    async def embed_texts(self, texts: Sequence[str]) -> list[list[float]]:
        self.embed_calls += 1
        return [[1.0] + [0.0] * (DIM - 1) for _ in texts]


class FailingEmbedder(Embedder):
    """Embedder used to verify graceful fallback on embedding failures."""

    provider = "deterministic"
    model_name = "failing"
    dimension = DIM

    async def embed_texts(self, texts: Sequence[str]) -> list[list[float]]:
        raise ModelUnavailableError("forced failure for test")


class SlowEmbedder(Embedder):
    provider = "slow"
    model_name = "slow-v1"
    dimension = DIM

    async def embed_texts(self, texts: Sequence[str]) -> list[list[float]]:
        await asyncio.sleep(5)
        return [[1.0] * DIM for _ in texts]


class WrongSizeEmbedder(Embedder):
    provider = "wrong"
    model_name = "wrong-v1"
    dimension = DIM

    async def embed_texts(self, texts: Sequence[str]) -> list[list[float]]:
        return [[1.0] * (DIM + 3) for _ in texts]


class BrokenLoadEmbedder(CountingEmbedder):
    async def load(self) -> None:
        self.load_calls += 1
        raise ModelUnavailableError("model files missing")


@pytest.mark.parametrize("dimension", [8, 32, 384])
def test_hash_embedding_has_exact_dimension(dimension: int) -> None:
    vector = hash_embedding("hello", dimension)

    assert len(vector) == dimension
    assert all(-1.0 <= value <= 1.0 for value in vector)
    assert vector == hash_embedding("hello", dimension)
    assert vector != hash_embedding("hello!", dimension)


def test_hash_embedding_zero_pads_past_digest() -> None:
    vector = hash_embedding("hello", 64)

    assert vector[32:] == [0.0] * 32
    assert any(vector[:32])


def test_deterministic_embedder_is_normalized_and_stable() -> None:
    embedder = DeterministicEmbedder(dimension=DIM)

    first, second = asyncio.run(embedder.embed_texts(["I like tea", "I like tea"]))

    assert first == second
    assert math.sqrt(sum(value * value for value in first)) == pytest.approx(1.0)


@pytest.mark.anyio
async def test_pipeline_without_model_uses_hash_fallback() -> None:
    pipeline = EmbeddingPipeline(None, dimension=DIM)

    embedded = await pipeline.embed_text("hello")

    assert embedded.fallback is True
    assert embedded.provider == "hash"
    assert embedded.version == pipeline.fallback_version
    assert embedded.vector == hash_embedding("hello", DIM)
    assert await pipeline.embed("hello") == embedded.vector


@pytest.mark.anyio
async def test_failing_model_falls_back_without_raising(caplog) -> None:
    pipeline = EmbeddingPipeline(FailingEmbedder(), dimension=DIM)

    with caplog.at_level(logging.WARNING):
        first = await pipeline.embed("hello")
        second = await pipeline.embed("hello")

    assert len(first) == DIM
    assert first == second
    assert "hash fallback" in caplog.text


@pytest.mark.anyio
async def test_model_timeout_falls_back() -> None:
    pipeline = EmbeddingPipeline(SlowEmbedder(), dimension=DIM, timeout_sec=0.05)

    embedded = await pipeline.embed_text("hello")

    assert embedded.fallback is True
    assert len(embedded.vector) == DIM


@pytest.mark.anyio
async def test_wrong_dimension_falls_back() -> None:
    pipeline = EmbeddingPipeline(WrongSizeEmbedder(), dimension=DIM)

    embedded = await pipeline.embed_text("hello")

    assert embedded.fallback is True
    assert len(embedded.vector) == DIM


@pytest.mark.anyio
async def test_model_initialization_runs_once_for_concurrent_callers() -> None:
    embedder = CountingEmbedder(load_delay=0.05)
    pipeline = EmbeddingPipeline(embedder, dimension=DIM)

    results = await asyncio.gather(*(pipeline.embed_text(f"text {i}") for i in range(6)))

    assert embedder.load_calls == 1
    assert all(not item.fallback for item in results)
    assert all(item.version == "counting/counting-v1" for item in results)


@pytest.mark.anyio
async def test_load_timeout_keeps_loading_in_background() -> None:
    embedder = CountingEmbedder(load_delay=0.2)
    pipeline = EmbeddingPipeline(embedder, dimension=DIM, load_timeout_sec=0.01)

    early = await pipeline.embed_text("hello")
    assert early.fallback is True

    await asyncio.sleep(0.3)
    late = await pipeline.embed_text("hello")

    assert late.fallback is False
    assert embedder.load_calls == 1


@pytest.mark.anyio
async def test_failed_load_is_not_retried() -> None:
    embedder = BrokenLoadEmbedder()
    pipeline = EmbeddingPipeline(embedder, dimension=DIM)

    assert await pipeline.ensure_ready() is False
    assert (await pipeline.embed_text("hello")).fallback is True
    assert embedder.load_calls == 1


@pytest.mark.anyio
async def test_cached_embed_memoizes_model_vectors() -> None:
    embedder = CountingEmbedder()
    pipeline = EmbeddingPipeline(embedder, dimension=DIM)

    first = await pipeline.cached_embed("hello")
    second = await pipeline.cached_embed("hello")

    assert first == second
    assert embedder.embed_calls == 1
    assert len(pipeline.cache) == 1


@pytest.mark.anyio
async def test_fallback_vectors_are_not_cached() -> None:
    pipeline = EmbeddingPipeline(FailingEmbedder(), dimension=DIM)

    await pipeline.cached_embed("hello")

    assert len(pipeline.cache) == 0


def test_cache_evicts_least_recently_used() -> None:
    cache = EmbeddingCache(2)
    item = EmbeddedText(vector=[1.0], provider="p", model_name="m")

    cache.put("a", item)
    cache.put("b", item)
    assert cache.get("a") is item
    cache.put("c", item)

    assert len(cache) == 2
    assert cache.get("b") is None
    assert cache.get("a") is item
    assert cache.get("c") is item


@pytest.mark.anyio
async def test_missing_sentence_transformers_falls_back(monkeypatch) -> None:
    monkeypatch.setitem(sys.modules, "sentence_transformers", None)
    pipeline = EmbeddingPipeline(SentenceTransformerEmbedder(dimension=DIM), dimension=DIM)

    assert await pipeline.ensure_ready() is False
    assert (await pipeline.embed_text("hello")).fallback is True


def test_create_embedder_selection(caplog) -> None:
    assert create_embedder("hash", dimension=DIM) is None
    assert isinstance(create_embedder("deterministic", dimension=DIM), DeterministicEmbedder)
    assert isinstance(
        create_embedder("sentence_transformers", dimension=DIM), SentenceTransformerEmbedder
    )

    with caplog.at_level(logging.WARNING):
        unknown = create_embedder("bogus", dimension=DIM)
        keyless = create_embedder("openai", dimension=DIM, openai_api_key="")

    assert isinstance(unknown, DeterministicEmbedder)
    assert isinstance(keyless, DeterministicEmbedder)
    assert "Unknown EMBED_PROVIDER=bogus" in caplog.text
    assert "EMBED_OPENAI_API_KEY is missing" in caplog.text
