from __future__ import annotations

import asyncio
import hashlib
import logging
import math
import threading
from abc import ABC, abstractmethod
from collections import OrderedDict
from collections.abc import Sequence
from typing import Any, Optional

import httpx

from memcore.core.errors import ModelUnavailableError
from memcore.core.security import preview
from memcore.memory.types import EmbeddedText

logger = logging.getLogger(__name__)

HASH_PROVIDER = "hash"
DEFAULT_LOCAL_MODEL = "sentence-transformers/all-MiniLM-L6-v2"


class Embedder(ABC):
    """Embedding interface for pluggable providers."""

    provider: str
    model_name: str
    dimension: int

    @property
    def ready(self) -> bool:
        return True

    async def load(self) -> None:
        """Prepare the provider; no-op for providers without a model to load."""

    @abstractmethod
    async def embed_texts(self, texts: Sequence[str]) -> list[list[float]]:
        """Generate vectors for each text input."""


class DeterministicEmbedder(Embedder):
    """Offline token-hash embedder for tests and local runs.

    Texts sharing words land near each other, which keeps semantic
    duplicate checks meaningful without a model.
    """

    provider = "deterministic"

    def __init__(self, dimension: int, model_name: str = "deterministic-v1") -> None:
        if dimension <= 0:
            raise ValueError("Embedding dimension must be > 0")
        self.dimension = int(dimension)
        self.model_name = model_name

    async def embed_texts(self, texts: Sequence[str]) -> list[list[float]]:
        return [self._embed_single(text) for text in texts]

    def _embed_single(self, text: str) -> list[float]:
        cleaned = " ".join(text.split()).casefold()
        vector = [0.0] * self.dimension
        if not cleaned:
            vector[0] = 1.0
            return vector

        for token in cleaned.split(" "):
            token = token.strip(".,!?;:'\"()[]")
            if not token:
                continue
            digest = hashlib.blake2b(token.encode("utf-8"), digest_size=16).digest()
            index = int.from_bytes(digest[:4], byteorder="big") % self.dimension
            sign = 1.0 if digest[4] % 2 == 0 else -1.0
            vector[index] += sign * (1.0 + digest[5] / 255.0)
        if not any(vector):
            vector[0] = 1.0
        return _normalize_vector(vector)


class OpenAIEmbedder(Embedder):
    """OpenAI-compatible embedding provider."""

    provider = "openai"

    def __init__(
        self,
        *,
        base_url: str,
        api_key: str,
        model_name: str,
        dimension: int,
        timeout_sec: float = 20.0,
    ) -> None:
        if dimension <= 0:
            raise ValueError("Embedding dimension must be > 0")
        if not api_key.strip():
            raise ModelUnavailableError("OpenAI embedding API key is empty")
        self.model_name = model_name
        self.dimension = int(dimension)
        self._timeout_sec = timeout_sec
        self._api_key = api_key
        self._endpoint = f"{base_url.rstrip('/')}/v1/embeddings"

    async def embed_texts(self, texts: Sequence[str]) -> list[list[float]]:
        if not texts:
            return []
        payload = {"model": self.model_name, "input": list(texts)}
        headers = {
            "Authorization": f"Bearer {self._api_key}",
            "Content-Type": "application/json",
        }

        try:
            async with httpx.AsyncClient(timeout=self._timeout_sec) as client:
                response = await client.post(self._endpoint, json=payload, headers=headers)
            response.raise_for_status()
        except httpx.HTTPError as exc:
            raise ModelUnavailableError("OpenAI embedding request failed", retryable=True) from exc

        vectors = self._parse_embeddings(response.json(), len(texts))
        return [_normalize_vector(vector) for vector in vectors]

    def _parse_embeddings(self, payload: Any, expected_size: int) -> list[list[float]]:
        rows = payload.get("data") if isinstance(payload, dict) else None
        if not isinstance(rows, list) or len(rows) != expected_size:
            raise ModelUnavailableError("Embedding response shape is invalid")

        vectors: list[list[float]] = []
        for row in rows:
            embedding = row.get("embedding") if isinstance(row, dict) else None
            if not isinstance(embedding, list):
                raise ModelUnavailableError("Embedding row is missing vector data")
            if len(embedding) != self.dimension:
                raise ModelUnavailableError("Embedding dimension mismatch")
            try:
                vectors.append([float(value) for value in embedding])
            except (TypeError, ValueError) as exc:
                raise ModelUnavailableError("Embedding contains non-numeric values") from exc
        return vectors


class SentenceTransformerEmbedder(Embedder):
    """Local sentence-transformers model, loaded lazily in a worker thread.

    Requires the optional ``local`` extra.
    """

    provider = "sentence_transformers"

    def __init__(self, model_name: str = DEFAULT_LOCAL_MODEL, dimension: int = 384) -> None:
        if dimension <= 0:
            raise ValueError("Embedding dimension must be > 0")
        self.model_name = model_name
        self.dimension = int(dimension)
        self._model: Any = None

    @property
    def ready(self) -> bool:
        return self._model is not None

    async def load(self) -> None:
        if self._model is None:
            self._model = await asyncio.to_thread(self._load_model)

    def _load_model(self) -> Any:
        try:
            from sentence_transformers import SentenceTransformer
        except ImportError as exc:
            raise ModelUnavailableError(
                "sentence-transformers is not installed; install memcore[local]"
            ) from exc

        model = SentenceTransformer(self.model_name)
        model_dim = model.get_sentence_embedding_dimension()
        if model_dim is not None and int(model_dim) != self.dimension:
            raise ModelUnavailableError(
                f"Model {self.model_name} produces {model_dim} dimensions, expected {self.dimension}"
            )
        return model

    async def embed_texts(self, texts: Sequence[str]) -> list[list[float]]:
        if self._model is None:
            raise ModelUnavailableError("Embedding model is not loaded")
        if not texts:
            return []
        rows = await asyncio.to_thread(
            self._model.encode,
            list(texts),
            convert_to_numpy=True,
            normalize_embeddings=True,
        )
        return [[float(value) for value in row] for row in rows]


def hash_embedding(text: str, dimension: int) -> list[float]:
    """Deterministic pseudo-embedding from the sha256 of the UTF-8 text.

    Each digest byte maps to [-1, 1]; the result is zero-padded or truncated
    to ``dimension``. Carries no semantic meaning.
    """

    digest = hashlib.sha256(text.encode("utf-8")).digest()
    values = [byte / 127.5 - 1.0 for byte in digest[:dimension]]
    values.extend([0.0] * (dimension - len(values)))
    return values


class EmbeddingCache:
    """Bounded LRU cache of model vectors keyed by exact text."""

    def __init__(self, capacity: int) -> None:
        self._capacity = max(0, capacity)
        self._items: OrderedDict[str, EmbeddedText] = OrderedDict()
        self._lock = threading.Lock()

    def __len__(self) -> int:
        with self._lock:
            return len(self._items)

    def get(self, text: str) -> Optional[EmbeddedText]:
        with self._lock:
            item = self._items.get(text)
            if item is not None:
                self._items.move_to_end(text)
            return item

    def put(self, text: str, value: EmbeddedText) -> None:
        if self._capacity == 0:
            return
        with self._lock:
            self._items[text] = value
            self._items.move_to_end(text)
            while len(self._items) > self._capacity:
                self._items.popitem(last=False)

    def clear(self) -> None:
        with self._lock:
            self._items.clear()


class EmbeddingPipeline:
    """Text to fixed-length vector with caching, timeouts and a hash fallback.

    ``embed_text`` never raises: when the provider is missing, still loading,
    failing or slow, the sha256 pseudo-embedding is returned and tagged with
    the fallback version.
    """

    def __init__(
        self,
        embedder: Optional[Embedder],
        *,
        dimension: int,
        timeout_sec: float = 5.0,
        load_timeout_sec: float = 60.0,
        cache_size: int = 10_000,
    ) -> None:
        if dimension <= 0:
            raise ValueError("Embedding dimension must be > 0")
        self._embedder = embedder
        self._dimension = int(dimension)
        self._timeout_sec = timeout_sec
        self._load_timeout_sec = load_timeout_sec
        self._cache = EmbeddingCache(cache_size)
        self._load_task: Optional[asyncio.Task[bool]] = None
        self._load_failed = False

    @property
    def dimension(self) -> int:
        return self._dimension

    @property
    def provider(self) -> str:
        return self._embedder.provider if self._embedder is not None else HASH_PROVIDER

    @property
    def model_name(self) -> str:
        return self._embedder.model_name if self._embedder is not None else self.fallback_model

    @property
    def fallback_model(self) -> str:
        return f"sha256-{self._dimension}"

    @property
    def version(self) -> str:
        return f"{self.provider}/{self.model_name}"

    @property
    def fallback_version(self) -> str:
        return f"{HASH_PROVIDER}/{self.fallback_model}"

    @property
    def cache(self) -> EmbeddingCache:
        return self._cache

    async def ensure_ready(self) -> bool:
        """Start (or join) the single model load and report readiness."""

        if self._embedder is None or self._load_failed:
            return False
        if self._embedder.ready:
            return True
        if self._load_task is None:
            self._load_task = asyncio.create_task(self._load())
        try:
            # Shielded: a caller timing out must not cancel the shared load.
            return await asyncio.wait_for(
                asyncio.shield(self._load_task), timeout=self._load_timeout_sec
            )
        except asyncio.TimeoutError:
            logger.warning(
                "Embedding model %s still loading after %.1fs; using hash fallback",
                self.version,
                self._load_timeout_sec,
            )
            return False

    async def _load(self) -> bool:
        assert self._embedder is not None
        try:
            await self._embedder.load()
        except ModelUnavailableError as exc:
            self._load_failed = True
            logger.warning("Embedding model %s unavailable: %s", self.version, exc.message)
            return False
        except Exception:  # noqa: BLE001
            self._load_failed = True
            logger.exception("Embedding model %s failed to load", self.version)
            return False
        logger.info("Embedding model %s loaded", self.version)
        return True

    async def embed_text(self, text: str) -> EmbeddedText:
        if await self.ensure_ready():
            vector = await self._infer(text)
            if vector is not None:
                return EmbeddedText(
                    vector=vector, provider=self.provider, model_name=self.model_name
                )
        return self.fallback(text)

    async def embed(self, text: str) -> list[float]:
        return (await self.embed_text(text)).vector

    async def cached_embed_text(self, text: str) -> EmbeddedText:
        cached = self._cache.get(text)
        if cached is not None:
            return cached
        embedded = await self.embed_text(text)
        if not embedded.fallback:
            self._cache.put(text, embedded)
        return embedded

    async def cached_embed(self, text: str) -> list[float]:
        return (await self.cached_embed_text(text)).vector

    def fallback(self, text: str) -> EmbeddedText:
        return EmbeddedText(
            vector=hash_embedding(text, self._dimension),
            provider=HASH_PROVIDER,
            model_name=self.fallback_model,
            fallback=True,
        )

    async def _infer(self, text: str) -> Optional[list[float]]:
        assert self._embedder is not None
        try:
            vectors = await asyncio.wait_for(
                self._embedder.embed_texts([text]), timeout=self._timeout_sec
            )
        except asyncio.TimeoutError:
            logger.warning(
                "Embedding timed out after %.1fs for %r; using hash fallback",
                self._timeout_sec,
                preview(text),
            )
            return None
        except ModelUnavailableError as exc:
            logger.warning("Embedding provider unavailable: %s; using hash fallback", exc.message)
            return None
        except Exception:  # noqa: BLE001
            logger.exception("Embedding failed; using hash fallback")
            return None

        if len(vectors) != 1 or len(vectors[0]) != self._dimension:
            logger.warning(
                "Embedding provider %s returned an unexpected shape; using hash fallback",
                self.version,
            )
            return None
        return [float(value) for value in vectors[0]]

    async def close(self) -> None:
        task = self._load_task
        if task is not None and not task.done():
            task.cancel()
            await asyncio.gather(task, return_exceptions=True)


def create_embedder(
    provider: str,
    *,
    dimension: int,
    model_name: str = "",
    openai_base_url: str = "https://api.openai.com",
    openai_api_key: str = "",
) -> Optional[Embedder]:
    """Build the configured provider; ``None`` selects the pure hash pipeline."""

    provider = provider.strip().lower()
    model_name = model_name.strip()
    if provider == HASH_PROVIDER:
        return None
    if provider == "deterministic":
        return DeterministicEmbedder(dimension=dimension, model_name=model_name or "deterministic-v1")

    if provider == "openai":
        if not openai_api_key.strip():
            logger.warning(
                "EMBED_PROVIDER=openai but EMBED_OPENAI_API_KEY is missing; fallback to deterministic"
            )
            return DeterministicEmbedder(dimension=dimension)
        return OpenAIEmbedder(
            base_url=openai_base_url,
            api_key=openai_api_key,
            model_name=model_name or "text-embedding-3-small",
            dimension=dimension,
        )

    if provider in {"sentence_transformers", "sentence-transformers", "local"}:
        return SentenceTransformerEmbedder(
            model_name=model_name or DEFAULT_LOCAL_MODEL, dimension=dimension
        )

    logger.warning("Unknown EMBED_PROVIDER=%s; fallback to deterministic", provider)
    return DeterministicEmbedder(dimension=dimension)


def _normalize_vector(vector: list[float]) -> list[float]:
    norm = math.sqrt(sum(item * item for item in vector))
    if norm <= 0:
        return vector
    return [item / norm for item in vector]
