from __future__ import annotations

import json
import math
from abc import ABC, abstractmethod
from collections.abc import Sequence
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy.ext.asyncio import AsyncSession

from memcore.memory.types import Category, EmbeddedText, VectorMatch
from memcore.repos.memory_repo import MemoryRepo


class VectorStore(ABC):
    """Abstract per-owner vector storage backend."""

    @abstractmethod
    async def upsert_vector(
        self,
        *,
        db: AsyncSession,
        owner_id: str,
        memory_id: str,
        embedding: EmbeddedText,
    ) -> bool:
        """Attach a vector to one memory; False when the owner does not match."""

    @abstractmethod
    async def search(
        self,
        *,
        db: AsyncSession,
        owner_id: str,
        query_embedding: Sequence[float],
        top_k: int,
        min_similarity: float,
        provider: Optional[str] = None,
        model_name: Optional[str] = None,
    ) -> list[VectorMatch]:
        """Top-k nearest memories of one owner above ``min_similarity``."""

    @abstractmethod
    async def delete(self, *, db: AsyncSession, memory_id: str) -> bool:
        """Drop the vector of one memory."""


class SQLiteVectorStore(VectorStore):
    """Vectors stored as JSON rows with in-process cosine similarity."""

    async def upsert_vector(
        self,
        *,
        db: AsyncSession,
        owner_id: str,
        memory_id: str,
        embedding: EmbeddedText,
    ) -> bool:
        repo = MemoryRepo(db)
        if await repo.get(memory_id, owner_id) is None:
            return False
        await repo.update_embedding(
            memory_id=memory_id,
            owner_id=owner_id,
            provider=embedding.provider,
            model_name=embedding.model_name,
            vector=embedding.vector,
        )
        return True

    async def search(
        self,
        *,
        db: AsyncSession,
        owner_id: str,
        query_embedding: Sequence[float],
        top_k: int,
        min_similarity: float,
        provider: Optional[str] = None,
        model_name: Optional[str] = None,
    ) -> list[VectorMatch]:
        if top_k <= 0:
            return []

        query = [float(value) for value in query_embedding]
        query_norm = _norm(query)
        if query_norm <= 0:
            return []

        rows = await MemoryRepo(db).list_vectors(owner_id, provider, model_name)
        scored: list[VectorMatch] = []
        for record, embedding in rows:
            if record.owner_id != owner_id:
                continue
            candidate = _load_vector(embedding.vector_json, len(query))
            if candidate is None:
                continue
            similarity = _cosine(query, query_norm, candidate, float(embedding.vector_norm))
            if similarity < min_similarity:
                continue
            scored.append(
                VectorMatch(
                    memory_id=record.id,
                    similarity=similarity,
                    content=record.content,
                    category=Category.normalize(record.category),
                    updated_at=record.updated_at,
                )
            )

        scored.sort(key=lambda match: (match.similarity, _sort_time(match.updated_at)), reverse=True)
        return scored[:top_k]

    async def delete(self, *, db: AsyncSession, memory_id: str) -> bool:
        return await MemoryRepo(db).delete_embedding(memory_id)


def cosine_similarity(left: Sequence[float], right: Sequence[float]) -> float:
    """Cosine similarity (1 - cosine distance); 0.0 for zero or mismatched vectors."""

    left_values = [float(value) for value in left]
    right_values = [float(value) for value in right]
    return _cosine(left_values, _norm(left_values), right_values, _norm(right_values))


def _cosine(
    left: list[float], left_norm: float, right: list[float], right_norm: float
) -> float:
    if left_norm <= 0 or right_norm <= 0 or len(left) != len(right):
        return 0.0
    dot = 0.0
    for l_value, r_value in zip(left, right):
        dot += l_value * r_value
    return max(-1.0, min(1.0, dot / (left_norm * right_norm)))


def _norm(vector: list[float]) -> float:
    return math.sqrt(sum(value * value for value in vector))


def _load_vector(payload: str, dimension: int) -> Optional[list[float]]:
    try:
        candidate = json.loads(payload)
    except json.JSONDecodeError:
        return None
    if not isinstance(candidate, list) or len(candidate) != dimension:
        return None
    try:
        return [float(value) for value in candidate]
    except (TypeError, ValueError):
        return None


def _sort_time(value: Optional[datetime]) -> float:
    if value is None:
        return 0.0
    if value.tzinfo is None:
        # SQLite hands back naive datetimes; they were written as UTC.
        value = value.replace(tzinfo=timezone.utc)
    return value.timestamp()
