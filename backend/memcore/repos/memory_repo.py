from __future__ import annotations

import hashlib
import json
import math
import uuid
from collections.abc import Sequence
from datetime import datetime
from typing import Optional

from sqlalchemy import and_, delete, func, or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from memcore.db.models import MemoryEmbeddingRow, MemoryRecordRow
from memcore.memory.importance import decayed_importance
from memcore.memory.types import Category, MemoryMetadata, MemoryRecord
from memcore.utils.time_utils import age_in_days, utc_now


def content_hash(content: str) -> str:
    return hashlib.sha256(content.strip().encode("utf-8")).hexdigest()


def to_memory_record(
    row: MemoryRecordRow,
    embedding: Optional[MemoryEmbeddingRow] = None,
    now: Optional[datetime] = None,
) -> MemoryRecord:
    try:
        metadata = MemoryMetadata.from_dict(json.loads(row.metadata_json or "{}"))
    except json.JSONDecodeError:
        metadata = MemoryMetadata()
    return MemoryRecord(
        id=row.id,
        owner_id=row.owner_id,
        category=Category.normalize(row.category),
        content=row.content,
        confidence=float(row.confidence),
        metadata=metadata,
        created_at=row.created_at,
        updated_at=row.updated_at,
        source_session_id=row.source_session_id,
        embedding_version=(
            f"{embedding.provider}/{embedding.model_name}" if embedding is not None else None
        ),
        decayed_confidence=decayed_importance(
            float(row.confidence), age_in_days(row.updated_at, now)
        ),
    )


class MemoryRepo:
    """Repository for memory records and their vectors."""

    def __init__(self, db: AsyncSession) -> None:
        self._db = db

    async def insert(
        self,
        *,
        owner_id: str,
        category: Category | str,
        content: str,
        confidence: float,
        metadata: Optional[MemoryMetadata] = None,
        source_session_id: Optional[str] = None,
        memory_id: Optional[str] = None,
    ) -> MemoryRecordRow:
        """Insert a record; a duplicate triple raises IntegrityError on flush."""

        now = utc_now()
        cleaned = content.strip()
        row = MemoryRecordRow(
            id=memory_id or uuid.uuid4().hex,
            owner_id=owner_id,
            category=Category.normalize(category).value,
            content=cleaned,
            content_hash=content_hash(cleaned),
            confidence=_clamp_confidence(confidence),
            metadata_json=json.dumps((metadata or MemoryMetadata()).to_dict(), ensure_ascii=False),
            source_session_id=source_session_id,
            created_at=now,
            updated_at=now,
        )
        self._db.add(row)
        await self._db.flush()
        return row

    async def find_exact(
        self, owner_id: str, category: Category | str, content: str
    ) -> Optional[MemoryRecordRow]:
        result = await self._db.execute(
            select(MemoryRecordRow).where(
                MemoryRecordRow.owner_id == owner_id,
                MemoryRecordRow.category == Category.normalize(category).value,
                MemoryRecordRow.content_hash == content_hash(content),
            )
        )
        return result.scalar_one_or_none()

    async def get(
        self, memory_id: str, owner_id: Optional[str] = None
    ) -> Optional[MemoryRecordRow]:
        stmt = select(MemoryRecordRow).where(MemoryRecordRow.id == memory_id)
        if owner_id is not None:
            stmt = stmt.where(MemoryRecordRow.owner_id == owner_id)
        result = await self._db.execute(stmt)
        return result.scalar_one_or_none()

    async def update_confidence(
        self, memory_id: str, confidence: float
    ) -> Optional[MemoryRecordRow]:
        row = await self.get(memory_id)
        if row is None:
            return None
        row.confidence = _clamp_confidence(confidence)
        row.updated_at = utc_now()
        await self._db.flush()
        return row

    async def update_embedding(
        self,
        *,
        memory_id: str,
        owner_id: str,
        provider: str,
        model_name: str,
        vector: Sequence[float],
    ) -> MemoryEmbeddingRow:
        """Insert or replace the vector payload for one memory record."""

        values = [float(value) for value in vector]
        norm = math.sqrt(sum(value * value for value in values))
        vector_json = json.dumps(values, separators=(",", ":"))

        existing = await self.get_embedding(memory_id)
        if existing:
            existing.owner_id = owner_id
            existing.provider = provider
            existing.model_name = model_name
            existing.dim = len(values)
            existing.vector_json = vector_json
            existing.vector_norm = norm
            existing.updated_at = utc_now()
            await self._db.flush()
            return existing

        now = utc_now()
        embedding = MemoryEmbeddingRow(
            id=uuid.uuid4().hex,
            memory_id=memory_id,
            owner_id=owner_id,
            provider=provider,
            model_name=model_name,
            dim=len(values),
            vector_json=vector_json,
            vector_norm=norm,
            created_at=now,
            updated_at=now,
        )
        self._db.add(embedding)
        await self._db.flush()
        return embedding

    async def get_embedding(self, memory_id: str) -> Optional[MemoryEmbeddingRow]:
        result = await self._db.execute(
            select(MemoryEmbeddingRow).where(MemoryEmbeddingRow.memory_id == memory_id)
        )
        return result.scalar_one_or_none()

    async def list_by_owner(
        self,
        owner_id: str,
        category: Optional[Category | str] = None,
        limit: Optional[int] = None,
    ) -> list[MemoryRecordRow]:
        """List an owner's records, most recently updated first."""

        stmt = select(MemoryRecordRow).where(MemoryRecordRow.owner_id == owner_id)
        if category is not None:
            stmt = stmt.where(MemoryRecordRow.category == Category.normalize(category).value)
        stmt = stmt.order_by(MemoryRecordRow.updated_at.desc(), MemoryRecordRow.id)
        if limit is not None:
            stmt = stmt.limit(limit)
        result = await self._db.execute(stmt)
        return list(result.scalars())

    async def delete(self, memory_id: str, owner_id: str) -> bool:
        """Hard-delete one record and its vector when the owner matches."""

        row = await self.get(memory_id, owner_id)
        if row is None:
            return False
        await self.delete_embedding(memory_id)
        await self._db.delete(row)
        await self._db.flush()
        return True

    async def delete_embedding(self, memory_id: str) -> bool:
        result = await self._db.execute(
            delete(MemoryEmbeddingRow).where(MemoryEmbeddingRow.memory_id == memory_id)
        )
        return bool(result.rowcount)

    async def list_owner_ids(self) -> list[str]:
        result = await self._db.execute(
            select(MemoryRecordRow.owner_id).distinct().order_by(MemoryRecordRow.owner_id)
        )
        return list(result.scalars())

    async def count_by_category(self, owner_id: str) -> dict[str, int]:
        stmt = (
            select(MemoryRecordRow.category, func.count(MemoryRecordRow.id))
            .where(MemoryRecordRow.owner_id == owner_id)
            .group_by(MemoryRecordRow.category)
            .order_by(MemoryRecordRow.category)
        )
        result = await self._db.execute(stmt)
        return {category: int(total) for category, total in result.all()}

    async def list_missing_embeddings(
        self,
        *,
        owner_id: Optional[str] = None,
        stale_provider: Optional[str] = None,
        stale_model: Optional[str] = None,
    ) -> list[MemoryRecordRow]:
        """Records without a vector.

        When ``stale_provider``/``stale_model`` name the current embedding
        version, records whose vector carries any other version are included.
        """

        missing = MemoryEmbeddingRow.id.is_(None)
        condition = missing
        if stale_provider is not None and stale_model is not None:
            condition = or_(
                missing,
                MemoryEmbeddingRow.provider != stale_provider,
                MemoryEmbeddingRow.model_name != stale_model,
            )
        stmt = (
            select(MemoryRecordRow)
            .outerjoin(MemoryEmbeddingRow, MemoryEmbeddingRow.memory_id == MemoryRecordRow.id)
            .where(condition)
        )
        if owner_id is not None:
            stmt = stmt.where(MemoryRecordRow.owner_id == owner_id)
        stmt = stmt.order_by(MemoryRecordRow.created_at, MemoryRecordRow.id)
        result = await self._db.execute(stmt)
        return list(result.scalars())

    async def list_vectors(
        self,
        owner_id: str,
        provider: Optional[str] = None,
        model_name: Optional[str] = None,
    ) -> list[tuple[MemoryRecordRow, MemoryEmbeddingRow]]:
        """Record + vector pairs for one owner, optionally one embedding version."""

        conditions = [
            MemoryRecordRow.owner_id == owner_id,
            MemoryEmbeddingRow.owner_id == owner_id,
        ]
        if provider is not None:
            conditions.append(MemoryEmbeddingRow.provider == provider)
        if model_name is not None:
            conditions.append(MemoryEmbeddingRow.model_name == model_name)
        stmt = (
            select(MemoryRecordRow, MemoryEmbeddingRow)
            .join(MemoryEmbeddingRow, MemoryEmbeddingRow.memory_id == MemoryRecordRow.id)
            .where(and_(*conditions))
            .order_by(MemoryRecordRow.updated_at.desc())
        )
        result = await self._db.execute(stmt)
        return [(record, vector) for record, vector in result.all()]


def _clamp_confidence(value: float) -> float:
    return round(min(1.0, max(0.0, float(value))), 4)
