from __future__ import annotations

from datetime import datetime
from typing import Optional

from sqlalchemy import DateTime, Float, ForeignKey, Index, Integer, String, Text, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from memcore.db.base import Base
from memcore.utils.time_utils import utc_now


class MemoryRecordRow(Base):
    """Persisted memory fact owned by one user."""

    __tablename__ = "user_memories"
    __table_args__ = (
        UniqueConstraint(
            "owner_id",
            "category",
            "content_hash",
            name="uq_memory_owner_category_content",
        ),
        Index("ix_memory_owner_updated", "owner_id", "updated_at"),
    )

    id: Mapped[str] = mapped_column(String, primary_key=True)
    owner_id: Mapped[str] = mapped_column(String, nullable=False)
    category: Mapped[str] = mapped_column(String, nullable=False)
    content: Mapped[str] = mapped_column(Text, nullable=False)
    content_hash: Mapped[str] = mapped_column(String, nullable=False)
    confidence: Mapped[float] = mapped_column(Float, nullable=False, default=1.0)
    metadata_json: Mapped[str] = mapped_column(Text, nullable=False, default="{}")
    source_session_id: Mapped[Optional[str]] = mapped_column(String, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utc_now)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utc_now, onupdate=utc_now
    )


class MemoryEmbeddingRow(Base):
    """Vector payload for a memory record, tagged with the embedding version."""

    __tablename__ = "memory_embeddings"
    __table_args__ = (
        UniqueConstraint("memory_id", name="uq_memory_embedding_memory"),
        Index("ix_memory_embedding_owner_model", "owner_id", "provider", "model_name"),
    )

    id: Mapped[str] = mapped_column(String, primary_key=True)
    memory_id: Mapped[str] = mapped_column(
        String, ForeignKey("user_memories.id", ondelete="CASCADE"), nullable=False
    )
    owner_id: Mapped[str] = mapped_column(String, nullable=False)
    provider: Mapped[str] = mapped_column(String, nullable=False)
    model_name: Mapped[str] = mapped_column(String, nullable=False)
    dim: Mapped[int] = mapped_column(Integer, nullable=False)
    vector_json: Mapped[str] = mapped_column(Text, nullable=False)
    vector_norm: Mapped[float] = mapped_column(Float, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utc_now)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utc_now, onupdate=utc_now
    )
