from __future__ import annotations

from datetime import datetime
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from memcore.memory.types import Category, MemoryCandidate, SensitivityFeedback
from memcore.utils.time_utils import utc_now


class APIModel(BaseModel):
    """Base model for caller-supplied payloads."""

    model_config = ConfigDict(from_attributes=True, protected_namespaces=(), str_strip_whitespace=True)


class MemoryCandidateIn(APIModel):
    """One utterance submitted for memory extraction.

    Blank text is accepted and scored as a skip; missing text is rejected.
    """

    owner_id: str = Field(min_length=1)
    text: str
    timestamp_utc: datetime = Field(default_factory=utc_now)
    session_id: Optional[str] = Field(default=None)

    def to_candidate(self) -> MemoryCandidate:
        return MemoryCandidate(
            owner_id=self.owner_id,
            text=self.text,
            timestamp_utc=self.timestamp_utc,
            session_id=self.session_id or None,
        )


class ManualMemoryIn(APIModel):
    """Explicitly saved memory that bypasses importance scoring."""

    owner_id: str = Field(min_length=1)
    category: Category = Field(default=Category.GENERAL)
    content: str = Field(min_length=1)
    confidence: float = Field(default=1.0, ge=0.0, le=1.0)
    source_session_id: Optional[str] = Field(default=None)
    source: str = Field(default="manual")

    @field_validator("category", mode="before")
    @classmethod
    def _normalize_category(cls, value: object) -> Category:
        return Category.normalize(value)


class SensitivityFeedbackIn(APIModel):
    owner_id: str = Field(min_length=1)
    feedback: SensitivityFeedback
