from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Optional


class Category(str, Enum):
    """Fixed memory taxonomy; values are stable wire-format strings."""

    PERSONAL_INFO = "personal_info"
    PREFERENCES = "preferences"
    IMPORTANT_DATES = "important_dates"
    TASKS = "tasks"
    NOTES = "notes"
    GENERAL = "general"
    RELATIONSHIPS = "relationships"
    WORK = "work"
    HEALTH = "health"
    HOBBIES = "hobbies"
    GOALS = "goals"

    @classmethod
    def normalize(cls, value: Any) -> "Category":
        """Map any stored or caller-supplied value onto the taxonomy.

        Unknown, empty and missing values become ``general``.
        """

        if isinstance(value, cls):
            return value
        if not isinstance(value, str):
            return cls.GENERAL
        try:
            return cls(value.strip().lower())
        except ValueError:
            return cls.GENERAL


# Decision labels that are not storable categories.
SKIPPED_LABEL = "skipped"
ERROR_LABEL = "error"


class ImportanceAction(str, Enum):
    PROCESS = "process"
    DEFER = "defer"
    SKIP = "skip"


class DuplicateStatus(str, Enum):
    NEW = "new"
    MERGED = "merged"
    DUPLICATE = "duplicate"


class SensitivityFeedback(str, Enum):
    TOO_SENSITIVE = "too_sensitive"
    NOT_SENSITIVE_ENOUGH = "not_sensitive_enough"


@dataclass(frozen=True)
class MemoryCandidate:
    """One conversational utterance submitted for memory extraction."""

    owner_id: str
    text: str
    timestamp_utc: datetime
    session_id: Optional[str] = None


@dataclass(frozen=True)
class ConversationTurn:
    content: str
    timestamp: Optional[datetime] = None


@dataclass(frozen=True)
class MemoryRef:
    """Minimal view of an existing memory used by lexical checks."""

    id: str
    content: str
    category: Optional[Category] = None


@dataclass(frozen=True)
class ImportanceAnalysis:
    score: float
    action: ImportanceAction
    suggested_category: Category
    dimensions: dict[str, float]
    reasoning: tuple[str, ...] = ()


@dataclass(frozen=True)
class DuplicateMatch:
    memory_id: str
    similarity: float


@dataclass(frozen=True)
class DuplicateVerdict:
    is_duplicate: bool
    confidence: float
    matches: tuple[DuplicateMatch, ...] = ()

    @property
    def top_match(self) -> Optional[DuplicateMatch]:
        return self.matches[0] if self.matches else None


@dataclass(frozen=True)
class CategoryResult:
    category: Category
    confidence: float
    matched_keywords: tuple[str, ...] = ()


@dataclass(frozen=True)
class EmotionReading:
    emotion: str
    intensity: float
    timestamp: Optional[datetime] = None


@dataclass(frozen=True)
class EmotionalContext:
    primary_emotion: str
    intensity: float
    sentiment: float
    secondary_emotions: tuple[str, ...] = ()
    trail: tuple[EmotionReading, ...] = ()


@dataclass(frozen=True)
class EmbeddedText:
    """Embedding vector tagged with the function that produced it."""

    vector: list[float]
    provider: str
    model_name: str
    fallback: bool = False

    @property
    def version(self) -> str:
        return f"{self.provider}/{self.model_name}"


@dataclass(frozen=True)
class VectorMatch:
    """Vector-search hit with cosine similarity."""

    memory_id: str
    similarity: float
    content: str
    category: Category
    updated_at: Optional[datetime] = None


@dataclass(frozen=True)
class MemorySnippet:
    """Retrieved memory handed to prompt construction."""

    memory_id: str
    content: str
    category: Category
    similarity: float


@dataclass
class MemoryMetadata:
    source: str = "conversation"
    reasoning: list[str] = field(default_factory=list)
    duplicate_status: DuplicateStatus = DuplicateStatus.NEW

    def to_dict(self) -> dict[str, Any]:
        return {
            "source": self.source,
            "reasoning": list(self.reasoning),
            "duplicate_status": self.duplicate_status.value,
        }

    @classmethod
    def from_dict(cls, payload: Any) -> "MemoryMetadata":
        if not isinstance(payload, dict):
            return cls()
        try:
            status = DuplicateStatus(payload.get("duplicate_status", "new"))
        except ValueError:
            status = DuplicateStatus.NEW
        reasoning = payload.get("reasoning")
        return cls(
            source=str(payload.get("source") or "conversation"),
            reasoning=[str(item) for item in reasoning] if isinstance(reasoning, list) else [],
            duplicate_status=status,
        )


@dataclass(frozen=True)
class MemoryRecord:
    id: str
    owner_id: str
    category: Category
    content: str
    confidence: float
    metadata: MemoryMetadata
    created_at: datetime
    updated_at: datetime
    source_session_id: Optional[str] = None
    embedding_version: Optional[str] = None
    # Confidence after age decay since the last update.
    decayed_confidence: Optional[float] = None

    def to_ref(self) -> MemoryRef:
        return MemoryRef(id=self.id, content=self.content, category=self.category)


@dataclass(frozen=True)
class ProcessingDecision:
    """Outcome of the processing pipeline for one candidate."""

    should_save: bool
    category: str
    confidence: float
    duplicate_status: DuplicateStatus
    reasoning: tuple[str, ...]
    importance: Optional[ImportanceAnalysis] = None
    verdict: Optional[DuplicateVerdict] = None
    emotion: Optional[EmotionalContext] = None
    duplicate_of: Optional[str] = None


@dataclass(frozen=True)
class RememberResult:
    decision: ProcessingDecision
    outcome: str
    record: Optional[MemoryRecord] = None


@dataclass(frozen=True)
class MemoryStatus:
    """Per-owner engine snapshot."""

    owner_id: str
    threshold: float
    deferred_count: int
    total_memories: int
    category_distribution: dict[str, int]
    average_decayed_confidence: float
