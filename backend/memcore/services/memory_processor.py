from __future__ import annotations

import logging
from collections.abc import Sequence
from dataclasses import replace
from typing import Optional, Union

from memcore.memory.categorizer import Categorizer
from memcore.memory.deferred import DeferredQueue
from memcore.memory.duplicates import STRONG_LEXICAL_THRESHOLD, DuplicateDetector
from memcore.memory.emotion import EmotionAnalyzer
from memcore.memory.importance import ImportanceAnalyzer, SensitivityRegistry
from memcore.memory.types import (
    ERROR_LABEL,
    SKIPPED_LABEL,
    Category,
    ConversationTurn,
    DuplicateMatch,
    DuplicateStatus,
    ImportanceAction,
    MemoryCandidate,
    MemoryRef,
    ProcessingDecision,
)
from memcore.utils.time_utils import utc_now

logger = logging.getLogger(__name__)

IMPORTANCE_WEIGHT = 0.4
NOVELTY_WEIGHT = 0.3
CATEGORY_WEIGHT = 0.2
EMOTION_WEIGHT = 0.1


class MemoryProcessor:
    """Sequence importance, duplicate, category and emotion checks for one candidate.

    ``process`` reads the owner's sensitivity threshold and parks defer-band
    candidates in the deferred queue; otherwise it is pure. It never raises:
    failures come back as a decision with category ``error``.
    """

    def __init__(
        self,
        *,
        sensitivity: SensitivityRegistry,
        importance: Optional[ImportanceAnalyzer] = None,
        categorizer: Optional[Categorizer] = None,
        duplicates: Optional[DuplicateDetector] = None,
        emotion: Optional[EmotionAnalyzer] = None,
        deferred: Optional[DeferredQueue] = None,
    ) -> None:
        self._sensitivity = sensitivity
        self._importance = importance or ImportanceAnalyzer()
        self._categorizer = categorizer or Categorizer()
        self._duplicates = duplicates or DuplicateDetector()
        self._emotion = emotion or EmotionAnalyzer()
        self._deferred = deferred or DeferredQueue()

    @property
    def deferred(self) -> DeferredQueue:
        return self._deferred

    def should_consider(self, text: str, owner_id: str) -> bool:
        """Whether the importance gate lets ``text`` through for this owner."""

        return self.gate(text, owner_id) is not ImportanceAction.SKIP

    def gate(self, text: str, owner_id: str) -> ImportanceAction:
        return self._importance.analyze(text, self._sensitivity.get(owner_id)).action

    def process_deferred(self, owner_id: str) -> list[MemoryCandidate]:
        """Hand back the owner's deferred candidates and clear the queue."""

        return self._deferred.drain(owner_id)

    def process(
        self,
        candidate: Union[MemoryCandidate, str],
        owner_id: Optional[str] = None,
        existing: Sequence[MemoryRef] = (),
        history: Sequence[ConversationTurn] = (),
        semantic_matches: Sequence[DuplicateMatch] = (),
    ) -> ProcessingDecision:
        reasoning: list[str] = []
        try:
            return self._process(candidate, owner_id, existing, history, semantic_matches, reasoning)
        except Exception as exc:  # noqa: BLE001
            logger.exception("Memory processing failed")
            reasoning.append(f"error: {exc}")
            return ProcessingDecision(
                should_save=False,
                category=ERROR_LABEL,
                confidence=0.0,
                duplicate_status=DuplicateStatus.NEW,
                reasoning=tuple(reasoning),
            )

    def _process(
        self,
        candidate: Union[MemoryCandidate, str],
        owner_id: Optional[str],
        existing: Sequence[MemoryRef],
        history: Sequence[ConversationTurn],
        semantic_matches: Sequence[DuplicateMatch],
        reasoning: list[str],
    ) -> ProcessingDecision:
        if isinstance(candidate, MemoryCandidate):
            text = candidate.text
            owner = owner_id or candidate.owner_id
        else:
            text = candidate
            owner = owner_id
        if not owner:
            raise ValueError("owner_id is required")

        threshold = self._sensitivity.get(owner)
        importance = self._importance.analyze(text, threshold)
        reasoning.append(
            f"importance {importance.score:.2f} (threshold {threshold:.2f}): {importance.action.value}"
        )
        reasoning.extend(f"importance: {line}" for line in importance.reasoning)
        if importance.action is ImportanceAction.SKIP:
            reasoning.append("not saved: below importance threshold")
            return ProcessingDecision(
                should_save=False,
                category=SKIPPED_LABEL,
                confidence=importance.score,
                duplicate_status=DuplicateStatus.NEW,
                reasoning=tuple(reasoning),
                importance=importance,
            )
        if importance.action is ImportanceAction.DEFER:
            if isinstance(candidate, MemoryCandidate):
                candidate = replace(candidate, owner_id=owner)
            else:
                candidate = MemoryCandidate(owner_id=owner, text=text, timestamp_utc=utc_now())
            self._deferred.push(candidate)
            reasoning.append("deferred: queued for later review, not saved")
            return ProcessingDecision(
                should_save=False,
                category=importance.suggested_category.value,
                confidence=importance.score,
                duplicate_status=DuplicateStatus.NEW,
                reasoning=tuple(reasoning),
                importance=importance,
            )

        verdict = self._duplicates.check_duplicate(text, existing)
        semantic_top = max(semantic_matches, key=lambda match: match.similarity, default=None)
        semantic_score = semantic_top.similarity if semantic_top is not None else None
        status = self._duplicates.classify(verdict, semantic_score)
        semantic_note = f"{semantic_score:.2f}" if semantic_score is not None else "n/a"
        reasoning.append(
            f"duplicate check: lexical {verdict.confidence:.2f}, semantic {semantic_note}: {status.value}"
        )

        if status is DuplicateStatus.DUPLICATE:
            lexical_top = verdict.top_match
            if lexical_top is not None and lexical_top.similarity > STRONG_LEXICAL_THRESHOLD:
                match = lexical_top
            else:
                match = semantic_top or lexical_top
            category = self._matched_category(match, existing) or importance.suggested_category
            reasoning.append(f"not saved: duplicate of {match.memory_id if match else 'unknown'}")
            return ProcessingDecision(
                should_save=False,
                category=category.value,
                confidence=round(max(verdict.confidence, semantic_score or 0.0), 4),
                duplicate_status=status,
                reasoning=tuple(reasoning),
                importance=importance,
                verdict=verdict,
                duplicate_of=match.memory_id if match else None,
            )

        category_result = self._categorizer.classify(text, existing)
        reasoning.append(
            f"category {category_result.category.value} (confidence {category_result.confidence:.2f})"
        )

        emotion = self._emotion.analyze(text, history)
        reasoning.append(
            f"emotion {emotion.primary_emotion} (intensity {emotion.intensity:.2f}, sentiment {emotion.sentiment:.2f})"
        )

        confidence = (
            IMPORTANCE_WEIGHT * importance.score
            + NOVELTY_WEIGHT * (1.0 - verdict.confidence)
            + CATEGORY_WEIGHT * category_result.confidence
            + EMOTION_WEIGHT * emotion.intensity
        )
        confidence = round(min(1.0, max(0.0, confidence)), 4)
        reasoning.append(f"final confidence {confidence:.2f}")

        return ProcessingDecision(
            should_save=True,
            category=category_result.category.value,
            confidence=confidence,
            duplicate_status=status,
            reasoning=tuple(reasoning),
            importance=importance,
            verdict=verdict,
            emotion=emotion,
        )

    @staticmethod
    def _matched_category(
        match: Optional[DuplicateMatch], existing: Sequence[MemoryRef]
    ) -> Optional[Category]:
        if match is None:
            return None
        for memory in existing:
            if memory.id == match.memory_id and memory.category is not None:
                return Category.normalize(memory.category)
        return None
