from __future__ import annotations

import math
import re
import threading
from typing import Optional

from memcore.memory.keywords import DEFAULT_KEYWORDS, KeywordTables
from memcore.memory.normalizer import contains_keyword, matched_keywords, normalize
from memcore.memory.types import (
    Category,
    ImportanceAction,
    ImportanceAnalysis,
    SensitivityFeedback,
)

DEFAULT_THRESHOLD = 0.7
MIN_THRESHOLD = 0.1
MAX_THRESHOLD = 0.9


class ImportanceAnalyzer:
    """Heuristic scorer deciding whether an utterance is worth remembering.

    The score starts at a base value and adds bonuses for long text, matched
    keyword axes, questions and first-person self-disclosure. The caller
    supplies the owner's process threshold; the defer band sits
    ``DEFER_BAND`` below it.
    """

    BASE_SCORE = 0.3
    LENGTH_THRESHOLD = 100
    LENGTH_BONUS = 0.2
    AXIS_BONUS = 0.1
    AXIS_BONUS_CAP = 0.3
    QUESTION_BONUS = 0.1
    DISCLOSURE_BONUS = 0.3
    DEFER_BAND = 0.3

    def __init__(self, tables: KeywordTables = DEFAULT_KEYWORDS) -> None:
        self._tables = tables
        self._disclosure_patterns = tuple(
            re.compile(pattern, re.IGNORECASE) for pattern in tables.self_disclosure_patterns
        )

    def analyze(self, text: str, threshold: float = DEFAULT_THRESHOLD) -> ImportanceAnalysis:
        normalized = normalize(text)
        dimensions: dict[str, float] = {axis: 0.0 for axis in self._tables.importance_axes}
        if not normalized:
            dimensions["base"] = self.BASE_SCORE
            return ImportanceAnalysis(
                score=self.BASE_SCORE,
                action=ImportanceAction.SKIP,
                suggested_category=Category.GENERAL,
                dimensions=dimensions,
                reasoning=("empty text",),
            )

        reasons: list[str] = []
        score = self.BASE_SCORE

        length_bonus = 0.0
        if len(normalized) > self.LENGTH_THRESHOLD:
            length_bonus = self.LENGTH_BONUS
            reasons.append("longer message")

        axis_hits: dict[str, int] = {}
        for axis, keywords in self._tables.importance_axes.items():
            hits = matched_keywords(normalized, keywords)
            if hits:
                axis_hits[axis] = len(hits)
                dimensions[axis] = min(1.0, 0.5 * len(hits))
        axis_bonus = min(self.AXIS_BONUS_CAP, self.AXIS_BONUS * len(axis_hits))
        if axis_hits:
            reasons.append(f"keyword axes: {', '.join(axis_hits)}")

        question_bonus = self.QUESTION_BONUS if self._is_question(normalized) else 0.0
        if question_bonus:
            reasons.append("contains question")

        disclosure_bonus = 0.0
        if any(pattern.search(normalized) for pattern in self._disclosure_patterns):
            disclosure_bonus = self.DISCLOSURE_BONUS
            reasons.append("personal information detected")

        score += length_bonus + axis_bonus + question_bonus + disclosure_bonus
        score = round(min(1.0, max(0.0, score)), 4)

        dimensions.update(
            {
                "base": self.BASE_SCORE,
                "length": length_bonus,
                "keywords": round(axis_bonus, 4),
                "question": question_bonus,
                "self_disclosure": disclosure_bonus,
            }
        )
        return ImportanceAnalysis(
            score=score,
            action=self._action_for(score, threshold),
            suggested_category=self._suggest_category(axis_hits),
            dimensions=dimensions,
            reasoning=tuple(reasons),
        )

    def _action_for(self, score: float, threshold: float) -> ImportanceAction:
        if score >= threshold:
            return ImportanceAction.PROCESS
        if score >= max(0.0, round(threshold - self.DEFER_BAND, 4)):
            return ImportanceAction.DEFER
        return ImportanceAction.SKIP

    def _is_question(self, normalized: str) -> bool:
        if "?" in normalized or "？" in normalized:
            return True
        for prefix in self._tables.question_prefixes:
            if not normalized.startswith(prefix.casefold()):
                continue
            if not prefix.isascii() or contains_keyword(normalized[: len(prefix) + 1], prefix):
                return True
        return False

    def _suggest_category(self, axis_hits: dict[str, int]) -> Category:
        if not axis_hits:
            return Category.GENERAL
        # Strongest axis; ties resolved by table order (dicts keep insertion order).
        best_axis = max(axis_hits, key=lambda axis: axis_hits[axis])
        return self._tables.axis_categories.get(best_axis, Category.GENERAL)


class SensitivityRegistry:
    """Per-owner importance thresholds adjusted by user feedback.

    Each read and update happens under one lock, so a reader never observes a
    partially applied adjustment.
    """

    def __init__(
        self,
        default_threshold: float = DEFAULT_THRESHOLD,
        learning_rate: float = 0.1,
        lower: float = MIN_THRESHOLD,
        upper: float = MAX_THRESHOLD,
    ) -> None:
        self._lower = lower
        self._upper = upper
        self._default = self._clamp(default_threshold)
        self._learning_rate = abs(learning_rate)
        self._thresholds: dict[str, float] = {}
        self._lock = threading.Lock()

    @property
    def default_threshold(self) -> float:
        return self._default

    def get(self, owner_id: str) -> float:
        with self._lock:
            return self._thresholds.get(owner_id, self._default)

    def set(self, owner_id: str, threshold: float) -> float:
        value = self._clamp(threshold)
        with self._lock:
            self._thresholds[owner_id] = value
        return value

    def apply_feedback(self, owner_id: str, feedback: SensitivityFeedback) -> float:
        """Move the owner's threshold one learning-rate step and return it."""

        # too_sensitive: too much gets remembered, so raise the bar.
        step = self._learning_rate if feedback is SensitivityFeedback.TOO_SENSITIVE else -self._learning_rate
        with self._lock:
            current = self._thresholds.get(owner_id, self._default)
            updated = self._clamp(current + step)
            self._thresholds[owner_id] = updated
        return updated

    def reset(self, owner_id: Optional[str] = None) -> None:
        with self._lock:
            if owner_id is None:
                self._thresholds.clear()
            else:
                self._thresholds.pop(owner_id, None)

    def _clamp(self, value: float) -> float:
        return round(min(self._upper, max(self._lower, value)), 4)


def decayed_importance(score: float, age_days: float) -> float:
    """Exponentially decay a stored importance by age.

    Strong memories fade slowly: the daily rate is 0.01 above 0.8, 0.03 above
    0.5 and 0.05 otherwise. Negative ages count as zero.
    """

    if score > 0.8:
        rate = 0.01
    elif score > 0.5:
        rate = 0.03
    else:
        rate = 0.05
    return round(score * math.exp(-rate * max(0.0, age_days)), 4)
