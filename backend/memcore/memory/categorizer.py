from __future__ import annotations

from collections.abc import Sequence

from memcore.memory.keywords import DEFAULT_KEYWORDS, KeywordTables
from memcore.memory.normalizer import matched_keywords, normalize
from memcore.memory.types import Category, CategoryResult, MemoryRef

INHERITED_CONFIDENCE = 0.6
DEFAULT_CONFIDENCE = 0.3


class Categorizer:
    """Assign a taxonomy label by testing keyword sets in priority order."""

    def __init__(self, tables: KeywordTables = DEFAULT_KEYWORDS) -> None:
        self._tables = tables

    def categorize(self, text: str, existing: Sequence[MemoryRef] = ()) -> Category:
        return self.classify(text, existing).category

    def classify(self, text: str, existing: Sequence[MemoryRef] = ()) -> CategoryResult:
        normalized = normalize(text)
        if not normalized:
            return CategoryResult(category=Category.GENERAL, confidence=DEFAULT_CONFIDENCE)

        for category, keywords in self._tables.category_keywords.items():
            hits = matched_keywords(normalized, keywords)
            if hits:
                return CategoryResult(
                    category=category,
                    confidence=round(min(1.0, 0.5 + 0.1 * len(hits)), 4),
                    matched_keywords=hits,
                )

        # Identical facts stay in one canonical triple.
        for memory in existing:
            if memory.category is not None and normalize(memory.content) == normalized:
                return CategoryResult(
                    category=Category.normalize(memory.category),
                    confidence=INHERITED_CONFIDENCE,
                )
        return CategoryResult(category=Category.GENERAL, confidence=DEFAULT_CONFIDENCE)
