from __future__ import annotations

from collections.abc import Iterable, Sequence
from typing import Optional

from sqlalchemy.ext.asyncio import AsyncSession

from memcore.memory.normalizer import normalize, word_set
from memcore.memory.types import DuplicateMatch, DuplicateStatus, DuplicateVerdict, MemoryRef
from memcore.memory.vector_store import SQLiteVectorStore, VectorStore

DUPLICATE_THRESHOLD = 0.5
RELATED_THRESHOLD = 0.3
STRONG_LEXICAL_THRESHOLD = 0.8
STRONG_SEMANTIC_THRESHOLD = 0.85
DEFAULT_MAX_CORPUS = 200


def jaccard_similarity(left: Iterable[str], right: Iterable[str]) -> float:
    left_set = set(left)
    right_set = set(right)
    union = left_set | right_set
    if not union:
        return 0.0
    return len(left_set & right_set) / len(union)


class DuplicateDetector:
    """Two-tier duplicate check: word-set Jaccard, then vector cosine."""

    def __init__(
        self,
        vector_store: Optional[VectorStore] = None,
        max_corpus: int = DEFAULT_MAX_CORPUS,
    ) -> None:
        self._vector_store = vector_store or SQLiteVectorStore()
        self._max_corpus = max(1, max_corpus)

    def check_duplicate(self, text: str, corpus: Sequence[MemoryRef]) -> DuplicateVerdict:
        """Compare ``text`` against the most recent part of ``corpus``.

        ``corpus`` is ordered most recent first. Runs without I/O.
        """

        normalized = normalize(text)
        words = word_set(text)
        matches: list[DuplicateMatch] = []
        top = 0.0
        for item in corpus[: self._max_corpus]:
            if normalize(item.content) == normalized and normalized:
                similarity = 1.0
            else:
                similarity = round(jaccard_similarity(words, word_set(item.content)), 4)
            top = max(top, similarity)
            if similarity > RELATED_THRESHOLD:
                matches.append(DuplicateMatch(memory_id=item.id, similarity=similarity))

        # Stable sort keeps corpus order among equal scores.
        matches.sort(key=lambda match: match.similarity, reverse=True)
        return DuplicateVerdict(
            is_duplicate=top > DUPLICATE_THRESHOLD,
            confidence=top,
            matches=tuple(matches),
        )

    async def check_semantic_duplicate(
        self,
        *,
        db: AsyncSession,
        embedding: Sequence[float],
        owner_id: str,
        top_k: int,
        min_similarity: float,
        provider: Optional[str] = None,
        model_name: Optional[str] = None,
    ) -> list[DuplicateMatch]:
        hits = await self._vector_store.search(
            db=db,
            owner_id=owner_id,
            query_embedding=embedding,
            top_k=top_k,
            min_similarity=min_similarity,
            provider=provider,
            model_name=model_name,
        )
        return [DuplicateMatch(memory_id=hit.memory_id, similarity=hit.similarity) for hit in hits]

    @staticmethod
    def classify(
        verdict: DuplicateVerdict, semantic_top: Optional[float] = None
    ) -> DuplicateStatus:
        lexical_top = verdict.confidence
        if lexical_top > STRONG_LEXICAL_THRESHOLD or (
            semantic_top is not None and semantic_top > STRONG_SEMANTIC_THRESHOLD
        ):
            return DuplicateStatus.DUPLICATE
        if lexical_top > DUPLICATE_THRESHOLD:
            return DuplicateStatus.MERGED
        return DuplicateStatus.NEW
