from __future__ import annotations

import logging
from collections.abc import Mapping, Sequence
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import Any, AsyncIterator, Optional, Union

from pydantic import ValidationError
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from memcore.core.config import Settings
from memcore.core.errors import InputError, StoreError
from memcore.core.security import preview, sanitize_text
from memcore.db.models import MemoryRecordRow
from memcore.memory.categorizer import Categorizer
from memcore.memory.deferred import DeferredQueue
from memcore.memory.duplicates import DuplicateDetector
from memcore.memory.embedder import EmbeddingPipeline, create_embedder
from memcore.memory.emotion import EmotionAnalyzer
from memcore.memory.importance import ImportanceAnalyzer, SensitivityRegistry
from memcore.memory.keywords import DEFAULT_KEYWORDS, KeywordTables, load_keyword_tables
from memcore.memory.normalizer import normalize
from memcore.memory.types import (
    Category,
    ConversationTurn,
    DuplicateMatch,
    DuplicateStatus,
    EmbeddedText,
    ImportanceAction,
    MemoryCandidate,
    MemoryMetadata,
    MemoryRecord,
    MemoryRef,
    MemorySnippet,
    MemoryStatus,
    ProcessingDecision,
    RememberResult,
    SensitivityFeedback,
    VectorMatch,
)
from memcore.memory.vector_store import SQLiteVectorStore, VectorStore
from memcore.repos.memory_repo import MemoryRepo, to_memory_record
from memcore.schemas.memory import ManualMemoryIn, MemoryCandidateIn, SensitivityFeedbackIn
from memcore.services.embedding_indexer import EmbeddingIndexer, IndexJob
from memcore.services.memory_processor import MemoryProcessor
from memcore.utils.time_utils import utc_now

logger = logging.getLogger(__name__)

CandidateInput = Union[MemoryCandidate, MemoryCandidateIn, Mapping[str, Any]]


@dataclass(frozen=True)
class BackfillReport:
    scanned: int
    embedded: int
    failed: int


class MemoryService:
    """Caller-facing memory engine: remember, retrieve, manage and backfill."""

    def __init__(
        self,
        *,
        sessionmaker: async_sessionmaker[AsyncSession],
        pipeline: EmbeddingPipeline,
        processor: MemoryProcessor,
        sensitivity: SensitivityRegistry,
        duplicates: DuplicateDetector,
        vector_store: VectorStore,
        recent_corpus_size: int = 200,
        duplicate_top_k: int = 5,
        duplicate_min_similarity: float = 0.7,
        context_top_k: int = 3,
        context_min_similarity: float = 0.6,
        confidence_boost: float = 0.1,
        max_content_chars: int = 2000,
        index_queue_size: int = 256,
        index_workers: int = 2,
    ) -> None:
        self._sessionmaker = sessionmaker
        self._pipeline = pipeline
        self._processor = processor
        self._sensitivity = sensitivity
        self._duplicates = duplicates
        self._vector_store = vector_store
        self._recent_corpus_size = max(1, recent_corpus_size)
        self._duplicate_top_k = max(1, duplicate_top_k)
        self._duplicate_min_similarity = duplicate_min_similarity
        self._context_top_k = max(1, context_top_k)
        self._context_min_similarity = context_min_similarity
        self._confidence_boost = max(0.0, confidence_boost)
        self._max_content_chars = max(1, max_content_chars)
        self.indexer = EmbeddingIndexer(
            self._index_job, queue_size=index_queue_size, workers=index_workers
        )

    @property
    def pipeline(self) -> EmbeddingPipeline:
        return self._pipeline

    @property
    def sensitivity(self) -> SensitivityRegistry:
        return self._sensitivity

    async def remember(
        self,
        candidate: CandidateInput,
        existing: Optional[Sequence[MemoryRef]] = None,
        history: Sequence[Union[ConversationTurn, str]] = (),
    ) -> RememberResult:
        """Score one utterance and persist it when it is worth remembering.

        Defer-band utterances are queued (outcome ``deferred``) rather than stored.
        Raises ``InputError`` for malformed candidates and ``StoreError`` when
        persistence fails; the decision itself is safe to recompute.
        """

        validated = self._validate_candidate(candidate)
        turns = [
            turn if isinstance(turn, ConversationTurn) else ConversationTurn(content=str(turn))
            for turn in history
        ]
        # Embedding happens outside the transaction; no connection is held meanwhile.
        embedded: Optional[EmbeddedText] = None
        if self._processor.gate(validated.text, validated.owner_id) is ImportanceAction.PROCESS:
            embedded = await self._pipeline.cached_embed_text(validated.text)
        try:
            try:
                decision, outcome, row = await self._remember_once(
                    validated, existing, turns, embedded
                )
            except IntegrityError:
                # A concurrent request inserted the same triple first.
                logger.info(
                    "Concurrent insert detected for owner %s; retrying as confidence boost",
                    validated.owner_id,
                )
                decision, outcome, row = await self._remember_once(
                    validated, existing, turns, embedded
                )
        except IntegrityError as exc:
            raise StoreError("Memory insert conflicted twice") from exc
        except SQLAlchemyError as exc:
            raise StoreError(f"Memory store failed: {exc.__class__.__name__}") from exc

        if outcome == "inserted" and row is not None:
            self.indexer.submit(
                IndexJob(owner_id=row.owner_id, memory_id=row.id, content=row.content)
            )
        record = to_memory_record(row) if row is not None else None
        logger.debug(
            "remember owner=%s outcome=%s category=%s text=%r",
            validated.owner_id,
            outcome,
            decision.category,
            preview(validated.text),
        )
        return RememberResult(decision=decision, outcome=outcome, record=record)

    async def save_memory(
        self,
        owner_id: str,
        category: Union[Category, str],
        content: str,
        confidence: float = 1.0,
        source_session_id: Optional[str] = None,
        source: str = "manual",
    ) -> RememberResult:
        """Store an explicit memory without importance scoring (merge-by-boost)."""

        try:
            payload = ManualMemoryIn(
                owner_id=owner_id,
                category=category,
                content=content,
                confidence=confidence,
                source_session_id=source_session_id,
                source=source,
            )
        except ValidationError as exc:
            raise InputError(_validation_message(exc)) from exc

        cleaned = sanitize_text(payload.content, self._max_content_chars)
        decision = ProcessingDecision(
            should_save=True,
            category=payload.category.value,
            confidence=payload.confidence,
            duplicate_status=DuplicateStatus.NEW,
            reasoning=(f"saved explicitly ({payload.source})",),
        )
        metadata = MemoryMetadata(source=payload.source, reasoning=list(decision.reasoning))
        try:
            try:
                row, outcome = await self._upsert_in_transaction(
                    payload.owner_id, payload.category, cleaned, payload.confidence, metadata,
                    payload.source_session_id,
                )
            except IntegrityError:
                row, outcome = await self._upsert_in_transaction(
                    payload.owner_id, payload.category, cleaned, payload.confidence, metadata,
                    payload.source_session_id,
                )
        except SQLAlchemyError as exc:
            raise StoreError(f"Memory store failed: {exc.__class__.__name__}") from exc

        if outcome == "inserted":
            self.indexer.submit(IndexJob(owner_id=row.owner_id, memory_id=row.id, content=row.content))
        return RememberResult(decision=decision, outcome=outcome, record=to_memory_record(row))

    async def retrieve_context(
        self,
        owner_id: str,
        query_text: str,
        limit: Optional[int] = None,
        min_similarity: Optional[float] = None,
        db: Optional[AsyncSession] = None,
    ) -> list[MemorySnippet]:
        """Memories relevant to the current prompt; empty on any failure."""

        cleaned_query = query_text.strip()
        if not owner_id or not cleaned_query:
            return []

        top_k = max(1, limit or self._context_top_k)
        threshold = self._context_min_similarity if min_similarity is None else min_similarity
        embedded = await self._pipeline.cached_embed_text(cleaned_query)
        try:
            async with self._db_context(db) as active_db:
                matches = await self._vector_store.search(
                    db=active_db,
                    owner_id=owner_id,
                    query_embedding=embedded.vector,
                    top_k=top_k * 3,
                    min_similarity=threshold,
                    provider=embedded.provider,
                    model_name=embedded.model_name,
                )
        except Exception:  # noqa: BLE001
            logger.exception("Memory retrieval failed while searching vector store")
            return []

        return [
            MemorySnippet(
                memory_id=match.memory_id,
                content=match.content,
                category=match.category,
                similarity=match.similarity,
            )
            for match in self._dedupe_and_rank(matches, top_k)
        ]

    async def find_similar(
        self,
        owner_id: str,
        text: str,
        top_k: Optional[int] = None,
        min_similarity: Optional[float] = None,
    ) -> list[VectorMatch]:
        embedded = await self._pipeline.cached_embed_text(text)
        try:
            async with self._db_context(None) as db:
                return await self._vector_store.search(
                    db=db,
                    owner_id=owner_id,
                    query_embedding=embedded.vector,
                    top_k=top_k or self._duplicate_top_k,
                    min_similarity=(
                        self._duplicate_min_similarity if min_similarity is None else min_similarity
                    ),
                    provider=embedded.provider,
                    model_name=embedded.model_name,
                )
        except SQLAlchemyError as exc:
            raise StoreError(f"Vector search failed: {exc.__class__.__name__}") from exc

    async def get_memory(self, owner_id: str, memory_id: str) -> Optional[MemoryRecord]:
        try:
            async with self._db_context(None) as db:
                repo = MemoryRepo(db)
                row = await repo.get(memory_id, owner_id)
                if row is None:
                    return None
                return to_memory_record(row, await repo.get_embedding(memory_id))
        except SQLAlchemyError as exc:
            raise StoreError(f"Memory lookup failed: {exc.__class__.__name__}") from exc

    async def list_memories(
        self,
        owner_id: str,
        category: Optional[Union[Category, str]] = None,
        limit: Optional[int] = None,
    ) -> list[MemoryRecord]:
        try:
            async with self._db_context(None) as db:
                rows = await MemoryRepo(db).list_by_owner(owner_id, category, limit)
        except SQLAlchemyError as exc:
            raise StoreError(f"Memory listing failed: {exc.__class__.__name__}") from exc
        return [to_memory_record(row) for row in rows]

    async def delete_memory(self, owner_id: str, memory_id: str) -> bool:
        try:
            async with self._db_context(None) as db:
                deleted = await MemoryRepo(db).delete(memory_id, owner_id)
        except SQLAlchemyError as exc:
            raise StoreError(f"Memory delete failed: {exc.__class__.__name__}") from exc
        if deleted:
            logger.info("Deleted memory %s for owner %s", memory_id, owner_id)
        return deleted

    async def backfill_embeddings(
        self, owner_id: Optional[str] = None, include_stale: bool = False
    ) -> BackfillReport:
        """Embed records lacking a vector; safe to re-run.

        With ``include_stale`` records whose vector carries another embedding
        version are re-embedded as well.
        """

        try:
            async with self._db_context(None) as db:
                repo = MemoryRepo(db)
                if include_stale:
                    rows = await repo.list_missing_embeddings(
                        owner_id=owner_id,
                        stale_provider=self._pipeline.provider,
                        stale_model=self._pipeline.model_name,
                    )
                else:
                    rows = await repo.list_missing_embeddings(owner_id=owner_id)
                jobs = [
                    IndexJob(owner_id=row.owner_id, memory_id=row.id, content=row.content)
                    for row in rows
                ]
        except SQLAlchemyError as exc:
            raise StoreError(f"Backfill scan failed: {exc.__class__.__name__}") from exc

        embedded = 0
        for job in jobs:
            if await self.indexer.index_now(job):
                embedded += 1
        report = BackfillReport(scanned=len(jobs), embedded=embedded, failed=len(jobs) - embedded)
        logger.info(
            "Embedding backfill finished: scanned=%d embedded=%d failed=%d",
            report.scanned,
            report.embedded,
            report.failed,
        )
        return report

    def apply_feedback(
        self, owner_id: str, feedback: Union[SensitivityFeedback, str]
    ) -> float:
        try:
            payload = SensitivityFeedbackIn(owner_id=owner_id, feedback=feedback)
        except ValidationError as exc:
            raise InputError(_validation_message(exc)) from exc
        threshold = self._sensitivity.apply_feedback(payload.owner_id, payload.feedback)
        logger.info(
            "Sensitivity for owner %s is now %.2f (%s)",
            payload.owner_id,
            threshold,
            payload.feedback.value,
        )
        return threshold

    def drain_deferred(self, owner_id: str) -> list[MemoryCandidate]:
        """Take the owner's deferred candidates, oldest first.

        Callers decide what to do with them, typically resubmitting through
        ``remember`` once the owner's threshold has been tuned.
        """

        candidates = self._processor.process_deferred(owner_id)
        if candidates:
            logger.info("Drained %d deferred candidates for owner %s", len(candidates), owner_id)
        return candidates

    async def status(self, owner_id: str) -> MemoryStatus:
        """Threshold, deferred backlog and stored-memory statistics for one owner."""

        now = utc_now()
        try:
            async with self._db_context(None) as db:
                repo = MemoryRepo(db)
                distribution = await repo.count_by_category(owner_id)
                rows = await repo.list_by_owner(owner_id)
                decayed = [to_memory_record(row, now=now).decayed_confidence or 0.0 for row in rows]
        except SQLAlchemyError as exc:
            raise StoreError(f"Memory status failed: {exc.__class__.__name__}") from exc
        return MemoryStatus(
            owner_id=owner_id,
            threshold=self._sensitivity.get(owner_id),
            deferred_count=self._processor.deferred.count(owner_id),
            total_memories=sum(distribution.values()),
            category_distribution=distribution,
            average_decayed_confidence=round(sum(decayed) / len(decayed), 4) if decayed else 0.0,
        )

    async def shutdown(self) -> None:
        await self.indexer.shutdown()
        await self._pipeline.close()

    async def _remember_once(
        self,
        candidate: MemoryCandidate,
        existing: Optional[Sequence[MemoryRef]],
        history: Sequence[ConversationTurn],
        embedded: Optional[EmbeddedText],
    ) -> tuple[ProcessingDecision, str, Optional[MemoryRecordRow]]:
        owner_id = candidate.owner_id
        async with self._db_context(None) as db:
            repo = MemoryRepo(db)
            if existing is None:
                rows = await repo.list_by_owner(owner_id, limit=self._recent_corpus_size)
                corpus = [to_memory_record(row).to_ref() for row in rows]
            else:
                corpus = list(existing)

            semantic: list[DuplicateMatch] = []
            if embedded is not None:
                semantic = await self._duplicates.check_semantic_duplicate(
                    db=db,
                    embedding=embedded.vector,
                    owner_id=owner_id,
                    top_k=self._duplicate_top_k,
                    min_similarity=self._duplicate_min_similarity,
                    provider=embedded.provider,
                    model_name=embedded.model_name,
                )

            decision = self._processor.process(candidate, owner_id, corpus, history, semantic)

            if decision.duplicate_status is DuplicateStatus.DUPLICATE and decision.duplicate_of:
                row = await self._boost(repo, decision.duplicate_of, owner_id)
                return decision, ("boosted" if row is not None else "skipped"), row
            if not decision.should_save:
                deferred = (
                    decision.importance is not None
                    and decision.importance.action is ImportanceAction.DEFER
                )
                return decision, ("deferred" if deferred else "skipped"), None

            metadata = MemoryMetadata(
                source="conversation",
                reasoning=list(decision.reasoning),
                duplicate_status=decision.duplicate_status,
            )
            row, outcome = await self._upsert(
                repo,
                owner_id,
                Category.normalize(decision.category),
                candidate.text,
                decision.confidence,
                metadata,
                candidate.session_id,
            )
            return decision, outcome, row

    async def _upsert_in_transaction(
        self,
        owner_id: str,
        category: Category,
        content: str,
        confidence: float,
        metadata: MemoryMetadata,
        source_session_id: Optional[str],
    ) -> tuple[MemoryRecordRow, str]:
        async with self._db_context(None) as db:
            return await self._upsert(
                MemoryRepo(db), owner_id, category, content, confidence, metadata, source_session_id
            )

    async def _upsert(
        self,
        repo: MemoryRepo,
        owner_id: str,
        category: Category,
        content: str,
        confidence: float,
        metadata: MemoryMetadata,
        source_session_id: Optional[str],
    ) -> tuple[MemoryRecordRow, str]:
        current = await repo.find_exact(owner_id, category, content)
        if current is not None:
            boosted = await self._boost(repo, current.id, owner_id)
            assert boosted is not None
            return boosted, "boosted"
        row = await repo.insert(
            owner_id=owner_id,
            category=category,
            content=content,
            confidence=confidence,
            metadata=metadata,
            source_session_id=source_session_id,
        )
        logger.info(
            "Stored memory %s for owner %s in %s (confidence %.2f)",
            row.id,
            owner_id,
            category.value,
            row.confidence,
        )
        return row, "inserted"

    async def _boost(
        self, repo: MemoryRepo, memory_id: str, owner_id: str
    ) -> Optional[MemoryRecordRow]:
        row = await repo.get(memory_id, owner_id)
        if row is None:
            logger.warning("Duplicate target %s not found for owner %s", memory_id, owner_id)
            return None
        return await repo.update_confidence(
            row.id, min(1.0, float(row.confidence) + self._confidence_boost)
        )

    async def _index_job(self, job: IndexJob) -> None:
        embedded = await self._pipeline.cached_embed_text(job.content)
        try:
            async with self._db_context(None) as db:
                stored = await self._vector_store.upsert_vector(
                    db=db,
                    owner_id=job.owner_id,
                    memory_id=job.memory_id,
                    embedding=embedded,
                )
        except SQLAlchemyError as exc:
            raise StoreError(f"Failed to store embedding for {job.memory_id}") from exc
        if not stored:
            logger.info("Memory %s no longer exists; embedding skipped", job.memory_id)

    def _validate_candidate(self, candidate: CandidateInput) -> MemoryCandidate:
        try:
            if isinstance(candidate, MemoryCandidateIn):
                payload = candidate
            elif isinstance(candidate, Mapping):
                payload = MemoryCandidateIn.model_validate(dict(candidate))
            else:
                payload = MemoryCandidateIn.model_validate(candidate, from_attributes=True)
        except ValidationError as exc:
            raise InputError(_validation_message(exc)) from exc
        validated = payload.to_candidate()
        return MemoryCandidate(
            owner_id=validated.owner_id,
            text=sanitize_text(validated.text, self._max_content_chars),
            timestamp_utc=validated.timestamp_utc,
            session_id=validated.session_id,
        )

    @asynccontextmanager
    async def _db_context(
        self, db: Optional[AsyncSession]
    ) -> AsyncIterator[AsyncSession]:
        if db is not None:
            yield db
            return
        async with self._sessionmaker() as local_db:
            async with local_db.begin():
                yield local_db

    @staticmethod
    def _dedupe_and_rank(candidates: Sequence[VectorMatch], limit: int) -> list[VectorMatch]:
        best_by_content: dict[str, VectorMatch] = {}
        for item in candidates:
            key = normalize(item.content)
            if not key:
                continue
            current = best_by_content.get(key)
            if current is None or item.similarity > current.similarity:
                best_by_content[key] = item
        ranked = sorted(best_by_content.values(), key=lambda row: row.similarity, reverse=True)
        return ranked[:limit]


def create_memory_service(
    *,
    sessionmaker: async_sessionmaker[AsyncSession],
    settings: Settings,
) -> MemoryService:
    """Factory wiring analyzers, embedding pipeline and store from settings."""

    tables = _load_tables(settings.memory_keywords_path)
    sensitivity = SensitivityRegistry(
        default_threshold=settings.memory_default_sensitivity,
        learning_rate=settings.memory_feedback_learning_rate,
    )
    vector_store = SQLiteVectorStore()
    duplicates = DuplicateDetector(vector_store, max_corpus=settings.memory_recent_corpus_size)
    processor = MemoryProcessor(
        sensitivity=sensitivity,
        importance=ImportanceAnalyzer(tables),
        categorizer=Categorizer(tables),
        duplicates=duplicates,
        emotion=EmotionAnalyzer(),
        deferred=DeferredQueue(settings.memory_deferred_limit),
    )
    embedder = create_embedder(
        settings.embed_provider,
        dimension=settings.embed_dim,
        model_name=settings.embed_model,
        openai_base_url=settings.openai_base_url,
        openai_api_key=settings.embed_openai_api_key,
    )
    pipeline = EmbeddingPipeline(
        embedder,
        dimension=settings.embed_dim,
        timeout_sec=settings.embed_timeout_sec,
        load_timeout_sec=settings.embed_load_timeout_sec,
        cache_size=settings.embed_cache_size,
    )
    return MemoryService(
        sessionmaker=sessionmaker,
        pipeline=pipeline,
        processor=processor,
        sensitivity=sensitivity,
        duplicates=duplicates,
        vector_store=vector_store,
        recent_corpus_size=settings.memory_recent_corpus_size,
        duplicate_top_k=settings.memory_duplicate_top_k,
        duplicate_min_similarity=settings.memory_duplicate_min_similarity,
        context_top_k=settings.memory_context_top_k,
        context_min_similarity=settings.memory_context_min_similarity,
        confidence_boost=settings.memory_confidence_boost,
        max_content_chars=settings.memory_max_content_chars,
        index_queue_size=settings.memory_index_queue_size,
        index_workers=settings.memory_index_workers,
    )


def _load_tables(path: str) -> KeywordTables:
    path = path.strip()
    if not path:
        return DEFAULT_KEYWORDS
    try:
        return load_keyword_tables(path)
    except (OSError, ValueError) as exc:
        logger.warning("MEMORY_KEYWORDS_PATH=%s unreadable (%s); fallback to built-in tables", path, exc)
        return DEFAULT_KEYWORDS


def _validation_message(exc: ValidationError) -> str:
    parts = []
    for error in exc.errors():
        location = ".".join(str(item) for item in error.get("loc", ())) or "input"
        parts.append(f"{location}: {error.get('msg', 'invalid')}")
    return "; ".join(parts) or "Invalid input"
