from __future__ import annotations

import warnings
from datetime import datetime, timezone

import pytest
from sqlalchemy.exc import IntegrityError, SADeprecationWarning

from memcore.memory.duplicates import DuplicateDetector
from memcore.memory.types import Category, EmbeddedText
from memcore.memory.vector_store import SQLiteVectorStore, cosine_similarity
from memcore.repos.memory_repo import MemoryRepo


def _vector(*values: float) -> list[float]:
    return list(values) + [0.0] * (4 - len(values))


async def _store(
    sessionmaker,
    owner_id: str,
    content: str,
    vector: list[float],
    *,
    provider: str = "deterministic",
    model_name: str = "deterministic-v1",
    updated_at: datetime | None = None,
) -> str:
    async with sessionmaker() as db:
        async with db.begin():
            repo = MemoryRepo(db)
            row = await repo.insert(
                owner_id=owner_id, category=Category.GENERAL, content=content, confidence=0.5
            )
            stored = await SQLiteVectorStore().upsert_vector(
                db=db,
                owner_id=owner_id,
                memory_id=row.id,
                embedding=EmbeddedText(vector=vector, provider=provider, model_name=model_name),
            )
            assert stored is True
            if updated_at is not None:
                row.updated_at = updated_at
                await db.flush()
            return row.id


async def _search(sessionmaker, owner_id: str, query: list[float], **kwargs):
    params = {"top_k": 10, "min_similarity": 0.0}
    params.update(kwargs)
    async with sessionmaker() as db:
        return await SQLiteVectorStore().search(
            db=db, owner_id=owner_id, query_embedding=query, **params
        )


def test_cosine_similarity_properties() -> None:
    vector = [0.3, -1.2, 4.0, 0.5]

    assert cosine_similarity(vector, vector) == pytest.approx(1.0)
    assert cosine_similarity([1.0, 0.0], [0.0, 1.0]) == pytest.approx(0.0)
    assert cosine_similarity([1.0, 0.0], [-1.0, 0.0]) == pytest.approx(-1.0)
    assert cosine_similarity([0.0, 0.0], [1.0, 0.0]) == 0.0
    assert cosine_similarity([1.0, 0.0], [1.0, 0.0, 0.0]) == 0.0


@pytest.mark.anyio
async def test_search_is_scoped_to_owner(started_runtime) -> None:
    sessionmaker = started_runtime.sessionmaker
    mine = await _store(sessionmaker, "owner-a", "I like tea", _vector(1.0))
    await _store(sessionmaker, "owner-b", "I like tea", _vector(1.0))

    results = await _search(sessionmaker, "owner-a", _vector(1.0))

    assert [match.memory_id for match in results] == [mine]
    assert results[0].similarity == pytest.approx(1.0)
    assert results[0].category is Category.GENERAL


@pytest.mark.anyio
async def test_search_orders_thresholds_and_truncates(started_runtime) -> None:
    sessionmaker = started_runtime.sessionmaker
    exact = await _store(sessionmaker, "u1", "exact", _vector(1.0))
    near = await _store(sessionmaker, "u1", "near", _vector(1.0, 0.5))
    await _store(sessionmaker, "u1", "far", _vector(0.0, 1.0))

    results = await _search(sessionmaker, "u1", _vector(1.0), top_k=2, min_similarity=0.5)

    assert [match.memory_id for match in results] == [exact, near]
    assert results[0].similarity >= results[1].similarity


@pytest.mark.anyio
async def test_high_threshold_without_close_matches_returns_empty(started_runtime) -> None:
    sessionmaker = started_runtime.sessionmaker
    await _store(sessionmaker, "u1", "near", _vector(1.0, 0.5))
    await _store(sessionmaker, "u1", "far", _vector(0.0, 1.0))

    results = await _search(sessionmaker, "u1", _vector(1.0), min_similarity=0.99)

    assert results == []


@pytest.mark.anyio
async def test_ties_prefer_most_recent_update(started_runtime) -> None:
    sessionmaker = started_runtime.sessionmaker
    older = await _store(
        sessionmaker, "u1", "older", _vector(1.0),
        updated_at=datetime(2024, 1, 1, tzinfo=timezone.utc),
    )
    newer = await _store(
        sessionmaker, "u1", "newer", _vector(1.0),
        updated_at=datetime(2025, 1, 1, tzinfo=timezone.utc),
    )

    results = await _search(sessionmaker, "u1", _vector(1.0))

    assert [match.memory_id for match in results] == [newer, older]


@pytest.mark.anyio
async def test_search_excludes_other_embedding_versions(started_runtime) -> None:
    sessionmaker = started_runtime.sessionmaker
    model_id = await _store(sessionmaker, "u1", "model", _vector(1.0))
    await _store(
        sessionmaker, "u1", "fallback", _vector(1.0), provider="hash", model_name="sha256-4"
    )

    tagged = await _search(
        sessionmaker, "u1", _vector(1.0), provider="deterministic", model_name="deterministic-v1"
    )
    untagged = await _search(sessionmaker, "u1", _vector(1.0))

    assert [match.memory_id for match in tagged] == [model_id]
    assert len(untagged) == 2


@pytest.mark.anyio
async def test_upsert_rejects_foreign_owner_and_delete_removes_vector(started_runtime) -> None:
    sessionmaker = started_runtime.sessionmaker
    memory_id = await _store(sessionmaker, "u1", "mine", _vector(1.0))
    store = SQLiteVectorStore()

    async with sessionmaker() as db:
        async with db.begin():
            stored = await store.upsert_vector(
                db=db,
                owner_id="intruder",
                memory_id=memory_id,
                embedding=EmbeddedText(vector=_vector(0.0, 1.0), provider="p", model_name="m"),
            )
            deleted = await store.delete(db=db, memory_id=memory_id)

    assert stored is False
    assert deleted is True
    assert await _search(sessionmaker, "u1", _vector(1.0)) == []


@pytest.mark.anyio
async def test_semantic_duplicate_check_uses_index(started_runtime) -> None:
    sessionmaker = started_runtime.sessionmaker
    memory_id = await _store(sessionmaker, "u1", "I like tea", _vector(1.0))
    await _store(sessionmaker, "u2", "I like tea", _vector(1.0))

    async with sessionmaker() as db:
        matches = await DuplicateDetector().check_semantic_duplicate(
            db=db, embedding=_vector(1.0, 0.1), owner_id="u1", top_k=5, min_similarity=0.7
        )

    assert [match.memory_id for match in matches] == [memory_id]
    assert matches[0].similarity > 0.9


@pytest.mark.anyio
async def test_repo_enforces_unique_triple(started_runtime) -> None:
    sessionmaker = started_runtime.sessionmaker
    async with sessionmaker() as db:
        async with db.begin():
            await MemoryRepo(db).insert(
                owner_id="u1", category="preferences", content="I like tea", confidence=0.5
            )

    with pytest.raises(IntegrityError):
        async with sessionmaker() as db:
            async with db.begin():
                await MemoryRepo(db).insert(
                    owner_id="u1", category=Category.PREFERENCES, content=" I like tea ",
                    confidence=0.5,
                )

    async with sessionmaker() as db:
        repo = MemoryRepo(db)
        found = await repo.find_exact("u1", "preferences", "I like tea")
        other_category = await repo.find_exact("u1", "hobbies", "I like tea")

    assert found is not None
    assert other_category is None


@pytest.mark.anyio
async def test_repo_lists_missing_and_stale_embeddings(started_runtime) -> None:
    sessionmaker = started_runtime.sessionmaker
    current = await _store(sessionmaker, "u1", "current", _vector(1.0))
    stale = await _store(
        sessionmaker, "u1", "stale", _vector(1.0), provider="hash", model_name="sha256-4"
    )
    async with sessionmaker() as db:
        async with db.begin():
            bare = await MemoryRepo(db).insert(
                owner_id="u1", category="unknown-category", content="bare", confidence=0.5
            )
            bare_id = bare.id
            assert bare.category == "general"

    async with sessionmaker() as db:
        repo = MemoryRepo(db)
        missing = await repo.list_missing_embeddings(owner_id="u1")
        with_stale = await repo.list_missing_embeddings(
            owner_id="u1", stale_provider="deterministic", stale_model="deterministic-v1"
        )
        owners = await repo.list_owner_ids()

    assert [row.id for row in missing] == [bare_id]
    assert {row.id for row in with_stale} == {bare_id, stale}
    assert current not in {row.id for row in with_stale}
    assert owners == ["u1"]


@pytest.mark.anyio
async def test_repo_lists_record_vector_pairs_without_warnings(started_runtime) -> None:
    sessionmaker = started_runtime.sessionmaker
    model_id = await _store(sessionmaker, "u1", "model", _vector(1.0))
    await _store(sessionmaker, "u1", "fallback", _vector(1.0), provider="hash", model_name="sha256-4")

    async with sessionmaker() as db:
        with warnings.catch_warnings():
            warnings.simplefilter("error", SADeprecationWarning)
            pairs = await MemoryRepo(db).list_vectors("u1", "deterministic", "deterministic-v1")
            everything = await MemoryRepo(db).list_vectors("u1")

    assert [(record.id, vector.provider) for record, vector in pairs] == [(model_id, "deterministic")]
    assert len(everything) == 2
