from __future__ import annotations

from datetime import datetime, timezone

import pytest

from memcore.memory.importance import SensitivityRegistry
from memcore.memory.types import (
    Category,
    DuplicateMatch,
    DuplicateStatus,
    ImportanceAction,
    MemoryCandidate,
    MemoryRef,
)
from memcore.services.memory_processor import MemoryProcessor

KOREAN_NAME = "제 이름은 김철수입니다"


class ExplodingCategorizer:
    def classify(self, text, existing=()):
        raise RuntimeError("categorizer exploded")


def _candidate(text: str, owner_id: str = "u1") -> MemoryCandidate:
    return MemoryCandidate(
        owner_id=owner_id,
        text=text,
        timestamp_utc=datetime(2025, 1, 1, tzinfo=timezone.utc),
        session_id="s1",
    )


def _processor(**kwargs) -> MemoryProcessor:
    kwargs.setdefault("sensitivity", SensitivityRegistry())
    return MemoryProcessor(**kwargs)


def test_korean_self_disclosure_is_saved_as_personal_info() -> None:
    decision = _processor().process(_candidate(KOREAN_NAME), "u1")

    assert decision.should_save is True
    assert decision.category == Category.PERSONAL_INFO.value
    assert decision.duplicate_status is DuplicateStatus.NEW
    assert decision.confidence == pytest.approx(0.75)
    assert decision.reasoning[0].startswith("importance 0.70")
    assert decision.reasoning[-1] == "final confidence 0.75"


def test_process_is_idempotent() -> None:
    processor = _processor()
    existing = [MemoryRef(id="m1", content="I like green tea", category=Category.PREFERENCES)]

    first = processor.process(_candidate("My name is Alice and I love hiking"), "u1", existing)
    second = processor.process(_candidate("My name is Alice and I love hiking"), "u1", existing)

    assert first == second


def test_low_importance_is_skipped() -> None:
    decision = _processor().process(_candidate("ok"), "u1")

    assert decision.should_save is False
    assert decision.category == "skipped"
    assert decision.verdict is None
    assert decision.reasoning[-1] == "not saved: below importance threshold"


def test_exact_duplicate_is_not_saved() -> None:
    existing = [MemoryRef(id="m1", content=KOREAN_NAME, category=Category.PERSONAL_INFO)]

    decision = _processor().process(_candidate(KOREAN_NAME), "u1", existing)

    assert decision.should_save is False
    assert decision.duplicate_status is DuplicateStatus.DUPLICATE
    assert decision.duplicate_of == "m1"
    assert decision.category == Category.PERSONAL_INFO.value
    assert decision.verdict is not None
    assert decision.verdict.is_duplicate is True
    assert decision.verdict.confidence > 0.8


def test_semantic_duplicate_is_not_saved() -> None:
    decision = _processor().process(
        _candidate("My name is Alice and I love hiking"),
        "u1",
        semantic_matches=[DuplicateMatch(memory_id="m9", similarity=0.93)],
    )

    assert decision.should_save is False
    assert decision.duplicate_status is DuplicateStatus.DUPLICATE
    assert decision.duplicate_of == "m9"


def test_middle_band_is_saved_as_merged() -> None:
    existing = [
        MemoryRef(id="m1", content="My name is Alice and I love cooking", category=Category.PERSONAL_INFO)
    ]

    decision = _processor().process(_candidate("My name is Alice and I love hiking"), "u1", existing)

    assert decision.should_save is True
    assert decision.duplicate_status is DuplicateStatus.MERGED


def test_deferred_candidate_is_queued_not_saved() -> None:
    sensitivity = SensitivityRegistry()
    sensitivity.set("picky", 0.9)
    processor = _processor(sensitivity=sensitivity)

    decision = processor.process(_candidate("My name is Alice", owner_id="picky"), "picky")

    assert decision.should_save is False
    assert decision.importance is not None
    assert decision.importance.action is ImportanceAction.DEFER
    assert decision.verdict is None
    assert decision.reasoning[-1] == "deferred: queued for later review, not saved"
    assert processor.deferred.count("picky") == 1


def test_plain_question_is_deferred_and_drained_once() -> None:
    processor = _processor()

    decision = processor.process("What's the weather like today?", "u1")
    queued = processor.process_deferred("u1")

    assert decision.should_save is False
    assert decision.importance.action is ImportanceAction.DEFER
    assert [item.text for item in queued] == ["What's the weather like today?"]
    assert queued[0].owner_id == "u1"
    assert processor.process_deferred("u1") == []


def test_owner_threshold_changes_gate() -> None:
    sensitivity = SensitivityRegistry()
    processor = _processor(sensitivity=sensitivity)

    assert processor.should_consider("I like tea", "u1") is True
    sensitivity.set("u1", 0.9)
    assert processor.should_consider("I like tea", "u1") is False


def test_sub_step_errors_become_error_decisions() -> None:
    decision = _processor(categorizer=ExplodingCategorizer()).process(_candidate(KOREAN_NAME), "u1")

    assert decision.should_save is False
    assert decision.category == "error"
    assert decision.reasoning[-1] == "error: categorizer exploded"


def test_missing_owner_becomes_error_decision() -> None:
    decision = _processor().process("My name is Alice")

    assert decision.should_save is False
    assert decision.category == "error"
