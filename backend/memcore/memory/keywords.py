"""Keyword tables used by the heuristic scorers.

Tables are plain data so languages and categories can be extended without
touching the scoring code. ``load_keyword_tables`` reads an override file in
the same shape as ``KeywordTables.to_dict``.
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Mapping

from memcore.memory.types import Category

# Importance axis -> keywords (English + Korean).
IMPORTANCE_AXES: dict[str, tuple[str, ...]] = {
    "personal_identity": (
        "name", "age", "birthday", "born", "live in", "address", "phone", "email",
        "이름", "나이", "생일", "주소", "전화번호", "이메일", "살고", "거주",
    ),
    "preference": (
        "like", "prefer", "favorite", "favourite", "love", "hate", "dislike", "enjoy",
        "좋아", "싫어", "선호", "사랑", "즐겨", "취향",
    ),
    "relationship": (
        "family", "friend", "partner", "wife", "husband", "child", "children", "parent",
        "mother", "father", "colleague",
        "가족", "친구", "아내", "남편", "자녀", "부모", "동료", "배우자", "엄마", "아빠",
    ),
    "goal": (
        "goal", "plan", "planning", "dream", "aspire", "want to", "going to",
        "목표", "계획", "꿈", "싶어", "싶습니다", "예정",
    ),
    "health": (
        "health", "doctor", "medical", "medicine", "allergy", "allergic", "sick", "diet",
        "건강", "병원", "의사", "알레르기", "치료", "아프",
    ),
    "schedule": (
        "deadline", "appointment", "meeting", "tomorrow", "schedule", "remind", "remember",
        "마감", "약속", "일정", "내일", "기억해",
    ),
}

# Axis -> category suggested by the importance analyzer.
AXIS_CATEGORIES: dict[str, Category] = {
    "personal_identity": Category.PERSONAL_INFO,
    "preference": Category.PREFERENCES,
    "relationship": Category.RELATIONSHIPS,
    "goal": Category.GOALS,
    "health": Category.HEALTH,
    "schedule": Category.IMPORTANT_DATES,
}

# Ordered: the first matching category wins.
CATEGORY_KEYWORDS: dict[Category, tuple[str, ...]] = {
    Category.PERSONAL_INFO: (
        "my name", "name is", "age", "birthday", "address", "phone", "email",
        "live in", "born in", "years old",
        "이름", "나이", "생일", "주소", "전화번호", "이메일", "살고", "거주", "고향", "출신",
    ),
    Category.PREFERENCES: (
        "like", "prefer", "favorite", "favourite", "enjoy", "love", "hate", "dislike",
        "좋아", "싫어", "선호", "취향", "즐겨",
    ),
    Category.WORK: (
        "job", "work", "office", "boss", "career", "company", "project", "employer",
        "직장", "회사", "업무", "상사", "프로젝트", "근무", "직업", "출근",
    ),
    Category.RELATIONSHIPS: (
        "family", "friend", "partner", "wife", "husband", "mother", "father", "mom", "dad",
        "child", "son", "daughter", "parent", "sibling", "brother", "sister", "colleague",
        "가족", "친구", "아내", "남편", "부모", "자녀", "엄마", "아빠", "동생", "동료", "배우자",
    ),
    Category.HOBBIES: (
        "hobby", "hobbies", "interest", "sport", "music", "game", "guitar", "piano", "hiking",
        "취미", "게임", "음악", "여가", "등산", "독서",
    ),
    Category.HEALTH: (
        "health", "doctor", "medicine", "medical", "sick", "allergy", "allergic", "diet",
        "exercise", "hospital",
        "건강", "의사", "병원", "알레르기", "다이어트", "치료", "아프",
    ),
    Category.GOALS: (
        "goal", "plan", "planning", "future", "dream", "aspire", "want to",
        "목표", "계획", "미래", "꿈", "하고 싶",
    ),
    Category.IMPORTANT_DATES: (
        "deadline", "anniversary", "appointment", "due date", "date",
        "마감", "기념일", "약속", "일정", "날짜",
    ),
    Category.TASKS: (
        "todo", "to-do", "task", "remind me", "need to", "have to", "errand",
        "할 일", "해야", "신청", "제출",
    ),
}

QUESTION_PREFIXES: tuple[str, ...] = (
    "what", "how", "when", "where", "why", "who", "which",
    "do you", "does", "can you", "could you", "is it", "are you",
    "뭐", "무엇", "어떻게", "언제", "어디", "왜", "누가", "누구",
)

SELF_DISCLOSURE_PATTERNS: tuple[str, ...] = (
    r"\bmy name is\b",
    r"\bcall me\b",
    r"\bi am \d+ years old\b",
    r"\bi(?:'m| am) an? \w+",
    r"\bi live in\b",
    r"\bi work (?:at|for|as)\b",
    r"\bmy birthday\b",
    r"\bi was born\b",
    r"(?:제|내|저의|나의) 이름은",
    r"(?:저는|나는) .+(?:입니다|이에요|예요|이야)",
    r"에 살고 있",
    r"(?:제|내) 생일은",
)


@dataclass(frozen=True)
class KeywordTables:
    """Bundle of keyword tables consumed by the analyzers."""

    importance_axes: Mapping[str, tuple[str, ...]] = field(
        default_factory=lambda: dict(IMPORTANCE_AXES)
    )
    axis_categories: Mapping[str, Category] = field(
        default_factory=lambda: dict(AXIS_CATEGORIES)
    )
    category_keywords: Mapping[Category, tuple[str, ...]] = field(
        default_factory=lambda: dict(CATEGORY_KEYWORDS)
    )
    question_prefixes: tuple[str, ...] = QUESTION_PREFIXES
    self_disclosure_patterns: tuple[str, ...] = SELF_DISCLOSURE_PATTERNS

    def to_dict(self) -> dict[str, Any]:
        return {
            "importance_axes": {key: list(value) for key, value in self.importance_axes.items()},
            "axis_categories": {key: value.value for key, value in self.axis_categories.items()},
            "category_keywords": {
                key.value: list(value) for key, value in self.category_keywords.items()
            },
            "question_prefixes": list(self.question_prefixes),
            "self_disclosure_patterns": list(self.self_disclosure_patterns),
        }


DEFAULT_KEYWORDS = KeywordTables()


def load_keyword_tables(path: str | Path) -> KeywordTables:
    """Load keyword tables from a JSON file; missing sections keep defaults."""

    raw = json.loads(Path(path).read_text(encoding="utf-8"))
    if not isinstance(raw, dict):
        raise ValueError("Keyword table file must contain a JSON object")

    defaults = DEFAULT_KEYWORDS
    axes = _string_table(raw.get("importance_axes")) or dict(defaults.importance_axes)
    axis_categories = dict(defaults.axis_categories)
    for axis, value in (raw.get("axis_categories") or {}).items():
        axis_categories[str(axis)] = Category.normalize(value)

    category_keywords: dict[Category, tuple[str, ...]] = dict(defaults.category_keywords)
    overrides = _string_table(raw.get("category_keywords"))
    if overrides:
        # File order defines priority.
        category_keywords = {Category(key): value for key, value in overrides.items()}

    return KeywordTables(
        importance_axes=axes,
        axis_categories=axis_categories,
        category_keywords=category_keywords,
        question_prefixes=tuple(raw.get("question_prefixes") or defaults.question_prefixes),
        self_disclosure_patterns=tuple(
            raw.get("self_disclosure_patterns") or defaults.self_disclosure_patterns
        ),
    )


def _string_table(value: Any) -> dict[str, tuple[str, ...]]:
    if not isinstance(value, dict):
        return {}
    table: dict[str, tuple[str, ...]] = {}
    for key, items in value.items():
        if not isinstance(items, list):
            raise ValueError(f"Keyword list for {key!r} must be a JSON array")
        table[str(key)] = tuple(str(item).casefold() for item in items if str(item).strip())
    return table
