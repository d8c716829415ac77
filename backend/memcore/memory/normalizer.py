from __future__ import annotations

import re
from functools import lru_cache

_TOKEN_PATTERN = re.compile(r"\w+", re.UNICODE)
_SUFFIXES = r"(?:s|es|d|ed|ing|er|ers)?"


def normalize(text: str) -> str:
    """Casefold and collapse whitespace."""

    return " ".join(text.split()).casefold()


def tokenize(text: str) -> list[str]:
    return _TOKEN_PATTERN.findall(normalize(text))


def word_set(text: str) -> frozenset[str]:
    return frozenset(tokenize(text))


def contains_keyword(normalized: str, keyword: str) -> bool:
    """Match a keyword against already-normalized text.

    ASCII keywords match as whole words with a few inflection suffixes ("work"
    matches "working" but neither "homework" nor "workshop"). Other scripts
    match as substrings because Korean attaches particles directly to the stem.
    """

    keyword = keyword.casefold()
    if not keyword:
        return False
    if keyword.isascii():
        return _ascii_pattern(keyword).search(normalized) is not None
    return keyword in normalized


def matched_keywords(normalized: str, keywords: tuple[str, ...]) -> tuple[str, ...]:
    """Distinct keywords present in the text, in table order."""

    seen: list[str] = []
    for keyword in keywords:
        if keyword not in seen and contains_keyword(normalized, keyword):
            seen.append(keyword)
    return tuple(seen)


@lru_cache(maxsize=4096)
def _ascii_pattern(keyword: str) -> re.Pattern[str]:
    return re.compile(r"(?<![a-z0-9])" + re.escape(keyword) + _SUFFIXES + r"(?![a-z0-9])")
