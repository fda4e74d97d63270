"""Inflection-tolerant keyword matching against headline text.

"Iran" matches "Iranian", "protest" matches "protests", and multi-word
keywords ("north korea") must appear as consecutive words.  Suffix
tolerance only applies to keyword parts of four characters or more so
short terms like "uk" never match "ukraine".
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Iterable

_INFLECTION_SUFFIXES = frozenset({"s", "es", "ian", "ean", "an", "n", "i", "ish", "ese"})
_MIN_SUFFIX_KEYWORD_LEN = 4
_EDGE_RE = re.compile(r"^[\W_]+|[\W_]+$")
_INNER_RE = re.compile(r"[\W_]+")


@dataclass(frozen=True)
class MatchTokens:
    words: frozenset[str]
    ordered: tuple[str, ...]


def tokenize_for_match(title: str) -> MatchTokens:
    words: set[str] = set()
    ordered: list[str] = []
    for raw in (title or "").casefold().split():
        cleaned = _EDGE_RE.sub("", raw)
        if not cleaned:
            continue
        words.add(cleaned)
        ordered.append(cleaned)
        for part in _INNER_RE.split(cleaned):
            if part:
                words.add(part)
    return MatchTokens(words=frozenset(words), ordered=tuple(ordered))


def _has_suffix(word: str, keyword: str) -> bool:
    if len(word) <= len(keyword):
        return False
    if word.startswith(keyword) and word[len(keyword):] in _INFLECTION_SUFFIXES:
        return True
    if keyword.endswith("e"):
        stem = keyword[:-1]
        if word.startswith(stem) and word[len(stem):] in _INFLECTION_SUFFIXES:
            return True
    return False


def _word_matches(token: str, part: str) -> bool:
    if token == part:
        return True
    if len(part) >= _MIN_SUFFIX_KEYWORD_LEN:
        return _has_suffix(token, part)
    return False


def match_keyword(tokens: MatchTokens, keyword: str) -> bool:
    parts = [p for p in (keyword or "").casefold().split() if p]
    if not parts:
        return False
    if len(parts) == 1:
        single = parts[0]
        if single in tokens.words:
            return True
        if len(single) < _MIN_SUFFIX_KEYWORD_LEN:
            return False
        return any(_has_suffix(word, single) for word in tokens.words)

    ordered = tokens.ordered
    for start in range(len(ordered) - len(parts) + 1):
        if all(_word_matches(ordered[start + k], part) for k, part in enumerate(parts)):
            return True
    return False


def matches_any(tokens: MatchTokens, keywords: Iterable[str]) -> bool:
    return any(match_keyword(tokens, kw) for kw in keywords)


def find_matching(tokens: MatchTokens, keywords: Iterable[str]) -> list[str]:
    return [kw for kw in keywords if match_keyword(tokens, kw)]
