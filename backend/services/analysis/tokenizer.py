"""Headline tokenization and the inverted index used for candidate lookup.

Two headlines that share no token have a Jaccard similarity of zero, so
the clustering engine only ever compares pairs that the inverted index
reports as sharing at least one token.
"""

from __future__ import annotations

import re
from collections import defaultdict
from typing import Iterable, Iterator, Optional, Sequence

from config import settings
from .records import NewsItem

_POSSESSIVE_RE = re.compile(r"['’]s\b")
_APOSTROPHE_RE = re.compile(r"['’]")
_SPLIT_RE = re.compile(r"[\W_]+")

_STOP_WORDS = frozenset(
    {
        # Function words
        "about",
        "after",
        "again",
        "against",
        "also",
        "amid",
        "among",
        "and",
        "another",
        "are",
        "around",
        "as",
        "being",
        "below",
        "between",
        "but",
        "can",
        "could",
        "did",
        "does",
        "for",
        "from",
        "had",
        "has",
        "have",
        "her",
        "his",
        "how",
        "into",
        "its",
        "just",
        "may",
        "more",
        "most",
        "new",
        "not",
        "now",
        "off",
        "one",
        "our",
        "out",
        "over",
        "than",
        "that",
        "the",
        "their",
        "them",
        "then",
        "there",
        "these",
        "they",
        "this",
        "those",
        "two",
        "under",
        "upon",
        "was",
        "were",
        "what",
        "when",
        "where",
        "which",
        "while",
        "who",
        "why",
        "will",
        "with",
        "would",
        "you",
        # Headline boilerplate
        "beats",
        "breaking",
        "estimates",
        "exclusive",
        "first",
        "latest",
        "live",
        "misses",
        "news",
        "posts",
        "report",
        "reports",
        "said",
        "says",
        "strong",
        "today",
        "update",
        "updates",
        "watch",
        "week",
        "year",
        "years",
    }
)


def tokenize(title: str, *, min_length: Optional[int] = None) -> frozenset[str]:
    """Casefold, split on non-word characters, drop short tokens and stop words."""
    if not title:
        return frozenset()
    floor = settings.ANALYSIS_MIN_TOKEN_LENGTH if min_length is None else min_length
    text = _POSSESSIVE_RE.sub("", title.casefold())
    text = _APOSTROPHE_RE.sub("", text)
    return frozenset(
        token
        for token in _SPLIT_RE.split(text)
        if len(token) >= floor and token not in _STOP_WORDS
    )


def jaccard(a: frozenset[str] | set[str], b: frozenset[str] | set[str]) -> float:
    if not a or not b:
        return 0.0
    inter = len(a & b)
    if inter == 0:
        return 0.0
    return inter / len(a | b)


class TokenCache:
    """Per-cycle memo of ``tokenize`` keyed by the raw title."""

    def __init__(self, *, min_length: Optional[int] = None) -> None:
        self._min_length = min_length
        self._tokens: dict[str, frozenset[str]] = {}
        self.hits = 0

    def get(self, title: str) -> frozenset[str]:
        cached = self._tokens.get(title)
        if cached is not None:
            self.hits += 1
            return cached
        tokens = tokenize(title, min_length=self._min_length)
        self._tokens[title] = tokens
        return tokens

    def __len__(self) -> int:
        return len(self._tokens)


def build_inverted_index(
    items: Sequence[NewsItem],
    cache: Optional[TokenCache] = None,
) -> dict[str, set[int]]:
    """Map each token to the positions of the items whose title contains it."""
    cache = cache if cache is not None else TokenCache()
    index: dict[str, set[int]] = defaultdict(set)
    for position, item in enumerate(items):
        for token in cache.get(item.title):
            index[token].add(position)
    return dict(index)


def candidate_pairs(index: dict[str, set[int]]) -> Iterator[tuple[int, int]]:
    """Yield each ``(i, j)`` with ``i < j`` sharing a token, exactly once."""
    seen: set[tuple[int, int]] = set()
    for positions in index.values():
        if len(positions) < 2:
            continue
        ordered = sorted(positions)
        for offset, i in enumerate(ordered):
            for j in ordered[offset + 1:]:
                pair = (i, j)
                if pair in seen:
                    continue
                seen.add(pair)
                yield pair


def token_union(token_sets: Iterable[frozenset[str]]) -> frozenset[str]:
    merged: set[str] = set()
    for tokens in token_sets:
        merged.update(tokens)
    return frozenset(merged)
