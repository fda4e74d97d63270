"""Headline clustering.

Items are grouped by single-link union over Jaccard similarity of their
title tokens.  Only pairs sharing at least one token (per the inverted
index) are compared.  Union-find roots are always the smallest position
in a canonical item ordering, so the partition and the cluster ids do not
depend on the order items arrive in.
"""

from __future__ import annotations

import hashlib
import logging
from collections import defaultdict
from datetime import timedelta
from typing import Iterable, Optional, Sequence

from config import settings
from .records import NewsCluster, NewsItem, Trend, coerce_utc
from .tokenizer import TokenCache, build_inverted_index, candidate_pairs, jaccard, token_union

logger = logging.getLogger(__name__)


def _canonical_key(item: NewsItem) -> tuple:
    return (coerce_utc(item.published_at), item.source_id, item.title)


def _cluster_id(earliest: NewsItem) -> str:
    packed = "|".join(
        [coerce_utc(earliest.published_at).isoformat(), earliest.source_id, earliest.title]
    )
    return "nc_" + hashlib.sha1(packed.encode("utf-8")).hexdigest()[:16]


class _UnionFind:
    """Disjoint sets whose root is always the smallest member."""

    def __init__(self, size: int) -> None:
        self._parent = list(range(size))

    def find(self, node: int) -> int:
        root = node
        while self._parent[root] != root:
            root = self._parent[root]
        while self._parent[node] != root:
            self._parent[node], node = root, self._parent[node]
        return root

    def union(self, a: int, b: int) -> None:
        ra, rb = self.find(a), self.find(b)
        if ra == rb:
            return
        if ra < rb:
            self._parent[rb] = ra
        else:
            self._parent[ra] = rb


class ClusteringEngine:
    """Groups related headlines into ``NewsCluster`` records."""

    def __init__(
        self,
        *,
        similarity_threshold: Optional[float] = None,
        min_span_minutes: Optional[float] = None,
        trend_ratio: Optional[float] = None,
    ) -> None:
        self._threshold = float(
            settings.ANALYSIS_SIMILARITY_THRESHOLD
            if similarity_threshold is None
            else similarity_threshold
        )
        self._min_span = timedelta(
            minutes=float(
                settings.ANALYSIS_VELOCITY_MIN_SPAN_MINUTES
                if min_span_minutes is None
                else min_span_minutes
            )
        )
        self._trend_ratio = float(
            settings.ANALYSIS_TREND_RATIO if trend_ratio is None else trend_ratio
        )

    @property
    def similarity_threshold(self) -> float:
        return self._threshold

    def cluster(
        self,
        items: Iterable[NewsItem],
        cache: Optional[TokenCache] = None,
    ) -> list[NewsCluster]:
        ordered = self._canonicalize(items)
        if not ordered:
            return []

        cache = cache if cache is not None else TokenCache()
        tokens = [cache.get(item.title) for item in ordered]
        index = build_inverted_index(ordered, cache)

        forest = _UnionFind(len(ordered))
        compared = 0
        for i, j in candidate_pairs(index):
            compared += 1
            if jaccard(tokens[i], tokens[j]) >= self._threshold:
                forest.union(i, j)

        groups: dict[int, list[int]] = defaultdict(list)
        for position in range(len(ordered)):
            groups[forest.find(position)].append(position)

        clusters = [
            self._build_cluster([ordered[p] for p in members], [tokens[p] for p in members])
            for members in groups.values()
        ]
        clusters.sort(key=lambda c: c.id)
        clusters.sort(key=lambda c: c.last_updated_at, reverse=True)

        logger.debug(
            "Clustered %d items into %d clusters (%d candidate pairs compared)",
            len(ordered),
            len(clusters),
            compared,
        )
        return clusters

    # -- Helpers -------------------------------------------------------------

    @staticmethod
    def _canonicalize(items: Iterable[NewsItem]) -> list[NewsItem]:
        """Sort into canonical order and drop repeated item ids."""
        ordered = sorted(items, key=_canonical_key)
        seen: set[str] = set()
        unique: list[NewsItem] = []
        for item in ordered:
            if item.item_id in seen:
                logger.debug("Dropping duplicate news item id %s", item.item_id)
                continue
            seen.add(item.item_id)
            unique.append(item)
        return unique

    def _build_cluster(
        self,
        members: Sequence[NewsItem],
        member_tokens: Sequence[frozenset[str]],
    ) -> NewsCluster:
        # Members arrive in canonical order, so members[0] is the earliest.
        primary = min(
            members,
            key=lambda item: (
                item.source_tier,
                -coerce_utc(item.published_at).timestamp(),
                item.source_id,
            ),
        )
        times = [coerce_utc(item.published_at) for item in members]
        first_seen = min(times)
        last_updated = max(times)

        return NewsCluster(
            id=_cluster_id(members[0]),
            member_ids=frozenset(item.item_id for item in members),
            primary_item_id=primary.item_id,
            tokens=token_union(member_tokens),
            first_seen_at=first_seen,
            last_updated_at=last_updated,
            velocity_per_hour=self._velocity(len(members), last_updated - first_seen),
            trend=self._trend(times, first_seen, last_updated),
            primary_title=primary.title,
            primary_source=primary.publisher,
            primary_link=primary.link,
            member_titles=tuple(item.title for item in members),
            source_types=frozenset(item.source_type for item in members),
            source_count=len({item.publisher for item in members}),
            is_alert=any(item.is_alert for item in members),
        )

    def _velocity(self, member_count: int, span: timedelta) -> float:
        span = max(span, self._min_span)
        hours = span.total_seconds() / 3600.0
        if hours <= 0:
            return 0.0
        return round(member_count / hours, 3)

    def _trend(self, times, first_seen, last_updated) -> Trend:
        span = last_updated - first_seen
        if span <= timedelta(0) or len(times) < 2:
            return Trend.STABLE
        midpoint = first_seen + span / 2
        first_half = sum(1 for t in times if t < midpoint)
        second_half = len(times) - first_half
        if second_half > first_half * (1.0 + self._trend_ratio):
            return Trend.RISING
        if second_half < first_half * (1.0 - self._trend_ratio):
            return Trend.FALLING
        return Trend.STABLE
