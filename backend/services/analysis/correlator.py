"""Cross-reference market movers against news clusters.

A symbol that moved at least the threshold is resolved to an entity, its
search terms are expanded one hop (sector peers and related entities, no
further), and cluster headlines are scanned for any term.  Primary titles
are scanned first; member titles only when no primary title matches.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Iterable, Optional, Sequence

from config import settings
from .entity_catalog import MIN_ALIAS_MATCH_LENGTH, EntityIndex, EntityRecord, contains_alias
from .keyword_match import match_keyword, tokenize_for_match
from .records import CorrelationResult, CorrelationStatus, MarketQuote, MatchKind, NewsCluster

logger = logging.getLogger(__name__)

MATCH_CONFIDENCE: dict[MatchKind, float] = {
    MatchKind.ALIAS: 0.95,
    MatchKind.KEYWORD: 0.70,
    MatchKind.RELATED: 0.60,
}


@dataclass(frozen=True)
class SearchTerm:
    text: str
    kind: MatchKind

    @property
    def confidence(self) -> float:
        return MATCH_CONFIDENCE[self.kind]


@dataclass(frozen=True)
class _ClusterMatch:
    cluster: NewsCluster
    term: SearchTerm


def search_terms(entity: EntityRecord, index: EntityIndex) -> list[SearchTerm]:
    """Expand an entity into its one-hop search terms.

    A term reachable through several routes keeps its strongest class.
    """
    best: dict[str, MatchKind] = {}

    def _offer(text: str, kind: MatchKind) -> None:
        key = " ".join(text.casefold().split())
        if not key:
            return
        current = best.get(key)
        if current is None or MATCH_CONFIDENCE[kind] > MATCH_CONFIDENCE[current]:
            best[key] = kind

    for name in entity.names:
        if len(name.strip()) >= MIN_ALIAS_MATCH_LENGTH:
            _offer(name, MatchKind.ALIAS)
    for keyword in entity.keywords:
        _offer(keyword, MatchKind.KEYWORD)

    neighbours: dict[str, EntityRecord] = {}
    if entity.sector:
        for peer in index.by_sector(entity.sector):
            neighbours[peer.id] = peer
    for related_id in entity.related_ids:
        related = index.by_id(related_id)
        if related is not None:
            neighbours[related.id] = related
    neighbours.pop(entity.id, None)

    for neighbour in neighbours.values():
        for name in neighbour.names:
            if len(name.strip()) >= MIN_ALIAS_MATCH_LENGTH:
                _offer(name, MatchKind.RELATED)

    return [SearchTerm(text=t, kind=k) for t, k in sorted(best.items())]


def _term_in_title(term: SearchTerm, title: str) -> bool:
    if term.kind == MatchKind.KEYWORD:
        return match_keyword(tokenize_for_match(title), term.text)
    return contains_alias(title, term.text)


def _best_term(terms: Sequence[SearchTerm], titles: Iterable[str]) -> Optional[SearchTerm]:
    best: Optional[SearchTerm] = None
    for title in titles:
        for term in terms:
            if best is not None and term.confidence <= best.confidence:
                continue
            if _term_in_title(term, title):
                best = term
    return best


def _rank(match: _ClusterMatch) -> tuple:
    return (
        -match.term.confidence,
        -match.cluster.source_count,
        -match.cluster.last_updated_at.timestamp(),
        match.cluster.id,
    )


class EntityCorrelator:
    """Explains market moves with news clusters, or flags silence."""

    def __init__(self, index: EntityIndex, *, move_threshold: Optional[float] = None) -> None:
        self._index = index
        self._threshold = float(
            settings.ANALYSIS_MARKET_MOVE_THRESHOLD if move_threshold is None else move_threshold
        )

    def _terms_for(self, symbol: str) -> tuple[Optional[EntityRecord], list[SearchTerm]]:
        entity = self._index.resolve(symbol)
        if entity is not None:
            return entity, search_terms(entity, self._index)
        text = (symbol or "").strip()
        if len(text) >= MIN_ALIAS_MATCH_LENGTH:
            return None, [SearchTerm(text=text.casefold(), kind=MatchKind.ALIAS)]
        return None, []

    def correlate(
        self,
        symbol: str,
        move_percent: float,
        clusters: Sequence[NewsCluster],
    ) -> CorrelationResult:
        magnitude = abs(float(move_percent))
        if magnitude < self._threshold:
            return CorrelationResult(
                symbol=symbol,
                move_percent=move_percent,
                status=CorrelationStatus.BELOW_THRESHOLD,
            )

        entity, terms = self._terms_for(symbol)
        entity_id = entity.id if entity else None

        match = self._scan(terms, clusters, primary_only=True)
        if match is None:
            match = self._scan(terms, clusters, primary_only=False)

        if match is None:
            logger.debug("No cluster explains %s move of %.2f%%", symbol, move_percent)
            return CorrelationResult(
                symbol=symbol,
                move_percent=move_percent,
                status=CorrelationStatus.SILENT_DIVERGENCE,
                confidence=round(min(0.8, 0.4 + magnitude / 10.0), 3),
                entity_id=entity_id,
            )

        return CorrelationResult(
            symbol=symbol,
            move_percent=move_percent,
            status=CorrelationStatus.EXPLAINED,
            confidence=match.term.confidence,
            entity_id=entity_id,
            cluster_id=match.cluster.id,
            headline=match.cluster.primary_title,
            matched_term=match.term.text,
            match_kind=match.term.kind,
        )

    def correlate_quotes(
        self,
        quotes: Iterable[MarketQuote],
        clusters: Sequence[NewsCluster],
    ) -> list[CorrelationResult]:
        """Correlate every quote that crossed the move threshold."""
        results = [
            self.correlate(quote.symbol, quote.change_percent, clusters)
            for quote in sorted(quotes, key=lambda q: q.symbol)
        ]
        results = [r for r in results if r.status != CorrelationStatus.BELOW_THRESHOLD]
        if results:
            logger.info(
                "Correlated %d market movers (%d explained, %d silent)",
                len(results),
                sum(1 for r in results if r.status == CorrelationStatus.EXPLAINED),
                sum(1 for r in results if r.status == CorrelationStatus.SILENT_DIVERGENCE),
            )
        return results

    @staticmethod
    def _scan(
        terms: Sequence[SearchTerm],
        clusters: Sequence[NewsCluster],
        *,
        primary_only: bool,
    ) -> Optional[_ClusterMatch]:
        if not terms:
            return None
        matches: list[_ClusterMatch] = []
        for cluster in clusters:
            titles = (cluster.primary_title,) if primary_only else cluster.member_titles
            term = _best_term(terms, titles)
            if term is not None:
                matches.append(_ClusterMatch(cluster=cluster, term=term))
        if not matches:
            return None
        return min(matches, key=_rank)
