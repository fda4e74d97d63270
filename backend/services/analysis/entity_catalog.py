"""Static entity registry and its derived lookup index.

The registry (``entities.json``) is loaded once per process.  The index
is built from it eagerly and validated at build time, so configuration
problems surface at startup and never mid-cycle.
"""

from __future__ import annotations

import logging
import re
from collections import defaultdict
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Iterable, Optional

from .catalog_loader import AnalysisJsonCatalog
from .errors import MalformedConfiguration
from .keyword_match import MatchTokens, match_keyword, tokenize_for_match

logger = logging.getLogger(__name__)

MIN_ALIAS_MATCH_LENGTH = 3

_DEFAULT = {
    "version": 0,
    "updated_at": None,
    "entities": [],
}


class EntityType(str, Enum):
    COMPANY = "company"
    INDEX = "index"
    COMMODITY = "commodity"
    CRYPTO = "crypto"
    COUNTRY = "country"
    ORGANIZATION = "organization"
    PERSON = "person"


@dataclass(frozen=True)
class EntityRecord:
    id: str
    display_name: str
    type: EntityType
    aliases: frozenset[str]
    keywords: frozenset[str] = frozenset()
    sector: Optional[str] = None
    related_ids: frozenset[str] = frozenset()

    @property
    def names(self) -> frozenset[str]:
        """Aliases plus the display name."""
        return self.aliases | {self.display_name}


def _normalize(term: str) -> str:
    return " ".join(str(term or "").casefold().split())


def alias_pattern(alias: str) -> re.Pattern[str]:
    """Word-boundary pattern for an alias ("ai" never matches "raid")."""
    return re.compile(r"(?<!\w)" + re.escape(_normalize(alias)) + r"(?!\w)")


def contains_alias(text: str, alias: str) -> bool:
    if len(_normalize(alias)) < MIN_ALIAS_MATCH_LENGTH:
        return False
    return alias_pattern(alias).search(_normalize(text)) is not None


@dataclass
class EntityIndex:
    """Read-only lookup structures derived from the registry."""

    records: dict[str, EntityRecord] = field(default_factory=dict)
    alias_to_id: dict[str, str] = field(default_factory=dict)
    keyword_to_ids: dict[str, frozenset[str]] = field(default_factory=dict)
    sector_to_ids: dict[str, frozenset[str]] = field(default_factory=dict)
    type_to_ids: dict[EntityType, frozenset[str]] = field(default_factory=dict)

    def __len__(self) -> int:
        return len(self.records)

    def by_id(self, entity_id: str) -> Optional[EntityRecord]:
        return self.records.get(entity_id) or self.records.get(str(entity_id or "").upper())

    def by_alias(self, alias: str) -> Optional[EntityRecord]:
        entity_id = self.alias_to_id.get(_normalize(alias))
        return self.records.get(entity_id) if entity_id else None

    def by_keyword(self, keyword: str) -> list[EntityRecord]:
        ids = self.keyword_to_ids.get(_normalize(keyword), frozenset())
        return [self.records[i] for i in sorted(ids)]

    def by_sector(self, sector: str) -> list[EntityRecord]:
        ids = self.sector_to_ids.get(_normalize(sector), frozenset())
        return [self.records[i] for i in sorted(ids)]

    def by_type(self, entity_type: EntityType | str) -> list[EntityRecord]:
        ids = self.type_to_ids.get(EntityType(entity_type), frozenset())
        return [self.records[i] for i in sorted(ids)]

    def resolve(self, symbol: str) -> Optional[EntityRecord]:
        """Resolve a ticker or name: id first, then alias."""
        return self.by_id(symbol) or self.by_alias(symbol)

    def aliases_in(self, text: str) -> list[EntityRecord]:
        """Entities whose alias appears in ``text`` on word boundaries."""
        normalized = _normalize(text)
        found: set[str] = set()
        for alias, entity_id in self.alias_to_id.items():
            if entity_id in found or len(alias) < MIN_ALIAS_MATCH_LENGTH:
                continue
            if alias_pattern(alias).search(normalized):
                found.add(entity_id)
        return [self.records[i] for i in sorted(found)]

    def keywords_in(self, text: str | MatchTokens) -> list[EntityRecord]:
        tokens = text if isinstance(text, MatchTokens) else tokenize_for_match(text)
        found = {
            entity_id
            for keyword, ids in self.keyword_to_ids.items()
            if match_keyword(tokens, keyword)
            for entity_id in ids
        }
        return [self.records[i] for i in sorted(found)]


# ---------------------------------------------------------------------------
# Building
# ---------------------------------------------------------------------------


def _string_set(value: Any) -> frozenset[str]:
    if not isinstance(value, (list, tuple, set, frozenset)):
        return frozenset()
    return frozenset(str(v).strip() for v in value if str(v).strip())


def parse_entity_records(rows: Iterable[Any], *, source: Optional[str] = None) -> list[EntityRecord]:
    records: list[EntityRecord] = []
    for position, row in enumerate(rows):
        if not isinstance(row, dict):
            raise MalformedConfiguration(f"entity #{position} is not an object", source=source)
        entity_id = str(row.get("id") or "").strip()
        if not entity_id:
            raise MalformedConfiguration(f"entity #{position} has no id", source=source)
        raw_type = str(row.get("type") or "").strip().lower()
        try:
            entity_type = EntityType(raw_type)
        except ValueError as exc:
            raise MalformedConfiguration(
                f"entity {entity_id} has unknown type {raw_type!r}", source=source
            ) from exc
        sector = str(row.get("sector") or "").strip() or None
        records.append(
            EntityRecord(
                id=entity_id,
                display_name=str(row.get("display_name") or row.get("name") or entity_id).strip(),
                type=entity_type,
                aliases=_string_set(row.get("aliases")),
                keywords=_string_set(row.get("keywords")),
                sector=sector,
                related_ids=_string_set(row.get("related_ids")),
            )
        )
    return records


def build_entity_index(records: Iterable[EntityRecord], *, source: Optional[str] = None) -> EntityIndex:
    """Validate ``records`` and derive the lookup maps.

    Raises ``MalformedConfiguration`` for duplicate ids, an empty alias
    set, an alias claimed by two entities, or an unknown related id.
    """
    by_id: dict[str, EntityRecord] = {}
    for record in records:
        if record.id in by_id:
            raise MalformedConfiguration(f"duplicate entity id {record.id}", source=source)
        if not record.aliases:
            raise MalformedConfiguration(f"entity {record.id} has no aliases", source=source)
        by_id[record.id] = record

    alias_to_id: dict[str, str] = {}
    keywords: dict[str, set[str]] = defaultdict(set)
    sectors: dict[str, set[str]] = defaultdict(set)
    types: dict[EntityType, set[str]] = defaultdict(set)

    for record in by_id.values():
        for related in record.related_ids:
            if related not in by_id:
                raise MalformedConfiguration(
                    f"entity {record.id} references unknown related id {related}", source=source
                )
        for alias in record.names:
            key = _normalize(alias)
            if not key:
                continue
            owner = alias_to_id.get(key)
            if owner is not None and owner != record.id:
                raise MalformedConfiguration(
                    f"alias {alias!r} claimed by both {owner} and {record.id}", source=source
                )
            alias_to_id[key] = record.id
        for keyword in record.keywords:
            keywords[_normalize(keyword)].add(record.id)
        if record.sector:
            sectors[_normalize(record.sector)].add(record.id)
        types[record.type].add(record.id)

    index = EntityIndex(
        records=by_id,
        alias_to_id=alias_to_id,
        keyword_to_ids={k: frozenset(v) for k, v in keywords.items()},
        sector_to_ids={k: frozenset(v) for k, v in sectors.items()},
        type_to_ids={k: frozenset(v) for k, v in types.items()},
    )
    logger.info(
        "Entity index built: %d entities, %d aliases, %d keywords",
        len(by_id),
        len(alias_to_id),
        len(keywords),
    )
    return index


# ---------------------------------------------------------------------------
# Catalog
# ---------------------------------------------------------------------------


class EntityCatalog:
    def __init__(self, path: Optional[Path] = None) -> None:
        self._catalog = AnalysisJsonCatalog("entities.json", _DEFAULT, strict=True, path=path)
        self._index: Optional[EntityIndex] = None

    def records(self) -> list[EntityRecord]:
        rows = self._catalog.payload().get("entities") or []
        return parse_entity_records(rows, source=str(self._catalog.path))

    def index(self) -> EntityIndex:
        if self._index is None:
            self._index = build_entity_index(self.records(), source=str(self._catalog.path))
        return self._index


entity_catalog = EntityCatalog()
