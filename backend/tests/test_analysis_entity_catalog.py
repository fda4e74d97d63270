import json
import sys
from pathlib import Path

import pytest

BACKEND_ROOT = Path(__file__).resolve().parents[1]
if str(BACKEND_ROOT) not in sys.path:
    sys.path.insert(0, str(BACKEND_ROOT))

from services.analysis.entity_catalog import (
    EntityCatalog,
    EntityRecord,
    EntityType,
    build_entity_index,
    contains_alias,
    parse_entity_records,
)
from services.analysis.errors import MalformedConfiguration


def _record(entity_id: str, *aliases: str, **kwargs) -> EntityRecord:
    return EntityRecord(
        id=entity_id,
        display_name=kwargs.pop("display_name", entity_id),
        type=kwargs.pop("type", EntityType.COMPANY),
        aliases=frozenset(aliases),
        **kwargs,
    )


def test_alias_lookup_round_trips_to_owner(entity_index):
    for record in entity_index.records.values():
        for alias in record.aliases:
            assert entity_index.by_alias(alias).id == record.id
    assert entity_index.by_alias("broadcom").id == "AVGO"
    assert entity_index.resolve("AVGO").display_name == "Broadcom"


def test_alias_match_respects_word_boundaries(entity_index):
    assert not contains_alias("RAID controller firmware update", "AI")
    assert entity_index.aliases_in("Hardware RAID sales slow") == []
    assert [e.id for e in entity_index.aliases_in("Broadcom and Nvidia rally")] == ["AVGO", "NVDA"]


def test_keyword_sector_and_type_lookups(entity_index):
    assert [e.id for e in entity_index.by_keyword("refinery")] == ["XOM"]
    assert [e.id for e in entity_index.by_sector("semiconductors")] == ["AVGO", "NVDA"]
    assert len(entity_index.by_type(EntityType.COMPANY)) == 4
    assert [e.id for e in entity_index.keywords_in("Fire breaks out at Texas refinery")] == ["XOM"]


def test_duplicate_id_is_rejected():
    with pytest.raises(MalformedConfiguration):
        build_entity_index([_record("AVGO", "Broadcom"), _record("AVGO", "Avago")])


def test_empty_alias_set_is_rejected():
    with pytest.raises(MalformedConfiguration):
        build_entity_index([_record("AVGO")])


def test_alias_claimed_twice_is_rejected():
    with pytest.raises(MalformedConfiguration, match="claimed by both"):
        build_entity_index([_record("AAA", "Acme"), _record("BBB", "ACME")])


def test_unknown_related_id_is_rejected():
    with pytest.raises(MalformedConfiguration, match="unknown related id"):
        build_entity_index([_record("AVGO", "Broadcom", related_ids=frozenset({"NOPE"}))])


def test_parse_rejects_unknown_type():
    with pytest.raises(MalformedConfiguration):
        parse_entity_records([{"id": "X", "type": "spaceship", "aliases": ["Xco"]}])


def test_catalog_loads_file_and_fails_fast_when_malformed(tmp_path):
    good = tmp_path / "entities.json"
    good.write_text(
        json.dumps(
            {
                "entities": [
                    {"id": "AVGO", "display_name": "Broadcom", "type": "company", "aliases": ["Broadcom", "AVGO"]},
                ]
            }
        ),
        encoding="utf-8",
    )
    assert len(EntityCatalog(path=good).index()) == 1

    bad = tmp_path / "broken.json"
    bad.write_text("{not json", encoding="utf-8")
    with pytest.raises(MalformedConfiguration):
        EntityCatalog(path=bad).index()

    with pytest.raises(MalformedConfiguration):
        EntityCatalog(path=tmp_path / "missing.json").index()


def test_bundled_registry_is_valid():
    index = EntityCatalog().index()
    assert index.resolve("AVGO").display_name == "Broadcom"
    assert index.by_alias("Bitcoin").id == "BTC-USD"


def test_alias_boundaries_hold_for_accented_text():
    assert contains_alias("Société Générale shares slide", "Société Générale")
    assert contains_alias("SOCIÉTÉ GÉNÉRALE shares slide", "société générale")
    assert not contains_alias("Aéroports de Paris traffic recovers", "roports")
