from __future__ import annotations

import asyncio

import pytest


def test_bundled_database_loads():
    from hltb_resolver.services.fallback_db import FallbackDatabase

    db = FallbackDatabase()
    assert len(db) == 30
    assert "Portal 2" in db
    assert "HL2" in db
    assert "Not A Real Game" not in db
    assert db.available_games()[0] == "Baldur's Gate 3"


def test_direct_alias_and_app_id_lookups():
    from hltb_resolver.services.fallback_db import FallbackDatabase

    db = FallbackDatabase()
    assert db.search_game("portal 2").title == "Portal 2"
    assert db.search_game("HL2").title == "Half-Life 2"
    assert db.stats["alias_hits"] == 1

    entry, how = db.lookup("anything at all", "620")
    assert (entry.title, how) == ("Portal 2", "app_id")

    entry, how = db.lookup("Witcher 3")
    assert (entry.title, how) == ("The Witcher 3: Wild Hunt", "alias")


def test_fuzzy_lookup_and_miss():
    from hltb_resolver.services.fallback_db import FallbackDatabase

    db = FallbackDatabase()
    entry, how = db.lookup("Hollow Knigt")
    assert entry.title == "Hollow Knight"
    assert how == "fuzzy"
    # Memoized per normalized title.
    assert db.fuzzy_search_scored("hollow knigt") is db.fuzzy_search_scored("Hollow Knigt")

    assert db.lookup("Completely Unknown Thing") is None
    assert db.stats["misses"] == 1


def test_multiplayer_entries_have_no_times():
    from hltb_resolver.services.fallback_db import FallbackDatabase

    entry = FallbackDatabase().search_game("Dota 2")
    assert entry is not None
    assert not entry.data.has_data


def test_entries_are_validated():
    from hltb_resolver.errors import ValidationError
    from hltb_resolver.services.fallback_db import entry_from_dict

    with pytest.raises(ValidationError):
        entry_from_dict({"title": "  "})
    with pytest.raises(ValidationError):
        entry_from_dict({"title": "X", "data": "fast"})
    e = entry_from_dict({"title": "X", "aliases": "a|b", "confidence": "bogus"})
    assert e.aliases == ["a", "b"]
    assert e.confidence.value == "high"


def test_merge_never_overrides_high_confidence_entries():
    from hltb_resolver.models import Confidence
    from hltb_resolver.services.fallback_db import FallbackDatabase

    db = FallbackDatabase(entries=[{"title": "Portal", "data": {"main_story": 3}}])
    merged = db.merge_entries(
        [
            {"title": "Portal", "data": {"main_story": 99}},
            {"title": "Outer Wilds", "data": {"mainStory": 17}},
            {"title": "No Data"},
            {"data": {"main_story": 1}},
            "junk",
        ]
    )
    assert merged == 1
    assert db.search_game("Portal").data.main_story == 3
    ow = db.search_game("Outer Wilds")
    assert ow.data.main_story == 17
    assert ow.confidence is Confidence.MEDIUM


def test_community_dataset_is_merged_once():
    from hltb_resolver.services.fallback_db import FallbackDatabase

    from fakes import FakeTransport, json_response

    transport = FakeTransport(
        [json_response({"games": [{"title": "Outer Wilds", "data": {"main_story": 17}}]})]
    )
    db = FallbackDatabase(
        entries=[], community_url="https://example.test/games.json", transport=transport
    )

    async def run():
        first = await db.ensure_community_loaded()
        second = await db.ensure_community_loaded()
        return first, second

    assert asyncio.run(run()) == (1, 1)
    assert len(transport.calls) == 1
    assert db.search_game("outer wilds").data.main_story == 17
    assert db.get_stats()["community_loaded"] is True


def test_community_failure_keeps_local_data():
    from hltb_resolver.clients.http_client import HttpResponse
    from hltb_resolver.services.fallback_db import FallbackDatabase

    from fakes import FakeTransport

    db = FallbackDatabase(
        community_url="https://example.test/games.json",
        transport=FakeTransport([HttpResponse(500)]),
    )
    assert asyncio.run(db.ensure_community_loaded()) == 0
    assert db.stats["community_errors"] == 1
    assert len(db) == 30


def test_merge_needs_a_running_loop():
    from hltb_resolver.services.fallback_db import FallbackDatabase

    db = FallbackDatabase(entries=[], community_url="https://example.test/games.json")
    assert db.start_community_merge() is None


def test_add_update_remove():
    from hltb_resolver.errors import ValidationError
    from hltb_resolver.services.fallback_db import FallbackDatabase

    db = FallbackDatabase(entries=[])
    db.add_game("Outer Wilds", {"main_story": 17}, aliases=["ow"], app_id="753640")
    assert "ow" in db

    updated = db.update_game("ow", data={"completionist": 25})
    assert updated.data.main_story == 17
    assert updated.data.completionist == 25
    assert db.lookup("x", "753640")[0].title == "Outer Wilds"

    assert db.update_game("missing") is None
    assert db.remove_game("Outer Wilds")
    assert "ow" not in db
    assert not db.remove_game("Outer Wilds")

    with pytest.raises(ValidationError):
        db.add_game("")


def test_stats():
    from hltb_resolver.services.fallback_db import FallbackDatabase

    db = FallbackDatabase()
    s = db.get_stats()
    assert s["total_games"] == 30
    assert s["games_without_data"] == 4
    assert s["games_with_data"] == 26
    assert s["coverage_pct"] == round(100 * 26 / 30, 1)
    assert s["by_confidence"]["medium"] == 2
    assert "games=30" in db.format_stats()


def test_csv_and_json_export_import(tmp_path):
    from hltb_resolver.services.fallback_db import FallbackDatabase

    db = FallbackDatabase()
    csv_path = tmp_path / "fallback.csv"
    json_path = tmp_path / "fallback.json"
    assert db.export_csv(csv_path) == 30
    assert db.export_json(json_path) == 30

    for path, importer in ((csv_path, "import_csv"), (json_path, "import_json")):
        fresh = FallbackDatabase(entries=[])
        assert getattr(fresh, importer)(path) == 30
        p2 = fresh.search_game("Portal 2")
        assert p2.data.main_story == 8.0
        assert p2.app_id == "620"
        assert fresh.search_game("hl2").title == "Half-Life 2"
        assert not fresh.search_game("Dota 2").data.has_data


def test_bad_community_item_leaves_local_data_alone():
    from hltb_resolver.errors import ValidationError
    from hltb_resolver.services.fallback_db import FallbackDatabase, entry_from_dict

    from fakes import FakeTransport, json_response

    with pytest.raises(ValidationError) as excinfo:
        entry_from_dict({"title": "Bad", "data": {}, "aliases": 5})
    assert excinfo.value.field == "aliases"

    db = FallbackDatabase(entries=[{"title": "Celeste", "data": {"main_story": 8}}])
    merged = db.merge_entries(
        [
            {"title": "Good", "data": {"main_story": 3}},
            {"title": "Bad", "data": {}, "aliases": 5},
        ]
    )
    assert merged == 1
    assert db.available_games() == ["Celeste", "Good"]

    transport = FakeTransport(
        [json_response({"games": [{"title": "Worse", "data": {}, "aliases": True}]})]
    )
    db = FallbackDatabase(
        entries=[], community_url="https://example.test/games.json", transport=transport
    )
    assert asyncio.run(db.ensure_community_loaded()) == 0
    assert "Worse" not in db
