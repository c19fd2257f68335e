from __future__ import annotations

import json

import pandas as pd


def _no_network(monkeypatch):
    from hltb_resolver import cli

    from fakes import FakeTransport

    monkeypatch.setattr(cli, "_transport_factory", lambda: FakeTransport([]))


def test_match_command_prints_winner(capsys):
    from hltb_resolver.cli import main

    rc = main(["match", "CS:GO", "Counter-Strike: Global Offensive", "Portal"])
    assert rc == 0
    out = json.loads(capsys.readouterr().out.strip().splitlines()[-1])
    assert out["match"] == "Counter-Strike: Global Offensive"
    assert out["method"] == "manual_mapping"


def test_match_command_without_a_winner(capsys):
    from hltb_resolver.cli import main

    assert main(["match", "Portal", "Celeste"]) == 1
    assert "no match" in capsys.readouterr().out


def test_lookup_from_fallback_as_json(monkeypatch, capsys):
    from hltb_resolver.cli import main

    _no_network(monkeypatch)
    rc = main(
        ["lookup", "Portal 2", "--skip-api", "--skip-scraper", "--min-interval", "0", "--json"]
    )
    assert rc == 0
    out = json.loads(capsys.readouterr().out.strip().splitlines()[-1])
    assert out["result"]["source"] == "fallback"
    assert out["result"]["times"]["main_story"] == 8.0


def test_lookup_rejects_bad_app_id(monkeypatch):
    from hltb_resolver.cli import main

    _no_network(monkeypatch)
    assert main(["lookup", "Portal 2", "--app-id", "abc", "--skip-api", "--skip-scraper"]) == 2


def test_batch_adds_result_columns(tmp_path, monkeypatch):
    from hltb_resolver.cli import main

    _no_network(monkeypatch)
    src = tmp_path / "games.csv"
    dst = tmp_path / "out" / "games_hltb.csv"
    pd.DataFrame({"Name": ["Portal 2", "Team Fortress 2"], "Notes": ["a", "b"]}).to_csv(
        src, index=False
    )

    rc = main(
        [
            "batch",
            str(src),
            str(dst),
            "--skip-api",
            "--skip-scraper",
            "--min-interval",
            "0",
            "--cache-file",
            str(tmp_path / "cache.json"),
        ]
    )
    assert rc == 0
    out = pd.read_csv(dst, dtype=str, keep_default_na=False)
    assert list(out["Notes"]) == ["a", "b"]
    assert out.loc[0, "HLTB_MainStory"] == "8.0"
    assert out.loc[0, "HLTB_Source"] == "fallback"
    assert out.loc[1, "HLTB_MainStory"] == ""
    assert out.loc[1, "HLTB_MatchedName"] == ""


def test_fallback_stats_and_export(tmp_path, capsys):
    from hltb_resolver.cli import main

    assert main(["fallback", "stats"]) == 0
    stats = json.loads(capsys.readouterr().out)
    assert stats["total_games"] == 30

    path = tmp_path / "fallback.csv"
    assert main(["fallback", "export", str(path)]) == 0
    assert len(pd.read_csv(path)) == 30


def test_cache_commands(tmp_path, capsys):
    from hltb_resolver.cli import main

    cache_file = tmp_path / "cache.json"
    assert main(["cache", "stats", "--cache-file", str(cache_file)]) == 0
    assert json.loads(capsys.readouterr().out)["size"] == 0
    assert main(["cache", "cleanup", "--cache-file", str(cache_file)]) == 0
    assert main(["cache", "clear", "--cache-file", str(cache_file)]) == 0
