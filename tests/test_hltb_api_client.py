from __future__ import annotations

import asyncio
import json
from datetime import datetime, timezone

import pytest

PORTAL_PAYLOAD = {
    "data": [
        {"game_id": 1, "game_name": "Portal 2: Sequel Pack", "comp_main": 3600},
        {
            "game_id": 7231,
            "game_name": "Portal 2",
            "game_image": "p2.jpg",
            "comp_main": 10800,
            "comp_plus": 0,
            "comp_100": 36000,
            "comp_all": 14400,
        },
    ]
}


def _client(transport, **kw):
    from hltb_resolver.clients.hltb_api_client import HLTBApiClient
    from hltb_resolver.config import RetryConfig

    from fakes import Sleeps

    retry = kw.pop("retry", RetryConfig(retries=3, base_sleep_s=0.0, jitter_s=0.0))
    sleeps = kw.pop("sleep", Sleeps())
    return HLTBApiClient(transport, retry=retry, sleep=sleeps, **kw), sleeps


def test_search_prefers_exact_name_and_converts_seconds():
    from fakes import FakeTransport, json_response

    transport = FakeTransport([json_response(PORTAL_PAYLOAD)])
    client, _ = _client(transport)

    game = asyncio.run(client.search_game("Portal 2"))
    assert game is not None
    assert game.game_id == "7231"
    assert game.times.main_story == 3.0
    assert game.times.main_extra is None
    assert game.times.completionist == 10.0
    assert game.times.all_styles == 4.0
    assert game.image_url == "https://howlongtobeat.com/games/p2.jpg"
    assert game.url == "https://howlongtobeat.com/game/7231"

    call = transport.calls[0]
    assert call["method"] == "POST"
    assert json.loads(call["body"])["searchTerms"] == ["Portal", "2"]
    assert client.stats["search_found"] == 1


def test_search_falls_back_to_first_result():
    from fakes import FakeTransport, json_response

    client, _ = _client(FakeTransport([json_response(PORTAL_PAYLOAD)]))
    game = asyncio.run(client.search_game("Portal Two"))
    assert game is not None
    assert game.game_id == "1"


def test_empty_results_return_none():
    from fakes import FakeTransport, json_response

    client, _ = _client(FakeTransport([json_response({"data": []})]))
    assert asyncio.run(client.search_game("Nothing Here")) is None
    assert client.stats["search_not_found"] == 1


def test_network_errors_are_retried_with_backoff():
    from hltb_resolver.errors import NetworkError

    from fakes import FakeTransport, json_response

    transport = FakeTransport(
        [NetworkError("boom"), NetworkError("boom"), json_response(PORTAL_PAYLOAD)]
    )
    client, sleeps = _client(transport)
    game = asyncio.run(client.search_game("Portal 2"))
    assert game is not None
    assert len(transport.calls) == 3
    assert client.stats["retries"] == 2
    assert client.stats["network_errors"] == 2
    assert sleeps.calls == [0.0, 0.0]


def test_retries_exhausted_raise_network_error():
    from hltb_resolver.clients.http_client import HttpResponse
    from hltb_resolver.errors import NetworkError

    from fakes import FakeTransport

    transport = FakeTransport([HttpResponse(500), HttpResponse(500), HttpResponse(500)])
    client, _ = _client(transport)
    with pytest.raises(NetworkError) as excinfo:
        asyncio.run(client.search_games("Portal 2"))
    assert excinfo.value.status == 500
    assert len(transport.calls) == 3


def test_unreadable_body_is_a_network_error():
    from hltb_resolver.clients.http_client import HttpResponse
    from hltb_resolver.config import RetryConfig
    from hltb_resolver.errors import NetworkError

    from fakes import FakeTransport

    client, _ = _client(
        FakeTransport([HttpResponse(200, text="<html>not json</html>")]),
        retry=RetryConfig(retries=1),
    )
    with pytest.raises(NetworkError):
        asyncio.run(client.search_games("Portal 2"))


def test_429_opens_a_local_rate_limit_window():
    from hltb_resolver.errors import RateLimitError

    from fakes import Clock, FakeTransport, json_response

    clock = Clock()
    transport = FakeTransport(
        [
            json_response({}, status=429, headers={"Retry-After": "120"}),
            json_response(PORTAL_PAYLOAD),
        ]
    )
    client, _ = _client(transport, clock=clock)

    with pytest.raises(RateLimitError) as excinfo:
        asyncio.run(client.search_games("Portal 2"))
    assert excinfo.value.retry_after_s == 120.0
    assert len(transport.calls) == 1
    assert client.is_rate_limited
    assert client.stats["http_429"] == 1

    # Rejected locally, no request sent.
    clock.advance(60)
    with pytest.raises(RateLimitError):
        asyncio.run(client.search_games("Portal 2"))
    assert len(transport.calls) == 1
    assert client.stats["rate_limited_rejects"] == 1

    clock.advance(61)
    assert not client.is_rate_limited
    assert asyncio.run(client.search_games("Portal 2"))
    assert len(transport.calls) == 2


def test_429_without_retry_after_uses_default_window():
    from hltb_resolver.errors import RateLimitError

    from fakes import Clock, FakeTransport, json_response

    clock = Clock()
    client, _ = _client(FakeTransport([json_response({}, status=429)]), clock=clock)
    with pytest.raises(RateLimitError):
        asyncio.run(client.search_games("Portal 2"))
    assert client.rate_limit_remaining_s == pytest.approx(60.0)
    client.clear_rate_limit()
    assert not client.is_rate_limited


def test_parse_retry_after_accepts_http_dates():
    from hltb_resolver.clients.hltb_api_client import parse_retry_after

    now = datetime(2024, 1, 1, tzinfo=timezone.utc)
    assert parse_retry_after("Mon, 01 Jan 2024 00:01:00 GMT", now=now) == pytest.approx(60.0)
    assert parse_retry_after("15") == 15.0
    assert parse_retry_after("garbage", default_s=42) == 42.0
    assert parse_retry_after(None, default_s=42) == 42.0


def test_slow_transport_times_out():
    from hltb_resolver.config import RetryConfig
    from hltb_resolver.errors import NetworkError

    from fakes import FakeTransport, json_response

    transport = FakeTransport([json_response(PORTAL_PAYLOAD)], delay_s=1.0)
    client, _ = _client(transport, retry=RetryConfig(retries=1), timeout_s=0.02)
    with pytest.raises(NetworkError) as excinfo:
        asyncio.run(client.search_games("Portal 2"))
    assert excinfo.value.is_timeout
    assert client.stats["timeouts"] == 1


def test_etag_revalidation_reuses_parsed_results():
    from hltb_resolver.clients.http_client import HttpResponse

    from fakes import FakeTransport, json_response

    transport = FakeTransport(
        [json_response(PORTAL_PAYLOAD, headers={"ETag": '"abc"'}), HttpResponse(304)]
    )
    client, _ = _client(transport)

    first = asyncio.run(client.search_games("Portal 2"))
    second = asyncio.run(client.search_games("Portal 2"))
    assert [g.game_id for g in second] == [g.game_id for g in first]
    assert "If-None-Match" not in transport.calls[0]["headers"]
    assert transport.calls[1]["headers"]["If-None-Match"] == '"abc"'
    assert client.stats["etag_hits"] == 1


def test_blank_title_is_rejected_before_any_request():
    from hltb_resolver.errors import ValidationError

    from fakes import FakeTransport

    transport = FakeTransport([])
    client, _ = _client(transport)
    with pytest.raises(ValidationError):
        asyncio.run(client.search_games(" ™ "))
    assert transport.calls == []


def test_sanitize_and_payload():
    from hltb_resolver.clients.hltb_api_client import build_search_payload, sanitize_title

    assert sanitize_title("Portal™   2®") == "Portal 2"
    assert len(sanitize_title("x" * 300)) == 100
    payload = build_search_payload("Portal 2", platform="PC")
    assert payload["searchOptions"]["games"]["platform"] == "PC"
    assert payload["size"] == 20


def test_batch_search_keeps_going_after_failures():
    from hltb_resolver.errors import NetworkError

    from fakes import FakeTransport, json_response

    transport = FakeTransport([json_response(PORTAL_PAYLOAD), NetworkError("down")])
    client, _ = _client(transport, retry=_no_retry())
    out = asyncio.run(client.batch_search(["Portal 2", "Hades"]))
    assert out["Portal 2"] is not None
    assert out["Hades"] is None
    assert "searches=2" in client.format_stats()


def _no_retry():
    from hltb_resolver.config import RetryConfig

    return RetryConfig(retries=1, base_sleep_s=0.0, jitter_s=0.0)
