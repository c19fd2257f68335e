from __future__ import annotations

import pytest


@pytest.mark.parametrize(
    "raw,expected",
    [
        ("12", 12.0),
        ("12½ Hours", 12.5),
        ("½ Hours", 0.5),
        ("12.5h", 12.5),
        ("12,5 h", 12.5),
        ("45 Mins", 0.75),
        ("10 - 12 Hours", 11.0),
        ("10–12 Hours", 11.0),
        ("2 to 4 hours", 3.0),
        ("1h 30m", 1.5),
        (7, 7.0),
    ],
)
def test_parse_time_string_values(raw, expected):
    from hltb_resolver.clients.parse import parse_time_string

    assert parse_time_string(raw) == pytest.approx(expected)


@pytest.mark.parametrize(
    "raw",
    ["--", "N/A", "", "0", "0 Hours", "abc", "12 parsecs", None, True, -5, float("nan")],
)
def test_parse_time_string_never_raises(raw):
    from hltb_resolver.clients.parse import parse_time_string

    assert parse_time_string(raw) is None


def test_seconds_to_hours():
    from hltb_resolver.clients.parse import seconds_to_hours

    assert seconds_to_hours(10800) == 3.0
    assert seconds_to_hours("3600") == 1.0
    assert seconds_to_hours("2 Hours") == 2.0
    assert seconds_to_hours(0) is None
    assert seconds_to_hours(None) is None
