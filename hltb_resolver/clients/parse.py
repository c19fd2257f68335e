from __future__ import annotations

import math
import re
from typing import Any

PLACEHOLDERS = frozenset({"", "--", "-", "n/a", "na", "tbd", "?", "none", "null"})

_FRACTIONS = {
    "½": 0.5,
    "¼": 0.25,
    "¾": 0.75,
    "⅓": 1 / 3,
    "⅔": 2 / 3,
}

_NUM = r"(\d+(?:[.,]\d+)?)"
_RANGE_RE = re.compile(rf"^{_NUM}\s*(?:-|–|—|to)\s*{_NUM}\s*([a-z]*)$")
_COMPOUND_RE = re.compile(rf"^{_NUM}\s*h(?:ours?|rs?)?\s*{_NUM}\s*m(?:in(?:ute)?s?)?$")
_SINGLE_RE = re.compile(rf"^{_NUM}\s*([a-z]*)$")

_HOUR_UNITS = frozenset({"", "h", "hr", "hrs", "hour", "hours"})
_MINUTE_UNITS = frozenset({"m", "min", "mins", "minute", "minutes"})


def as_str(value: object) -> str:
    if value is None:
        return ""
    return str(value).strip()


def _num(token: str) -> float:
    return float(token.replace(",", "."))


def _expand_fractions(s: str) -> str:
    for glyph, frac in _FRACTIONS.items():
        if glyph not in s:
            continue

        def _sub(m: re.Match[str], frac: float = frac) -> str:
            whole = float(m.group(1)) if m.group(1) else 0.0
            return f"{whole + frac:.4f}"

        s = re.sub(rf"(\d+)?\s*{glyph}", _sub, s)
    return s


def _to_hours(value: float, unit: str) -> float | None:
    if unit in _MINUTE_UNITS:
        value = value / 60.0
    elif unit not in _HOUR_UNITS:
        return None
    return value


def _finish(hours: float | None) -> float | None:
    if hours is None or not math.isfinite(hours) or hours <= 0:
        return None
    return round(hours, 2)


def parse_time_string(value: Any) -> float | None:
    """
    Parse a human-readable duration into fractional hours.

    Handles "12", "12½ Hours", "12.5h", "45 Mins", "10 - 12 Hours" (midpoint), "1h 30m".
    Placeholders ("--", "N/A"), unparsable text and zero return None. Never raises.
    """
    try:
        if value is None or isinstance(value, bool):
            return None
        if isinstance(value, (int, float)):
            return _finish(float(value))

        s = as_str(value).lower()
        if s in PLACEHOLDERS:
            return None
        s = _expand_fractions(s)
        s = re.sub(r"\s+", " ", s).strip()

        m = _COMPOUND_RE.match(s)
        if m:
            return _finish(_num(m.group(1)) + _num(m.group(2)) / 60.0)

        m = _RANGE_RE.match(s)
        if m:
            lo, hi = _num(m.group(1)), _num(m.group(2))
            return _finish(_to_hours((lo + hi) / 2.0, m.group(3)))

        m = _SINGLE_RE.match(s)
        if m:
            return _finish(_to_hours(_num(m.group(1)), m.group(2)))
        return None
    except (ValueError, TypeError, OverflowError):
        return None


def seconds_to_hours(value: Any) -> float | None:
    """
    API durations are integer seconds. Zero and missing mean "no data".

    Unit-bearing strings are delegated to `parse_time_string`.
    """
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        seconds = float(value)
    else:
        s = as_str(value)
        try:
            seconds = float(s)
        except ValueError:
            return parse_time_string(s)
    if not math.isfinite(seconds) or seconds <= 0:
        return None
    return round(seconds / 3600.0, 2)
