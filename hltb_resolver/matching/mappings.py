from __future__ import annotations

from dataclasses import dataclass, field
from functools import lru_cache
from pathlib import Path
from types import MappingProxyType
from typing import Any, Mapping

import yaml

DATA_DIR = Path(__file__).resolve().parent.parent / "data"
MAPPINGS_PATH = DATA_DIR / "mappings.yaml"

SKIP_REASON = "Multiplayer-only game with no completion times"


def _freeze_str_map(raw: Any) -> Mapping[str, str]:
    out: dict[str, str] = {}
    for k, v in (raw or {}).items():
        if k is None or v is None:
            continue
        out[str(k).strip()] = str(v).strip()
    return MappingProxyType(out)


@dataclass(frozen=True)
class MappingTables:
    """
    Immutable static title tables.

    All keys and values are standard-normalized titles. Instances are shared between the
    normalizer and the matcher; nothing mutates them after load.
    """

    manual: Mapping[str, str] = field(default_factory=lambda: MappingProxyType({}))
    year_specific: Mapping[str, Mapping[int, str]] = field(
        default_factory=lambda: MappingProxyType({})
    )
    skip: frozenset[str] = frozenset()
    acronyms: Mapping[str, str] = field(default_factory=lambda: MappingProxyType({}))
    editions: tuple[str, ...] = ()

    @classmethod
    def from_dict(cls, raw: dict[str, Any]) -> MappingTables:
        years: dict[str, Mapping[int, str]] = {}
        for title, by_year in (raw.get("year_specific") or {}).items():
            inner: dict[int, str] = {}
            for y, canonical in (by_year or {}).items():
                try:
                    inner[int(y)] = str(canonical).strip()
                except (TypeError, ValueError):
                    continue
            years[str(title).strip()] = MappingProxyType(inner)
        editions = [str(e).strip().lower() for e in (raw.get("editions") or []) if e]
        # Longest first so "goty edition" wins over "goty".
        editions.sort(key=len, reverse=True)
        return cls(
            manual=_freeze_str_map(raw.get("manual")),
            year_specific=MappingProxyType(years),
            skip=frozenset(str(s).strip() for s in (raw.get("skip") or []) if s),
            acronyms=_freeze_str_map(raw.get("acronyms")),
            editions=tuple(editions),
        )

    def manual_mapping(self, normalized_title: str) -> str | None:
        return self.manual.get(normalized_title)

    def year_mapping(self, normalized_title: str, year: int | None) -> str | None:
        if not year:
            return None
        by_year = self.year_specific.get(normalized_title)
        if not by_year:
            return None
        return by_year.get(int(year))

    def is_skipped(self, normalized_title: str) -> bool:
        return normalized_title in self.skip

    def skip_reason(self, normalized_title: str) -> str | None:
        if self.is_skipped(normalized_title):
            return SKIP_REASON
        return None


def load_mapping_tables_from(path: str | Path) -> MappingTables:
    with open(path, encoding="utf-8") as f:
        raw = yaml.safe_load(f) or {}
    if not isinstance(raw, dict):
        raise ValueError(f"Mapping file must contain a mapping: {path}")
    return MappingTables.from_dict(raw)


@lru_cache(maxsize=1)
def load_mapping_tables() -> MappingTables:
    """Load the bundled tables once per process."""
    return load_mapping_tables_from(MAPPINGS_PATH)
