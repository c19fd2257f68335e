from __future__ import annotations

import asyncio
import contextlib
import logging
from pathlib import Path
from typing import Any, Iterable

import pandas as pd
import yaml

from ..clients.http_client import AsyncHTTPClient, HttpTransport, RequestsTransport
from ..config import FALLBACK, FallbackConfig
from ..errors import NetworkError, ValidationError
from ..matching.normalizer import TitleNormalizer
from ..matching.similarity import SimilarityCalculator
from ..models import CompletionTimes, Confidence, FallbackEntry
from ..utils.utilities import load_json_cache, read_csv, save_json_cache, write_csv

FALLBACK_PATH = Path(__file__).resolve().parent.parent / "data" / "fallback_games.yaml"

_TIME_COLUMNS = ("main_story", "main_extra", "completionist", "all_styles")


def _key(title: str) -> str:
    return TitleNormalizer.standard(title)


def entry_from_dict(
    raw: Any, *, default_confidence: Confidence = Confidence.HIGH
) -> FallbackEntry:
    """Build an entry from a plain dict. Raises ValidationError on a missing title."""
    if not isinstance(raw, dict):
        raise ValidationError("Fallback entry must be an object", field="entry")
    title = raw.get("title")
    if not isinstance(title, str) or not title.strip():
        raise ValidationError("Fallback entry needs a non-empty title", field="title")
    data = raw.get("data")
    if data is not None and not isinstance(data, dict):
        raise ValidationError(f"Fallback entry {title!r} has malformed data", field="data")
    aliases = raw.get("aliases") or []
    if isinstance(aliases, str):
        aliases = [a for a in aliases.split("|") if a.strip()]
    elif not isinstance(aliases, (list, tuple)):
        raise ValidationError(f"Fallback entry {title!r} has malformed aliases", field="aliases")
    try:
        confidence = Confidence(raw.get("confidence") or default_confidence)
    except ValueError:
        confidence = default_confidence
    app_id = raw.get("app_id")
    last_updated = raw.get("last_updated", raw.get("lastUpdated"))
    return FallbackEntry(
        title=title.strip(),
        aliases=[str(a).strip() for a in aliases if str(a).strip()],
        data=CompletionTimes.from_dict(data),
        confidence=confidence,
        last_updated=str(last_updated) if last_updated else None,
        app_id=str(app_id).strip() if app_id not in (None, "") else None,
    )


def load_bundled_entries(path: str | Path = FALLBACK_PATH) -> list[FallbackEntry]:
    with open(path, encoding="utf-8") as f:
        raw = yaml.safe_load(f) or {}
    items = raw.get("games", []) if isinstance(raw, dict) else raw
    return [entry_from_dict(item) for item in items or []]


class FallbackDatabase:
    """
    Local completion-time database, the last retrieval tier.

    Entries are keyed by standard-normalized title, with a parallel alias index and an
    optional app id index, so direct lookups never scan. A remote community dataset can be
    merged once per instance; its failure leaves local data untouched.
    """

    def __init__(
        self,
        entries: Iterable[FallbackEntry | dict[str, Any]] | None = None,
        *,
        data_path: str | Path = FALLBACK_PATH,
        config: FallbackConfig = FALLBACK,
        community_url: str | None = None,
        transport: HttpTransport | None = None,
        calculator: SimilarityCalculator | None = None,
    ):
        self.config = config
        self.community_url = community_url or config.community_url
        self.calculator = calculator or SimilarityCalculator()
        self.stats: dict[str, int] = {
            "lookups": 0,
            "app_id_hits": 0,
            "direct_hits": 0,
            "alias_hits": 0,
            "fuzzy_hits": 0,
            "misses": 0,
            "community_merged": 0,
            "community_errors": 0,
        }
        self._transport = transport
        self._http: AsyncHTTPClient | None = None
        self._games: dict[str, FallbackEntry] = {}
        self._aliases: dict[str, str] = {}
        self._by_app_id: dict[str, str] = {}
        self._fuzzy_memo: dict[str, tuple[FallbackEntry, float] | None] = {}
        self._merge_started = False
        self._merge_task: asyncio.Task[int] | None = None

        seed = load_bundled_entries(data_path) if entries is None else entries
        for item in seed:
            entry = item if isinstance(item, FallbackEntry) else entry_from_dict(item)
            self._index(entry)

    # ----------------------------
    # Indexes
    # ----------------------------

    def _index(self, entry: FallbackEntry) -> None:
        key = _key(entry.title)
        if key in self._games:
            self._unindex(key)
        self._games[key] = entry
        for alias in entry.aliases:
            ak = _key(alias)
            if ak and ak != key:
                self._aliases[ak] = key
        if entry.app_id:
            self._by_app_id[entry.app_id] = key
        self._fuzzy_memo.clear()

    def _unindex(self, key: str) -> FallbackEntry | None:
        entry = self._games.pop(key, None)
        self._aliases = {a: k for a, k in self._aliases.items() if k != key}
        self._by_app_id = {a: k for a, k in self._by_app_id.items() if k != key}
        self._fuzzy_memo.clear()
        return entry

    def _resolve_key(self, title: str) -> str | None:
        key = _key(title)
        if key in self._games:
            return key
        return self._aliases.get(key)

    # ----------------------------
    # Lookups
    # ----------------------------

    def _find(self, title: str, app_id: str | None) -> tuple[FallbackEntry, str] | None:
        if app_id and app_id in self._by_app_id:
            return self._games[self._by_app_id[app_id]], "app_id"
        key = _key(title)
        if not key:
            return None
        entry = self._games.get(key)
        if entry is not None:
            return entry, "direct"
        primary = self._aliases.get(key)
        if primary is not None:
            return self._games[primary], "alias"
        return None

    def search_game(self, title: str, app_id: str | None = None) -> FallbackEntry | None:
        self.stats["lookups"] += 1
        found = self._find(title, app_id)
        if found is None:
            self.stats["misses"] += 1
            return None
        self.stats[f"{found[1]}_hits"] += 1
        return found[0]

    def fuzzy_search_scored(self, title: str) -> tuple[FallbackEntry, float] | None:
        key = _key(title)
        if not key:
            return None
        if key in self._fuzzy_memo:
            return self._fuzzy_memo[key]
        best: tuple[str, float] | None = None
        for candidate in list(self._games) + list(self._aliases):
            score = self.calculator.combined_similarity(key, candidate)
            if best is None or score > best[1]:
                best = (candidate, score)
        out: tuple[FallbackEntry, float] | None = None
        if best is not None and best[1] >= self.config.fuzzy_min:
            primary = best[0] if best[0] in self._games else self._aliases[best[0]]
            out = (self._games[primary], best[1])
        self._fuzzy_memo[key] = out
        return out

    def fuzzy_search(self, title: str) -> FallbackEntry | None:
        scored = self.fuzzy_search_scored(title)
        if scored is None:
            return None
        self.stats["fuzzy_hits"] += 1
        return scored[0]

    def lookup(self, title: str, app_id: str | None = None) -> tuple[FallbackEntry, str] | None:
        """Direct/alias lookup, then a fuzzy sweep. Returns (entry, how it was found)."""
        self.stats["lookups"] += 1
        found = self._find(title, app_id)
        if found is not None:
            self.stats[f"{found[1]}_hits"] += 1
            return found
        entry = self.fuzzy_search(title)
        if entry is not None:
            return entry, "fuzzy"
        self.stats["misses"] += 1
        return None

    def available_games(self) -> list[str]:
        return sorted(e.title for e in self._games.values())

    def __len__(self) -> int:
        return len(self._games)

    def __contains__(self, title: object) -> bool:
        return isinstance(title, str) and self._resolve_key(title) is not None

    # ----------------------------
    # Community dataset
    # ----------------------------

    def start_community_merge(self) -> asyncio.Task[int] | None:
        """Schedule the one-time community merge if a loop is running and a URL is set."""
        if self._merge_started or not self.community_url:
            return self._merge_task
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            return None
        self._merge_started = True
        self._merge_task = loop.create_task(self._merge_community(self.community_url))
        return self._merge_task

    async def ensure_community_loaded(self) -> int:
        task = self.start_community_merge()
        if task is None:
            return 0
        return await task

    async def aclose(self) -> None:
        """Cancel a community merge that is still in flight."""
        task = self._merge_task
        if task is not None and not task.done():
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task

    async def _merge_community(self, url: str) -> int:
        if self._http is None:
            self._http = AsyncHTTPClient(self._transport or RequestsTransport(), self.stats)
        try:
            resp = await self._http.send(
                "GET",
                url,
                headers={"Accept": "application/json"},
                timeout_s=self.config.community_timeout_s,
                counter_key="community_requests",
                context="community dataset",
            )
            if not resp.ok:
                raise NetworkError(
                    f"community dataset returned HTTP {resp.status}", status=resp.status
                )
            payload = resp.json()
        except (NetworkError, ValueError) as e:
            self.stats["community_errors"] += 1
            logging.warning(f"[FALLBACK] Community dataset unavailable: {e}")
            return 0
        items = payload.get("games") if isinstance(payload, dict) else payload
        if not isinstance(items, list):
            self.stats["community_errors"] += 1
            logging.warning("[FALLBACK] Community dataset has an unexpected shape; ignored")
            return 0
        merged = self.merge_entries(items)
        logging.info(f"[FALLBACK] Merged {merged} community entries")
        return merged

    def merge_entries(self, items: Iterable[Any]) -> int:
        """
        Merge community entries as medium confidence.

        Entries without a title or a data object are skipped. High-confidence local entries
        are never overridden.
        """
        staged: list[FallbackEntry] = []
        for raw in items:
            if not isinstance(raw, dict) or not isinstance(raw.get("data"), dict):
                continue
            try:
                entry = entry_from_dict(raw, default_confidence=Confidence.MEDIUM)
            except ValidationError as e:
                logging.debug(f"[FALLBACK] Skipping community entry: {e}")
                continue
            entry.confidence = Confidence.MEDIUM
            staged.append(entry)
        # Nothing is indexed until the whole batch has parsed.
        merged = 0
        for entry in staged:
            existing = self._games.get(_key(entry.title))
            if existing is not None and existing.confidence is Confidence.HIGH:
                continue
            self._index(entry)
            merged += 1
        self.stats["community_merged"] += merged
        return merged

    # ----------------------------
    # Maintenance
    # ----------------------------

    def add_game(
        self,
        title: str,
        data: CompletionTimes | dict[str, Any] | None = None,
        *,
        aliases: Iterable[str] = (),
        confidence: Confidence = Confidence.HIGH,
        app_id: str | None = None,
        last_updated: str | None = None,
    ) -> FallbackEntry:
        if not isinstance(title, str) or not title.strip():
            raise ValidationError("Title must be a non-empty string", field="title")
        times = data if isinstance(data, CompletionTimes) else CompletionTimes.from_dict(data)
        entry = FallbackEntry(
            title=title.strip(),
            aliases=[a for a in aliases if a and a.strip()],
            data=times,
            confidence=Confidence(confidence),
            last_updated=last_updated,
            app_id=app_id,
        )
        self._index(entry)
        return entry

    def update_game(
        self,
        title: str,
        *,
        data: CompletionTimes | dict[str, Any] | None = None,
        aliases: Iterable[str] | None = None,
        confidence: Confidence | None = None,
        app_id: str | None = None,
        last_updated: str | None = None,
    ) -> FallbackEntry | None:
        key = self._resolve_key(title)
        if key is None:
            return None
        entry = self._games[key]
        if data is not None:
            current = entry.data.to_dict()
            patch = data.to_dict() if isinstance(data, CompletionTimes) else dict(data)
            current.update(patch)
            entry.data = CompletionTimes.from_dict(current)
        if aliases is not None:
            entry.aliases = [a for a in aliases if a and a.strip()]
        if confidence is not None:
            entry.confidence = Confidence(confidence)
        if app_id is not None:
            entry.app_id = app_id or None
        if last_updated is not None:
            entry.last_updated = last_updated
        self._unindex(key)
        self._index(entry)
        return entry

    def remove_game(self, title: str) -> bool:
        key = self._resolve_key(title)
        if key is None:
            return False
        self._unindex(key)
        return True

    def import_games(self, items: Iterable[Any]) -> int:
        """Add or replace entries; invalid items are skipped and logged."""
        count = 0
        for raw in items:
            try:
                entry = raw if isinstance(raw, FallbackEntry) else entry_from_dict(raw)
            except ValidationError as e:
                logging.warning(f"[FALLBACK] Skipping invalid entry: {e}")
                continue
            self._index(entry)
            count += 1
        return count

    def export_games(self) -> list[dict[str, Any]]:
        return [e.to_dict() for e in sorted(self._games.values(), key=lambda e: e.title.lower())]

    def export_json(self, path: str | Path) -> int:
        games = self.export_games()
        save_json_cache({"games": games}, path)
        return len(games)

    def import_json(self, path: str | Path) -> int:
        return self.import_games(load_json_cache(path).get("games") or [])

    def export_csv(self, path: str | Path) -> int:
        rows = []
        for e in sorted(self._games.values(), key=lambda e: e.title.lower()):
            row: dict[str, Any] = {
                "title": e.title,
                "aliases": "|".join(e.aliases),
                "app_id": e.app_id or "",
                "confidence": e.confidence.value,
                "last_updated": e.last_updated or "",
            }
            for col, value in e.data.to_dict().items():
                row[col] = "" if value is None else value
            rows.append(row)
        columns = ["title", "aliases", "app_id", "confidence", "last_updated", *_TIME_COLUMNS]
        write_csv(pd.DataFrame(rows, columns=columns), path)
        return len(rows)

    def import_csv(self, path: str | Path) -> int:
        df = read_csv(path)
        items = []
        for _, row in df.iterrows():
            data = {c: row.get(c, "") for c in _TIME_COLUMNS}
            items.append(
                {
                    "title": row.get("title", ""),
                    "aliases": row.get("aliases", ""),
                    "app_id": row.get("app_id", ""),
                    "confidence": row.get("confidence", "") or None,
                    "last_updated": row.get("last_updated", "") or None,
                    "data": data if any(str(v).strip() for v in data.values()) else None,
                }
            )
        return self.import_games(items)

    def get_stats(self) -> dict[str, Any]:
        total = len(self._games)
        with_data = sum(1 for e in self._games.values() if e.data.has_data)
        by_confidence = {c.value: 0 for c in Confidence}
        for e in self._games.values():
            by_confidence[e.confidence.value] += 1
        return {
            "total_games": total,
            "total_aliases": len(self._aliases),
            "games_with_data": with_data,
            "games_without_data": total - with_data,
            "coverage_pct": round(100.0 * with_data / total, 1) if total else 0.0,
            "by_confidence": by_confidence,
            "community_loaded": bool(self._merge_task and self._merge_task.done()),
        }

    def format_stats(self) -> str:
        s = self.get_stats()
        return (
            f"games={s['total_games']} aliases={s['total_aliases']} "
            f"with_data={s['games_with_data']} coverage={s['coverage_pct']}%"
        )
