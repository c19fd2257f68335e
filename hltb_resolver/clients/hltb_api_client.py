from __future__ import annotations

import asyncio
import json
import logging
import re
import time
from datetime import datetime, timezone
from email.utils import parsedate_to_datetime
from typing import Any, Awaitable, Callable

from ..config import HLTB, REQUEST, RETRY, HLTBConfig, RetryConfig
from ..errors import NetworkError, RateLimitError, ValidationError
from ..matching.normalizer import TitleNormalizer
from ..models import CompletionTimes, HLTBGame
from ..utils.utilities import iter_chunks, with_retries_async
from .http_client import (
    BROWSER_HEADERS,
    AsyncHTTPClient,
    HttpResponse,
    HttpTransport,
    RequestsTransport,
)
from .parse import as_str, seconds_to_hours

_GLYPHS_RE = re.compile(r"[™®©]")
_WS_RE = re.compile(r"\s+")

JSON_HEADERS = {
    **BROWSER_HEADERS,
    "Content-Type": "application/json",
    "Accept": "application/json, text/plain, */*",
}


def sanitize_title(title: str, max_length: int = HLTB.max_title_length) -> str:
    s = _GLYPHS_RE.sub("", as_str(title))
    s = _WS_RE.sub(" ", s).strip()
    return s[:max_length].rstrip()


def build_search_payload(title: str, platform: str | None = None, size: int = HLTB.page_size):
    return {
        "searchType": "games",
        "searchTerms": title.split(" "),
        "searchPage": 1,
        "size": size,
        "searchOptions": {
            "games": {
                "userId": 0,
                "platform": platform or "",
                "sortCategory": "popular",
                "rangeCategory": "main",
                "rangeTime": {"min": 0, "max": 0},
                "gameplay": {"perspective": "", "flow": "", "genre": ""},
                "modifier": "",
            },
            "users": {"sortCategory": "postcount"},
            "filter": "",
            "sort": 0,
            "randomizer": 0,
        },
    }


def parse_retry_after(
    value: str | None,
    *,
    default_s: float = RETRY.http_429_default_retry_after_s,
    now: datetime | None = None,
) -> float:
    """Retry-After is either delta-seconds or an HTTP date."""
    s = as_str(value)
    if not s:
        return float(default_s)
    try:
        return max(0.0, float(s))
    except ValueError:
        pass
    try:
        when = parsedate_to_datetime(s)
    except (TypeError, ValueError):
        return float(default_s)
    if when.tzinfo is None:
        when = when.replace(tzinfo=timezone.utc)
    now = now or datetime.now(timezone.utc)
    return max(0.0, (when - now).total_seconds())


class HLTBApiClient:
    """
    Client for the reference dataset's JSON search endpoint.

    Owns the rate-limit state: after a 429 every call is rejected locally with
    RateLimitError until the Retry-After window elapses.
    """

    def __init__(
        self,
        transport: HttpTransport | None = None,
        *,
        config: HLTBConfig = HLTB,
        retry: RetryConfig = RETRY,
        timeout_s: float = REQUEST.timeout_s,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        self.config = config
        self.retry = retry
        self.timeout_s = timeout_s
        self._clock = clock
        self._sleep = sleep
        self.stats: dict[str, int] = {
            "search_calls": 0,
            "search_found": 0,
            "search_not_found": 0,
            "http_429": 0,
            "rate_limited_rejects": 0,
            "etag_hits": 0,
            "retries": 0,
            "network_errors": 0,
            "timeouts": 0,
        }
        self._http = AsyncHTTPClient(transport or RequestsTransport(), self.stats)
        self._rate_limited_until: float | None = None
        # query key -> (etag, parsed candidates)
        self._etags: dict[str, tuple[str, list[HLTBGame]]] = {}

    # ----------------------------
    # Rate-limit state
    # ----------------------------

    @property
    def rate_limit_remaining_s(self) -> float:
        if self._rate_limited_until is None:
            return 0.0
        remaining = self._rate_limited_until - self._clock()
        if remaining <= 0:
            self._rate_limited_until = None
            return 0.0
        return remaining

    @property
    def is_rate_limited(self) -> bool:
        return self.rate_limit_remaining_s > 0

    def clear_rate_limit(self) -> None:
        self._rate_limited_until = None

    def _check_rate_limit(self) -> None:
        remaining = self.rate_limit_remaining_s
        if remaining > 0:
            self.stats["rate_limited_rejects"] += 1
            raise RateLimitError(
                f"HLTB API rate limited for another {remaining:.1f}s",
                retry_after_s=remaining,
                reset_at=self._rate_limited_until,
            )

    def _enter_rate_limit(self, resp: HttpResponse) -> RateLimitError:
        retry_after = parse_retry_after(
            resp.header("Retry-After"), default_s=self.retry.http_429_default_retry_after_s
        )
        self._rate_limited_until = self._clock() + retry_after
        self.stats["http_429"] += 1
        logging.warning(f"[HLTB API] Rate limited (429); backing off for {retry_after:.0f}s")
        return RateLimitError(
            "HLTB API returned 429",
            retry_after_s=retry_after,
            reset_at=self._rate_limited_until,
        )

    # ----------------------------
    # Search
    # ----------------------------

    @staticmethod
    def _query_key(title: str, platform: str | None) -> str:
        return f"{(platform or '').lower()}|{TitleNormalizer.minimal(title)}"

    def _game_from_item(self, item: dict[str, Any]) -> HLTBGame | None:
        name = as_str(item.get("game_name"))
        game_id = as_str(item.get("game_id"))
        if not name or not game_id:
            return None
        image = as_str(item.get("game_image"))
        return HLTBGame(
            game_id=game_id,
            name=name,
            times=CompletionTimes(
                main_story=seconds_to_hours(item.get("comp_main")),
                main_extra=seconds_to_hours(item.get("comp_plus")),
                completionist=seconds_to_hours(item.get("comp_100")),
                all_styles=seconds_to_hours(item.get("comp_all")),
            ),
            image_url=(self.config.image_base_url + image) if image else None,
            url=f"{self.config.base_url}/game/{game_id}",
        )

    def parse_response(self, payload: Any) -> list[HLTBGame]:
        if not isinstance(payload, dict):
            raise ValueError("search response is not an object")
        items = payload.get("data") or []
        if not isinstance(items, list):
            raise ValueError("search response 'data' is not a list")
        out: list[HLTBGame] = []
        for item in items:
            if isinstance(item, dict):
                game = self._game_from_item(item)
                if game is not None:
                    out.append(game)
        return out

    async def _search_once(
        self, title: str, platform: str | None, timeout_s: float
    ) -> list[HLTBGame]:
        key = self._query_key(title, platform)
        headers = dict(JSON_HEADERS)
        cached = self._etags.get(key)
        if cached is not None:
            headers["If-None-Match"] = cached[0]

        resp = await self._http.send(
            "POST",
            self.config.search_api_url,
            headers=headers,
            body=json.dumps(build_search_payload(title, platform, self.config.page_size)),
            timeout_s=timeout_s,
            counter_key="search_requests",
            context=f"HLTB search {title!r}",
        )
        if resp.status == 304 and cached is not None:
            self.stats["etag_hits"] += 1
            return list(cached[1])
        if resp.status == 429:
            raise self._enter_rate_limit(resp)
        if not resp.ok:
            raise NetworkError(f"HLTB search returned HTTP {resp.status}", status=resp.status)
        try:
            games = self.parse_response(resp.json())
        except ValueError as e:
            raise NetworkError(
                "HLTB search returned an unreadable body", status=resp.status, cause=e
            ) from e

        etag = resp.header("ETag")
        if etag:
            self._etags[key] = (etag, list(games))
        return games

    async def search_games(
        self, title: str, platform: str | None = None, *, timeout_s: float | None = None
    ) -> list[HLTBGame]:
        clean = sanitize_title(title, self.config.max_title_length)
        if not clean:
            raise ValidationError("Title is empty after sanitizing", field="title")
        self._check_rate_limit()
        self.stats["search_calls"] += 1
        return await with_retries_async(
            lambda: self._search_once(clean, platform, timeout_s or self.timeout_s),
            retries=self.retry.retries,
            base_sleep_s=self.retry.base_sleep_s,
            max_sleep_s=self.retry.max_sleep_s,
            jitter_s=self.retry.jitter_s,
            context=f"HLTB API search {clean!r}",
            retry_stats=self.stats,
            sleep=self._sleep,
        )

    async def search_game(
        self,
        title: str,
        app_id: str | None = None,
        platform: str | None = None,
        *,
        timeout_s: float | None = None,
    ) -> HLTBGame | None:
        """
        Best candidate for a title: an exact (minimal-normalized) name match if any, else the
        first result. None when the search returns nothing.
        """
        games = await self.search_games(title, platform, timeout_s=timeout_s)
        if not games:
            self.stats["search_not_found"] += 1
            logging.info(f"[HLTB API] No results for {title!r} (app_id={app_id})")
            return None
        self.stats["search_found"] += 1
        wanted = TitleNormalizer.minimal(sanitize_title(title, self.config.max_title_length))
        for game in games:
            if TitleNormalizer.minimal(game.name) == wanted:
                return game
        return games[0]

    async def batch_search(self, titles: list[str]) -> dict[str, HLTBGame | None]:
        """Search titles in small chunks; stops early once rate limited."""
        results: dict[str, HLTBGame | None] = {}
        chunks = iter_chunks(list(titles), self.config.batch_chunk_size)
        for i, chunk in enumerate(chunks):
            outcomes = await asyncio.gather(
                *(self.search_game(t) for t in chunk), return_exceptions=True
            )
            for title, outcome in zip(chunk, outcomes):
                if isinstance(outcome, BaseException):
                    if not isinstance(outcome, Exception):
                        raise outcome
                    logging.warning(f"[HLTB API] Batch search failed for {title!r}: {outcome}")
                    results[title] = None
                else:
                    results[title] = outcome
            if self.is_rate_limited:
                logging.warning("[HLTB API] Batch search stopped: rate limited")
                break
            if i < len(chunks) - 1:
                await self._sleep(self.config.batch_delay_s)
        return results

    def format_stats(self) -> str:
        s = self.stats
        return (
            f"searches={s['search_calls']} found={s['search_found']} "
            f"not_found={s['search_not_found']} http_429={s['http_429']} "
            f"rejected={s['rate_limited_rejects']} etag_hits={s['etag_hits']} "
            f"retries={s['retries']} network_errors={s['network_errors']} "
            f"timeouts={s['timeouts']}"
        )
