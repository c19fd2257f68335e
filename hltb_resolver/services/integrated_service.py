from __future__ import annotations

import asyncio
import logging
import time
from typing import Any, Awaitable, Callable, Iterable, TypeVar

from ..clients.hltb_api_client import HLTBApiClient
from ..clients.hltb_scraper import HLTBScraper
from ..clients.http_client import HttpTransport, RequestsTransport
from ..config import SERVICE, ServiceConfig
from ..errors import NetworkError, RateLimitError, ResolverError, ValidationError
from ..matching.matcher import TitleMatcher
from ..matching.normalizer import TitleNormalizer
from ..models import (
    CompletionTimes,
    Confidence,
    GameQuery,
    HLTBGame,
    IntegratedResult,
    MatchMethod,
    SearchOptions,
    Source,
    confidence_for,
)
from ..utils.utilities import iter_chunks
from .cache_service import CacheService
from .fallback_db import FallbackDatabase
from .queue_service import QueueService

T = TypeVar("T")

_FALLBACK_METHODS = {
    "app_id": MatchMethod.EXACT,
    "direct": MatchMethod.EXACT,
    "alias": MatchMethod.MANUAL_MAPPING,
    "fuzzy": MatchMethod.FUZZY_STANDARD,
}


def _new_stats() -> dict[str, Any]:
    return {
        "total_requests": 0,
        "cache_hits": 0,
        "api_attempts": 0,
        "api_successes": 0,
        "api_rate_limited_skips": 0,
        "scraper_attempts": 0,
        "scraper_successes": 0,
        "fallback_attempts": 0,
        "fallback_successes": 0,
        "skipped_titles": 0,
        "not_found": 0,
        "timeouts": 0,
        "tier_errors": 0,
        "total_retrieval_ms": 0.0,
    }


def _rate(successes: int, attempts: int) -> float:
    return round(successes / attempts, 4) if attempts else 0.0


class IntegratedService:
    """
    Tiered lookup: cache, queued API call, queued scraper call, local fallback database.

    The first tier that produces a usable result wins. Every tier failure (timeout, network,
    rate limit, parse) is logged and the next tier is tried; `get_game_data` only raises
    ValidationError for bad input.
    """

    def __init__(
        self,
        *,
        api_client: HLTBApiClient | None = None,
        scraper: HLTBScraper | None = None,
        fallback: FallbackDatabase | None = None,
        cache: CacheService | None = None,
        queue: QueueService | None = None,
        matcher: TitleMatcher | None = None,
        transport: HttpTransport | None = None,
        config: ServiceConfig = SERVICE,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        self.config = config
        self._clock = clock
        self._sleep = sleep
        self._owned_transport: RequestsTransport | None = None
        if transport is None and (api_client is None or scraper is None or fallback is None):
            self._owned_transport = RequestsTransport()
            transport = self._owned_transport
        self.matcher = matcher or TitleMatcher()
        self.api = api_client or HLTBApiClient(transport)
        self.scraper = scraper or HLTBScraper(transport, matcher=self.matcher)
        self.fallback = fallback or FallbackDatabase(transport=transport)
        self.cache = cache or CacheService()
        self.queue = queue or QueueService()
        self.stats: dict[str, Any] = _new_stats()

    # ----------------------------
    # Entry point
    # ----------------------------

    async def get_game_data(
        self,
        title: str,
        app_id: str | None = None,
        options: SearchOptions | None = None,
    ) -> IntegratedResult | None:
        query = GameQuery.build(title, app_id, options)
        opts = query.options
        t0 = self._clock()
        deadline = t0 + (opts.timeout_s or self.config.overall_timeout_s)
        self.stats["total_requests"] += 1
        self.fallback.start_community_merge()

        reason = self.matcher.skip_reason(query.title)
        if reason:
            self.stats["skipped_titles"] += 1
            logging.info(f"[RESOLVER] Skipping {query.title!r}: {reason}")
            skipped = IntegratedResult(
                times=CompletionTimes.empty(),
                source=Source.FALLBACK,
                confidence=Confidence.LOW,
                match_method=MatchMethod.SKIP,
                skip_reason=reason,
            )
            return self._finish(skipped, t0)

        if not opts.skip_cache:
            cached = await self._from_cache(query)
            if cached is not None:
                self.stats["cache_hits"] += 1
                return self._finish(cached, t0, source=Source.CACHE)

        if not opts.skip_api:
            result = await self._api_tier(query, deadline)
            if result is not None:
                await self._write_cache(query, result)
                return self._finish(result, t0)

        if not opts.skip_scraping:
            result = await self._scraper_tier(query, deadline)
            if result is not None:
                await self._write_cache(query, result)
                return self._finish(result, t0)

        if not opts.skip_fallback:
            result = self._fallback_tier(query)
            if result is not None:
                return self._finish(result, t0)

        self.stats["not_found"] += 1
        self._record_latency(t0)
        logging.info(f"[RESOLVER] No data for {query.title!r} from any tier")
        return None

    def _record_latency(self, t0: float) -> float:
        elapsed_ms = (self._clock() - t0) * 1000.0
        self.stats["total_retrieval_ms"] += elapsed_ms
        return elapsed_ms

    def _finish(
        self, result: IntegratedResult, t0: float, *, source: Source | None = None
    ) -> IntegratedResult:
        elapsed_ms = self._record_latency(t0)
        return result.with_source(source or result.source, elapsed_ms)

    # ----------------------------
    # Tiers
    # ----------------------------

    async def _run_tier(
        self, name: str, factory: Callable[[], Awaitable[T]], deadline: float, title: str
    ) -> T | None:
        remaining = deadline - self._clock()
        if remaining <= 0:
            self.stats["timeouts"] += 1
            logging.warning(f"[RESOLVER] No time left for {name} tier ({title!r})")
            return None
        limit = min(self.config.tier_timeout_s, remaining)
        try:
            # Expiry cancels the in-flight call, so it never reaches a cache write.
            return await asyncio.wait_for(factory(), timeout=limit)
        except (asyncio.TimeoutError, TimeoutError):
            self.stats["timeouts"] += 1
            logging.warning(f"[RESOLVER] {name} tier timed out after {limit:.1f}s ({title!r})")
        except RateLimitError as e:
            self.stats["tier_errors"] += 1
            logging.warning(f"[RESOLVER] {name} tier rate limited ({title!r}): {e}")
        except ResolverError as e:
            self.stats["tier_errors"] += 1
            if isinstance(e, NetworkError) and e.is_timeout:
                self.stats["timeouts"] += 1
            logging.warning(f"[RESOLVER] {name} tier failed ({title!r}): {e}")
        except Exception:
            self.stats["tier_errors"] += 1
            logging.exception(f"[RESOLVER] {name} tier raised unexpectedly ({title!r})")
        return None

    async def _from_cache(self, query: GameQuery) -> IntegratedResult | None:
        try:
            raw = await self.cache.get(query.title, query.app_id)
        except Exception:
            logging.exception(f"[CACHE] Lookup failed for {query.title!r}")
            return None
        if raw is None:
            return None
        try:
            return IntegratedResult.from_dict(raw)
        except (TypeError, ValueError, AttributeError) as e:
            logging.warning(f"[CACHE] Ignoring unreadable entry for {query.title!r}: {e}")
            return None

    async def _write_cache(self, query: GameQuery, result: IntegratedResult) -> None:
        if result.confidence is Confidence.LOW:
            return
        try:
            await self.cache.set(query.title, result.to_dict(), query.app_id)
        except Exception:
            logging.exception(f"[CACHE] Write failed for {query.title!r}")

    @staticmethod
    def _result_from_game(
        game: HLTBGame, source: Source, method: MatchMethod | None
    ) -> IntegratedResult:
        return IntegratedResult(
            times=game.times,
            source=source,
            confidence=confidence_for(source, game.times),
            matched_name=game.name,
            game_id=game.game_id or None,
            match_method=method,
        )

    async def _api_tier(self, query: GameQuery, deadline: float) -> IntegratedResult | None:
        if self.api.is_rate_limited:
            self.stats["api_rate_limited_skips"] += 1
            logging.info(
                f"[RESOLVER] API rate limited for {self.api.rate_limit_remaining_s:.0f}s; "
                f"skipping to scraper for {query.title!r}"
            )
            return None
        self.stats["api_attempts"] += 1
        game = await self._run_tier(
            "api",
            lambda: self.queue.enqueue(
                lambda: self.api.search_game(query.title, query.app_id, query.options.platform),
                label=f"api:{query.title}",
            ),
            deadline,
            query.title,
        )
        if game is None:
            return None
        if not game.times.has_data:
            logging.info(f"[RESOLVER] API match {game.name!r} has no time data")
            return None
        self.stats["api_successes"] += 1
        exact = TitleNormalizer.minimal(game.name) == TitleNormalizer.minimal(query.title)
        return self._result_from_game(game, Source.API, MatchMethod.EXACT if exact else None)

    async def _scraper_tier(self, query: GameQuery, deadline: float) -> IntegratedResult | None:
        self.stats["scraper_attempts"] += 1
        found = await self._run_tier(
            "scraper",
            lambda: self.queue.enqueue(
                lambda: self.scraper.find_game(query.title), label=f"scraper:{query.title}"
            ),
            deadline,
            query.title,
        )
        if found is None:
            return None
        game, match = found
        if game is None or not game.times.has_data:
            return None
        self.stats["scraper_successes"] += 1
        return self._result_from_game(game, Source.SCRAPER, match.method if match else None)

    def _fallback_tier(self, query: GameQuery) -> IntegratedResult | None:
        self.stats["fallback_attempts"] += 1
        try:
            found = self.fallback.lookup(query.title, query.app_id)
        except Exception:
            self.stats["tier_errors"] += 1
            logging.exception(f"[FALLBACK] Lookup failed for {query.title!r}")
            return None
        if found is None:
            return None
        entry, how = found
        self.stats["fallback_successes"] += 1
        return IntegratedResult(
            times=entry.data,
            source=Source.FALLBACK,
            confidence=confidence_for(Source.FALLBACK, entry.data),
            matched_name=entry.title,
            match_method=_FALLBACK_METHODS.get(how),
        )

    # ----------------------------
    # Batch + maintenance
    # ----------------------------

    async def batch_fetch(
        self,
        games: Iterable[str | tuple[str, str | None]],
        options: SearchOptions | None = None,
    ) -> list[IntegratedResult | None]:
        """Resolve many titles in small concurrent chunks; results keep input order."""
        items = [(g, None) if isinstance(g, str) else (g[0], g[1]) for g in games]
        results: list[IntegratedResult | None] = []
        chunks = iter_chunks(items, self.config.batch_chunk_size)
        for i, chunk in enumerate(chunks):
            outcomes = await asyncio.gather(
                *(self.get_game_data(t, a, options) for t, a in chunk), return_exceptions=True
            )
            for (title, _), outcome in zip(chunk, outcomes):
                if isinstance(outcome, ValidationError):
                    logging.warning(f"[RESOLVER] Skipping invalid batch item {title!r}: {outcome}")
                    results.append(None)
                elif isinstance(outcome, BaseException):
                    raise outcome
                else:
                    results.append(outcome)
            if i < len(chunks) - 1:
                await self._sleep(self.config.batch_delay_s)
        return results

    def get_stats(self) -> dict[str, Any]:
        out = dict(self.stats)
        total = int(out["total_requests"])
        out["average_retrieval_ms"] = round(out["total_retrieval_ms"] / total, 2) if total else 0.0
        return out

    def reset_stats(self) -> None:
        self.stats = _new_stats()

    def format_stats(self) -> str:
        s = self.get_stats()
        return (
            f"requests={s['total_requests']} cache_hits={s['cache_hits']} "
            f"api={s['api_successes']}/{s['api_attempts']} "
            f"scraper={s['scraper_successes']}/{s['scraper_attempts']} "
            f"fallback={s['fallback_successes']}/{s['fallback_attempts']} "
            f"timeouts={s['timeouts']} not_found={s['not_found']} "
            f"avg_ms={s['average_retrieval_ms']}"
        )

    async def get_cache_stats(self) -> dict[str, Any]:
        return await self.cache.get_stats()

    async def clear_cache(self) -> None:
        await self.cache.clear()

    async def cleanup_expired(self) -> int:
        return await self.cache.cleanup_expired()

    async def get_diagnostics(self) -> dict[str, Any]:
        s = self.get_stats()
        return {
            "stats": s,
            "success_rates": {
                "cache": _rate(s["cache_hits"], s["total_requests"]),
                "api": _rate(s["api_successes"], s["api_attempts"]),
                "scraper": _rate(s["scraper_successes"], s["scraper_attempts"]),
                "fallback": _rate(s["fallback_successes"], s["fallback_attempts"]),
            },
            "api": {
                "rate_limited": self.api.is_rate_limited,
                "rate_limit_remaining_s": round(self.api.rate_limit_remaining_s, 1),
                "stats": dict(self.api.stats),
            },
            "scraper": dict(self.scraper.stats),
            "queue": {**self.queue.stats, "pending": self.queue.pending},
            "cache": await self.cache.get_stats(),
            "fallback": self.fallback.get_stats(),
        }

    async def health_check(self, *, probe_scraper: bool = True) -> dict[str, Any]:
        issues: list[str] = []
        s = self.get_stats()
        if self.api.is_rate_limited:
            issues.append(
                f"API rate limited for another {self.api.rate_limit_remaining_s:.0f}s"
            )
        if s["api_attempts"] >= 5 and _rate(s["api_successes"], s["api_attempts"]) < 0.5:
            issues.append("API success rate below 50%")
        scraper_rate = _rate(s["scraper_successes"], s["scraper_attempts"])
        if s["scraper_attempts"] >= 5 and scraper_rate < 0.5:
            issues.append("Scraper success rate below 50%")
        cache_stats = await self.cache.get_stats()
        if cache_stats["store_errors"]:
            issues.append(f"Cache storage errors: {cache_stats['store_errors']}")
        fallback_stats = self.fallback.get_stats()
        if not fallback_stats["total_games"]:
            issues.append("Fallback database is empty")
        scraper_health: dict[str, Any] | None = None
        if probe_scraper:
            scraper_health = await self.scraper.health_check()
            if not scraper_health["healthy"]:
                issues.append(f"Scraper unreachable: {scraper_health['error']}")
        return {
            "healthy": not issues,
            "issues": issues,
            "scraper": scraper_health,
            "cache_size": cache_stats["size"],
            "fallback_games": fallback_stats["total_games"],
        }

    async def aclose(self) -> None:
        await self.fallback.aclose()
        if self._owned_transport is not None:
            self._owned_transport.close()
