from __future__ import annotations

import logging
import re
import time
from typing import Any
from urllib.parse import quote, urljoin

from bs4 import BeautifulSoup
from bs4.element import Tag

from ..config import HLTB, REQUEST, HLTBConfig
from ..errors import NetworkError, ScrapingError, ValidationError
from ..matching.matcher import TitleMatcher
from ..matching.normalizer import TitleNormalizer
from ..models import CompletionTimes, HLTBGame, MatchResult
from .hltb_api_client import sanitize_title
from .http_client import BROWSER_HEADERS, AsyncHTTPClient, HttpTransport, RequestsTransport
from .parse import parse_time_string

HTML_HEADERS = {
    **BROWSER_HEADERS,
    "Accept": "text/html,application/xhtml+xml,application/xml;q=0.9,*/*;q=0.8",
}

_ID_RE = re.compile(r"(?:[?&]id=|/game/)(\d+)")
_WS_RE = re.compile(r"\s+")
_MAX_TEXT = 200
_MIN_BODY = 100


def clean_text(value: str | None) -> str:
    return _WS_RE.sub(" ", value or "").strip()[:_MAX_TEXT]


def extract_game_id(href: str | None) -> str | None:
    m = _ID_RE.search(href or "")
    return m.group(1) if m else None


def time_field_for_label(label: str) -> str | None:
    """Map a result-card label to a CompletionTimes field."""
    s = label.lower()
    # "Main + Extra" contains "main", so it is checked first.
    if "main + extra" in s or "main+extra" in s or "main +" in s:
        return "main_extra"
    if "main" in s:
        return "main_story"
    if "completionist" in s or "100%" in s:
        return "completionist"
    if "all styles" in s or "all playstyles" in s or "average" in s:
        return "all_styles"
    return None


class HLTBScraper:
    """
    HTML search-results scraper used when the JSON API is unavailable.

    Disambiguation between result cards goes through TitleMatcher unless exact mode is
    requested.
    """

    def __init__(
        self,
        transport: HttpTransport | None = None,
        *,
        matcher: TitleMatcher | None = None,
        config: HLTBConfig = HLTB,
        timeout_s: float = REQUEST.timeout_s,
    ):
        self.config = config
        self.timeout_s = timeout_s
        self.matcher = matcher or TitleMatcher()
        self.stats: dict[str, int] = {
            "scrape_calls": 0,
            "pages_parsed": 0,
            "cards_parsed": 0,
            "no_results": 0,
            "errors": 0,
        }
        self._http = AsyncHTTPClient(transport or RequestsTransport(), self.stats)

    def search_url(self, title: str) -> str:
        return (
            f"{self.config.search_html_url}?page=1&length={self.config.page_size}"
            f"&sort=name&search={quote(title)}"
        )

    # ----------------------------
    # Parsing
    # ----------------------------

    @staticmethod
    def _times_from_card(card: Tag) -> CompletionTimes:
        values: dict[str, float | None] = {}
        tidbits = card.select(".search_list_tidbit")
        pairs: list[tuple[str, str]] = []
        nested = [t for t in tidbits if t.select_one(".search_list_tidbit_short")]
        if nested:
            for t in nested:
                label = t.select_one(".search_list_tidbit_short")
                value = t.select_one(".search_list_tidbit_long")
                if label is not None and value is not None:
                    pairs.append((label.get_text(" "), value.get_text(" ")))
        else:
            # Older layout: label and value are alternating sibling divs.
            for label, value in zip(tidbits[0::2], tidbits[1::2]):
                pairs.append((label.get_text(" "), value.get_text(" ")))

        for label, value in pairs:
            field = time_field_for_label(clean_text(label))
            if field and field not in values:
                values[field] = parse_time_string(clean_text(value))
        return CompletionTimes(**values)

    def _parse_card(self, card: Tag) -> HLTBGame | None:
        link = card.select_one("h3 a")
        name_el = link or card.select_one(".search_list_details_block_title")
        if name_el is None:
            return None
        name = clean_text(name_el.get_text(" "))
        if not name:
            return None
        href = link.get("href") if link is not None else None
        href = href if isinstance(href, str) else None
        game_id = extract_game_id(href)
        img = card.select_one("img.search_list_image")
        src = img.get("src") if img is not None else None
        return HLTBGame(
            game_id=game_id or "",
            name=name,
            times=self._times_from_card(card),
            image_url=urljoin(self.config.base_url + "/", src) if isinstance(src, str) else None,
            url=urljoin(self.config.base_url + "/", href) if href else None,
        )

    def parse_results(self, html: str, url: str = "") -> list[HLTBGame]:
        """
        Parse a search results page.

        An explicit no-results marker yields []. A page with neither cards nor the marker is
        an unrecognized layout and raises ScrapingError.
        """
        try:
            soup = BeautifulSoup(html, "html.parser")
            if soup.select_one(".search_list_no_results") is not None:
                self.stats["no_results"] += 1
                return []
            cards = soup.select(".search_list_details_block")
            if not cards:
                raise ScrapingError(
                    "Unrecognized search page layout", url=url, detail="no result cards found"
                )
            games: list[HLTBGame] = []
            for card in cards[: self.config.max_result_cards]:
                game = self._parse_card(card)
                if game is not None:
                    games.append(game)
            if not games:
                raise ScrapingError(
                    "Result cards could not be parsed", url=url, detail=f"{len(cards)} cards"
                )
        except ScrapingError:
            raise
        except Exception as e:
            raise ScrapingError(
                "Failed to parse search page", url=url, detail=f"{type(e).__name__}: {e}"
            ) from e
        self.stats["pages_parsed"] += 1
        self.stats["cards_parsed"] += len(games)
        return games

    # ----------------------------
    # Fetch
    # ----------------------------

    async def _fetch(self, url: str) -> str:
        try:
            resp = await self._http.send(
                "GET",
                url,
                headers=HTML_HEADERS,
                timeout_s=self.timeout_s,
                counter_key="page_requests",
                context="HLTB search page",
            )
        except NetworkError as e:
            raise ScrapingError(
                "Search page request failed", url=url, status=e.status, detail=str(e)
            ) from e
        if not resp.ok:
            raise ScrapingError(f"HTTP {resp.status}", url=url, status=resp.status)
        if not resp.text or len(resp.text) < _MIN_BODY:
            raise ScrapingError(
                "Empty or truncated HTML", url=url, status=resp.status, detail="short body"
            )
        return resp.text

    async def scrape(self, title: str) -> list[HLTBGame]:
        clean = sanitize_title(title, self.config.max_title_length)
        if not clean:
            raise ValidationError("Title is empty after sanitizing", field="title")
        url = self.search_url(clean)
        self.stats["scrape_calls"] += 1
        try:
            html = await self._fetch(url)
            return self.parse_results(html, url)
        except ScrapingError as e:
            self.stats["errors"] += 1
            logging.warning(f"[SCRAPER] {e}")
            raise

    async def find_game(
        self, title: str, *, exact: bool = False
    ) -> tuple[HLTBGame | None, MatchResult | None]:
        games = await self.scrape(title)
        if not games:
            return None, None
        if exact:
            wanted = TitleNormalizer.minimal(title)
            for g in games:
                if TitleNormalizer.minimal(g.name) == wanted:
                    return g, None
            return None, None
        result = self.matcher.find_best_match(title, games)
        if result is None or result.candidate is None:
            return None, result
        return result.candidate, result

    async def search_game(self, title: str, *, exact: bool = False) -> HLTBGame | None:
        game, _ = await self.find_game(title, exact=exact)
        return game

    async def health_check(self, *, timeout_s: float = 5.0) -> dict[str, Any]:
        """Lightweight reachability probe. Never raises."""
        t0 = time.perf_counter()
        try:
            resp = await self._http.send(
                "GET",
                self.config.base_url,
                headers=HTML_HEADERS,
                timeout_s=timeout_s,
                counter_key="health_requests",
                context="HLTB health check",
            )
        except NetworkError as e:
            return {
                "healthy": False,
                "status": e.status,
                "latency_ms": round((time.perf_counter() - t0) * 1000.0, 1),
                "error": str(e),
            }
        return {
            "healthy": resp.ok,
            "status": resp.status,
            "latency_ms": round((time.perf_counter() - t0) * 1000.0, 1),
            "error": None if resp.ok else f"HTTP {resp.status}",
        }

    def format_stats(self) -> str:
        s = self.stats
        return (
            f"scrapes={s['scrape_calls']} pages={s['pages_parsed']} "
            f"cards={s['cards_parsed']} no_results={s['no_results']} errors={s['errors']}"
        )
