from __future__ import annotations

import re
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any

from .errors import ValidationError


class NormalizationLevel(str, Enum):
    MINIMAL = "minimal"
    STANDARD = "standard"
    AGGRESSIVE = "aggressive"


class MatchMethod(str, Enum):
    EXACT = "exact"
    MANUAL_MAPPING = "manual_mapping"
    YEAR_SPECIFIC = "year_specific"
    FUZZY_STANDARD = "fuzzy_standard"
    FUZZY_AGGRESSIVE = "fuzzy_aggressive"
    WORD_MATCH = "word_match"
    SKIP = "skip"


class Source(str, Enum):
    CACHE = "cache"
    API = "api"
    SCRAPER = "scraper"
    FALLBACK = "fallback"


class Confidence(str, Enum):
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"


@dataclass(frozen=True)
class NormalizedTitle:
    text: str
    level: NormalizationLevel

    def __str__(self) -> str:
        return self.text


@dataclass(frozen=True)
class SimilarityScore:
    value: float
    method: str


@dataclass(frozen=True)
class MatchCandidate:
    """One ranked candidate: the source record plus every score computed for it."""

    name: str
    record: Any
    scores: tuple[SimilarityScore, ...]
    combined: float

    def score(self, method: str) -> float | None:
        for s in self.scores:
            if s.method == method:
                return s.value
        return None


@dataclass(frozen=True)
class MatchResult:
    candidate: Any | None
    confidence: float
    method: MatchMethod
    reason: str | None = None
    normalized_query: str = ""
    normalized_match: str = ""

    @property
    def matched(self) -> bool:
        return self.candidate is not None


_TIME_FIELDS = ("main_story", "main_extra", "completionist", "all_styles")
_CAMEL_KEYS = {
    "mainStory": "main_story",
    "mainExtra": "main_extra",
    "allStyles": "all_styles",
}


@dataclass(frozen=True)
class CompletionTimes:
    """Fractional hours. None means "unknown", never zero."""

    main_story: float | None = None
    main_extra: float | None = None
    completionist: float | None = None
    all_styles: float | None = None

    @classmethod
    def empty(cls) -> CompletionTimes:
        return cls()

    def _values(self) -> list[float | None]:
        return [getattr(self, f) for f in _TIME_FIELDS]

    @property
    def has_data(self) -> bool:
        return any(v is not None for v in self._values())

    @property
    def is_complete(self) -> bool:
        return all(v is not None for v in self._values())

    @property
    def is_partial(self) -> bool:
        return self.has_data and not self.is_complete

    def to_dict(self) -> dict[str, float | None]:
        return {f: getattr(self, f) for f in _TIME_FIELDS}

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> CompletionTimes:
        if not data:
            return cls()
        out: dict[str, float | None] = {}
        for k, v in data.items():
            key = _CAMEL_KEYS.get(k, k)
            if key not in _TIME_FIELDS:
                continue
            if v is None or v == "":
                out[key] = None
                continue
            try:
                num = float(v)
            except (TypeError, ValueError):
                num = None
            out[key] = num if num and num > 0 else None
        return cls(**out)


@dataclass(frozen=True)
class HLTBGame:
    """One search result from the reference dataset (API or HTML page)."""

    game_id: str
    name: str
    times: CompletionTimes = field(default_factory=CompletionTimes)
    image_url: str | None = None
    url: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "game_id": self.game_id,
            "name": self.name,
            "times": self.times.to_dict(),
            "image_url": self.image_url,
            "url": self.url,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> HLTBGame:
        return cls(
            game_id=str(data.get("game_id") or ""),
            name=str(data.get("name") or ""),
            times=CompletionTimes.from_dict(data.get("times")),
            image_url=data.get("image_url"),
            url=data.get("url"),
        )


@dataclass(frozen=True)
class SearchOptions:
    skip_cache: bool = False
    skip_api: bool = False
    skip_scraping: bool = False
    skip_fallback: bool = False
    # Overall latency bound for one lookup. None uses the service default.
    timeout_s: float | None = None
    platform: str | None = None


_APP_ID_RE = re.compile(r"^\d+$")


@dataclass(frozen=True)
class GameQuery:
    title: str
    app_id: str | None = None
    options: SearchOptions = field(default_factory=SearchOptions)

    @classmethod
    def build(
        cls, title: Any, app_id: Any = None, options: SearchOptions | None = None
    ) -> GameQuery:
        if not isinstance(title, str) or not title.strip():
            raise ValidationError("Title must be a non-empty string", field="title")
        app = None
        if app_id is not None and str(app_id).strip() != "":
            app = str(app_id).strip()
            if not _APP_ID_RE.match(app):
                raise ValidationError(f"Malformed app id: {app_id!r}", field="app_id")
        if options is not None and options.timeout_s is not None and options.timeout_s <= 0:
            raise ValidationError("Timeout must be positive", field="timeout_s")
        return cls(title=title.strip(), app_id=app, options=options or SearchOptions())


@dataclass(frozen=True)
class IntegratedResult:
    times: CompletionTimes
    source: Source
    confidence: Confidence
    retrieval_ms: float = 0.0
    matched_name: str | None = None
    game_id: str | None = None
    match_method: MatchMethod | None = None
    skip_reason: str | None = None

    def with_source(self, source: Source, retrieval_ms: float) -> IntegratedResult:
        return replace(self, source=source, retrieval_ms=retrieval_ms)

    def to_dict(self) -> dict[str, Any]:
        return {
            "times": self.times.to_dict(),
            "source": self.source.value,
            "confidence": self.confidence.value,
            "retrieval_ms": round(self.retrieval_ms, 2),
            "matched_name": self.matched_name,
            "game_id": self.game_id,
            "match_method": self.match_method.value if self.match_method else None,
            "skip_reason": self.skip_reason,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> IntegratedResult:
        method = data.get("match_method")
        return cls(
            times=CompletionTimes.from_dict(data.get("times")),
            source=Source(data.get("source", Source.CACHE.value)),
            confidence=Confidence(data.get("confidence", Confidence.LOW.value)),
            retrieval_ms=float(data.get("retrieval_ms") or 0.0),
            matched_name=data.get("matched_name"),
            game_id=data.get("game_id"),
            match_method=MatchMethod(method) if method else None,
            skip_reason=data.get("skip_reason"),
        )


@dataclass
class CacheEntry:
    data: Any
    timestamp: float
    hits: int = 0


@dataclass
class FallbackEntry:
    title: str
    aliases: list[str] = field(default_factory=list)
    data: CompletionTimes = field(default_factory=CompletionTimes)
    confidence: Confidence = Confidence.HIGH
    last_updated: str | None = None
    app_id: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "title": self.title,
            "aliases": list(self.aliases),
            "data": self.data.to_dict() if self.data.has_data else None,
            "confidence": self.confidence.value,
            "last_updated": self.last_updated,
            "app_id": self.app_id,
        }


_DOWNGRADE = {
    Confidence.HIGH: Confidence.MEDIUM,
    Confidence.MEDIUM: Confidence.LOW,
    Confidence.LOW: Confidence.LOW,
}

SOURCE_CONFIDENCE = {
    Source.API: Confidence.HIGH,
    Source.SCRAPER: Confidence.MEDIUM,
    Source.FALLBACK: Confidence.LOW,
    Source.CACHE: Confidence.HIGH,
}


def confidence_for(source: Source, times: CompletionTimes) -> Confidence:
    """Default confidence for a source, lowered when the time data is partial or missing."""
    base = SOURCE_CONFIDENCE[source]
    if not times.has_data:
        return Confidence.LOW
    if times.is_partial:
        return _DOWNGRADE[base]
    return base
