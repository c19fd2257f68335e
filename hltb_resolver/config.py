from __future__ import annotations

from dataclasses import dataclass


@dataclass(frozen=True)
class RetryConfig:
    retries: int = 3
    base_sleep_s: float = 1.0
    max_sleep_s: float = 30.0
    jitter_s: float = 0.3
    http_429_default_retry_after_s: float = 60.0


@dataclass(frozen=True)
class RequestConfig:
    timeout_s: float = 10.0


@dataclass(frozen=True)
class MatchingConfig:
    # Acceptance floors per fuzzy strategy (combined similarity, 0..1).
    fuzzy_standard_min: float = 0.80
    fuzzy_aggressive_min: float = 0.75
    word_match_min: float = 0.75
    word_jaccard_weight: float = 0.6
    core_word_min_length: int = 3
    min_year: int = 1980


@dataclass(frozen=True)
class HLTBConfig:
    base_url: str = "https://howlongtobeat.com"
    search_api_url: str = "https://howlongtobeat.com/api/search"
    search_html_url: str = "https://howlongtobeat.com/search_results"
    image_base_url: str = "https://howlongtobeat.com/games/"
    user_agent: str = (
        "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
        "(KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36"
    )
    page_size: int = 20
    max_title_length: int = 100
    # Upper bound on result cards parsed from one HTML page.
    max_result_cards: int = 20
    batch_chunk_size: int = 5
    batch_delay_s: float = 0.5


@dataclass(frozen=True)
class CacheConfig:
    retention_s: float = 7 * 24 * 3600.0
    max_entries: int = 1000


@dataclass(frozen=True)
class QueueConfig:
    min_interval_s: float = 1.0


@dataclass(frozen=True)
class FallbackConfig:
    # Remote community dataset merged once per database instance. None disables the merge.
    community_url: str | None = None
    community_timeout_s: float = 5.0
    fuzzy_min: float = 0.80


@dataclass(frozen=True)
class ServiceConfig:
    tier_timeout_s: float = 10.0
    overall_timeout_s: float = 30.0
    batch_chunk_size: int = 5
    batch_delay_s: float = 0.5


RETRY = RetryConfig()
REQUEST = RequestConfig()
MATCHING = MatchingConfig()
HLTB = HLTBConfig()
CACHE = CacheConfig()
QUEUE = QueueConfig()
FALLBACK = FallbackConfig()
SERVICE = ServiceConfig()
