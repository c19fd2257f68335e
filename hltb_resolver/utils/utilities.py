from __future__ import annotations

import asyncio
import json
import logging
import os
import random
import tempfile
import time
from pathlib import Path
from typing import Any, Awaitable, Callable

import pandas as pd

from ..config import RETRY
from ..errors import NetworkError, RateLimitError

# ----------------------------
# CSV helpers
# ----------------------------


def read_csv(path: str | Path) -> pd.DataFrame:
    """Read CSV preserving strings and avoiding problematic type inference."""
    return pd.read_csv(path, dtype=str, keep_default_na=False)


def write_csv(df: pd.DataFrame, path: str | Path) -> None:
    Path(path).parent.mkdir(parents=True, exist_ok=True)
    df.to_csv(path, index=False)


def ensure_columns(df: pd.DataFrame, cols_with_defaults: dict[str, Any]) -> pd.DataFrame:
    """Create columns if they don't exist, with a default value."""
    for col, default in cols_with_defaults.items():
        if col not in df.columns:
            df[col] = default
    return df


def iter_chunks(items: list[Any], chunk_size: int) -> list[list[Any]]:
    if chunk_size <= 0:
        return [list(items)] if items else []
    return [items[i : i + chunk_size] for i in range(0, len(items), chunk_size)]


# ----------------------------
# JSON cache files
# ----------------------------


def load_json_cache(path: str | Path) -> dict[str, Any]:
    """
    Read a JSON object from disk. Missing file means empty cache.

    Corrupt or non-object content raises ValueError so callers can decide how to degrade.
    """
    p = Path(path)
    if not p.exists():
        return {}
    data = json.loads(p.read_text(encoding="utf-8"))
    if not isinstance(data, dict):
        raise ValueError(f"Expected a JSON object in {p}")
    return data


def save_json_cache(cache: dict[str, Any], path: str | Path) -> None:
    p = Path(path)
    p.parent.mkdir(parents=True, exist_ok=True)
    # Unique temp name per writer, then an atomic swap.
    f = tempfile.NamedTemporaryFile(
        "w", encoding="utf-8", dir=p.parent, prefix=p.name + ".", suffix=".tmp", delete=False
    )
    tmp = Path(f.name)
    try:
        with f:
            json.dump(cache, f, ensure_ascii=False, indent=2)
        os.replace(tmp, p)
    except Exception:
        tmp.unlink(missing_ok=True)
        raise


# ----------------------------
# Rate limiting + retries
# ----------------------------


class AsyncRateLimiter:
    """
    Enforces a minimum interval between call starts.

    Waiters are served in arrival order (asyncio.Lock is FIFO).
    """

    def __init__(
        self,
        min_interval_s: float = 1.0,
        *,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        self.min_interval_s = float(min_interval_s)
        self._clock = clock
        self._sleep = sleep
        self._last: float | None = None
        self._lock = asyncio.Lock()

    async def wait(self) -> None:
        async with self._lock:
            if self._last is not None:
                delta = self._clock() - self._last
                if delta < self.min_interval_s:
                    await self._sleep(self.min_interval_s - delta)
            self._last = self._clock()


def backoff_delay(
    attempt: int,
    *,
    base_sleep_s: float = RETRY.base_sleep_s,
    max_sleep_s: float = RETRY.max_sleep_s,
    jitter_s: float = RETRY.jitter_s,
) -> float:
    delay = min(base_sleep_s * (2**attempt), max_sleep_s)
    if jitter_s > 0:
        delay += random.uniform(0, jitter_s)
    return delay


def _bump(stats: dict[str, Any] | None, key: str) -> None:
    if stats is None:
        return
    stats[key] = int(stats.get(key, 0) or 0) + 1


async def with_retries_async(
    fn: Callable[[], Awaitable[Any]],
    *,
    retries: int = RETRY.retries,
    base_sleep_s: float = RETRY.base_sleep_s,
    max_sleep_s: float = RETRY.max_sleep_s,
    jitter_s: float = RETRY.jitter_s,
    retry_on: tuple[type[BaseException], ...] = (NetworkError,),
    give_up_on: tuple[type[BaseException], ...] = (RateLimitError,),
    context: str | None = None,
    retry_stats: dict[str, Any] | None = None,
    sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
) -> Any:
    """
    Await fn with retries and exponential backoff plus jitter.

    Exceptions in `give_up_on` propagate immediately. After the last attempt the final
    exception is re-raised.
    """
    attempts = max(1, int(retries))
    for attempt in range(attempts):
        try:
            return await fn()
        except give_up_on:
            raise
        except retry_on as e:
            if isinstance(e, NetworkError):
                _bump(retry_stats, "timeouts" if e.is_timeout else "network_errors")
            if attempt == attempts - 1:
                if context:
                    tag = "[HTTP]" if getattr(e, "status", None) is not None else "[NETWORK]"
                    logging.error(f"{tag} {context}: {type(e).__name__}: {e}")
                raise
            delay = backoff_delay(
                attempt, base_sleep_s=base_sleep_s, max_sleep_s=max_sleep_s, jitter_s=jitter_s
            )
            _bump(retry_stats, "retries")
            if context:
                logging.warning(
                    f"[NETWORK] {context}: {type(e).__name__}: {e}; "
                    f"retry {attempt + 1}/{attempts - 1} in {delay:.2f}s"
                )
            await sleep(delay)
    raise AssertionError("unreachable")
