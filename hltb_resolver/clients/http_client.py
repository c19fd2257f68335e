from __future__ import annotations

import asyncio
import json
import time
from dataclasses import dataclass, field
from typing import Any, Mapping, Protocol

import requests
from requests.structures import CaseInsensitiveDict

from ..config import HLTB, REQUEST
from ..errors import NetworkError

BROWSER_HEADERS = {
    "User-Agent": HLTB.user_agent,
    "Accept-Language": "en-US,en;q=0.9",
    "Referer": HLTB.base_url + "/",
    "Origin": HLTB.base_url,
}


@dataclass(frozen=True)
class HttpResponse:
    status: int
    headers: Mapping[str, str] = field(default_factory=CaseInsensitiveDict)
    text: str = ""
    url: str = ""

    @property
    def ok(self) -> bool:
        return 200 <= self.status < 300

    def header(self, name: str) -> str | None:
        headers = self.headers
        if not isinstance(headers, CaseInsensitiveDict):
            headers = CaseInsensitiveDict(headers or {})
        value = headers.get(name)
        return None if value is None else str(value)

    def json(self) -> Any:
        return json.loads(self.text)


class HttpTransport(Protocol):
    """
    Minimal async HTTP seam.

    Implementations either return a response (any status) or raise. Timeouts are enforced
    by the caller as well, so a transport that ignores `timeout_s` cannot hang a lookup.
    """

    async def request(
        self,
        method: str,
        url: str,
        *,
        headers: Mapping[str, str] | None = None,
        body: str | bytes | None = None,
        timeout_s: float = REQUEST.timeout_s,
    ) -> HttpResponse: ...


class RequestsTransport:
    """Default transport: a `requests.Session` driven from a worker thread."""

    def __init__(self, session: requests.Session | None = None):
        self.session = session or requests.Session()

    def _send(
        self,
        method: str,
        url: str,
        headers: Mapping[str, str] | None,
        body: str | bytes | None,
        timeout_s: float,
    ) -> HttpResponse:
        try:
            r = self.session.request(
                method, url, headers=dict(headers or {}), data=body, timeout=timeout_s
            )
        except requests.exceptions.Timeout as e:
            raise NetworkError(f"{method} {url} timed out", cause=e, is_timeout=True) from e
        except requests.exceptions.RequestException as e:
            raise NetworkError(f"{method} {url} failed", cause=e) from e
        return HttpResponse(
            status=int(r.status_code),
            headers=CaseInsensitiveDict(r.headers),
            text=r.text,
            url=str(r.url or url),
        )

    async def request(
        self,
        method: str,
        url: str,
        *,
        headers: Mapping[str, str] | None = None,
        body: str | bytes | None = None,
        timeout_s: float = REQUEST.timeout_s,
    ) -> HttpResponse:
        # The thread gets the same timeout, so an abandoned call still ends on its own.
        return await asyncio.to_thread(self._send, method, url, headers, body, timeout_s)

    def close(self) -> None:
        self.session.close()


@dataclass
class AsyncHTTPClient:
    """
    Request helper shared by the API client and the scraper.

    Applies the call timeout, converts transport failures into NetworkError and counts
    requests into the owner's `stats` dict.
    """

    transport: HttpTransport
    stats: dict[str, Any] | None = None

    def _bump(self, key: str) -> None:
        if self.stats is None:
            return
        self.stats[key] = int(self.stats.get(key, 0) or 0) + 1

    def _bump_ms(self, key: str, elapsed_ms: int) -> None:
        if self.stats is None:
            return
        ms_key = f"{key}_ms"
        self.stats[ms_key] = int(self.stats.get(ms_key, 0) or 0) + int(elapsed_ms)

    async def send(
        self,
        method: str,
        url: str,
        *,
        headers: Mapping[str, str] | None = None,
        body: str | bytes | None = None,
        timeout_s: float = REQUEST.timeout_s,
        counter_key: str = "http_request",
        context: str = "",
    ) -> HttpResponse:
        self._bump(counter_key)
        t0 = time.perf_counter()
        try:
            return await asyncio.wait_for(
                self.transport.request(
                    method, url, headers=headers, body=body, timeout_s=timeout_s
                ),
                timeout=timeout_s,
            )
        except (asyncio.TimeoutError, TimeoutError) as e:
            raise NetworkError(
                f"{context or url}: no response within {timeout_s}s", cause=e, is_timeout=True
            ) from e
        except NetworkError:
            raise
        except Exception as e:
            raise NetworkError(f"{context or url}: transport failure", cause=e) from e
        finally:
            self._bump_ms(counter_key, int(round((time.perf_counter() - t0) * 1000.0)))
