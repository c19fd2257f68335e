"""Error taxonomy shared by every retrieval tier.

"No match" is never an error: lookups return None for that outcome.
"""

from __future__ import annotations


class ResolverError(Exception):
    """Base class for all resolver errors."""

    code = "resolver_error"
    recoverable = True

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class ValidationError(ResolverError):
    """Bad caller input, rejected before any I/O."""

    code = "validation_error"
    recoverable = False

    def __init__(self, message: str, field: str):
        super().__init__(message)
        self.field = field


class NetworkError(ResolverError):
    code = "network_error"

    def __init__(
        self,
        message: str,
        *,
        status: int | None = None,
        cause: BaseException | None = None,
        is_timeout: bool = False,
    ):
        super().__init__(message)
        self.status = status
        self.cause = cause
        self.is_timeout = is_timeout

    def __str__(self) -> str:
        parts = [self.message]
        if self.status is not None:
            parts.append(f"status={self.status}")
        if self.is_timeout:
            parts.append("timeout")
        if self.cause is not None:
            parts.append(f"cause={type(self.cause).__name__}: {self.cause}")
        return " ".join(parts)


class RateLimitError(ResolverError):
    code = "rate_limited"

    def __init__(self, message: str, *, retry_after_s: float, reset_at: float | None = None):
        super().__init__(message)
        self.retry_after_s = float(retry_after_s)
        # Monotonic timestamp when calls are allowed again.
        self.reset_at = reset_at


class ScrapingError(ResolverError):
    code = "scraping_error"

    def __init__(self, message: str, *, url: str, status: int | None = None, detail: str = ""):
        super().__init__(message)
        self.url = url
        self.status = status
        self.detail = detail

    def __str__(self) -> str:
        out = f"{self.message} url={self.url}"
        if self.status is not None:
            out += f" status={self.status}"
        if self.detail:
            out += f" detail={self.detail}"
        return out
