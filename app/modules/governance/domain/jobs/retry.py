"""
Retry Policy

Decides, from the structured error kind, whether a failed job attempt is
re-queued with backoff or moved to the dead letter queue.
"""

from dataclasses import dataclass
from typing import Optional

from app.shared.core.config import get_settings
from app.shared.core.exceptions import ErrorKind, ProviderRateLimitError

RETRYABLE_KINDS = frozenset({
    ErrorKind.RATE_LIMIT,
    ErrorKind.TIMEOUT,
    ErrorKind.PERSISTENCE,
    ErrorKind.UNKNOWN,
})


@dataclass(frozen=True)
class RetryDecision:
    retry: bool
    delay_seconds: float = 0.0


class RetryPolicy:
    def __init__(self, base_seconds: Optional[float] = None, max_seconds: Optional[float] = None):
        settings = get_settings()
        self.base_seconds = settings.JOB_BACKOFF_BASE_SECONDS if base_seconds is None else base_seconds
        self.max_seconds = settings.JOB_BACKOFF_MAX_SECONDS if max_seconds is None else max_seconds

    def is_retryable(self, kind: ErrorKind) -> bool:
        return kind in RETRYABLE_KINDS

    def backoff_seconds(self, attempt: int, retry_after: Optional[float] = None) -> float:
        """base * 2^(attempt-1), capped. A provider retry-after hint is a floor."""
        delay = min(self.base_seconds * (2 ** max(attempt - 1, 0)), self.max_seconds)
        if retry_after is not None:
            delay = max(delay, retry_after)
        return delay

    def decide(self, kind: ErrorKind, attempts: int, max_attempts: int, exc: Optional[BaseException] = None) -> RetryDecision:
        if not self.is_retryable(kind) or attempts >= max_attempts:
            return RetryDecision(retry=False)
        retry_after = exc.retry_after if isinstance(exc, ProviderRateLimitError) else None
        return RetryDecision(retry=True, delay_seconds=self.backoff_seconds(attempts, retry_after))
