# rate_limiter.py
"""Per-requester fixed-window admission control backed by durable storage."""

from __future__ import annotations

import logging
import math
import time
from dataclasses import dataclass
from typing import Callable, Optional

from context_resolver import ProjectContext
from persistence.db import Storage

logger = logging.getLogger(__name__)

DEFAULT_WINDOW_MS = 60_000
DEFAULT_MAX_REQUESTS = 20
ANONYMOUS_BUCKET = "anonymous"


@dataclass(frozen=True)
class RateLimitDecision:
    allowed: bool
    retry_after_seconds: int = 0
    remaining: Optional[int] = None


def requester_identity(
    account_id: Optional[str],
    context: Optional[ProjectContext] = None,
    anonymous_bucket: str = ANONYMOUS_BUCKET,
) -> str:
    """Bucket key: the account id when known, else the narrowest context field."""

    if account_id and str(account_id).strip():
        return str(account_id).strip()
    if context is not None:
        if context.portal_id:
            return f"portal:{context.portal_id}"
        if context.project_key:
            return f"project:{context.project_key}"
        if context.project_id:
            return f"project:{context.project_id}"
    return anonymous_bucket


class RateLimiter:
    def __init__(
        self,
        storage: Storage,
        window_ms: int = DEFAULT_WINDOW_MS,
        max_requests: int = DEFAULT_MAX_REQUESTS,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.storage = storage
        self.window_ms = window_ms
        self.max_requests = max_requests
        self._clock = clock

    def _now_ms(self) -> int:
        return int(self._clock() * 1000)

    def admit(self, requester_id: str) -> RateLimitDecision:
        now = self._now_ms()
        try:
            window = self.storage.get_rate_window(requester_id)
            if window is None or now - window[0] >= self.window_ms:
                self.storage.set_rate_window(requester_id, now, 1)
                return RateLimitDecision(allowed=True, remaining=self.max_requests - 1)

            window_start, count = window
            if count < self.max_requests:
                self.storage.set_rate_window(requester_id, window_start, count + 1)
                return RateLimitDecision(allowed=True, remaining=self.max_requests - count - 1)
        except Exception as exc:
            logger.warning(
                "rate_limit_storage_failed",
                extra={"requester_id": requester_id, "error": str(exc)},
            )
            return RateLimitDecision(allowed=True)

        retry_after = max(1, math.ceil((self.window_ms - (now - window_start)) / 1000))
        logger.info(
            "rate_limited",
            extra={"requester_id": requester_id, "retry_after_seconds": retry_after},
        )
        return RateLimitDecision(allowed=False, retry_after_seconds=retry_after, remaining=0)
