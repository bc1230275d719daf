from __future__ import annotations

from dataclasses import dataclass
import logging
import time
from typing import Any, Optional

import diskcache

from lifeline.config import SETTINGS, Settings

logger = logging.getLogger("lifeline")


@dataclass(frozen=True)
class CachedValue:
    value: Any
    computed_at: float
    ttl: float

    def is_fresh(self, now: Optional[float] = None) -> bool:
        now = time.time() if now is None else now
        return now - self.computed_at < self.ttl


@dataclass(frozen=True)
class Backoff:
    until: float
    reason: Optional[str] = None

    def remaining_ms(self, now: Optional[float] = None) -> int:
        now = time.time() if now is None else now
        return max(0, int((self.until - now) * 1000))


class RateLimitState(diskcache.Cache):
    """Per-repository rate limit windows, shared between processes."""

    key_prefix: str = "rate_limit"

    def _key(self, owner: str, repo: str) -> str:
        return f"{self.key_prefix}_{owner.lower()}/{repo.lower()}"

    def get_backoff(
        self, owner: str, repo: str, now: Optional[float] = None
    ) -> Optional[Backoff]:
        now = time.time() if now is None else now
        backoff = self.get(self._key(owner, repo))
        if backoff is None or backoff.until <= now:
            return None
        return backoff

    def set_backoff(
        self,
        owner: str,
        repo: str,
        retry_after_ms: int,
        reason: Optional[str] = None,
        now: Optional[float] = None,
    ) -> Backoff:
        now = time.time() if now is None else now
        retry_after_ms = max(1, int(retry_after_ms))
        backoff = Backoff(until=now + retry_after_ms / 1000, reason=reason)
        self.set(self._key(owner, repo), backoff, expire=retry_after_ms / 1000)
        logger.warning(
            "Rate limited on %s/%s for %d ms: %s", owner, repo, retry_after_ms, reason
        )
        return backoff

    def clear_backoff(self, owner: str, repo: str) -> None:
        self.delete(self._key(owner, repo))


def get_rate_limit_state(settings: Settings = SETTINGS) -> RateLimitState:
    logger.info("Opening cache dir: %s", settings.DISKCACHE_DIR)
    return RateLimitState(str(settings.DISKCACHE_DIR))
