import hashlib
import math
import time
from dataclasses import dataclass

from limits import RateLimitItemPerMinute
from limits.errors import StorageError
from limits.storage import Storage, storage_from_string
from limits.strategies import FixedWindowRateLimiter

from geoip_api.logger import logger


@dataclass(frozen=True)
class RateLimitDecision:
    """Outcome of one rate-limit check, also used for the X-RateLimit-* headers."""

    allowed: bool
    limit: int
    remaining: int
    reset_at: int
    retry_after: int


def build_storage(redis_url: str | None = None) -> Storage:
    """Shared Redis counters when a URL is given, otherwise in-process memory.

    Backend errors are wrapped in `limits.errors.StorageError`.
    """
    return storage_from_string(redis_url or "memory://", wrap_exceptions=True)


class RateLimiter:
    """Fixed-window limiter keyed by (client address, endpoint path).

    When the storage is unreachable the limiter fails open: the request is
    allowed and a warning is logged.
    """

    def __init__(self, storage: Storage, max_attempts: int = 100, decay_minutes: int = 1) -> None:
        self.max_attempts = max_attempts
        self.window_seconds = decay_minutes * 60
        self._item = RateLimitItemPerMinute(max_attempts, decay_minutes)
        self._strategy = FixedWindowRateLimiter(storage)

    @staticmethod
    def signature(client_ip: str, path: str) -> str:
        return "rate_limit:" + hashlib.sha1(f"{client_ip}|{path}".encode()).hexdigest()

    def check(self, client_ip: str, path: str) -> RateLimitDecision:
        key = self.signature(client_ip, path)
        try:
            allowed = self._strategy.hit(self._item, key)
            reset_time, remaining = self._strategy.get_window_stats(self._item, key)
        except StorageError as exc:
            logger.warning(
                f"Rate limit storage unavailable, allowing request client_ip={client_ip} path={path} "
                f"error={exc.storage_error!r}"
            )
            return RateLimitDecision(
                allowed=True,
                limit=self.max_attempts,
                remaining=self.max_attempts,
                reset_at=int(time.time()) + self.window_seconds,
                retry_after=self.window_seconds,
            )

        retry_after = max(1, math.ceil(reset_time - time.time()))
        return RateLimitDecision(
            allowed=allowed,
            limit=self.max_attempts,
            remaining=max(0, remaining),
            reset_at=math.ceil(reset_time),
            retry_after=retry_after,
        )
