"""Per-client request throttling for the API and for login attempts."""

from __future__ import annotations

import logging
import time

from fastapi import Request
from limits import RateLimitItem, parse
from limits.storage import MemoryStorage
from limits.strategies import MovingWindowRateLimiter

from .config import settings
from .errors import TooManyRequests

logger = logging.getLogger(__name__)

TOO_MANY_REQUESTS = "Too many requests, please try again later."
TOO_MANY_LOGINS = "Too many login attempts, please try again in a few minutes."


def client_address(request: Request) -> str:
    return request.client.host if request.client else "unknown"


class RequestThrottle:
    """Moving-window counters kept in process memory.

    API requests count on every call. Login only counts failed attempts, so a
    user who signs in successfully never uses up the budget.
    """

    def __init__(self, api_limit: str, login_limit: str, *, enabled: bool = True) -> None:
        self.enabled = enabled
        self.storage = MemoryStorage()
        self.limiter = MovingWindowRateLimiter(self.storage)
        self.api_limit: RateLimitItem = parse(api_limit)
        self.login_limit: RateLimitItem = parse(login_limit)

    def retry_after(self, item: RateLimitItem, *identifiers: str) -> int:
        reset_time, _ = self.limiter.get_window_stats(item, *identifiers)
        return max(1, int(reset_time - time.time()))

    def hit_api(self, client_key: str) -> bool:
        if not self.enabled:
            return True
        return self.limiter.hit(self.api_limit, "api", client_key)

    def ensure_login_allowed(self, client_key: str) -> None:
        if self.enabled and not self.limiter.test(self.login_limit, "login", client_key):
            logger.warning("Login throttled for %s", client_key)
            raise TooManyRequests(
                TOO_MANY_LOGINS,
                details={"retryAfter": self.retry_after(self.login_limit, "login", client_key)},
            )

    def record_failed_login(self, client_key: str) -> None:
        if self.enabled:
            self.limiter.hit(self.login_limit, "login", client_key)

    def reset(self) -> None:
        self.storage.reset()


throttle = RequestThrottle(
    settings.api_rate_limit,
    settings.login_rate_limit,
    enabled=settings.rate_limit_enabled,
)
