"""
redis_client.py – singleton Redis connection
============================================

• 100 % lazy: first call triggers connect; retries a bounded number of
  times so a request never hangs forever on a dead store.
• `make_redis(url)` builds a fresh client for callers that want their own
  (the API factory, tests pass a fakeredis instance instead).
"""

from __future__ import annotations

import os
import time
from typing import Any, Callable, Optional

import redis

from .logging import get_logger

# ───── CONFIG ──────────────────────────────────────────────────────────
REDIS_URL       = os.getenv("REDIS_URL", "redis://redis:6379/0")
SOCKET_TIMEOUT  = float(os.getenv("REDIS_SOCKET_TIMEOUT", 2))
CONNECT_RETRIES = int(os.getenv("REDIS_CONNECT_RETRIES", 5))
log = get_logger("shared.redis")


def make_redis(url: str = REDIS_URL, socket_timeout: float = SOCKET_TIMEOUT) -> "redis.Redis[Any]":
    return redis.Redis.from_url(
        url,
        decode_responses=True,
        socket_timeout=socket_timeout,
        socket_connect_timeout=socket_timeout,
    )

# ───── LAZY SINGLETON ─────────────────────────────────────────────────
class _LazyRedis:
    """Proxy object that connects on first attribute access (auto-retry)."""
    _client: Optional[redis.Redis[Any]] = None

    def __getattr__(self, name: str) -> Callable[..., Any]:  # noqa: D401
        if self._client is None:
            self._connect()
        return getattr(self._client, name)  # type: ignore[arg-type]

    def _connect(self) -> None:
        for attempt in range(1, CONNECT_RETRIES + 1):
            try:
                client = make_redis()
                client.ping()
                self._client = client
                log.info("Connected to Redis at %s", REDIS_URL)
                return
            except redis.exceptions.ConnectionError as exc:
                if attempt == CONNECT_RETRIES:
                    raise
                log.warning("Redis unavailable – retrying in 2 s (%s)", exc)
                time.sleep(2)

# Exposed singleton used by the service when no client is injected
rds: redis.Redis[Any] = _LazyRedis()  # type: ignore[assignment]
