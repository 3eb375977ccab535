"""
utils.py – small generic helpers reused across the bridge
"""

from __future__ import annotations

import math
import random
import threading
import time
from concurrent.futures import Executor, ThreadPoolExecutor, TimeoutError as FuturesTimeout
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable, Optional, TypeVar

import redis

from .errors import TransientStoreFailure

T = TypeVar("T")

# failures worth another attempt; anything else is permanent
TRANSIENT_ERRORS = (
    redis.exceptions.ConnectionError,
    redis.exceptions.TimeoutError,
    TransientStoreFailure,
)

DEFAULT_ATTEMPT_WORKERS = 16
_default_pool: Optional[ThreadPoolExecutor] = None
_pool_lock = threading.Lock()


def attempt_pool(workers: int = DEFAULT_ATTEMPT_WORKERS) -> ThreadPoolExecutor:
    """Executor that runs store attempts under a timeout."""
    return ThreadPoolExecutor(max_workers=max(1, workers), thread_name_prefix="store-attempt")


def _shared_pool() -> ThreadPoolExecutor:
    global _default_pool
    with _pool_lock:
        if _default_pool is None:
            _default_pool = attempt_pool()
        return _default_pool


def iso(ts: Optional[float]) -> Optional[str]:
    """Epoch seconds → ISO-8601 UTC (None stays None)."""
    if ts is None:
        return None
    return datetime.fromtimestamp(ts, tz=timezone.utc).isoformat(timespec="milliseconds")


def to_float(val: Any, default: float = 0.0) -> float:
    """Lenient float parse – '', None, 'abc', NaN, ±inf → default."""
    try:
        out = float(val)
    except (TypeError, ValueError, OverflowError):
        return default
    return out if math.isfinite(out) else default


@dataclass(frozen=True)
class RetryPolicy:
    max_attempts: int = 5
    base_delay_ms: float = 200.0
    jitter_ms: float = 50.0
    attempt_timeout_sec: float = 5.0

    def delay(self, retry_no: int) -> float:
        """Seconds to wait before retry `retry_no` (0-based): base·2ⁿ + jitter."""
        ms = self.base_delay_ms * (2 ** retry_no) + random.uniform(0, self.jitter_ms)
        return ms / 1000.0


def _run_with_timeout(fn: Callable[[], T], timeout: float, executor: Executor) -> T:
    """
    The clock starts when a worker picks the attempt up, so time spent
    queued behind other requests does not eat into `timeout`.  An attempt
    still queued after `timeout` is cancelled.
    """
    if timeout <= 0:
        return fn()
    started = threading.Event()

    def _attempt() -> T:
        started.set()
        return fn()

    fut = executor.submit(_attempt)
    if not started.wait(timeout) and fut.cancel():
        raise TransientStoreFailure(f"no worker free within {timeout:.1f} s")
    try:
        return fut.result(timeout=timeout)
    except FuturesTimeout:
        fut.cancel()
        # a running attempt cannot be interrupted; writes are idempotent
        raise TransientStoreFailure(f"attempt timed out after {timeout:.1f} s") from None


def retry_call(
    fn: Callable[[], T],
    policy: RetryPolicy,
    *,
    on_retry: Optional[Callable[[int, BaseException, float], None]] = None,
    sleep: Callable[[float], None] = time.sleep,
    executor: Optional[Executor] = None,
) -> T:
    """
    Run `fn` with a per-attempt timeout, retrying transient store errors
    with exponential backoff + jitter.  Raises TransientStoreFailure once
    `policy.max_attempts` is exhausted; permanent errors propagate as-is.
    """
    attempts = max(1, policy.max_attempts)
    pool = executor
    if pool is None and policy.attempt_timeout_sec > 0:
        pool = _shared_pool()
    for attempt in range(attempts):
        try:
            return _run_with_timeout(fn, policy.attempt_timeout_sec, pool)  # type: ignore[arg-type]
        except TRANSIENT_ERRORS as exc:
            if attempt == attempts - 1:
                raise TransientStoreFailure(
                    f"store unavailable after {attempts} attempts: {exc}"
                ) from exc
            delay = policy.delay(attempt)
            if on_retry is not None:
                on_retry(attempt + 1, exc, delay)
            sleep(delay)
    raise AssertionError("unreachable")  # pragma: no cover
