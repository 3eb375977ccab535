"""
config.py – centralised env-var handling
=======================================

• Loads the first `.env` file it finds (cwd or /app) exactly **once**.
• Exposes `ENV` – a dict-like object that also supports attribute access.
• `env(key, default=None, cast=None)` helper for one-off lookups
  with automatic type-casting (int, float, bool).
• `load_settings()` snapshots every bridge knob into a frozen
  `BridgeSettings` so operators tune a deployment without code changes.
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, FrozenSet, Optional, Tuple

from dotenv import load_dotenv

# ───── locate & load .env (first one wins) ────────────────────────────
for candidate in (Path.cwd() / ".env", Path("/app/.env")):
    if candidate.is_file():
        load_dotenv(dotenv_path=candidate, override=False)
        break

# ───── ENV proxy object ───────────────────────────────────────────────
class _Env(dict):
    """Attr-style access to `os.environ` while staying dict-compatible."""

    # attribute → getenv
    def __getattr__(self, item: str) -> str | None:  # noqa: D401
        return os.getenv(item)

    # keep mypy happy for dict subscripting
    def __getitem__(self, key: str) -> str:
        return os.environ[key]

    # ergonomic get with optional cast
    def get(self, key: str, default: Any = None, cast: Optional[type] = None) -> Any:  # noqa: D401
        val = os.getenv(key, default)
        if cast is not None and val is not None:
            try:
                if cast is bool:
                    return str(val).lower() in ("1", "true", "yes", "y")
                return cast(val)
            except (ValueError, TypeError):
                return default
        return val


ENV: _Env = _Env(os.environ)  # public alias

# convenience function so you can `from shared.config import env`
def env(key: str, default: Any = None, cast: Optional[type] = None) -> Any:
    """Shortcut for `ENV.get(key, default, cast)`."""
    return ENV.get(key, default, cast)


# ───── list-ish env values ────────────────────────────────────────────
def _csv(raw: str | None) -> Tuple[str, ...]:
    return tuple(s.strip() for s in (raw or "").split(",") if s.strip())


def _routes(raw: str | None) -> Dict[str, str]:
    """`room1:conn1,room2:conn2` → {"room1": "conn1", "room2": "conn2"}."""
    out: Dict[str, str] = {}
    for item in _csv(raw):
        room, sep, conn = item.partition(":")
        if sep and room.strip() and conn.strip():
            out[room.strip()] = conn.strip()
    return out


@dataclass(frozen=True)
class BridgeSettings:
    redis_url: str = "redis://redis:6379/0"
    redis_socket_timeout: float = 2.0

    lease_timeout_sec: float = 30.0          # processing → pending after this
    max_batch_size: int = 10                 # commands per poll response

    ingest_max_attempts: int = 5
    ingest_base_delay_ms: float = 200.0
    ingest_jitter_ms: float = 50.0
    ingest_attempt_timeout_sec: float = 5.0
    ingest_attempt_workers: int = 16         # threads running timed store attempts

    default_deviation: int = 20              # MT5 slippage in points
    # 0 = generic ok, 10008 = TRADE_RETCODE_PLACED, 10009 = TRADE_RETCODE_DONE
    success_codes: FrozenSet[int] = frozenset({0, 10008, 10009})
    connection_stale_sec: float = 90.0

    connections: Tuple[str, ...] = ()
    routes: Dict[str, str] = field(default_factory=dict)
    default_signal_types: Tuple[str, ...] = ("BUY", "SELL", "CLOSE")
    default_max_lot: float = 1.0

    api_host: str = "0.0.0.0"
    api_port: int = 8000


def load_settings() -> BridgeSettings:
    """Read every bridge setting from the environment (with defaults)."""
    d = BridgeSettings()
    codes = _csv(env("SUCCESS_CODES"))
    return BridgeSettings(
        redis_url=env("REDIS_URL", d.redis_url),
        redis_socket_timeout=env("REDIS_SOCKET_TIMEOUT", d.redis_socket_timeout, float),
        lease_timeout_sec=env("LEASE_TIMEOUT_SEC", d.lease_timeout_sec, float),
        max_batch_size=env("MAX_BATCH_SIZE", d.max_batch_size, int),
        ingest_max_attempts=env("INGEST_MAX_ATTEMPTS", d.ingest_max_attempts, int),
        ingest_base_delay_ms=env("INGEST_BASE_DELAY_MS", d.ingest_base_delay_ms, float),
        ingest_jitter_ms=env("INGEST_JITTER_MS", d.ingest_jitter_ms, float),
        ingest_attempt_timeout_sec=env(
            "INGEST_ATTEMPT_TIMEOUT_SEC", d.ingest_attempt_timeout_sec, float
        ),
        ingest_attempt_workers=env(
            "INGEST_ATTEMPT_WORKERS", d.ingest_attempt_workers, int
        ),
        default_deviation=env("DEFAULT_DEVIATION", d.default_deviation, int),
        success_codes=frozenset(int(c) for c in codes) if codes else d.success_codes,
        connection_stale_sec=env("CONNECTION_STALE_SEC", d.connection_stale_sec, float),
        connections=_csv(env("BRIDGE_CONNECTIONS")),
        routes=_routes(env("BRIDGE_ROUTES")),
        default_signal_types=tuple(
            s.upper() for s in _csv(env("DEFAULT_SIGNAL_TYPES"))
        ) or d.default_signal_types,
        default_max_lot=env("DEFAULT_MAX_LOT", d.default_max_lot, float),
        api_host=env("API_HOST", d.api_host),
        api_port=env("API_PORT", d.api_port, int),
    )


__all__ = ["ENV", "env", "BridgeSettings", "load_settings"]
