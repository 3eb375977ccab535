"""
gateway.py – webhook signal ingestion
=====================================

One call to `SignalGateway.ingest()` per inbound request:

1. validate the target id (connection id or room id)
2. parse the body (JSON object, else free-text heuristics)
3. resolve the target – a Connection, or an enabled Route to one
4. normalise to a TradeSignal, apply route filter / lot cap
5. insert the Command idempotently (caller key → deterministic id)
6. retry transient store failures with backoff + jitter
7. append exactly one DeliveryLog row, whatever happened above
"""

from __future__ import annotations

import re
import time
import uuid
from dataclasses import dataclass, field, replace
from typing import Any, Callable, Dict, Optional, Tuple, TypeVar

from command_store.models import Command, DeliveryLog, Route
from command_store.store import CommandStore
from shared.config import BridgeSettings
from shared.constants import DELIVERY_FAILED, DELIVERY_SUCCESS
from shared.errors import (
    BridgeError, IngestionFailed, InvalidTarget, SignalRejected,
    TargetNotFound, TransientStoreFailure,
)
from shared.logging import get_logger
from shared.utils import RetryPolicy, attempt_pool, retry_call

from .parser import TradeSignal, parse_payload, payload_snapshot, to_trade_signal

T = TypeVar("T")

TARGET_RE = re.compile(r"^[A-Za-z0-9_-]{1,64}$")
# caller idempotency keys are hashed into this namespace per connection
IDEMPOTENCY_NS = uuid.UUID("6f1c7d0e-5b8a-4c1e-9a53-2d4e8b7f3a10")

log = get_logger("signal_gateway")


@dataclass(frozen=True)
class IngestionResult:
    request_id: str
    command_id: str
    connection_id: str
    symbol: str
    action: str
    execution_time_ms: int
    duplicate: bool = False
    retry_count: int = 0


@dataclass
class _Trace:
    """Per-request bookkeeping that ends up in the DeliveryLog."""
    request_id: str
    target_id: Optional[str]
    started: float = field(default_factory=time.monotonic)
    retries: int = 0
    connection_id: Optional[str] = None
    command_id: Optional[str] = None
    duplicate: bool = False
    payload: Dict[str, Any] = field(default_factory=dict)

    def elapsed_ms(self) -> int:
        return int((time.monotonic() - self.started) * 1000)


def command_id_for(connection_id: str, idempotency_key: Optional[str]) -> str:
    """Deterministic id for keyed requests, random otherwise."""
    if idempotency_key:
        return uuid.uuid5(IDEMPOTENCY_NS, f"{connection_id}:{idempotency_key}").hex
    return uuid.uuid4().hex


class SignalGateway:
    def __init__(
        self,
        store: CommandStore,
        settings: BridgeSettings,
        *,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.store = store
        self.settings = settings
        self.sleep = sleep
        self.policy = RetryPolicy(
            max_attempts=settings.ingest_max_attempts,
            base_delay_ms=settings.ingest_base_delay_ms,
            jitter_ms=settings.ingest_jitter_ms,
            attempt_timeout_sec=settings.ingest_attempt_timeout_sec,
        )
        self.pool = attempt_pool(settings.ingest_attempt_workers)

    # ───── public entry point ────────────────────────────────────────
    def ingest(
        self,
        target_id: Optional[str],
        body: bytes | str | None,
        *,
        idempotency_key: Optional[str] = None,
    ) -> IngestionResult:
        trace = _Trace(request_id=str(uuid.uuid4()), target_id=target_id or None)
        raw = body.decode("utf-8", errors="replace") if isinstance(body, bytes) else (body or "")
        trace.payload = {"raw": raw[:500]}
        try:
            result = self._ingest(trace, target_id, body, idempotency_key)
        except BridgeError as exc:
            err = exc
            if isinstance(exc, TransientStoreFailure):
                err = IngestionFailed(str(exc))
            err.request_id = trace.request_id
            log.warning("ingestion failed – %s: %s", err.code, err,
                        extra={"request_id": trace.request_id, "target_id": target_id})
            self._record(trace, DELIVERY_FAILED, err)
            if err is exc:
                raise
            raise err from exc
        except Exception as exc:
            log.exception("ingestion crashed", extra={"request_id": trace.request_id})
            err = IngestionFailed(f"internal error: {exc}", request_id=trace.request_id)
            self._record(trace, DELIVERY_FAILED, err)
            raise err from exc

        self._record(trace, DELIVERY_SUCCESS, None)
        return result

    # ───── pipeline ──────────────────────────────────────────────────
    def _ingest(
        self,
        trace: _Trace,
        target_id: Optional[str],
        body: bytes | str | None,
        idempotency_key: Optional[str],
    ) -> IngestionResult:
        if not target_id or not TARGET_RE.match(target_id):
            raise InvalidTarget("target id required in path or query "
                                "(1-64 chars of A-Z a-z 0-9 _ -)")

        parsed = parse_payload(body)
        trace.payload = payload_snapshot(parsed)

        connection_id, route = self._retry(trace, lambda: self._resolve(target_id))
        trace.connection_id = connection_id

        signal = to_trade_signal(parsed)
        if route is not None:
            signal = self._apply_route(signal, route)

        key = idempotency_key or signal.signal_id
        cmd = Command(
            id=command_id_for(connection_id, key),
            connection_id=connection_id,
            command_type=signal.command_type,
            symbol=signal.symbol,
            volume=signal.quantity,
            price=signal.price,
            sl=signal.sl,
            tp=signal.tp,
            deviation=self.settings.default_deviation,
            comment=f"{signal.action} {signal.strategy}"[:64],
            request_id=trace.request_id,
        )
        stored, created = self._retry(trace, lambda: self.store.insert_command(cmd))
        trace.command_id = stored.id
        trace.duplicate = not created

        if created:
            log.info("%s %s %s → command %s", signal.action, signal.symbol,
                     signal.price, stored.id,
                     extra={"request_id": trace.request_id, "connection_id": connection_id})
        else:
            log.info("duplicate delivery absorbed – command %s", stored.id,
                     extra={"request_id": trace.request_id, "connection_id": connection_id})

        return IngestionResult(
            request_id=trace.request_id,
            command_id=stored.id,
            connection_id=connection_id,
            symbol=stored.symbol,
            action=signal.action,
            execution_time_ms=trace.elapsed_ms(),
            duplicate=trace.duplicate,
            retry_count=trace.retries,
        )

    def _resolve(self, target_id: str) -> Tuple[str, Optional[Route]]:
        """Target is a connection id, or a room routed to one."""
        conn = self.store.get_connection(target_id)
        if conn is not None:
            return conn.id, None
        route = self.store.get_route(target_id)
        if route is not None and route.enabled and self.store.get_connection(route.connection_id):
            return route.connection_id, route
        raise TargetNotFound(f"no connection or active route for target {target_id!r}")

    @staticmethod
    def _apply_route(signal: TradeSignal, route: Route) -> TradeSignal:
        if signal.route_action not in route.signal_types:
            raise SignalRejected(
                f"action {signal.route_action} not enabled for room {route.room_id} "
                f"(allowed: {', '.join(route.signal_types)})"
            )
        if route.max_lot_size > 0 and signal.quantity > route.max_lot_size:
            log.info("quantity %.2f above max %.2f for room %s – clamped",
                     signal.quantity, route.max_lot_size, route.room_id)
            signal = replace(signal, quantity=route.max_lot_size)
        return signal

    def _retry(self, trace: _Trace, fn: Callable[[], T]) -> T:
        def _on_retry(attempt: int, exc: BaseException, delay: float) -> None:
            trace.retries += 1
            log.warning("store attempt %d/%d failed (%s) – retrying in %.0f ms",
                        attempt, self.policy.max_attempts, exc, delay * 1000,
                        extra={"request_id": trace.request_id})

        return retry_call(fn, self.policy, on_retry=_on_retry, sleep=self.sleep,
                          executor=self.pool)

    # ───── audit (post-commit, never fails the request) ──────────────
    def _record(self, trace: _Trace, status: str, error: Optional[BridgeError]) -> None:
        entry = DeliveryLog(
            request_id=trace.request_id,
            target_id=trace.target_id,
            status=status,
            execution_time_ms=trace.elapsed_ms(),
            retry_count=trace.retries,
            connection_id=trace.connection_id,
            command_id=trace.command_id,
            duplicate=trace.duplicate,
            payload=trace.payload,
            error_code=error.code if error else None,
            error_message=str(error) if error else None,
        )
        try:
            self.store.append_delivery(entry)
        except Exception as exc:  # noqa: BLE001
            log.error("delivery log write failed – %s", exc,
                      extra={"request_id": trace.request_id})
