import json
import threading
import time
from dataclasses import replace

import pytest
import redis

from command_store.models import Route
from command_store.store import CommandStore
from shared.constants import DELIVERY_FAILED, DELIVERY_SUCCESS, STATUS_PENDING
from shared.errors import (
    IngestionFailed, InvalidTarget, MalformedPayload, SignalRejected, TargetNotFound,
    TransientStoreFailure,
)
from shared.utils import RetryPolicy, attempt_pool, retry_call
from signal_gateway.gateway import SignalGateway, command_id_for

XAU_BUY = json.dumps({"ticker": "XAUUSD", "action": "buy", "price": 2650.5, "quantity": 0.1})


class FlakyStore(CommandStore):
    """Fails the first `failures` inserts with a connection error."""

    def __init__(self, *args, failures=0, **kwargs):
        super().__init__(*args, **kwargs)
        self.failures = failures
        self.insert_calls = 0

    def insert_command(self, cmd):
        self.insert_calls += 1
        if self.insert_calls <= self.failures:
            raise redis.exceptions.ConnectionError("connection reset")
        return super().insert_command(cmd)


class SlowStore(CommandStore):
    """The first `slow` inserts hang until `release` is set."""

    def __init__(self, *args, slow=0, **kwargs):
        super().__init__(*args, **kwargs)
        self.slow = slow
        self.insert_calls = 0
        self.release = threading.Event()

    def insert_command(self, cmd):
        self.insert_calls += 1
        if self.insert_calls <= self.slow:
            self.release.wait(5)
        return super().insert_command(cmd)


class BrokenAuditStore(CommandStore):
    def append_delivery(self, entry):
        raise redis.exceptions.ConnectionError("audit down")


@pytest.fixture
def sleeps():
    return []


@pytest.fixture
def gateway(store, settings, sleeps):
    return SignalGateway(store, settings, sleep=sleeps.append)


def test_structured_buy_creates_pending_command(gateway, store):
    res = gateway.ingest("conn1", XAU_BUY.encode())

    cmd = store.get_command(res.command_id)
    assert cmd.status == STATUS_PENDING
    assert cmd.connection_id == "conn1"
    assert cmd.command_type == "buy"
    assert cmd.symbol == "XAUUSD"
    assert cmd.volume == 0.1
    assert cmd.price == 2650.5
    assert cmd.deviation == 20
    assert cmd.request_id == res.request_id
    assert store.pending_ids("conn1", 10) == [res.command_id]

    [log_row] = store.recent_deliveries()
    assert log_row.status == DELIVERY_SUCCESS
    assert log_row.request_id == res.request_id
    assert log_row.command_id == res.command_id
    assert log_row.connection_id == "conn1"
    assert log_row.payload["ticker"] == "XAUUSD"
    assert log_row.retry_count == 0


def test_same_idempotency_key_creates_one_command(gateway, store):
    first = gateway.ingest("conn1", XAU_BUY, idempotency_key="sig-1")
    second = gateway.ingest("conn1", XAU_BUY, idempotency_key="sig-1")

    assert first.command_id == second.command_id
    assert not first.duplicate
    assert second.duplicate
    assert first.request_id != second.request_id
    assert store.pending_ids("conn1", 10) == [first.command_id]

    rows = store.recent_deliveries()
    assert [r.status for r in rows] == [DELIVERY_SUCCESS, DELIVERY_SUCCESS]
    assert {r.command_id for r in rows} == {first.command_id}
    assert [r.duplicate for r in rows] == [True, False]      # newest first


def test_body_signal_id_is_an_idempotency_key(gateway, store):
    body = json.dumps({"id": "alert-77", "symbol": "EURUSD", "action": "sell"})
    a = gateway.ingest("conn1", body)
    b = gateway.ingest("conn1", body)
    assert a.command_id == b.command_id == command_id_for("conn1", "alert-77")
    assert len(store.pending_ids("conn1", 10)) == 1


def test_same_key_on_other_connection_is_distinct(gateway):
    a = gateway.ingest("conn1", XAU_BUY, idempotency_key="k")
    b = gateway.ingest("conn2", XAU_BUY, idempotency_key="k")
    assert a.command_id != b.command_id


def test_unkeyed_requests_are_not_deduplicated(gateway, store):
    gateway.ingest("conn1", XAU_BUY)
    gateway.ingest("conn1", XAU_BUY)
    assert len(store.pending_ids("conn1", 10)) == 2


def test_text_fallback(gateway, store):
    res = gateway.ingest("conn1", b"SELL EURUSD @ 1.0835 sl 1.09")
    cmd = store.get_command(res.command_id)
    assert res.action == "SELL"
    assert cmd.command_type == "sell"
    assert cmd.symbol == "EURUSD"
    assert cmd.sl == 1.09
    assert store.recent_deliveries()[0].payload == {"raw": "SELL EURUSD @ 1.0835 sl 1.09"}


@pytest.mark.parametrize("target", [None, "", "bad target!", "x" * 65])
def test_invalid_target_is_logged(gateway, store, target):
    with pytest.raises(InvalidTarget) as ei:
        gateway.ingest(target, XAU_BUY)

    [row] = store.recent_deliveries()
    assert row.status == DELIVERY_FAILED
    assert row.error_code == "invalid_target"
    assert row.request_id == ei.value.request_id
    assert row.command_id is None


def test_unknown_target_is_404_and_logged(gateway, store):
    with pytest.raises(TargetNotFound) as ei:
        gateway.ingest("nobody", XAU_BUY)
    assert ei.value.status_code == 404

    [row] = store.recent_deliveries()
    assert row.status == DELIVERY_FAILED
    assert row.target_id == "nobody"
    assert row.error_code == "target_not_found"


def test_malformed_payload_is_logged_with_raw_body(gateway, store):
    with pytest.raises(MalformedPayload):
        gateway.ingest("conn1", b"hello world")

    [row] = store.recent_deliveries()
    assert row.status == DELIVERY_FAILED
    assert row.payload == {"raw": "hello world"}
    assert store.pending_ids("conn1", 10) == []


def test_room_route_resolves_and_clamps_lot(gateway, store):
    body = json.dumps({"symbol": "XAUUSD", "action": "buy", "quantity": 5})
    res = gateway.ingest("room1", body)
    cmd = store.get_command(res.command_id)
    assert res.connection_id == "conn1"
    assert cmd.connection_id == "conn1"
    assert cmd.volume == 1.0


def test_route_rejects_disabled_signal_type(gateway, store):
    store.upsert_route(Route(room_id="room2", connection_id="conn1", signal_types=("BUY",)))
    with pytest.raises(SignalRejected) as ei:
        gateway.ingest("room2", b"close XAUUSD")
    assert ei.value.status_code == 422
    assert store.pending_ids("conn1", 10) == []
    assert store.recent_deliveries()[0].error_code == "signal_rejected"


def test_disabled_route_is_not_found(gateway, store):
    store.upsert_route(Route(room_id="room3", connection_id="conn1", enabled=False))
    with pytest.raises(TargetNotFound):
        gateway.ingest("room3", XAU_BUY)


def test_transient_failures_are_retried(redis_client, clock, settings, sleeps):
    store = FlakyStore(redis_client, clock=clock, failures=2)
    store.ensure_connection("conn1")
    gw = SignalGateway(store, settings, sleep=sleeps.append)

    res = gw.ingest("conn1", XAU_BUY)

    assert res.retry_count == 2
    assert store.insert_calls == 3
    assert sleeps == [0.001, 0.002]                # base·2ⁿ, zero jitter
    row = store.recent_deliveries()[0]
    assert row.status == DELIVERY_SUCCESS
    assert row.retry_count == 2


def test_retry_exhaustion_is_ingestion_failed(redis_client, clock, settings, sleeps):
    store = FlakyStore(redis_client, clock=clock, failures=99)
    store.ensure_connection("conn1")
    gw = SignalGateway(store, replace(settings, ingest_max_attempts=4), sleep=sleeps.append)

    with pytest.raises(IngestionFailed) as ei:
        gw.ingest("conn1", XAU_BUY)

    assert ei.value.status_code == 500
    assert ei.value.request_id
    assert store.insert_calls == 4
    row = store.recent_deliveries()[0]
    assert row.status == DELIVERY_FAILED
    assert row.error_code == "ingestion_failed"
    assert row.retry_count == 3
    assert row.request_id == ei.value.request_id


def test_audit_failure_never_fails_ingestion(redis_client, clock, settings):
    store = BrokenAuditStore(redis_client, clock=clock)
    store.ensure_connection("conn1")
    res = SignalGateway(store, settings, sleep=lambda _: None).ingest("conn1", XAU_BUY)
    assert store.get_command(res.command_id) is not None


@pytest.fixture
def slow_settings(settings):
    return replace(settings, ingest_attempt_timeout_sec=0.05)


def test_hung_attempt_times_out_and_is_retried(redis_client, clock, slow_settings, sleeps):
    store = SlowStore(redis_client, clock=clock, slow=1)
    store.ensure_connection("conn1")
    gw = SignalGateway(store, slow_settings, sleep=sleeps.append)

    res = gw.ingest("conn1", XAU_BUY)

    assert res.retry_count == 1
    assert store.insert_calls == 2
    assert sleeps == [0.001]
    row = store.recent_deliveries()[0]
    assert row.status == DELIVERY_SUCCESS
    assert row.retry_count == 1

    # the abandoned attempt finishing late is absorbed by the same command id
    store.release.set()
    gw.pool.shutdown(wait=True)
    assert store.pending_ids("conn1", 10) == [res.command_id]


def test_attempts_that_always_hang_end_in_ingestion_failed(redis_client, clock,
                                                          slow_settings, sleeps):
    store = SlowStore(redis_client, clock=clock, slow=99)
    store.ensure_connection("conn1")
    gw = SignalGateway(store, slow_settings, sleep=sleeps.append)

    try:
        with pytest.raises(IngestionFailed) as ei:
            gw.ingest("conn1", XAU_BUY)
    finally:
        store.release.set()
        gw.pool.shutdown(wait=True)

    assert ei.value.status_code == 500
    assert "timed out" in str(ei.value)
    assert store.insert_calls == 3
    row = store.recent_deliveries()[0]
    assert row.status == DELIVERY_FAILED
    assert row.error_code == "ingestion_failed"
    assert row.retry_count == 2


def test_attempt_queued_behind_busy_workers_is_cancelled():
    pool = attempt_pool(1)
    busy = threading.Event()
    pool.submit(busy.wait, 5)
    calls = []
    policy = RetryPolicy(max_attempts=2, base_delay_ms=0, jitter_ms=0, attempt_timeout_sec=0.05)

    try:
        with pytest.raises(TransientStoreFailure, match="no worker free"):
            retry_call(lambda: calls.append(1), policy, sleep=lambda _: None, executor=pool)
    finally:
        busy.set()
        pool.shutdown(wait=True)

    assert calls == []


def test_queue_wait_does_not_count_against_the_attempt():
    pool = attempt_pool(1)
    policy = RetryPolicy(max_attempts=1, attempt_timeout_sec=0.2)
    pool.submit(time.sleep, 0.1)
    try:
        assert retry_call(lambda: "ok", policy, executor=pool) == "ok"
    finally:
        pool.shutdown(wait=True)


def test_gateway_pool_is_sized_from_settings(store, settings):
    gw = SignalGateway(store, replace(settings, ingest_attempt_workers=3))
    assert gw.pool._max_workers == 3
