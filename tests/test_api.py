from unittest.mock import patch

import pytest
import redis
from fastapi.testclient import TestClient

from bridge_api.app import create_app

SIGNAL = {"ticker": "XAUUSD", "action": "buy", "price": 2650.5, "quantity": 0.1}


@pytest.fixture
def app(settings, redis_client):
    return create_app(settings, redis_client=redis_client)


@pytest.fixture
def client(app):
    return TestClient(app)


def test_bootstrap_registers_connections_and_routes(app):
    store = app.state.store
    assert store.connection_ids() == ["conn1"]
    route = store.get_route("room1")
    assert route.connection_id == "conn1"
    assert route.signal_types == ("BUY", "SELL", "CLOSE")


def test_bootstrap_is_idempotent(app, settings, redis_client, client):
    client.post("/signal/conn1", json=SIGNAL)
    create_app(settings, redis_client=redis_client)
    assert len(app.state.store.pending_ids("conn1", 10)) == 1


def test_signal_by_path(client):
    r = client.post("/signal/conn1", json=SIGNAL)
    assert r.status_code == 200
    body = r.json()
    assert body["success"] is True
    assert body["symbol"] == "XAUUSD"
    assert body["action"] == "BUY"
    assert body["duplicate"] is False
    assert body["commandId"]
    assert body["requestId"]
    assert isinstance(body["executionTimeMs"], int)


def test_signal_by_query_with_text_body(client):
    r = client.post("/signal", params={"target_id": "conn1"},
                    content="SELL EURUSD @ 1.0835",
                    headers={"Content-Type": "text/plain"})
    assert r.status_code == 200
    assert r.json()["symbol"] == "EURUSD"
    assert r.json()["action"] == "SELL"


def test_idempotency_header(client):
    h = {"Idempotency-Key": "tv-42"}
    a = client.post("/signal/conn1", json=SIGNAL, headers=h).json()
    b = client.post("/signal/conn1", json=SIGNAL, headers=h).json()
    assert a["commandId"] == b["commandId"]
    assert b["duplicate"] is True


def test_idempotency_query(client):
    a = client.post("/signal/conn1?idempotency_key=q1", json=SIGNAL).json()
    b = client.post("/signal/conn1?idempotency_key=q1", json=SIGNAL).json()
    assert a["commandId"] == b["commandId"]


@pytest.mark.parametrize("url,status,code", [
    ("/signal", 400, "invalid_target"),
    ("/signal/no_such_conn", 404, "target_not_found"),
])
def test_signal_errors_carry_request_id(client, url, status, code):
    r = client.post(url, json=SIGNAL)
    assert r.status_code == status
    body = r.json()
    assert body["success"] is False
    assert body["code"] == code
    assert body["requestId"]


def test_empty_body_is_400(client):
    r = client.post("/signal/conn1", content=b"")
    assert r.status_code == 400
    assert r.json()["code"] == "malformed_payload"


def test_route_rejection_is_422(client, app):
    from command_store.models import Route
    app.state.store.upsert_route(Route(room_id="vip", connection_id="conn1",
                                       signal_types=("CLOSE",)))
    r = client.post("/signal/vip", json=SIGNAL)
    assert r.status_code == 422
    assert r.json()["code"] == "signal_rejected"


def test_full_round_trip(client):
    cid = client.post("/signal/room1", json=SIGNAL).json()["commandId"]

    r = client.get("/commands", params={"connection_id": "conn1", "limit": 5})
    assert r.status_code == 200
    [instr] = r.json()["commands"]
    assert instr["id"] == cid
    assert instr["type"] == "buy"
    assert instr["tag"] == "sb-" + cid[:12]
    assert client.get("/commands", params={"connection_id": "conn1"}).json()["commands"] == []

    r = client.post("/commands/result", json={"command_id": cid, "ticket": 987,
                                              "price": 2650.7, "volume": 0.1,
                                              "code": 10009, "message": "done"})
    assert r.json() == {"success": True, "recorded": True, "status": "completed"}

    cmd = client.get(f"/commands/{cid}").json()["command"]
    assert cmd["status"] == "completed"
    assert cmd["ticket_id"] == 987
    assert cmd["tag"] == "sb-" + cid[:12]

    conn = client.get("/connections/conn1").json()["connection"]
    assert conn["total_sent"] == 1
    assert conn["successful"] == 1
    assert conn["online"] is True


def test_duplicate_result_is_acknowledged(client):
    cid = client.post("/signal/conn1", json=SIGNAL).json()["commandId"]
    client.get("/commands", params={"connection_id": "conn1"})
    payload = {"command_id": cid, "code": 10009, "ticket": 1}
    client.post("/commands/result", json=payload)
    r = client.post("/commands/result", json=payload)
    assert r.status_code == 200
    assert r.json()["recorded"] is False
    assert client.get("/connections/conn1").json()["connection"]["total_sent"] == 1


def test_poll_requires_known_connection(client):
    assert client.get("/commands").status_code == 400
    r = client.get("/commands", params={"connection_id": "ghost"})
    assert r.status_code == 404
    assert r.json()["code"] == "unknown_connection"


@pytest.mark.parametrize("body,status", [
    (b"not json", 400),
    (b"[1, 2]", 400),
    (b'{"code": 10009}', 400),
    (b'{"command_id": "missing", "code": 10009}', 404),
])
def test_result_errors(client, body, status):
    r = client.post("/commands/result", content=body,
                    headers={"Content-Type": "application/json"})
    assert r.status_code == status
    assert r.json()["success"] is False


def test_read_views_404(client):
    assert client.get("/commands/nope").status_code == 404
    assert client.get("/connections/nope").status_code == 404


def test_deliveries_and_stats(client):
    client.post("/signal/conn1", json=SIGNAL)
    client.post("/signal/ghost", json=SIGNAL)

    rows = client.get("/deliveries").json()["deliveries"]
    assert [r["status"] for r in rows] == ["failed", "success"]
    assert rows[0]["target_id"] == "ghost"

    failed = client.get("/deliveries", params={"status": "failed"}).json()["deliveries"]
    assert len(failed) == 1
    by_target = client.get("/deliveries", params={"target_id": "conn1"}).json()["deliveries"]
    assert len(by_target) == 1

    stats = client.get("/deliveries/stats").json()["stats"]
    assert stats["total"] == 2
    assert stats["success"] == 1
    assert stats["failed"] == 1
    assert stats["success_rate"] == 0.5


def test_status(client):
    client.get("/commands", params={"connection_id": "conn1"})
    body = client.get("/status").json()
    assert body["connections"]["conn1"]["online"] is True
    assert body["lease_timeout_sec"] == 30.0


def test_store_errors_on_poll_are_503(client, app):
    with patch.object(app.state.store, "get_connection",
                      side_effect=redis.exceptions.ConnectionError("down")):
        r = client.get("/commands", params={"connection_id": "conn1"})
    assert r.status_code == 503
    assert r.json()["code"] == "store_unavailable"


def test_overflowing_price_does_not_block_the_poll(client):
    r = client.post("/signal/conn1",
                    content=b'{"symbol": "XAUUSD", "action": "buy", "price": 1e999}',
                    headers={"Content-Type": "application/json"})
    assert r.status_code == 200
    first = r.json()["commandId"]
    second = client.post("/signal/conn1", json={**SIGNAL, "action": "sell"}).json()["commandId"]

    r = client.get("/commands", params={"connection_id": "conn1"})
    assert r.status_code == 200
    cmds = r.json()["commands"]
    assert [c["id"] for c in cmds] == [first, second]
    assert cmds[0]["price"] == 0.0
    assert cmds[1]["type"] == "sell"

    r = client.get("/deliveries")
    assert r.status_code == 200
    assert r.json()["deliveries"][-1]["payload"]["price"] == "1e999"
