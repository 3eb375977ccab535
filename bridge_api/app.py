#!/usr/bin/env python3
"""
app.py – HTTP face of the signal bridge
---------------------------------------
Environment
-----------
REDIS_URL            redis://host:port/db          (default: redis://redis:6379/0)
BRIDGE_CONNECTIONS   conn ids to register at boot  (comma separated)
BRIDGE_ROUTES        room:conn pairs               (comma separated)
LEASE_TIMEOUT_SEC    processing → pending after    (default: 30)
MAX_BATCH_SIZE       commands per poll             (default: 10)
API_HOST / API_PORT  bind address                  (default: 0.0.0.0:8000)

Endpoints
---------
POST /signal/{target_id}       webhook in (JSON or plain text)
POST /signal?target_id=…       same, target in the query
GET  /commands?connection_id=  lease a batch of instructions
POST /commands/result          report an execution outcome
GET  /commands/{id}            one command record
GET  /connections/{id}         counters + online flag
GET  /deliveries               latest DeliveryLog rows
GET  /deliveries/stats         webhook health over the latest rows
GET  /status                   liveness overview
"""

from __future__ import annotations

import json
from typing import Any, Dict, Optional

import redis
import uvicorn
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from starlette.concurrency import run_in_threadpool

from command_queue.lease_queue import LeaseQueue
from command_queue.reaper import StaleLeaseReaper
from command_store.models import Route
from command_store.store import CommandStore
from result_reporter.reporter import ExecutionOutcome, ResultReporter
from shared.config import BridgeSettings, load_settings
from shared.errors import (
    BridgeError, InvalidTarget, MalformedPayload, UnknownCommand, UnknownConnection,
)
from shared.logging import get_logger
from shared.redis_client import make_redis
from shared.utils import iso
from signal_gateway.gateway import IngestionResult, SignalGateway

log = get_logger("bridge_api")

MAX_DELIVERY_ROWS = 1000


# ───── boot-time registration ─────────────────────────────────────────
def bootstrap(store: CommandStore, settings: BridgeSettings) -> None:
    """Idempotent upserts of configured connections and room routes."""
    conn_ids = list(dict.fromkeys([*settings.connections, *settings.routes.values()]))
    for conn_id in conn_ids:
        store.ensure_connection(conn_id)
    for room_id, conn_id in settings.routes.items():
        store.ensure_route(Route(
            room_id=room_id,
            connection_id=conn_id,
            signal_types=settings.default_signal_types,
            max_lot_size=settings.default_max_lot,
        ))
    if conn_ids:
        log.info("registered %d connection(s), %d route(s)",
                 len(conn_ids), len(settings.routes))


def _signal_response(res: IngestionResult) -> Dict[str, Any]:
    return {
        "success": True,
        "commandId": res.command_id,
        "symbol": res.symbol,
        "action": res.action,
        "requestId": res.request_id,
        "executionTimeMs": res.execution_time_ms,
        "duplicate": res.duplicate,
    }


def _clamp(val: int, lo: int, hi: int) -> int:
    return min(max(lo, val), hi)


# ───── app factory ────────────────────────────────────────────────────
def create_app(
    settings: Optional[BridgeSettings] = None,
    redis_client: Any = None,
) -> FastAPI:
    settings = settings or load_settings()
    if redis_client is None:
        redis_client = make_redis(settings.redis_url, settings.redis_socket_timeout)

    store = CommandStore(redis_client)
    bootstrap(store, settings)

    gateway = SignalGateway(store, settings)
    queue = LeaseQueue(store, StaleLeaseReaper(store, settings.lease_timeout_sec),
                       settings.max_batch_size)
    reporter = ResultReporter(store, settings.success_codes)

    app = FastAPI(title="Signal Bridge", docs_url=None, redoc_url=None)
    app.state.settings = settings
    app.state.store = store

    # ───── error rendering ────────────────────────────────────────────
    @app.exception_handler(BridgeError)
    async def _bridge_error(_: Request, exc: BridgeError) -> JSONResponse:
        body: Dict[str, Any] = {"success": False, "error": str(exc), "code": exc.code}
        if exc.request_id:
            body["requestId"] = exc.request_id
        return JSONResponse(status_code=exc.status_code, content=body)

    @app.exception_handler(redis.exceptions.RedisError)
    async def _store_error(_: Request, exc: redis.exceptions.RedisError) -> JSONResponse:
        log.error("store error – %s", exc)
        return JSONResponse(
            status_code=503,
            content={"success": False, "error": f"store unavailable: {exc}",
                     "code": "store_unavailable"},
        )

    # ───── ingestion ──────────────────────────────────────────────────
    async def _ingest(request: Request, target_id: Optional[str]) -> Dict[str, Any]:
        body = await request.body()
        key = (request.headers.get("Idempotency-Key")
               or request.query_params.get("idempotency_key"))
        res = await run_in_threadpool(gateway.ingest, target_id, body, idempotency_key=key)
        return _signal_response(res)

    @app.post("/signal/{target_id}")
    async def signal_path(target_id: str, request: Request):
        return await _ingest(request, target_id)

    @app.post("/signal")
    async def signal_query(request: Request, target_id: Optional[str] = None):
        return await _ingest(request, target_id)

    # ───── client polling / results ───────────────────────────────────
    @app.get("/commands")
    def poll_commands(connection_id: Optional[str] = None, limit: Optional[int] = None):
        if not connection_id:
            raise InvalidTarget("connection_id query parameter is required")
        return {"success": True, "commands": queue.poll_instructions(connection_id, limit)}

    @app.post("/commands/result")
    async def command_result(request: Request):
        raw = await request.body()
        try:
            data = json.loads(raw or b"")
        except ValueError:
            raise MalformedPayload("result body must be JSON") from None
        if not isinstance(data, dict):
            raise MalformedPayload("result body must be a JSON object")
        ack = await run_in_threadpool(
            reporter.report_result, data.get("command_id"), ExecutionOutcome.from_payload(data)
        )
        return {"success": True, **ack}

    # ───── read views ─────────────────────────────────────────────────
    @app.get("/commands/{command_id}")
    def get_command(command_id: str):
        cmd = store.get_command(command_id)
        if cmd is None:
            raise UnknownCommand(f"unknown command {command_id!r}")
        return {"success": True, "command": cmd.to_view()}

    @app.get("/connections/{connection_id}")
    def get_connection(connection_id: str):
        conn = store.get_connection(connection_id)
        if conn is None:
            raise UnknownConnection(f"unknown connection {connection_id!r}")
        return {"success": True,
                "connection": conn.to_view(store.now(), settings.connection_stale_sec)}

    @app.get("/deliveries")
    def deliveries(limit: int = 50, status: Optional[str] = None,
                   target_id: Optional[str] = None):
        rows = store.recent_deliveries(_clamp(limit, 1, MAX_DELIVERY_ROWS),
                                       status=status, target_id=target_id,
                                       window=MAX_DELIVERY_ROWS)
        return {"success": True, "deliveries": [r.to_view() for r in rows]}

    @app.get("/deliveries/stats")
    def delivery_stats(window: int = 100):
        return {"success": True,
                "stats": store.delivery_stats(_clamp(window, 1, MAX_DELIVERY_ROWS))}

    @app.get("/status")
    def status():
        now = store.now()
        conns = [c for c in (store.get_connection(i) for i in store.connection_ids()) if c]
        return {
            "success": True,
            "connections": {
                c.id: {"online": c.online(now, settings.connection_stale_sec),
                       "last_poll_at": iso(c.last_poll_at)}
                for c in conns
            },
            "lease_timeout_sec": settings.lease_timeout_sec,
            "max_batch_size": settings.max_batch_size,
        }

    return app


def main() -> None:
    settings = load_settings()
    uvicorn.run(create_app(settings), host=settings.api_host, port=settings.api_port,
                log_level="warning")


if __name__ == "__main__":
    main()
