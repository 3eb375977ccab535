"""
store.py – Redis-backed command store
=====================================

Single source of truth for Commands, Connections, Routes and the
DeliveryLog.  There is no in-process state: every status change goes
through `transition()`, an optimistic compare-and-swap built on
WATCH / MULTI / EXEC, so concurrent polls, reaps and reports can never
move a command along an illegal edge.

Redis schema
------------
bridge:command:<id>          HASH   one Command
bridge:pending:<conn>        ZSET   pending ids, score = creation seq (FIFO)
bridge:processing:<conn>     ZSET   leased ids, score = leased_at
bridge:command_seq           INT    creation counter
bridge:connection:<id>       HASH   liveness + counters
bridge:connections           SET    known connection ids
bridge:route:<room>          HASH   room → connection rules
bridge:deliveries            LIST   DeliveryLog JSON, oldest → newest
"""

from __future__ import annotations

import time
from typing import Any, Callable, Dict, Iterable, List, Optional, Tuple

from shared.constants import (
    KEY_COMMAND, KEY_COMMAND_SEQ, KEY_CONNECTION, KEY_CONNECTIONS,
    KEY_DELIVERIES, KEY_PENDING, KEY_PROCESSING, KEY_ROUTE,
    DELIVERY_FAILED, DELIVERY_SUCCESS,
    STATUS_PENDING, STATUS_PROCESSING,
)
from shared.logging import get_logger
from shared.redis_client import rds

from .models import Command, Connection, DeliveryLog, Route, _s

log = get_logger("command_store")

Guard = Callable[[Command], bool]
CommitHook = Callable[[Any, List[Command], float], None]


class CommandStore:
    def __init__(self, client: Any = None, clock: Callable[[], float] = time.time) -> None:
        self.redis = client if client is not None else rds
        self.clock = clock

    def now(self) -> float:
        return self.clock()

    # ───── connections ───────────────────────────────────────────────
    def ensure_connection(self, connection_id: str) -> Connection:
        """Idempotent upsert – never resets counters of an existing row."""
        key = KEY_CONNECTION.format(connection_id)
        defaults = {
            "id": connection_id,
            "is_connected": "0",
            "total_sent": "0",
            "successful": "0",
            "failed": "0",
            "latency_sum_ms": "0",
            "created_at": _s(self.now()),
        }
        pipe = self.redis.pipeline()
        for field, val in defaults.items():
            pipe.hsetnx(key, field, val)
        pipe.sadd(KEY_CONNECTIONS, connection_id)
        pipe.execute()
        return self.get_connection(connection_id)  # type: ignore[return-value]

    def get_connection(self, connection_id: str) -> Optional[Connection]:
        h = self.redis.hgetall(KEY_CONNECTION.format(connection_id))
        return Connection.from_hash(h) if h else None

    def touch_connection(self, connection_id: str) -> bool:
        """Liveness stamp on poll.  Unknown ids are left alone."""
        key = KEY_CONNECTION.format(connection_id)
        if not self.redis.exists(key):
            return False
        self.redis.hset(key, mapping={"is_connected": "1", "last_poll_at": _s(self.now())})
        return True

    def connection_ids(self) -> List[str]:
        return sorted(self.redis.smembers(KEY_CONNECTIONS))

    # ───── routes ────────────────────────────────────────────────────
    def upsert_route(self, route: Route) -> None:
        self.redis.hset(KEY_ROUTE.format(route.room_id), mapping=route.to_hash())

    def ensure_route(self, route: Route) -> Route:
        """Create the route only if the room has none yet."""
        key = KEY_ROUTE.format(route.room_id)
        pipe = self.redis.pipeline()
        for field, val in route.to_hash().items():
            pipe.hsetnx(key, field, val)
        pipe.execute()
        return self.get_route(route.room_id)  # type: ignore[return-value]

    def get_route(self, room_id: str) -> Optional[Route]:
        h = self.redis.hgetall(KEY_ROUTE.format(room_id))
        return Route.from_hash(h) if h else None

    # ───── commands ──────────────────────────────────────────────────
    def insert_command(self, cmd: Command) -> Tuple[Command, bool]:
        """
        Idempotent insert keyed by `cmd.id`.
        Returns (stored command, created?) – a duplicate id hands back the
        existing row untouched.
        """
        key = KEY_COMMAND.format(cmd.id)
        existing = self.redis.hgetall(key)
        if existing:
            return Command.from_hash(existing), False

        seq = int(self.redis.incr(KEY_COMMAND_SEQ))   # gaps are harmless

        def _insert(pipe: Any) -> Tuple[Command, bool]:
            h = pipe.hgetall(key)
            if h:                                    # lost the race to a twin
                return Command.from_hash(h), False
            cmd.seq = seq
            cmd.status = STATUS_PENDING
            cmd.created_at = cmd.created_at or self.now()
            pipe.multi()
            pipe.hset(key, mapping=cmd.to_hash())
            pipe.zadd(KEY_PENDING.format(cmd.connection_id), {cmd.id: seq})
            return cmd, True

        return self.redis.transaction(_insert, key, value_from_callable=True)

    def get_command(self, command_id: str) -> Optional[Command]:
        h = self.redis.hgetall(KEY_COMMAND.format(command_id))
        return Command.from_hash(h) if h else None

    def pending_ids(self, connection_id: str, limit: int) -> List[str]:
        """Oldest-first pending ids for one connection."""
        if limit <= 0:
            return []
        return list(self.redis.zrange(KEY_PENDING.format(connection_id), 0, limit - 1))

    def leased_before(self, connection_id: str, cutoff: float) -> List[str]:
        """Ids whose lease started strictly before `cutoff`."""
        return list(self.redis.zrangebyscore(
            KEY_PROCESSING.format(connection_id), "-inf", f"({cutoff}"
        ))

    def transition(
        self,
        command_ids: Iterable[str],
        expected: str,
        target: str,
        *,
        fields: Optional[Dict[str, Any]] = None,
        guard: Optional[Guard] = None,
        on_commit: Optional[CommitHook] = None,
    ) -> List[Command]:
        """
        Move every command whose *current* status equals `expected` (and
        that passes `guard`) to `target`, in one optimistic transaction.
        Rows in any other state are skipped.  Returns the commands actually
        changed, in the order given, with their new state applied.

        `on_commit(pipe, changed, now)` may queue extra writes that must
        land atomically with the status change (connection accounting).
        """
        ids = list(dict.fromkeys(command_ids))
        if not ids:
            return []
        keys = [KEY_COMMAND.format(i) for i in ids]
        now = self.now()
        updates = {k: _s(v) for k, v in (fields or {}).items()}
        updates["status"] = target

        def _cas(pipe: Any) -> List[Command]:
            picked: List[Tuple[str, Dict[str, str]]] = []
            for key in keys:
                h = pipe.hgetall(key)
                if not h or h.get("status") != expected:
                    continue
                if guard is not None and not guard(Command.from_hash(h)):
                    continue
                picked.append((key, h))

            pipe.multi()
            changed: List[Command] = []
            for key, h in picked:
                after = {**h, **updates}
                if target == STATUS_PROCESSING:
                    after["lease_count"] = str(int(h.get("lease_count") or 0) + 1)
                    pipe.hincrby(key, "lease_count", 1)
                pipe.hset(key, mapping=updates)
                cmd = Command.from_hash(after)
                self._move_index(pipe, cmd, expected, target)
                changed.append(cmd)
            if changed and on_commit is not None:
                on_commit(pipe, changed, now)
            return changed

        return self.redis.transaction(_cas, *keys, value_from_callable=True)

    @staticmethod
    def _move_index(pipe: Any, cmd: Command, old: str, new: str) -> None:
        conn = cmd.connection_id
        if old == STATUS_PENDING:
            pipe.zrem(KEY_PENDING.format(conn), cmd.id)
        elif old == STATUS_PROCESSING:
            pipe.zrem(KEY_PROCESSING.format(conn), cmd.id)
        if new == STATUS_PENDING:
            pipe.zadd(KEY_PENDING.format(conn), {cmd.id: cmd.seq})
        elif new == STATUS_PROCESSING:
            pipe.zadd(KEY_PROCESSING.format(conn), {cmd.id: cmd.leased_at or 0.0})

    # ───── delivery log ──────────────────────────────────────────────
    def append_delivery(self, entry: DeliveryLog) -> None:
        entry.created_at = entry.created_at or self.now()
        self.redis.rpush(KEY_DELIVERIES, entry.to_json())

    def recent_deliveries(
        self,
        limit: int = 50,
        *,
        status: Optional[str] = None,
        target_id: Optional[str] = None,
        window: int = 1000,
    ) -> List[DeliveryLog]:
        """Newest first, filtered inside the last `window` rows."""
        rows = [DeliveryLog.from_json(r) for r in self.redis.lrange(KEY_DELIVERIES, -window, -1)]
        rows.reverse()
        if status:
            rows = [r for r in rows if r.status == status]
        if target_id:
            rows = [r for r in rows if r.target_id == target_id]
        return rows[:limit]

    def delivery_stats(self, window: int = 1000) -> Dict[str, Any]:
        rows = self.recent_deliveries(limit=window, window=window)
        total = len(rows)
        ok = sum(1 for r in rows if r.status == DELIVERY_SUCCESS)
        failed = sum(1 for r in rows if r.status == DELIVERY_FAILED)
        avg_ms = round(sum(r.execution_time_ms for r in rows) / total, 1) if total else None
        return {
            "window": window,
            "total": total,
            "success": ok,
            "failed": failed,
            "success_rate": round(ok / total, 4) if total else None,
            "avg_execution_time_ms": avg_ms,
            "total_retries": sum(r.retry_count for r in rows),
        }
