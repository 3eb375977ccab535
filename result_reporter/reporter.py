"""
reporter.py – execution outcome → final Command state + accounting
------------------------------------------------------------------
A result only counts while its Command is `processing`.  Results for a
finished command (duplicate report) or a reaped one (status back to
`pending`) are acknowledged and dropped, so the connection counters
move exactly once per command.
"""

from __future__ import annotations

import math
from dataclasses import dataclass
from typing import Any, Dict, FrozenSet, List, Mapping, Optional

from command_store.models import Command
from command_store.store import CommandStore
from shared.constants import (
    KEY_CONNECTION, STATUS_COMPLETED, STATUS_FAILED, STATUS_PROCESSING,
)
from shared.errors import MalformedPayload, UnknownCommand
from shared.logging import get_logger

log = get_logger("result_reporter")


def _opt_float(val: Any) -> Optional[float]:
    """None for missing, unparsable or non-finite values."""
    if val in (None, ""):
        return None
    try:
        out = float(val)
    except (TypeError, ValueError, OverflowError):
        return None
    return out if math.isfinite(out) else None


def _opt_int(val: Any) -> Optional[int]:
    # "10009.0" is still retcode 10009
    out = _opt_float(val)
    return int(out) if out is not None else None


@dataclass(frozen=True)
class ExecutionOutcome:
    code: Optional[int] = None
    ticket: Optional[int] = None
    price: Optional[float] = None
    volume: Optional[float] = None
    message: Optional[str] = None

    @classmethod
    def from_payload(cls, data: Mapping[str, Any]) -> "ExecutionOutcome":
        msg = data.get("message")
        return cls(
            code=_opt_int(data.get("code")),
            ticket=_opt_int(data.get("ticket")),
            price=_opt_float(data.get("price")),
            volume=_opt_float(data.get("volume")),
            message=str(msg) if msg not in (None, "") else None,
        )


class ResultReporter:
    def __init__(self, store: CommandStore, success_codes: FrozenSet[int]) -> None:
        self.store = store
        self.success_codes = success_codes

    def is_success(self, outcome: ExecutionOutcome) -> bool:
        return outcome.code is not None and outcome.code in self.success_codes

    def report_result(self, command_id: Optional[str], outcome: ExecutionOutcome) -> Dict[str, Any]:
        if not command_id:
            raise MalformedPayload("command_id is required")
        cmd = self.store.get_command(command_id)
        if cmd is None:
            raise UnknownCommand(f"unknown command {command_id!r}")
        if cmd.status != STATUS_PROCESSING:
            log.info("result for %s command ignored", cmd.status,
                     extra={"command_id": command_id, "connection_id": cmd.connection_id})
            return {"recorded": False, "status": cmd.status}

        ok = self.is_success(outcome)
        target = STATUS_COMPLETED if ok else STATUS_FAILED
        fields = {
            "executed_at": self.store.now(),
            "ticket_id": outcome.ticket,
            "executed_price": outcome.price,
            "executed_volume": outcome.volume,
            "error_code": outcome.code,
            "error_message": None if ok else (outcome.message or f"retcode {outcome.code}"),
        }
        changed = self.store.transition(
            [command_id], STATUS_PROCESSING, target,
            fields=fields, on_commit=self._account,
        )
        if not changed:
            # reaped or finalised by a concurrent report in the meantime
            current = self.store.get_command(command_id)
            status = current.status if current else cmd.status
            log.info("result for %s raced, now %s – ignored", command_id, status,
                     extra={"command_id": command_id})
            return {"recorded": False, "status": status}

        done = changed[0]
        log.info("command %s %s (code=%s ticket=%s)", done.id, target,
                 outcome.code, outcome.ticket,
                 extra={"command_id": done.id, "connection_id": done.connection_id})
        return {"recorded": True, "status": target}

    def _account(self, pipe: Any, changed: List[Command], now: float) -> None:
        """Counter updates queued inside the same MULTI as the status change."""
        for cmd in changed:
            key = KEY_CONNECTION.format(cmd.connection_id)
            latency_ms = max(0.0, ((cmd.executed_at or now) - cmd.created_at) * 1000)
            pipe.hincrby(key, "total_sent", 1)
            pipe.hincrby(key, "successful" if cmd.status == STATUS_COMPLETED else "failed", 1)
            pipe.hincrbyfloat(key, "latency_sum_ms", latency_ms)
