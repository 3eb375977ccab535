"""
models.py – records persisted by the command store
-------------------------------------------------
Redis hashes only hold strings, so every record knows how to flatten
itself (`to_hash`) and rebuild from `HGETALL` output (`from_hash`).
Empty string ⇔ None.
"""

from __future__ import annotations

import json
from dataclasses import asdict, dataclass, field
from typing import Any, Dict, Optional, Tuple

from shared.constants import TAG_ID_LEN, TAG_PREFIX, TERMINAL_STATUSES
from shared.utils import iso, to_float


def _s(val: Any) -> str:
    if val is None:
        return ""
    if isinstance(val, bool):
        return "1" if val else "0"
    return str(val)


def _opt_float(raw: Optional[str]) -> Optional[float]:
    return float(raw) if raw not in (None, "") else None


def _opt_int(raw: Optional[str]) -> Optional[int]:
    return int(float(raw)) if raw not in (None, "") else None


def _opt_str(raw: Optional[str]) -> Optional[str]:
    return raw if raw not in (None, "") else None


@dataclass
class Command:
    id: str
    connection_id: str
    command_type: str                 # buy | sell | close
    symbol: str
    volume: float = 0.0
    price: float = 0.0
    sl: float = 0.0
    tp: float = 0.0
    deviation: int = 20
    comment: str = ""
    status: str = "pending"
    created_at: float = 0.0
    seq: int = 0                      # creation order inside the store
    leased_at: Optional[float] = None
    lease_count: int = 0
    executed_at: Optional[float] = None
    request_id: Optional[str] = None
    # result fields
    ticket_id: Optional[int] = None
    executed_price: Optional[float] = None
    executed_volume: Optional[float] = None
    error_code: Optional[int] = None
    error_message: Optional[str] = None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    @property
    def tag(self) -> str:
        return f"{TAG_PREFIX}{self.id[:TAG_ID_LEN]}"

    def to_hash(self) -> Dict[str, str]:
        return {k: _s(v) for k, v in asdict(self).items()}

    @classmethod
    def from_hash(cls, h: Dict[str, str]) -> "Command":
        return cls(
            id=h["id"],
            connection_id=h["connection_id"],
            command_type=h.get("command_type", ""),
            symbol=h.get("symbol", ""),
            volume=to_float(h.get("volume")),
            price=to_float(h.get("price")),
            sl=to_float(h.get("sl")),
            tp=to_float(h.get("tp")),
            deviation=int(float(h.get("deviation") or 0)),
            comment=h.get("comment", ""),
            status=h.get("status", "pending"),
            created_at=float(h.get("created_at") or 0),
            seq=int(h.get("seq") or 0),
            leased_at=_opt_float(h.get("leased_at")),
            lease_count=int(h.get("lease_count") or 0),
            executed_at=_opt_float(h.get("executed_at")),
            request_id=_opt_str(h.get("request_id")),
            ticket_id=_opt_int(h.get("ticket_id")),
            executed_price=_opt_float(h.get("executed_price")),
            executed_volume=_opt_float(h.get("executed_volume")),
            error_code=_opt_int(h.get("error_code")),
            error_message=_opt_str(h.get("error_message")),
        )

    def to_instruction(self) -> Dict[str, Any]:
        """Shape handed to the polling execution client."""
        return {
            "id": self.id,
            "type": self.command_type,
            "symbol": self.symbol,
            "volume": self.volume,
            "price": self.price,
            "sl": self.sl,
            "tp": self.tp,
            "deviation": self.deviation,
            "tag": self.tag,
        }

    def to_view(self) -> Dict[str, Any]:
        out = asdict(self)
        for k in ("created_at", "leased_at", "executed_at"):
            out[k] = iso(out[k])
        out["tag"] = self.tag
        return out


@dataclass
class Connection:
    id: str
    is_connected: bool = False
    last_poll_at: Optional[float] = None
    total_sent: int = 0
    successful: int = 0
    failed: int = 0
    avg_latency_ms: Optional[float] = None
    created_at: float = 0.0

    @classmethod
    def from_hash(cls, h: Dict[str, str]) -> "Connection":
        # running average kept as sum / count so increments stay atomic
        total = int(h.get("total_sent") or 0)
        lat_sum = float(h.get("latency_sum_ms") or 0)
        return cls(
            id=h["id"],
            is_connected=h.get("is_connected") == "1",
            last_poll_at=_opt_float(h.get("last_poll_at")),
            total_sent=total,
            successful=int(h.get("successful") or 0),
            failed=int(h.get("failed") or 0),
            avg_latency_ms=round(lat_sum / total, 1) if total else None,
            created_at=float(h.get("created_at") or 0),
        )

    def online(self, now: float, stale_after: float) -> bool:
        """Connected *and* polled recently (≈ heartbeat check)."""
        return (self.is_connected and self.last_poll_at is not None
                and now - self.last_poll_at <= stale_after)

    def to_view(self, now: float, stale_after: float) -> Dict[str, Any]:
        out = asdict(self)
        out["last_poll_at"] = iso(self.last_poll_at)
        out["created_at"] = iso(self.created_at)
        out["online"] = self.online(now, stale_after)
        return out


@dataclass
class Route:
    """Room → connection mapping with the signal filter of that room."""
    room_id: str
    connection_id: str
    enabled: bool = True
    signal_types: Tuple[str, ...] = ("BUY", "SELL", "CLOSE")
    max_lot_size: float = 1.0

    def to_hash(self) -> Dict[str, str]:
        return {
            "room_id": self.room_id,
            "connection_id": self.connection_id,
            "enabled": _s(self.enabled),
            "signal_types": ",".join(self.signal_types),
            "max_lot_size": _s(self.max_lot_size),
        }

    @classmethod
    def from_hash(cls, h: Dict[str, str]) -> "Route":
        return cls(
            room_id=h["room_id"],
            connection_id=h["connection_id"],
            enabled=h.get("enabled", "1") == "1",
            signal_types=tuple(s for s in h.get("signal_types", "").split(",") if s),
            max_lot_size=float(h.get("max_lot_size") or 0),
        )


@dataclass
class DeliveryLog:
    request_id: str
    target_id: Optional[str]
    status: str                                  # success | failed
    execution_time_ms: int
    retry_count: int = 0
    connection_id: Optional[str] = None
    command_id: Optional[str] = None
    duplicate: bool = False
    payload: Dict[str, Any] = field(default_factory=dict)
    error_code: Optional[str] = None
    error_message: Optional[str] = None
    created_at: float = 0.0

    def to_json(self) -> str:
        return json.dumps(asdict(self), ensure_ascii=False, default=str)

    @classmethod
    def from_json(cls, raw: str) -> "DeliveryLog":
        return cls(**json.loads(raw))

    def to_view(self) -> Dict[str, Any]:
        out = asdict(self)
        out["created_at"] = iso(self.created_at)
        return out
