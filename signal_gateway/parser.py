"""
parser.py – inbound alert payload → canonical TradeSignal
--------------------------------------------------------
Chart-alert webhooks arrive in every shape imaginable: a JSON object
with whatever field names the alert author picked, or plain text such
as ``"BUY XAUUSD @ 2650.5 tp 2660 sl 2640"``.

`parse_payload()` returns a tagged variant:

    Structured(fields)  – body was a JSON object
    Heuristic(fields)   – anything else, fields inferred by keyword/regex

and `to_trade_signal()` normalises either one through the same
constructor.  Missing numbers become 0, a missing symbol "UNKNOWN", a
missing action BUY.  Only a body that yields *nothing* usable raises
`MalformedPayload`.
"""

from __future__ import annotations

import json
import math
import re
from dataclasses import dataclass, field
from typing import Any, Dict, Mapping, Optional, Tuple, Union

from shared.errors import MalformedPayload
from shared.utils import to_float

DEFAULT_STRATEGY = "TradingView Alert"
MAX_NOTE_LEN = 500

# short action fields: first pattern wins, exits before entries
_ACTION_PATTERNS: Tuple[Tuple[str, "re.Pattern[str]"], ...] = (
    ("CLOSE",       re.compile(r"\b(?:close|exit)|ออก", re.I)),
    ("TAKE_PROFIT", re.compile(r"\b(?:take|tp\b|profit)|ทำกำไร", re.I)),
    ("STOP_LOSS",   re.compile(r"\b(?:stop|sl\b|loss)|ตัดขาดทุน", re.I)),
    ("BUY",         re.compile(r"\b(?:buy|long)|ซื้อ", re.I)),
    ("SELL",        re.compile(r"\b(?:sell|short)|ขาย", re.I)),
)
_SHORT_RE = re.compile(r"\b(?:short|sell)|ขาย", re.I)

_NUM = r"(-?\d+(?:\.\d+)?)"
_LEVEL_SEP = r"\s*(?:[:=@]|at\b)?\s*"
_TP_RE    = re.compile(rf"\b(?:tp|take[\s_-]?profit|target(?:[\s_-]?profit)?){_LEVEL_SEP}{_NUM}", re.I)
_SL_RE    = re.compile(rf"\b(?:sl|stop[\s_-]?loss){_LEVEL_SEP}{_NUM}", re.I)
_PRICE_RE = re.compile(rf"(?:\b(?:price|entry)\s*[:=@]?|@)\s*{_NUM}", re.I)
_QTY_RE   = re.compile(rf"\b(?:qty|quantity|volume|lots?|size)\s*[:=]?\s*{_NUM}", re.I)
_SYM_KEY_RE = re.compile(r"\b(?:symbol|ticker)\s*[:=]\s*([A-Za-z0-9._:!]+)", re.I)
_SYM_UPPER_RE = re.compile(r"\b(?:[A-Z]+:)?([A-Z][A-Z0-9]{2,11}(?:\.[A-Z]+)?)\b")
_SYM_FX_RE = re.compile(r"\b([a-z]{3,6}(?:usdt|usd|eur|jpy|gbp|chf|aud|cad|nzd))\b", re.I)

_NOT_SYMBOLS = {
    "BUY", "SELL", "LONG", "SHORT", "CLOSE", "EXIT", "TAKE", "PROFIT", "STOP",
    "LOSS", "PRICE", "ENTRY", "QTY", "LOT", "LOTS", "SIZE", "VOLUME", "ALERT",
    "SIGNAL", "ORDER", "MARKET", "LIMIT", "NEW", "THE", "AND", "FOR", "TARGET",
}


@dataclass(frozen=True)
class Structured:
    fields: Dict[str, Any]


@dataclass(frozen=True)
class Heuristic:
    fields: Dict[str, Any]
    text: str


ParsedSignal = Union[Structured, Heuristic]


@dataclass(frozen=True)
class TradeSignal:
    symbol: str
    action: str                  # BUY | SELL | CLOSE | TAKE_PROFIT | STOP_LOSS
    side: str                    # LONG | SHORT
    price: float = 0.0
    quantity: float = 0.0
    sl: float = 0.0
    tp: float = 0.0
    pnl: float = 0.0
    strategy: str = DEFAULT_STRATEGY
    message: Optional[str] = None
    signal_id: Optional[str] = None
    extras: Dict[str, Any] = field(default_factory=dict, compare=False)

    @property
    def command_type(self) -> str:
        """Broker-side verb: buy / sell / close (TP & SL hits close)."""
        if self.action == "BUY":
            return "buy"
        if self.action == "SELL":
            return "sell"
        return "close"

    @property
    def route_action(self) -> str:
        """Upper-case verb matched against a route's allowed signal types."""
        return self.command_type.upper()


# ───── keyword helpers ────────────────────────────────────────────────
def infer_action(text: Any) -> Optional[str]:
    s = str(text or "")
    for action, pattern in _ACTION_PATTERNS:
        if pattern.search(s):
            return action
    return None


def leading_action(text: str) -> Optional[str]:
    """
    Free text: the earliest keyword is the verb.  "BUY XAUUSD stop loss
    at 2640" is an entry that names its stop, "stop loss hit XAUUSD" an exit.
    """
    best: Optional[Tuple[int, int, str]] = None
    for rank, (action, pattern) in enumerate(_ACTION_PATTERNS):
        m = pattern.search(text)
        if m and (best is None or (m.start(), rank) < best[:2]):
            best = (m.start(), rank, action)
    return best[2] if best else None


def _json_number(raw: str) -> Any:
    # 1e999, NaN and Infinity stay literal text so snapshots remain valid JSON
    val = float(raw)
    return val if math.isfinite(val) else raw


def _first(fields: Mapping[str, Any], *keys: str) -> Any:
    for k in keys:
        val = fields.get(k)
        if val is not None and val != "":
            return val
    return None


# ───── payload → variant ──────────────────────────────────────────────
def parse_payload(body: Union[bytes, str, None]) -> ParsedSignal:
    text = body.decode("utf-8", errors="replace") if isinstance(body, bytes) else (body or "")
    text = text.strip()
    if not text:
        raise MalformedPayload("empty request body")

    try:
        data = json.loads(text, parse_float=_json_number, parse_constant=_json_number)
    except ValueError:
        data = None

    if isinstance(data, dict):
        return Structured({str(k).lower(): v for k, v in data.items()})
    if isinstance(data, str):            # a JSON-encoded string is still prose
        text = data.strip()
    return _heuristic(text)


def _heuristic(text: str) -> Heuristic:
    fields: Dict[str, Any] = {}
    rest = text

    # levels first, so "tp 2660" does not read as a take-profit action
    for key, rx in (("tp", _TP_RE), ("sl", _SL_RE)):
        m = rx.search(rest)
        if m:
            fields[key] = m.group(1)
            rest = rest[: m.start()] + " " + rest[m.end():]
    for key, rx in (("price", _PRICE_RE), ("quantity", _QTY_RE)):
        m = rx.search(rest)
        if m:
            fields[key] = m.group(1)

    m = _SYM_KEY_RE.search(rest)
    symbol = m.group(1) if m else None
    if symbol is None:
        symbol = next((c for c in _SYM_UPPER_RE.findall(rest) if c not in _NOT_SYMBOLS), None)
    if symbol is None:
        m = _SYM_FX_RE.search(rest)
        symbol = m.group(1) if m else None

    action = leading_action(rest)
    if action is None and symbol is None:
        raise MalformedPayload(f"no action or symbol found in text: {text[:100]!r}")

    if symbol:
        fields["symbol"] = symbol
    if action:
        fields["action"] = action
        if _SHORT_RE.search(rest):
            fields["side"] = "short"
    fields["message"] = text[:MAX_NOTE_LEN]
    return Heuristic(fields, text)


# ───── variant → canonical signal ─────────────────────────────────────
def to_trade_signal(parsed: ParsedSignal) -> TradeSignal:
    f = parsed.fields
    action_src = _first(f, "action", "order_action", "signal", "side")
    side_src = _first(f, "side", "action", "order_action")
    symbol = str(_first(f, "ticker", "symbol") or "UNKNOWN").strip().upper()
    message = _first(f, "message", "comment")
    signal_id = _first(f, "id", "signal_id", "idempotency_key")

    return TradeSignal(
        symbol=symbol or "UNKNOWN",
        action=infer_action(action_src) or "BUY",
        side="SHORT" if _SHORT_RE.search(str(side_src or "")) else "LONG",
        price=to_float(_first(f, "price", "close", "entry", "exit")),
        quantity=to_float(_first(f, "quantity", "qty", "volume", "lots", "lot", "lotsize")),
        sl=to_float(_first(f, "sl", "stop_loss", "stoploss")),
        tp=to_float(_first(f, "tp", "take_profit", "takeprofit")),
        pnl=to_float(_first(f, "pnl", "profit")),
        strategy=str(_first(f, "strategy") or DEFAULT_STRATEGY),
        message=str(message)[:MAX_NOTE_LEN] if message is not None else None,
        signal_id=str(signal_id) if signal_id is not None else None,
        extras={k: f[k] for k in ("exchange", "interval", "time") if k in f},
    )


def payload_snapshot(parsed: ParsedSignal) -> Dict[str, Any]:
    """What the DeliveryLog keeps of the request body."""
    if isinstance(parsed, Structured):
        return dict(parsed.fields)
    return {"raw": parsed.text[:MAX_NOTE_LEN]}
