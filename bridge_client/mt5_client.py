"""
mt5_client.py – light wrapper around MetaTrader5-python
-------------------------------------------------------
Turns one bridge instruction (`buy` / `sell` / `close`) into MT5
`order_send` calls and hands back an `ExecutionResult` the poller can
report.  With DRY_RUN=1 no broker is touched and every instruction
"fills" with TRADE_RETCODE_DONE; the MetaTrader5 package is only
imported when a real terminal is used.
"""
from __future__ import annotations

import os
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from shared.logging import get_logger

log = get_logger("bridge_client.mt5")

TRADE_RETCODE_DONE = 10009
TRADE_RETCODE_POSITION_CLOSED = 10036
RETCODE_NO_RESULT = -1


@dataclass
class ExecutionResult:
    code: int
    ticket: Optional[int] = None
    price: Optional[float] = None
    volume: Optional[float] = None
    message: str = ""

    def to_payload(self, command_id: str) -> Dict[str, Any]:
        return {
            "command_id": command_id,
            "ticket": self.ticket,
            "price": self.price,
            "volume": self.volume,
            "code": self.code,
            "message": self.message,
        }


class MT5Client:
    """
    Thin OO façade so the poller doesn't depend directly on MetaTrader5 API.
    """

    def __init__(self, dry_run: Optional[bool] = None) -> None:
        self.connected = False
        self.login     = int(os.getenv("MT5_LOGIN", "0"))
        self.password  = os.getenv("MT5_PASSWORD", "")
        self.server    = os.getenv("MT5_SERVER", "")
        self.path      = os.getenv("MT5_PATH", "")    # optional terminal.exe
        self.magic     = int(os.getenv("MT5_MAGIC", "987654"))
        self.dry_run   = (bool(int(os.getenv("DRY_RUN", "0")))
                          if dry_run is None else dry_run)
        self._mt5: Any = None

    # ───── connection ──────────────────────────────────────────────
    def connect(self) -> bool:
        if self.dry_run:
            log.warning("DRY-RUN mode – no broker actions will be sent")
            self.connected = True
            return True

        try:
            import MetaTrader5 as mt5
        except ModuleNotFoundError:
            log.error("MetaTrader5 package not installed – set DRY_RUN=1 or "
                      "install the 'mt5' extra on Windows")
            return False

        if not mt5.initialize(path=self.path or None, login=self.login,
                              password=self.password, server=self.server):
            log.error("MT5 initialize() failed – %s", mt5.last_error())
            return False
        acc = mt5.account_info()
        log.info("Connected to MT5 account %s (balance %.2f)", acc.login, acc.balance)
        self._mt5 = mt5
        self.connected = True
        return True

    # ───── instruction dispatch ───────────────────────────────────
    def execute(self, instr: Dict[str, Any]) -> ExecutionResult:
        kind = str(instr.get("type", "")).lower()
        symbol = instr.get("symbol", "")
        volume = float(instr.get("volume") or 0)
        log.info("%s %s %.2f  sl=%s tp=%s  [%s]", kind.upper(), symbol, volume,
                 instr.get("sl"), instr.get("tp"), instr.get("tag"),
                 extra={"command_id": instr.get("id")})

        if kind not in ("buy", "sell", "close"):
            return ExecutionResult(code=RETCODE_NO_RESULT,
                                   message=f"unsupported command type {kind!r}")
        if self.dry_run:
            return ExecutionResult(code=TRADE_RETCODE_DONE, ticket=-1,
                                   price=instr.get("price"), volume=volume,
                                   message="dry-run")
        if kind == "close":
            return self.close_symbol(symbol, instr)
        return self.open_trade(kind, instr)

    # ───── trading actions ────────────────────────────────────────
    def open_trade(self, kind: str, instr: Dict[str, Any]) -> ExecutionResult:
        mt5 = self._mt5
        symbol = instr["symbol"]
        order_type = mt5.ORDER_TYPE_BUY if kind == "buy" else mt5.ORDER_TYPE_SELL
        tick = mt5.symbol_info_tick(symbol)
        if tick is None:
            return ExecutionResult(code=RETCODE_NO_RESULT,
                                   message=f"no tick for {symbol}: {mt5.last_error()}")
        req = {
            "action": mt5.TRADE_ACTION_DEAL,
            "symbol": symbol,
            "volume": float(instr.get("volume") or 0),
            "type":   order_type,
            "price":  tick.ask if order_type == mt5.ORDER_TYPE_BUY else tick.bid,
            "sl":     float(instr.get("sl") or 0),
            "tp":     float(instr.get("tp") or 0),
            "deviation": int(instr.get("deviation") or 20),
            "magic":     self.magic,
            "comment":   instr.get("tag", ""),
            "type_time": mt5.ORDER_TIME_GTC,
            "type_filling": mt5.ORDER_FILLING_FOK,
        }
        return self._send(req)

    def close_symbol(self, symbol: str, instr: Dict[str, Any]) -> ExecutionResult:
        """Close every position this client opened on `symbol`."""
        mt5 = self._mt5
        positions: List[Any] = [p for p in (mt5.positions_get(symbol=symbol) or [])
                                if p.magic == self.magic]
        if not positions:
            return ExecutionResult(code=TRADE_RETCODE_POSITION_CLOSED,
                                   message=f"no open position on {symbol}")
        last = ExecutionResult(code=RETCODE_NO_RESULT)
        for pos in positions:
            close_type = (mt5.ORDER_TYPE_SELL if pos.type == mt5.ORDER_TYPE_BUY
                          else mt5.ORDER_TYPE_BUY)
            tick = mt5.symbol_info_tick(symbol)
            req = {
                "action": mt5.TRADE_ACTION_DEAL,
                "position": pos.ticket,
                "symbol": symbol,
                "volume": pos.volume,
                "type": close_type,
                "price": tick.bid if close_type == mt5.ORDER_TYPE_SELL else tick.ask,
                "deviation": int(instr.get("deviation") or 20),
                "magic": self.magic,
                "comment": instr.get("tag", "auto-close"),
            }
            last = self._send(req)
            if last.code != TRADE_RETCODE_DONE:
                break
        return last

    def _send(self, req: Dict[str, Any]) -> ExecutionResult:
        mt5 = self._mt5
        res = mt5.order_send(req)
        if res is None:
            code, msg = mt5.last_error()
            log.error("order_send returned nothing – %s %s", code, msg)
            return ExecutionResult(code=RETCODE_NO_RESULT, message=str(msg))
        if res.retcode != TRADE_RETCODE_DONE:
            log.error("order_send failed – %s", res)
        return ExecutionResult(code=res.retcode, ticket=res.order or None,
                               price=res.price, volume=res.volume, message=res.comment)
