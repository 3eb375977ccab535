#!/usr/bin/env python3
"""
poller.py – pull commands from the bridge, execute on MT5, report back
----------------------------------------------------------------------
Environment
-----------
BRIDGE_URL           http://host:port            (default: http://localhost:8000)
CONNECTION_ID        id registered on the bridge (required)
CLIENT_POLL_SEC      seconds between polls       (default: 2)
CLIENT_HTTP_TIMEOUT  per-request timeout, s      (default: 10)
DRY_RUN              1 = never touch the broker  (default: 0)

A command the client fails to report stays leased on the bridge and is
handed out again once its lease expires.
"""

from __future__ import annotations

import time
from typing import Any, Dict, List, Optional

import requests

from shared.config import env
from shared.logging import get_logger

from .mt5_client import MT5Client

# ───── CONFIG ────────────────────────────────────────────────────────
BRIDGE_URL   = env("BRIDGE_URL", "http://localhost:8000")
CONN_ID      = env("CONNECTION_ID", "")
POLL_SEC     = env("CLIENT_POLL_SEC", 2.0, float)
HTTP_TIMEOUT = env("CLIENT_HTTP_TIMEOUT", 10.0, float)

log = get_logger("bridge_client")


class BridgePoller:
    def __init__(
        self,
        mt5: MT5Client,
        *,
        base_url: str = BRIDGE_URL,
        connection_id: str = CONN_ID,
        timeout: float = HTTP_TIMEOUT,
        session: Optional[requests.Session] = None,
    ) -> None:
        self.mt5 = mt5
        self.base_url = base_url.rstrip("/")
        self.connection_id = connection_id
        self.timeout = timeout
        self.http = session or requests.Session()

    def fetch(self) -> List[Dict[str, Any]]:
        r = self.http.get(f"{self.base_url}/commands",
                          params={"connection_id": self.connection_id},
                          timeout=self.timeout)
        r.raise_for_status()
        return r.json().get("commands", [])

    def report(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        r = self.http.post(f"{self.base_url}/commands/result", json=payload,
                           timeout=self.timeout)
        r.raise_for_status()
        return r.json()

    def run_once(self) -> int:
        """One round: lease → execute → report.  Returns commands reported."""
        reported = 0
        for instr in self.fetch():
            result = self.mt5.execute(instr)
            try:
                ack = self.report(result.to_payload(instr["id"]))
            except requests.RequestException as exc:
                # lease expiry on the bridge re-issues the command
                log.error("result report failed – %s", exc, extra={"command_id": instr["id"]})
                continue
            reported += 1
            log.info("reported code=%s → %s", result.code, ack.get("status"),
                     extra={"command_id": instr["id"]})
        return reported


def main() -> None:
    if not CONN_ID:
        log.error("CONNECTION_ID not set – client aborting")
        return
    mt5 = MT5Client()
    if not mt5.connect():
        log.error("Cannot connect to MT5 – client aborting")
        return

    poller = BridgePoller(mt5)
    log.info("bridge_client %s polling %s every %.1f s", CONN_ID, BRIDGE_URL, POLL_SEC)
    while True:
        try:
            poller.run_once()
        except Exception as exc:  # noqa: BLE001
            log.error("poll error – %s", exc)
        time.sleep(POLL_SEC)


if __name__ == "__main__":
    main()
