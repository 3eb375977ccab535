"""
bridge_client
=============

Reference execution client for the signal bridge.

* Polls `GET /commands` for its connection id (it cannot accept inbound
  connections, so it pulls).
* Executes each instruction on a MetaTrader 5 terminal (or dry-run).
* Reports every outcome to `POST /commands/result`; anything it fails to
  report is re-issued by the bridge after the lease timeout.
"""
