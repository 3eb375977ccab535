"""
signal_gateway
==============

Turns chart-alert webhooks into pending Commands.

Modules
-------
parser.py   – Structured | Heuristic payload variants → TradeSignal
gateway.py  – SignalGateway.ingest(): resolve, normalise, idempotent
              insert with retry, one DeliveryLog row per request
"""
