"""
bridge_api
==========

FastAPI application exposing the bridge over HTTP:

• webhook ingestion (`/signal`)
• lease polling + result reporting for execution clients (`/commands`)
• read-only views for ops dashboards (connections, deliveries, status)
"""
