"""
shared – tiny helpers imported by every bridge component
--------------------------------------------------------
Modules
-------
config.py         → loads `.env` once per process, `BridgeSettings`
logging.py        → consistent JSON/stdout logger
constants.py      → Redis key names, command statuses
redis_client.py   → lazy singleton Redis + client factory
errors.py         → error taxonomy (HTTP status per error)
utils.py          → retry/backoff, time + number helpers
"""
