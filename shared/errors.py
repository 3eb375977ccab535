"""
errors.py – bridge error taxonomy
=================================

Every error carries the HTTP status the API answers with and, for
ingestion failures, the `request_id` of the DeliveryLog row it was
recorded under.

Not exceptions on purpose:
  duplicate deliveries   → absorbed by the idempotent insert / no-op ack
  broker execution errors → stored on the Command as data (status=failed)
"""

from __future__ import annotations

from typing import Optional


class BridgeError(Exception):
    status_code = 500
    code = "internal_error"

    def __init__(self, message: str = "", *, request_id: Optional[str] = None) -> None:
        super().__init__(message or self.code)
        self.request_id = request_id


# ───── client errors (never retried) ──────────────────────────────────
class InvalidTarget(BridgeError):
    status_code = 400
    code = "invalid_target"


class MalformedPayload(BridgeError):
    """Raised only when even the free-text fallback found nothing usable."""
    status_code = 400
    code = "malformed_payload"


class TargetNotFound(BridgeError):
    status_code = 404
    code = "target_not_found"


class SignalRejected(BridgeError):
    """The route exists but does not accept this signal type."""
    status_code = 422
    code = "signal_rejected"


class UnknownCommand(BridgeError):
    status_code = 404
    code = "unknown_command"


class UnknownConnection(BridgeError):
    status_code = 404
    code = "unknown_connection"


# ───── store / server side ────────────────────────────────────────────
class TransientStoreFailure(BridgeError):
    status_code = 503
    code = "store_unavailable"


class IngestionFailed(BridgeError):
    status_code = 500
    code = "ingestion_failed"


__all__ = [
    "BridgeError",
    "InvalidTarget",
    "MalformedPayload",
    "TargetNotFound",
    "SignalRejected",
    "UnknownCommand",
    "UnknownConnection",
    "TransientStoreFailure",
    "IngestionFailed",
]
