"""
reaper.py – reclaim leases that were never completed
"""

from __future__ import annotations

from typing import List

from command_store.models import Command
from command_store.store import CommandStore
from shared.constants import STATUS_PENDING, STATUS_PROCESSING
from shared.logging import get_logger

log = get_logger("command_queue.reaper")


class StaleLeaseReaper:
    def __init__(self, store: CommandStore, lease_timeout_sec: float) -> None:
        self.store = store
        self.lease_timeout_sec = lease_timeout_sec

    def reap(self, connection_id: str) -> List[Command]:
        """
        processing → pending for every lease older than the timeout.
        The cutoff is re-checked inside the transaction, so a lease renewed
        or finalised in between is left alone.
        """
        cutoff = self.store.now() - self.lease_timeout_sec
        stale = self.store.leased_before(connection_id, cutoff)
        if not stale:
            return []

        def _expired(cmd: Command) -> bool:
            return cmd.leased_at is not None and cmd.leased_at < cutoff

        reaped = self.store.transition(
            stale, STATUS_PROCESSING, STATUS_PENDING,
            fields={"leased_at": None}, guard=_expired,
        )
        for cmd in reaped:
            log.warning("lease expired – command %s back to pending (leased %d×)",
                        cmd.id, cmd.lease_count,
                        extra={"connection_id": connection_id, "command_id": cmd.id})
        return reaped
