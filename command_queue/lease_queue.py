"""
lease_queue.py – hand pending commands to polling clients
---------------------------------------------------------
poll(conn) :
  1. reap expired leases of that connection
  2. take the oldest `batch_size` pending ids (FIFO by creation seq)
  3. CAS pending → processing, leased_at = now
  4. stamp connection liveness
Only rows the CAS actually moved are returned, so two concurrent polls
can never both receive the same command.
"""

from __future__ import annotations

from typing import Any, Dict, List, Optional

from command_store.models import Command
from command_store.store import CommandStore
from shared.constants import STATUS_PENDING, STATUS_PROCESSING
from shared.errors import UnknownConnection
from shared.logging import get_logger

from .reaper import StaleLeaseReaper

log = get_logger("command_queue.lease")


class LeaseQueue:
    def __init__(
        self,
        store: CommandStore,
        reaper: StaleLeaseReaper,
        max_batch_size: int = 10,
    ) -> None:
        self.store = store
        self.reaper = reaper
        self.max_batch_size = max(1, max_batch_size)

    def clamp(self, batch_size: Optional[int]) -> int:
        if batch_size is None:
            return self.max_batch_size
        return min(max(1, int(batch_size)), self.max_batch_size)

    def poll(self, connection_id: str, batch_size: Optional[int] = None) -> List[Command]:
        if self.store.get_connection(connection_id) is None:
            raise UnknownConnection(f"unknown connection {connection_id!r}")

        self.reaper.reap(connection_id)

        ids = self.store.pending_ids(connection_id, self.clamp(batch_size))
        leased: List[Command] = []
        if ids:
            leased = self.store.transition(
                ids, STATUS_PENDING, STATUS_PROCESSING,
                fields={"leased_at": self.store.now()},
            )
        self.store.touch_connection(connection_id)

        if leased:
            log.info("leased %d command(s)", len(leased),
                     extra={"connection_id": connection_id})
        return leased

    def poll_instructions(
        self, connection_id: str, batch_size: Optional[int] = None
    ) -> List[Dict[str, Any]]:
        return [c.to_instruction() for c in self.poll(connection_id, batch_size)]
