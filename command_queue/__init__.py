"""
command_queue
=============

Lease-based hand-off of pending Commands to polling execution clients.

• lease_queue.py – LeaseQueue.poll(): FIFO batch, pending → processing
• reaper.py      – StaleLeaseReaper: expired processing → pending,
                   run at the start of every poll
"""
