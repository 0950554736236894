"""Distributed coordination primitives.

Provides:
- Lease-based locks with token-checked release and extension
- Leader election for singleton workers, built on leases

Example:
    from concord.distributed import LockManager, leader_only

    locks = LockManager()
    lease = await locks.acquire("invoices", ttl_ms=5000)

    @leader_only("cleanup")
    async def cleanup_task():
        ...
"""

from concord.distributed.leader import (
    LeaderElection,
    leader_only,
)
from concord.distributed.lock import (
    Lease,
    LockManager,
    backoff_delay,
)

__all__ = [
    "Lease",
    "LockManager",
    "backoff_delay",
    "LeaderElection",
    "leader_only",
]
