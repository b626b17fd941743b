"""Sync tools package."""

from monzo_sync.tools.sync.reconciler import (
    EnrichResult,
    Reconciler,
    ReconcileResult,
    infer_pot_for_transaction,
)
from monzo_sync.tools.sync.sync_tool import (
    AccountReport,
    PassState,
    SyncReport,
    SyncScheduler,
    SyncWindow,
)

__all__ = [
    # Reconciler
    "Reconciler",
    "ReconcileResult",
    "EnrichResult",
    "infer_pot_for_transaction",
    # Scheduler
    "SyncScheduler",
    "SyncWindow",
    "SyncReport",
    "AccountReport",
    "PassState",
]
