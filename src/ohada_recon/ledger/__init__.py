"""Reconciliation balances and pending items."""

from .balances import ReconciliationLedger, compute_class_totals
from .pending_items import PendingItemTracker

__all__ = ["ReconciliationLedger", "PendingItemTracker", "compute_class_totals"]
