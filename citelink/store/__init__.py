"""Persistence: the versioned tree document and the repair audit log."""

from citelink.store.repair_log import RepairLog
from citelink.store.tree_store import StaleTreeError, TreeStore

__all__ = ["RepairLog", "StaleTreeError", "TreeStore"]
