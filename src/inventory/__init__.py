"""
Inventory — servers, plugins and reconciliation

Provides:
- Records (Server, Plugin, PluginStatus)
- State Store (StateStore contract, SQLiteStateStore reference impl)
- Reconciliation (merge_plugins, ReconciliationService)
"""

from .models import Server, Plugin, PluginStatus
from .store import StateStore, SQLiteStateStore
from .reconcile import ReconciliationService, merge_plugins

__all__ = [
    'Server', 'Plugin', 'PluginStatus',
    'StateStore', 'SQLiteStateStore',
    'ReconciliationService', 'merge_plugins',
]
