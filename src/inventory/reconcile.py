#!/usr/bin/env python3
"""
Reconciliation Service — Remote Plugin State vs Persisted Records

The remote listing is authoritative for which plugins exist and their
status/version. User-set configuration lives only in the state store and
is carried forward for every plugin that is still present remotely.

Merge rule:
- plugin listed remotely  -> remote name/status/version + previous configuration
- previous configuration not a mapping -> {}
- plugin persisted but not listed remotely -> dropped
- plugin outside the supported set (core tool plugins) -> not tracked
"""

import logging
from typing import Any, Dict, Iterable, List, Mapping, Union

from remote.gateway import RemoteCommandGateway
from remote.operations import SUPPORTED_PLUGINS
from remote.ssh_session import SSHSession, SSHSessionProvider

from .models import Plugin, PluginStatus
from .store import StateStore

logger = logging.getLogger(__name__)

PluginLike = Union[Plugin, Mapping[str, Any]]


def _status_value(raw: Any) -> str:
    if isinstance(raw, str):
        return (
            PluginStatus.ENABLED.value if raw.lower() in ("enabled", "true")
            else PluginStatus.DISABLED.value
        )
    return PluginStatus.ENABLED.value if raw else PluginStatus.DISABLED.value


def _as_mapping(plugin: PluginLike) -> Mapping[str, Any]:
    return plugin.to_dict() if isinstance(plugin, Plugin) else plugin


def merge_plugins(previous: Iterable[PluginLike],
                  listing: Iterable[Mapping[str, Any]]) -> List[Plugin]:
    """Merge a remote listing with previously persisted plugins."""
    previous_by_name: Dict[str, Mapping[str, Any]] = {}
    for item in previous or []:
        data = _as_mapping(item)
        if isinstance(data, Mapping) and data.get("name"):
            previous_by_name.setdefault(data["name"], data)

    merged: List[Plugin] = []
    seen = set()
    for remote in listing:
        name = remote.get("name")
        if name not in SUPPORTED_PLUGINS or name in seen:
            continue
        seen.add(name)

        configuration = previous_by_name.get(name, {}).get("configuration")
        merged.append(Plugin(
            name=name,
            status=_status_value(remote.get("status")),
            version=remote.get("version"),
            configuration=dict(configuration) if isinstance(configuration, Mapping) else {},
        ))

    dropped = set(previous_by_name) - seen
    if dropped:
        logger.info(f"Dropping plugins no longer present remotely: {sorted(dropped)}")
    return merged


class ReconciliationService:
    """Lists remote plugins and writes the merged list back to the state store."""

    def __init__(self, store: StateStore, sessions: SSHSessionProvider,
                 gateway: RemoteCommandGateway):
        self.store = store
        self.sessions = sessions
        self.gateway = gateway

    def reconcile_snapshot(self, session: SSHSession,
                           previous: Iterable[PluginLike]) -> List[Plugin]:
        """Merge against a frozen snapshot over an already open session."""
        listing = self.gateway.list_plugins(session)
        return merge_plugins(previous, listing)

    def reconcile(self, server_id: str) -> List[Plugin]:
        """
        Synchronous reconcile used by "sync" actions.

        Raises SSHConnectionError / RemoteCommandError / PersistenceError;
        the caller decides how to surface them.
        """
        server = self.store.get_server(server_id)
        with self.sessions.session(server.connection_params()) as session:
            merged = self.reconcile_snapshot(session, server.plugins)
        self.store.replace_plugins(server_id, merged)
        logger.info(f"Reconciled server {server_id}: {[p.name for p in merged]}")
        return merged
