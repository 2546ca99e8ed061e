#!/usr/bin/env python3
"""
State Store — Canonical Server / Plugin Records

The orchestration core reads server and credential state here before
building a job payload, and writes plugin lists, service destruction
markers and agent flags back after a job completes.

StateStore is the contract the collaborator layer implements.
SQLiteStateStore is the reference implementation used by the worker
and the tests.

Tables:
- servers:             one row per server, plugin list as a JSON column
- destroyed_services:  append-only markers for removed remote services
"""

import json
import logging
import os
import sqlite3
import threading
import time
from abc import ABC, abstractmethod
from typing import Optional, Dict, Any, List

from core.errors import PersistenceError, ServerNotFound

from .models import Plugin, Server

logger = logging.getLogger(__name__)

DEFAULT_DB_PATH = os.path.expanduser("~/.orchestrator/state.db")

SCHEMA = """
CREATE TABLE IF NOT EXISTS servers (
    id TEXT PRIMARY KEY,
    name TEXT DEFAULT '',
    ip TEXT NOT NULL,
    port INTEGER DEFAULT 22,
    username TEXT NOT NULL,
    private_key TEXT NOT NULL,
    plugins TEXT DEFAULT '[]',     -- JSON list of plugin records
    monitoring_agent TEXT DEFAULT NULL,
    updated_at REAL NOT NULL
);

CREATE TABLE IF NOT EXISTS destroyed_services (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    server_id TEXT NOT NULL,
    name TEXT NOT NULL,
    type TEXT NOT NULL,
    destroyed_at REAL NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_destroyed_server ON destroyed_services(server_id);
"""


class StateStore(ABC):
    """Persistence contract the orchestration core depends on."""

    @abstractmethod
    def get_server(self, server_id: str) -> Server:
        """Return the server or raise ServerNotFound."""

    @abstractmethod
    def save_server(self, server: Server) -> None:
        """Create or overwrite a server record."""

    @abstractmethod
    def replace_plugins(self, server_id: str, plugins: List[Plugin]) -> List[Plugin]:
        """Atomically replace the server's entire plugin list."""

    @abstractmethod
    def update_plugin_configuration(self, server_id: str, plugin_name: str,
                                    configuration: Dict[str, Any]) -> bool:
        """Merge keys into one plugin's configuration. False if the plugin is absent."""

    @abstractmethod
    def set_monitoring_agent(self, server_id: str, version: Optional[str]) -> None:
        """Record the installed monitoring agent version, or None once removed."""

    @abstractmethod
    def record_service_destroyed(self, server_id: str, name: str, service_type: str) -> int:
        """Append a destruction marker, returning its id."""

    @abstractmethod
    def list_destroyed_services(self, server_id: str) -> List[Dict[str, Any]]:
        """Destruction markers for a server, newest first."""


class SQLiteStateStore(StateStore):
    """SQLite-backed state store. Safe to share across worker threads."""

    def __init__(self, db_path: str = None):
        self.db_path = str(db_path or os.environ.get("ORCH_STATE_DB_PATH", DEFAULT_DB_PATH))

        db_dir = os.path.dirname(self.db_path)
        if db_dir:
            os.makedirs(db_dir, exist_ok=True)

        self._lock = threading.Lock()
        self._conn = sqlite3.connect(self.db_path, check_same_thread=False, timeout=10.0)
        self._conn.row_factory = sqlite3.Row
        self._conn.execute("PRAGMA journal_mode=WAL")
        self._conn.executescript(SCHEMA)
        self._conn.commit()

        logger.info(f"SQLiteStateStore initialized (db={self.db_path})")

    def close(self):
        if self._conn:
            self._conn.close()
            self._conn = None

    # ── Servers ──────────────────────────────────────────────────

    def get_server(self, server_id: str) -> Server:
        try:
            with self._lock:
                row = self._conn.execute(
                    "SELECT * FROM servers WHERE id = ?", (server_id,)
                ).fetchone()
        except sqlite3.Error as e:
            raise PersistenceError(f"Failed to read server {server_id}: {e}") from e
        if not row:
            raise ServerNotFound(server_id)
        return self._row_to_server(row)

    def save_server(self, server: Server) -> None:
        plugins_json = json.dumps([p.to_dict() for p in server.plugins])
        try:
            with self._lock, self._conn:
                self._conn.execute(
                    """INSERT INTO servers
                       (id, name, ip, port, username, private_key, plugins,
                        monitoring_agent, updated_at)
                       VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                       ON CONFLICT(id) DO UPDATE SET
                           name = excluded.name,
                           ip = excluded.ip,
                           port = excluded.port,
                           username = excluded.username,
                           private_key = excluded.private_key,
                           plugins = excluded.plugins,
                           monitoring_agent = excluded.monitoring_agent,
                           updated_at = excluded.updated_at""",
                    (server.id, server.name, server.ip, server.port, server.username,
                     server.private_key, plugins_json, server.monitoring_agent, time.time()),
                )
        except sqlite3.Error as e:
            raise PersistenceError(f"Failed to save server {server.id}: {e}") from e

    # ── Plugins ──────────────────────────────────────────────────

    def replace_plugins(self, server_id: str, plugins: List[Plugin]) -> List[Plugin]:
        plugins_json = json.dumps([p.to_dict() for p in plugins])
        try:
            with self._lock, self._conn:
                cursor = self._conn.execute(
                    "UPDATE servers SET plugins = ?, updated_at = ? WHERE id = ?",
                    (plugins_json, time.time(), server_id),
                )
        except sqlite3.Error as e:
            raise PersistenceError(f"Failed to write plugins for {server_id}: {e}") from e
        if cursor.rowcount == 0:
            raise ServerNotFound(server_id)
        logger.info(f"Plugin list for server {server_id} replaced ({len(plugins)} plugins)")
        return list(plugins)

    def update_plugin_configuration(self, server_id: str, plugin_name: str,
                                    configuration: Dict[str, Any]) -> bool:
        try:
            with self._lock, self._conn:
                row = self._conn.execute(
                    "SELECT plugins FROM servers WHERE id = ?", (server_id,)
                ).fetchone()
                if not row:
                    raise ServerNotFound(server_id)
                plugins = [Plugin.from_dict(p) for p in self._load_json(row["plugins"], [])]
                target = next((p for p in plugins if p.name == plugin_name), None)
                if target is None:
                    logger.warning(
                        f"Plugin {plugin_name} not tracked on server {server_id}; "
                        f"configuration not stored"
                    )
                    return False
                target.configuration = {**target.configuration, **configuration}
                self._conn.execute(
                    "UPDATE servers SET plugins = ?, updated_at = ? WHERE id = ?",
                    (json.dumps([p.to_dict() for p in plugins]), time.time(), server_id),
                )
        except sqlite3.Error as e:
            raise PersistenceError(
                f"Failed to update {plugin_name} configuration on {server_id}: {e}"
            ) from e
        return True

    # ── Monitoring agent ─────────────────────────────────────────

    def set_monitoring_agent(self, server_id: str, version: Optional[str]) -> None:
        try:
            with self._lock, self._conn:
                cursor = self._conn.execute(
                    "UPDATE servers SET monitoring_agent = ?, updated_at = ? WHERE id = ?",
                    (version, time.time(), server_id),
                )
        except sqlite3.Error as e:
            raise PersistenceError(f"Failed to update monitoring agent on {server_id}: {e}") from e
        if cursor.rowcount == 0:
            raise ServerNotFound(server_id)

    # ── Destroyed services ───────────────────────────────────────

    def record_service_destroyed(self, server_id: str, name: str, service_type: str) -> int:
        try:
            with self._lock, self._conn:
                cursor = self._conn.execute(
                    """INSERT INTO destroyed_services (server_id, name, type, destroyed_at)
                       VALUES (?, ?, ?, ?)""",
                    (server_id, name, service_type, time.time()),
                )
        except sqlite3.Error as e:
            raise PersistenceError(f"Failed to record destroyed service {name}: {e}") from e
        return cursor.lastrowid

    def list_destroyed_services(self, server_id: str) -> List[Dict[str, Any]]:
        try:
            with self._lock:
                rows = self._conn.execute(
                    """SELECT * FROM destroyed_services WHERE server_id = ?
                       ORDER BY destroyed_at DESC, id DESC""",
                    (server_id,),
                ).fetchall()
        except sqlite3.Error as e:
            raise PersistenceError(f"Failed to read destroyed services: {e}") from e
        return [dict(r) for r in rows]

    # ── Helpers ──────────────────────────────────────────────────

    @staticmethod
    def _load_json(raw: Optional[str], default: Any) -> Any:
        if not raw:
            return default
        try:
            return json.loads(raw)
        except (json.JSONDecodeError, TypeError):
            logger.warning("Discarding malformed JSON column value")
            return default

    def _row_to_server(self, row) -> Server:
        plugins = [
            Plugin.from_dict(p) for p in self._load_json(row["plugins"], [])
            if isinstance(p, dict) and p.get("name")
        ]
        return Server(
            id=row["id"],
            name=row["name"] or "",
            ip=row["ip"],
            port=row["port"] or 22,
            username=row["username"],
            private_key=row["private_key"],
            plugins=plugins,
            monitoring_agent=row["monitoring_agent"],
        )

    def __repr__(self) -> str:
        return f"SQLiteStateStore({self.db_path})"
