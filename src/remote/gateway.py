#!/usr/bin/env python3
"""
Remote Command Gateway — Structured Operations over SSH

Runs one RemoteOperation per call against an open SSHSession and turns
the raw exit code / stdout / stderr into either the operation's parsed
payload or a RemoteCommandError carrying a short output excerpt.

Usage:
    gateway = RemoteCommandGateway()
    with provider.session(params) as session:
        plugins = gateway.list_plugins(session)
        gateway.install_plugin(session, "redis", "https://github.com/dokku/dokku-redis.git")
"""

import logging
from typing import Any, Dict, List

from core.errors import RemoteCommandError

from .operations import (
    RemoteOperation, ListPlugins, InstallPlugin, TogglePlugin, DeletePlugin,
    ConfigureLetsencrypt, DestroyDatabase, UninstallMonitoringAgent, UnlockGit,
)
from .ssh_session import SSHSession, ExecResult

logger = logging.getLogger(__name__)


class RemoteCommandGateway:
    """Executes remote operations and enforces the success/failure contract."""

    EXCERPT_CHARS = 500

    def __init__(self, excerpt_chars: int = None):
        self.excerpt_chars = excerpt_chars or self.EXCERPT_CHARS

    def _excerpt(self, result: ExecResult) -> str:
        text = result.stderr or result.stdout or ""
        if len(text) > self.excerpt_chars:
            return "..." + text[-self.excerpt_chars:]
        return text

    def execute(self, session: SSHSession, operation: RemoteOperation) -> Any:
        """
        Run a single operation.

        Raises:
            ValidationError: the operation's arguments are invalid.
            RemoteCommandError: non-zero exit, timeout, or a recognized
                error line in the output.
        """
        operation.validate()
        result = session.run(operation.command(), timeout=operation.timeout)

        if result.exit_code != 0:
            raise RemoteCommandError(
                operation=operation.name,
                exit_code=result.exit_code,
                stderr_excerpt=self._excerpt(result),
                message=(
                    f"{operation.name} timed out" if result.timed_out
                    else f"{operation.name} failed with exit code {result.exit_code}"
                ),
            )

        error_line = operation.find_error(result.stdout, result.stderr)
        if error_line:
            raise RemoteCommandError(
                operation=operation.name,
                exit_code=result.exit_code,
                stderr_excerpt=error_line[:self.excerpt_chars],
                message=f"{operation.name} reported an error",
            )

        payload = operation.parse(result.stdout, result.stderr)
        logger.info(f"{operation!r} succeeded on {session.host} ({result.duration_ms:.0f}ms)")
        return payload

    # ── Operation shortcuts ──────────────────────────────────────

    def list_plugins(self, session: SSHSession) -> List[Dict[str, Any]]:
        return self.execute(session, ListPlugins())

    def install_plugin(self, session: SSHSession, name: str, url: str,
                       timeout: int = None) -> Dict[str, Any]:
        return self.execute(session, InstallPlugin(name, url, timeout=timeout))

    def toggle_plugin(self, session: SSHSession, name: str, enabled: bool) -> Dict[str, Any]:
        return self.execute(session, TogglePlugin(name, enabled))

    def delete_plugin(self, session: SSHSession, name: str) -> Dict[str, Any]:
        return self.execute(session, DeletePlugin(name))

    def configure_letsencrypt(self, session: SSHSession, email: str,
                              auto_generate_ssl: bool = False) -> Dict[str, Any]:
        return self.execute(session, ConfigureLetsencrypt(email, auto_generate_ssl))

    def destroy_database(self, session: SSHSession, name: str, database_type: str) -> Dict[str, Any]:
        return self.execute(session, DestroyDatabase(name, database_type))

    def uninstall_monitoring_agent(self, session: SSHSession) -> Dict[str, Any]:
        return self.execute(session, UninstallMonitoringAgent())

    def unlock_git(self, session: SSHSession, app_name: str) -> Dict[str, Any]:
        return self.execute(session, UnlockGit(app_name))
