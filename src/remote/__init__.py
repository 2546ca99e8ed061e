"""
Remote execution layer

Provides:
- SSH Session Provider (SSHSessionProvider) — scoped SSH sessions
- Remote Operations (ListPlugins, InstallPlugin, ...) — command + parser per operation
- Remote Command Gateway (RemoteCommandGateway) — runs operations, maps failures
"""

from .ssh_session import SSHSessionProvider, SSHSession, ConnectionParams, ExecResult
from .operations import (
    RemoteOperation, ListPlugins, InstallPlugin, TogglePlugin, DeletePlugin,
    ConfigureLetsencrypt, DestroyDatabase, UninstallMonitoringAgent, UnlockGit,
    SUPPORTED_PLUGINS, DATABASE_TYPES,
)
from .gateway import RemoteCommandGateway

__all__ = [
    'SSHSessionProvider', 'SSHSession', 'ConnectionParams', 'ExecResult',
    'RemoteOperation', 'ListPlugins', 'InstallPlugin', 'TogglePlugin', 'DeletePlugin',
    'ConfigureLetsencrypt', 'DestroyDatabase', 'UninstallMonitoringAgent', 'UnlockGit',
    'SUPPORTED_PLUGINS', 'DATABASE_TYPES',
    'RemoteCommandGateway',
]
