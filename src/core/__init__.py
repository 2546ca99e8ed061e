"""
Shared building blocks for the orchestration core.

Provides:
- Error taxonomy (OrchestrationError and subclasses)
- Configuration loading (OrchestratorConfig)
"""

from .errors import (
    OrchestrationError, ValidationError, SSHConnectionError,
    RemoteCommandError, PersistenceError, ServerNotFound,
)
from .config import OrchestratorConfig, load_config

__all__ = [
    'OrchestrationError', 'ValidationError', 'SSHConnectionError',
    'RemoteCommandError', 'PersistenceError', 'ServerNotFound',
    'OrchestratorConfig', 'load_config',
]
