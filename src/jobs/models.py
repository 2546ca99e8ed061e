"""Job records owned by the job queue."""

from __future__ import annotations

import copy
import time
import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Optional

REDACTED = "[redacted]"


class JobKind(Enum):
    INSTALL_PLUGIN = "install-plugin"
    TOGGLE_PLUGIN = "toggle-plugin"
    DELETE_PLUGIN = "delete-plugin"
    CONFIGURE_LETSENCRYPT = "configure-letsencrypt"
    SYNC_PLUGINS = "sync-plugins"
    DESTROY_DATABASE = "destroy-database"
    UNINSTALL_MONITORING_AGENT = "uninstall-monitoring-agent"
    UNLOCK_GIT = "unlock-git"


class JobStatus(Enum):
    QUEUED = "queued"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    SUCCEEDED_WITH_SYNC_ERROR = "succeeded-with-sync-error"

    @property
    def terminal(self) -> bool:
        return self in TERMINAL_STATUSES


TERMINAL_STATUSES = frozenset({
    JobStatus.SUCCEEDED,
    JobStatus.FAILED,
    JobStatus.SUCCEEDED_WITH_SYNC_ERROR,
})


def new_job_id() -> str:
    return uuid.uuid4().hex


@dataclass
class Job:
    """
    A single unit of remote work.

    ``payload`` is frozen at submission: validated input, the SSH
    connection snapshot and any prior state the handler needs.
    """
    kind: str
    server_id: str
    payload: Dict[str, Any]
    id: str = field(default_factory=new_job_id)
    status: str = JobStatus.QUEUED.value
    created_at: float = field(default_factory=time.time)
    started_at: Optional[float] = None
    completed_at: Optional[float] = None
    error: Optional[Dict[str, Any]] = None
    result: Optional[Any] = None
    owner: Optional[str] = None
    heartbeat_at: Optional[float] = None

    @property
    def input(self) -> Dict[str, Any]:
        return self.payload.get("input", {})

    @property
    def ssh(self) -> Dict[str, Any]:
        return self.payload.get("ssh", {})

    @property
    def previous_plugins(self):
        return self.payload.get("server", {}).get("previous_plugins", [])

    @property
    def terminal(self) -> bool:
        return JobStatus(self.status).terminal

    def redacted_payload(self) -> Dict[str, Any]:
        payload = copy.deepcopy(self.payload)
        if "private_key" in payload.get("ssh", {}):
            payload["ssh"]["private_key"] = REDACTED
        return payload

    def to_status(self) -> Dict[str, Any]:
        """Externally readable view. Never contains key material."""
        status = {
            "id": self.id,
            "kind": self.kind,
            "server_id": self.server_id,
            "status": self.status,
            "created_at": self.created_at,
            "started_at": self.started_at,
            "completed_at": self.completed_at,
        }
        if self.error is not None:
            status["error"] = self.error
        if self.result is not None:
            status["result"] = self.result
        return status


@dataclass(frozen=True)
class JobHandle:
    id: str
