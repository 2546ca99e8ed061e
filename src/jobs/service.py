#!/usr/bin/env python3
"""
Orchestration Service — Inbound Interface for the UI Layer

The only surface the dashboard/server-action layer talks to:

- submit_job(kind, server_id, payload) -> {"job_id"}
- get_job_status(job_id) -> {"status", "result" | "error", ...} | None
- list_jobs(server_id=None, status=None, limit=50)
- reconcile(server_id) -> {"plugins": [...]}   (synchronous "sync" path,
  run through the server's lane like any other job)

submit_job reads the server and its credential from the state store,
freezes them into the job payload, and hands the job to the queue. The
queue never goes back to the state store for connection details.
"""

import logging
from typing import Optional, Dict, Any, List

from core.errors import OrchestrationError, ServerNotFound, ValidationError, error_from_dict
from inventory.store import StateStore

from .models import JobKind, JobStatus
from .queue import JobQueue
from .validation import validate_job_input

logger = logging.getLogger(__name__)


class OrchestrationService:
    """Validates intents, snapshots server state, and exposes job status."""

    DEFAULT_RECONCILE_TIMEOUT = 600

    def __init__(self, state: StateStore, queue: JobQueue):
        self.state = state
        self.queue = queue

    def submit_job(self, kind: str, server_id: str, payload: Dict[str, Any] = None) -> Dict[str, str]:
        """
        Submit an intent for asynchronous execution.

        Raises ValidationError for a malformed payload, an unknown server
        or a server without an SSH key. Nothing is queued in that case.
        """
        job_input = validate_job_input(kind, payload or {})

        try:
            server = self.state.get_server(server_id)
        except ServerNotFound as e:
            raise ValidationError("Server not found", [f"unknown server id {server_id!r}"]) from e

        if not server.private_key:
            raise ValidationError("SSH key not found", [f"server {server_id!r} has no SSH key"])

        snapshot = {
            "input": job_input,
            "ssh": server.connection_params().to_dict(),
            "server": {
                "id": server.id,
                "previous_plugins": [p.to_dict() for p in server.plugins],
            },
        }
        handle = self.queue.submit(kind, server_id, snapshot)
        return {"job_id": handle.id}

    def get_job_status(self, job_id: str) -> Optional[Dict[str, Any]]:
        job = self.queue.get(job_id)
        return job.to_status() if job else None

    def list_jobs(self, server_id: str = None, status: str = None,
                  limit: int = 50) -> List[Dict[str, Any]]:
        return [
            job.to_status()
            for job in self.queue.jobs.list_jobs(server_id=server_id, status=status, limit=limit)
        ]

    def reconcile(self, server_id: str, timeout: float = None) -> Dict[str, Any]:
        """
        Synchronously list remote plugins and persist the merged list.

        Runs as a sync-plugins job in the server's lane, so it never
        overlaps another job on that server, then blocks for the result.
        Errors are re-raised with the job's error kind; a job still
        unfinished after ``timeout`` raises OrchestrationError and is
        left to complete in the background.
        """
        timeout = self.DEFAULT_RECONCILE_TIMEOUT if timeout is None else timeout
        job_id = self.submit_job(JobKind.SYNC_PLUGINS.value, server_id)["job_id"]

        job = self.queue.wait(job_id, timeout=timeout)
        if job is None or not job.terminal:
            raise OrchestrationError(
                f"Reconcile job {job_id} on server {server_id} did not finish within {timeout}s"
            )
        if job.status == JobStatus.SUCCEEDED.value:
            return {"plugins": job.result["plugins"]}

        logger.warning(f"Reconcile job {job_id} on server {server_id} ended {job.status}")
        raise error_from_dict(job.error)
