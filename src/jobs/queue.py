#!/usr/bin/env python3
"""
Job Queue — Durable, Per-Server Ordered Remote Work

Accepts validated jobs, persists them before anything else happens, and
runs them on a thread pool with one single-consumer lane per server:

  submit()  -> validate -> INSERT queued row -> append to server lane
  monitor   -> every poll_interval: heartbeat, recover stale jobs,
               schedule queued rows this process has not seen yet
  lane      -> claim (queued -> running) -> [acquire SSH -> run -> release]
               -> write back -> terminal status -> JobEvent

Several processes may share one job table. Submitters that never start()
only insert rows; any started queue picks them up on its next poll. A
claim is a single guarded UPDATE, so one job runs in exactly one process
and a server never has two running jobs, whichever processes hold them.

Guarantees:
- Jobs for the same server never overlap and run in submission order
- Jobs for different servers run in parallel (no global lock)
- Every accepted job reaches a terminal status, or stays visibly
  queued/running in the job table if the process dies
- Running jobs are never cancelled; jobs held by a live worker (fresh
  heartbeat) are never touched by another worker's recovery

Usage:
    queue = init_queue(job_store, state_store, sessions, gateway)
    handle = queue.submit("sync-plugins", "srv-1", payload)
    queue.wait(handle.id, timeout=30)
    shutdown_queue()
"""

import logging
import os
import socket
import threading
import time
import uuid
from collections import deque
from concurrent.futures import ThreadPoolExecutor
from typing import Optional, Dict, Any, Deque, Set

from core.errors import OrchestrationError, PersistenceError, ValidationError
from inventory.reconcile import ReconciliationService
from inventory.store import StateStore
from remote.gateway import RemoteCommandGateway
from remote.ssh_session import ConnectionParams, SSHSessionProvider

from .events import JobEvent, LoggingNotifier, Notifier
from .handlers import HANDLERS, JobContext, JobHandler
from .models import Job, JobHandle, JobStatus
from .store import JobStore
from .validation import validate_job_input

logger = logging.getLogger(__name__)

INTERRUPTED_ERROR = {
    "kind": "Interrupted",
    "message": "Worker stopped while the job was running; remote state unknown",
}


def _internal_error(e: Exception) -> Dict[str, Any]:
    return {"kind": "InternalError", "message": f"{type(e).__name__}: {e}"}


def make_owner_id() -> str:
    """Identity written into claimed rows: host, pid and a per-queue suffix."""
    return f"{socket.gethostname()}:{os.getpid()}:{uuid.uuid4().hex[:8]}"


class JobQueue:
    """Durable job queue with per-server mutual exclusion."""

    DEFAULT_WORKERS = 4
    DEFAULT_POLL_INTERVAL = 2.0
    DEFAULT_STALE_AFTER = 60.0
    WAIT_TICK = 0.25

    def __init__(
        self,
        jobs: JobStore,
        state: StateStore,
        sessions: SSHSessionProvider,
        gateway: RemoteCommandGateway,
        reconciler: ReconciliationService = None,
        notifier: Notifier = None,
        max_workers: int = None,
        install_timeout: int = None,
        requeue_interrupted: bool = False,
        handlers: Dict[str, JobHandler] = None,
        poll_interval: float = None,
        stale_after: float = None,
        owner_id: str = None,
    ):
        self.jobs = jobs
        self.state = state
        self.sessions = sessions
        self.gateway = gateway
        self.reconciler = reconciler or ReconciliationService(state, sessions, gateway)
        self.notifier = notifier or LoggingNotifier()
        self.max_workers = max_workers or self.DEFAULT_WORKERS
        self.install_timeout = install_timeout
        self.requeue_interrupted = requeue_interrupted
        self.handlers = handlers if handlers is not None else HANDLERS
        self.poll_interval = poll_interval or self.DEFAULT_POLL_INTERVAL
        self.stale_after = stale_after or self.DEFAULT_STALE_AFTER
        self.owner_id = owner_id or make_owner_id()

        if self.stale_after <= self.poll_interval:
            raise ValueError(
                f"stale_after ({self.stale_after}s) must exceed poll_interval ({self.poll_interval}s)"
            )

        self._executor: Optional[ThreadPoolExecutor] = None
        self._monitor: Optional[threading.Thread] = None
        self._monitor_stop = threading.Event()
        self._lifecycle = threading.RLock()
        self._mutex = threading.Lock()
        self._changed = threading.Condition()
        self._lanes: Dict[str, Deque[str]] = {}
        self._active: Set[str] = set()
        self._known: Set[str] = set()
        self._running = False
        self._stopping = False

    # ── Lifecycle ────────────────────────────────────────────────

    @property
    def running(self) -> bool:
        return self._running

    def start(self) -> Dict[str, int]:
        """Start workers, recover orphaned jobs and pick up queued ones."""
        with self._lifecycle:
            if self._running:
                return {"requeued": 0, "interrupted": 0, "resumed": 0}
            self._stopping = False
            self._executor = ThreadPoolExecutor(
                max_workers=self.max_workers, thread_name_prefix="job-worker",
            )
            stats = self._recover()
            self._running = True
            stats["resumed"] = self.poll()

            self._monitor_stop = threading.Event()
            self._monitor = threading.Thread(
                target=self._monitor_loop, args=(self._monitor_stop,),
                name="job-monitor", daemon=True,
            )
            self._monitor.start()

        logger.info(
            f"JobQueue started (owner={self.owner_id}, workers={self.max_workers}, "
            f"resumed={stats['resumed']}, interrupted={stats['interrupted']}, "
            f"requeued={stats['requeued']})"
        )
        return stats

    def _recover(self) -> Dict[str, int]:
        """
        Settle running rows whose worker is gone.

        A row is orphaned when it has no owner or its owner's heartbeat is
        older than stale_after. Rows held by a live worker are left alone.
        """
        stats = {"requeued": 0, "interrupted": 0, "resumed": 0}
        cutoff = time.time() - self.stale_after

        for job in self.jobs.list_stale_running(cutoff, exclude_owner=self.owner_id):
            holder = job.owner or "unknown worker"
            if self.requeue_interrupted:
                if self.jobs.requeue(job.id, stale_before=cutoff):
                    stats["requeued"] += 1
                    logger.warning(f"Re-queued job {job.id} ({job.kind}) abandoned by {holder}")
            elif self.jobs.mark_terminal(job.id, JobStatus.FAILED,
                                         error=INTERRUPTED_ERROR, stale_before=cutoff):
                stats["interrupted"] += 1
                logger.warning(f"Marked job {job.id} ({job.kind}) abandoned by {holder} as failed")
                self._publish(job, JobStatus.FAILED, INTERRUPTED_ERROR)

        return stats

    def poll(self) -> int:
        """Schedule queued rows not yet in a lane. Returns how many were added."""
        with self._lifecycle:
            if not self._running:
                return 0
            scheduled = 0
            for job in self.jobs.list_by_status(JobStatus.QUEUED):
                if self._schedule(job):
                    scheduled += 1
        if scheduled:
            logger.debug(f"Poll scheduled {scheduled} queued job(s)")
        return scheduled

    def _monitor_loop(self, stop: threading.Event):
        # keeps heartbeating after shutdown() until in-flight jobs are done
        while not stop.wait(self.poll_interval):
            try:
                self.jobs.heartbeat(self.owner_id)
                with self._lifecycle:
                    if self._running:
                        self._recover()
                self.poll()
            except PersistenceError as e:
                logger.error(f"Job monitor tick failed: {e}")
            except Exception:  # noqa: BLE001
                logger.exception("Job monitor tick crashed")

    def shutdown(self, wait: bool = True, drain: bool = False):
        """
        Stop accepting work for execution.

        In-flight jobs always finish. With drain=False, jobs still waiting
        in a lane stay queued in the job table and resume on next start().
        """
        with self._lifecycle:
            if not self._running:
                return
            self._running = False
            self._stopping = not drain
            executor = self._executor
            self._executor = None
            monitor, stop = self._monitor, self._monitor_stop
            self._monitor = None

        executor.shutdown(wait=wait)
        stop.set()
        if monitor is not None and monitor is not threading.current_thread():
            monitor.join(timeout=self.poll_interval + 5)
        logger.info(f"JobQueue stopped (drain={drain})")

    # ── Submission ───────────────────────────────────────────────

    def submit(self, kind: str, server_id: str, payload: Dict[str, Any]) -> JobHandle:
        """
        Validate and persist a job, then schedule it. Returns immediately.

        ``payload`` is the frozen snapshot: {"input", "ssh", "server"}.
        Raises ValidationError synchronously; nothing is persisted then.
        """
        if not server_id:
            raise ValidationError("server_id is required", ["server_id must be a non-empty string"])
        payload = dict(payload or {})
        payload["input"] = validate_job_input(kind, payload.get("input"))

        ssh = payload.get("ssh") or {}
        missing = [k for k in ("host", "username", "private_key") if not ssh.get(k)]
        if missing:
            raise ValidationError(
                "SSH snapshot incomplete",
                [f"ssh.{k} is required" for k in missing],
            )
        payload.setdefault("server", {"id": server_id, "previous_plugins": []})

        job = self.jobs.insert(Job(kind=kind, server_id=server_id, payload=payload))
        logger.info(f"Job {job.id} queued ({kind} on server {server_id})")

        with self._lifecycle:
            if self._running:
                self._schedule(job)
            else:
                logger.info(f"Queue not running here; job {job.id} waits for a started worker")

        return JobHandle(id=job.id)

    # ── Lanes ────────────────────────────────────────────────────

    def _schedule(self, job: Job) -> bool:
        """Append to the server's lane. False if the job is already in one."""
        with self._mutex:
            if job.id in self._known:
                return False
            self._known.add(job.id)
            self._lanes.setdefault(job.server_id, deque()).append(job.id)
            if job.server_id in self._active:
                return True
            self._active.add(job.server_id)
        self._executor.submit(self._drain, job.server_id)
        return True

    def _release_lane(self, server_id: str):
        # caller holds _mutex; dropped ids are picked up again by poll()
        for job_id in self._lanes.pop(server_id, ()):
            self._known.discard(job_id)
        self._active.discard(server_id)

    def _drain(self, server_id: str):
        """Run a server's lane to exhaustion, one job at a time."""
        released = False
        try:
            while True:
                with self._mutex:
                    lane = self._lanes.get(server_id)
                    if not lane or self._stopping:
                        self._release_lane(server_id)
                        released = True
                        break
                    job_id = lane.popleft()

                try:
                    claimed = self._execute(job_id)
                except Exception:  # noqa: BLE001
                    logger.exception(f"Unhandled error while running job {job_id}")
                    claimed = True

                with self._mutex:
                    self._known.discard(job_id)
                    if not claimed:
                        # server busy elsewhere; the lane resumes on a later poll
                        self._release_lane(server_id)
                        released = True
                        break
        finally:
            if not released:
                with self._mutex:
                    self._release_lane(server_id)
            with self._changed:
                self._changed.notify_all()

    # ── Execution ────────────────────────────────────────────────

    def _execute(self, job_id: str) -> bool:
        """
        Claim and run one job.

        Returns False only when the job is still queued but the claim lost
        to another running or older job for the same server.
        """
        try:
            job = self.jobs.get(job_id)
            if job is None or job.status != JobStatus.QUEUED.value:
                logger.debug(f"Job {job_id} no longer queued; skipping")
                return True
            if not self.jobs.mark_running(job_id, owner=self.owner_id):
                current = self.jobs.get(job_id)
                if current is not None and current.status == JobStatus.QUEUED.value:
                    logger.debug(f"Server {job.server_id} busy; job {job_id} stays queued")
                    return False
                return True
        except PersistenceError as e:
            logger.error(f"Could not claim job {job_id}: {e}")
            return True

        logger.info(f"Job {job.id} running ({job.kind} on server {job.server_id})")
        handler = self.handlers.get(job.kind)
        ctx = JobContext(
            job=job, session=None, gateway=self.gateway, reconciler=self.reconciler,
            store=self.state, install_timeout=self.install_timeout,
        )

        try:
            if handler is None:
                raise KeyError(f"No handler registered for job kind {job.kind!r}")
            with self.sessions.session(ConnectionParams.from_dict(job.ssh)) as session:
                ctx.session = session
                result = handler.run(ctx)
            ctx.session = None
        except OrchestrationError as e:
            self._finish(job, handler, JobStatus.FAILED, error=e.to_dict())
            return True
        except Exception as e:  # noqa: BLE001
            logger.exception(f"Job {job.id} crashed")
            self._finish(job, handler, JobStatus.FAILED, error=_internal_error(e))
            return True

        try:
            handler.write_back(ctx, result)
        except PersistenceError as e:
            self._finish(job, handler, JobStatus.SUCCEEDED_WITH_SYNC_ERROR,
                         result=result, error=e.to_dict())
            return True
        except Exception as e:  # noqa: BLE001
            logger.exception(f"Write-back for job {job.id} crashed")
            self._finish(job, handler, JobStatus.SUCCEEDED_WITH_SYNC_ERROR,
                         result=result, error=_internal_error(e))
            return True

        self._finish(job, handler, JobStatus.SUCCEEDED, result=result)
        return True

    def _finish(self, job: Job, handler: Optional[JobHandler], status: JobStatus,
                result: Any = None, error: Dict[str, Any] = None):
        try:
            if not self.jobs.mark_terminal(job.id, status, result=result, error=error):
                logger.warning(
                    f"Job {job.id} finished as {status.value} but its row was already "
                    f"settled by another worker"
                )
        except PersistenceError as e:
            logger.error(f"Job {job.id} finished as {status.value} but status write failed: {e}")

        if error:
            level = logging.WARNING if status is JobStatus.SUCCEEDED_WITH_SYNC_ERROR else logging.ERROR
            logger.log(level, f"Job {job.id} {status.value}: {error.get('kind')} {error.get('message')}")
        else:
            logger.info(f"Job {job.id} {status.value}")

        self._publish(job, status, error, handler)
        with self._changed:
            self._changed.notify_all()

    def _publish(self, job: Job, status: JobStatus, error: Dict[str, Any] = None,
                 handler: JobHandler = None):
        handler = handler or self.handlers.get(job.kind)
        paths = handler.revalidate_paths(job) if handler else ()
        try:
            self.notifier.publish(JobEvent(
                job_id=job.id, kind=job.kind, server_id=job.server_id, status=status.value,
                revalidate_paths=paths, error_kind=(error or {}).get("kind"),
            ))
        except Exception:  # noqa: BLE001
            # status is already persisted; delivery is best effort
            logger.exception(f"Publishing {status.value} event for job {job.id} failed")

    # ── Inspection ───────────────────────────────────────────────

    def get(self, job_id: str) -> Optional[Job]:
        return self.jobs.get(job_id)

    def wait(self, job_id: str, timeout: float = None) -> Optional[Job]:
        """
        Block until the job is terminal or the timeout expires.

        Re-reads the job table every WAIT_TICK, so jobs run by another
        process are seen too.
        """
        deadline = None if timeout is None else time.monotonic() + timeout
        while True:
            job = self.jobs.get(job_id)
            if job is None or job.terminal:
                return job
            remaining = self.WAIT_TICK if deadline is None else deadline - time.monotonic()
            if remaining <= 0:
                return job
            with self._changed:
                self._changed.wait(min(remaining, self.WAIT_TICK))

    def wait_idle(self, timeout: float = None) -> bool:
        """Block until every lane is empty. True if idle before the timeout."""
        def idle():
            with self._mutex:
                return not self._active

        with self._changed:
            return self._changed.wait_for(idle, timeout=timeout)

    def get_stats(self) -> Dict[str, Any]:
        with self._mutex:
            lanes = {sid: len(lane) for sid, lane in self._lanes.items()}
            active = sorted(self._active)
        return {
            "running": self._running,
            "owner": self.owner_id,
            "workers": self.max_workers,
            "active_servers": active,
            "waiting": lanes,
            "jobs": self.jobs.get_stats(),
        }

    def __repr__(self) -> str:
        return f"JobQueue(owner={self.owner_id}, workers={self.max_workers}, running={self._running})"


# ── Module-level singleton ──
_queue_instance: Optional[JobQueue] = None
_queue_lock = threading.Lock()


def init_queue(*args, **kwargs) -> JobQueue:
    """Create and start the process-wide queue. Calling twice is an error."""
    global _queue_instance
    with _queue_lock:
        if _queue_instance is not None:
            raise RuntimeError("Job queue already initialized")
        _queue_instance = JobQueue(*args, **kwargs)
    _queue_instance.start()
    return _queue_instance


def get_queue() -> JobQueue:
    if _queue_instance is None:
        raise RuntimeError("Job queue not initialized; call init_queue() at startup")
    return _queue_instance


def shutdown_queue(wait: bool = True, drain: bool = False):
    """Stop and forget the process-wide queue. Safe when not initialized."""
    global _queue_instance
    with _queue_lock:
        queue, _queue_instance = _queue_instance, None
    if queue is not None:
        queue.shutdown(wait=wait, drain=drain)
