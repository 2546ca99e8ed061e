"""
Jobs — durable remote orchestration queue

Provides:
- Job records (Job, JobKind, JobStatus, JobHandle)
- Payload validation (validate_job_input)
- Job Store (JobStore) — SQLite-backed queue state
- Handlers (HANDLERS) — per-kind remote phase and write-back
- Events (JobEvent, LoggingNotifier, WebhookNotifier, ...)
- Job Queue (JobQueue, init_queue, get_queue, shutdown_queue)
- Orchestration Service (OrchestrationService) — inbound interface
"""

from .models import Job, JobKind, JobStatus, JobHandle
from .validation import validate_job_input
from .store import JobStore
from .handlers import HANDLERS, JobHandler, JobContext
from .events import (
    JobEvent, Notifier, LoggingNotifier, CallbackNotifier,
    WebhookNotifier, CompositeNotifier,
)
from .queue import JobQueue, init_queue, get_queue, shutdown_queue
from .service import OrchestrationService

__all__ = [
    'Job', 'JobKind', 'JobStatus', 'JobHandle',
    'validate_job_input',
    'JobStore',
    'HANDLERS', 'JobHandler', 'JobContext',
    'JobEvent', 'Notifier', 'LoggingNotifier', 'CallbackNotifier',
    'WebhookNotifier', 'CompositeNotifier',
    'JobQueue', 'init_queue', 'get_queue', 'shutdown_queue',
    'OrchestrationService',
]
