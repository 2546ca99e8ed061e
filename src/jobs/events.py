"""
Terminal-transition events and the notifiers that consume them.

The queue emits one JobEvent each time a job reaches a terminal status
(and the service emits one after a synchronous reconcile). How the UI
layer refreshes is up to the notifier: log it, POST it to a revalidation
endpoint, or hand it to an in-process callback.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field, asdict
from typing import Any, Callable, Dict, List, Optional, Tuple

import requests

logger = logging.getLogger(__name__)


@dataclass
class JobEvent:
    job_id: Optional[str]
    kind: str
    server_id: str
    status: str
    revalidate_paths: Tuple[str, ...] = ()
    error_kind: Optional[str] = None
    timestamp: float = field(default_factory=time.time)

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["revalidate_paths"] = list(self.revalidate_paths)
        return data


def server_paths(server_id: str, extra: Tuple[str, ...] = ()) -> Tuple[str, ...]:
    """UI paths that show a server's plugin/service state."""
    return (f"/settings/servers/{server_id}/general",) + tuple(extra)


class Notifier:
    """Consumes job events. Implementations must not raise."""

    def publish(self, event: JobEvent) -> None:
        raise NotImplementedError


class LoggingNotifier(Notifier):
    def publish(self, event: JobEvent) -> None:
        level = logging.INFO if event.error_kind is None else logging.WARNING
        logger.log(
            level,
            f"[EVENT] job={event.job_id} kind={event.kind} server={event.server_id} "
            f"status={event.status}"
            + (f" error={event.error_kind}" if event.error_kind else "")
        )


class CallbackNotifier(Notifier):
    """Delivers events to an in-process callable."""

    def __init__(self, callback: Callable[[JobEvent], None]):
        self.callback = callback

    def publish(self, event: JobEvent) -> None:
        try:
            self.callback(event)
        except Exception as e:  # noqa: BLE001
            logger.warning(f"Event callback failed for job {event.job_id}: {e}")


class WebhookNotifier(Notifier):
    """
    POSTs each event to a revalidation endpoint.

    Delivery is best effort: the job's terminal status is already
    persisted, so a failed POST is logged and dropped.
    """

    DEFAULT_TIMEOUT = 5

    def __init__(self, url: str, secret: str = None, timeout: int = None,
                 session: Optional[requests.Session] = None,
                 extra_paths: Tuple[str, ...] = ()):
        self.url = url
        self.secret = secret
        self.timeout = timeout or self.DEFAULT_TIMEOUT
        self.extra_paths = tuple(extra_paths)
        self._session = session or requests.Session()
        self.delivered = 0
        self.failed = 0

    def publish(self, event: JobEvent) -> None:
        headers = {"Content-Type": "application/json"}
        if self.secret:
            headers["x-revalidate-secret"] = self.secret
        paths = list(dict.fromkeys(tuple(event.revalidate_paths) + self.extra_paths))
        body = {"paths": paths, "event": event.to_dict()}
        try:
            resp = self._session.post(self.url, json=body, headers=headers, timeout=self.timeout)
            resp.raise_for_status()
            self.delivered += 1
        except requests.RequestException as e:
            self.failed += 1
            logger.warning(f"Revalidation webhook failed for job {event.job_id}: {e}")


class CompositeNotifier(Notifier):
    """Fans an event out. One failing notifier never starves the rest."""

    def __init__(self, notifiers: List[Notifier]):
        self.notifiers = list(notifiers)

    def publish(self, event: JobEvent) -> None:
        for notifier in self.notifiers:
            try:
                notifier.publish(event)
            except Exception as e:  # noqa: BLE001
                logger.warning(
                    f"{type(notifier).__name__} failed for job {event.job_id}: {e}"
                )
