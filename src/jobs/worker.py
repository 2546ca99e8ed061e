#!/usr/bin/env python3
"""
Orchestration Worker

Builds the stores, SSH provider, gateway and queue from config, resumes
any jobs left in the job table, and runs until SIGINT/SIGTERM. On exit,
in-flight jobs finish; waiting jobs stay queued for the next start.

Usage:
  python -m jobs.worker --config config/orchestrator.defaults.yml
"""

import argparse
import logging
import signal
import sys
import threading
from pathlib import Path

# Add src to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent))

from core.config import OrchestratorConfig, load_config
from inventory.reconcile import ReconciliationService
from inventory.store import SQLiteStateStore
from remote.gateway import RemoteCommandGateway
from remote.ssh_session import SSHSessionProvider

from jobs.events import CompositeNotifier, LoggingNotifier, WebhookNotifier
from jobs.queue import init_queue, shutdown_queue
from jobs.store import JobStore

logger = logging.getLogger(__name__)


def build_notifier(config: OrchestratorConfig):
    notifiers = [LoggingNotifier()]
    if config.notify.revalidate_url:
        notifiers.append(WebhookNotifier(
            config.notify.revalidate_url,
            secret=config.notify.revalidate_secret,
            timeout=config.notify.timeout_sec,
            extra_paths=config.revalidate_paths,
        ))
    return CompositeNotifier(notifiers)


def build_queue(config: OrchestratorConfig):
    """Wire every collaborator from config and start the process-wide queue."""
    state = SQLiteStateStore(config.state_db_path)
    jobs = JobStore(config.db_path)
    sessions = SSHSessionProvider(
        connect_timeout=config.ssh.connect_timeout,
        command_timeout=config.ssh.command_timeout,
    )
    gateway = RemoteCommandGateway()
    return init_queue(
        jobs, state, sessions, gateway,
        reconciler=ReconciliationService(state, sessions, gateway),
        notifier=build_notifier(config),
        max_workers=config.queue.max_workers,
        install_timeout=config.ssh.install_timeout,
        requeue_interrupted=config.queue.requeue_interrupted,
        poll_interval=config.queue.poll_interval_sec,
        stale_after=config.queue.stale_after_sec,
    )


def main(argv=None):
    parser = argparse.ArgumentParser(description="Run the remote orchestration job worker")
    parser.add_argument("--config", default="config/orchestrator.defaults.yml",
                        help="Path to the YAML config file")
    args = parser.parse_args(argv)

    config = load_config(args.config)
    logging.basicConfig(
        format="%(asctime)s [%(name)s] %(levelname)s: %(message)s",
        level=getattr(logging, config.log_level, logging.INFO),
    )

    stop = threading.Event()

    def _handle_signal(signum, frame):
        logger.info(f"Received signal {signum}, shutting down...")
        stop.set()

    signal.signal(signal.SIGINT, _handle_signal)
    signal.signal(signal.SIGTERM, _handle_signal)

    queue = build_queue(config)
    logger.info(f"Worker running: {queue.get_stats()}")

    stop.wait()
    shutdown_queue(wait=True, drain=False)
    logger.info("Worker stopped")


if __name__ == "__main__":
    main()
