#!/usr/bin/env python3
"""
Unit tests for the Job Queue: ordering, exclusion, failures, recovery
"""

import json
import sys
import threading
import time
import pytest
from pathlib import Path
from unittest.mock import MagicMock, patch

sys.path.insert(0, str(Path(__file__).parent.parent.parent / "src"))

import requests

from core.errors import PersistenceError, ValidationError
from jobs.events import CallbackNotifier, CompositeNotifier, Notifier, WebhookNotifier
from jobs.models import Job, JobStatus
from jobs.queue import JobQueue, init_queue, get_queue, shutdown_queue
from jobs.store import JobStore
from remote.gateway import RemoteCommandGateway
from remote.ssh_session import ExecResult


def _snapshot(server, job_input=None):
    return {
        "input": job_input or {},
        "ssh": server.connection_params().to_dict(),
        "server": {"id": server.id, "previous_plugins": [p.to_dict() for p in server.plugins]},
    }


@pytest.fixture
def events():
    return []


@pytest.fixture
def queue(job_store, state_store, sessions, events):
    q = JobQueue(
        job_store, state_store, sessions, RemoteCommandGateway(),
        notifier=CallbackNotifier(events.append), max_workers=4,
    )
    yield q
    q.shutdown(wait=True)


# ── Execution Tests ──────────────────────────────────────────────

class TestExecution:

    def test_sync_succeeds(self, queue, sessions, state_store, redis_server, events):
        sessions.remote(redis_server.ip).plugins["redis"] = ("7.2", True)
        queue.start()

        handle = queue.submit("sync-plugins", redis_server.id, _snapshot(redis_server))
        job = queue.wait(handle.id, timeout=5)
        assert queue.wait_idle(timeout=5)

        assert job.status == "succeeded"
        assert job.result["plugins"][0]["configuration"] == {"maxMemory": "256mb"}
        assert state_store.get_server(redis_server.id).plugins[0].version == "7.2"
        assert [e.status for e in events] == ["succeeded"]
        assert f"/settings/servers/{redis_server.id}/general" in events[0].revalidate_paths

    def test_install_then_listed(self, queue, sessions, state_store, make_server):
        server = make_server()
        queue.start()

        handle = queue.submit("install-plugin", server.id, _snapshot(server, {
            "plugin_name": "redis",
            "plugin_url": "https://github.com/dokku/dokku-redis.git",
        }))
        job = queue.wait(handle.id, timeout=5)

        assert job.status == "succeeded"
        plugins = state_store.get_server(server.id).plugins
        assert [(p.name, p.status) for p in plugins] == [("redis", "enabled")]
        commands = sessions.remote(server.ip).commands
        assert commands[0].startswith("sudo dokku plugin:install")
        assert commands[-1] == "dokku plugin:list"

    def test_letsencrypt_stores_configuration(self, queue, sessions, state_store, make_server):
        from inventory.models import Plugin
        server = make_server(plugins=[Plugin(name="letsencrypt")])
        queue.start()

        handle = queue.submit("configure-letsencrypt", server.id, _snapshot(server, {
            "email": "ops@example.com",
        }))
        assert queue.wait(handle.id, timeout=5).status == "succeeded"
        plugin = state_store.get_server(server.id).plugins[0]
        assert plugin.configuration == {"email": "ops@example.com", "autoGenerateSSL": False}

    def test_letsencrypt_untracked_plugin_is_sync_error(self, queue, state_store, make_server, events):
        server = make_server()
        queue.start()

        handle = queue.submit("configure-letsencrypt", server.id, _snapshot(server, {
            "email": "ops@example.com",
        }))
        job = queue.wait(handle.id, timeout=5)
        assert queue.wait_idle(timeout=5)

        assert job.status == "succeeded-with-sync-error"
        assert job.error["kind"] == "PersistenceError"
        assert "not tracked" in job.error["message"]
        assert job.result == {"email": "ops@example.com", "autoGenerateSSL": False}
        assert state_store.get_server(server.id).plugins == []
        assert events[0].status == "succeeded-with-sync-error"

    def test_destroy_database_records_marker(self, queue, state_store, make_server):
        server = make_server()
        queue.start()

        handle = queue.submit("destroy-database", server.id, _snapshot(server, {
            "database_name": "orders-db", "database_type": "postgres",
        }))
        assert queue.wait(handle.id, timeout=5).status == "succeeded"
        assert state_store.list_destroyed_services(server.id)[0]["name"] == "orders-db"

    def test_uninstall_agent_clears_flag(self, queue, state_store, make_server):
        server = make_server()
        queue.start()

        handle = queue.submit("uninstall-monitoring-agent", server.id, _snapshot(server))
        assert queue.wait(handle.id, timeout=5).status == "succeeded"
        assert state_store.get_server(server.id).monitoring_agent is None


# ── Submission Tests ─────────────────────────────────────────────

class TestSubmission:

    def test_invalid_input_never_persisted(self, queue, job_store, make_server):
        server = make_server()
        queue.start()

        with pytest.raises(ValidationError):
            queue.submit("install-plugin", server.id, _snapshot(server, {
                "plugin_name": "oracle", "plugin_url": "https://x.test/o.git",
            }))
        assert job_store.get_stats()["total"] == 0

    def test_unknown_kind(self, queue, make_server):
        server = make_server()
        with pytest.raises(ValidationError):
            queue.submit("reboot", server.id, _snapshot(server))

    def test_incomplete_ssh_snapshot(self, queue, make_server):
        payload = _snapshot(make_server())
        payload["ssh"]["private_key"] = ""
        with pytest.raises(ValidationError) as exc:
            queue.submit("sync-plugins", "srv-1", payload)
        assert "ssh.private_key is required" in exc.value.errors

    def test_submit_before_start_stays_queued(self, queue, job_store, make_server):
        server = make_server()
        handle = queue.submit("sync-plugins", server.id, _snapshot(server))

        assert job_store.get(handle.id).status == "queued"
        queue.start()
        assert queue.wait(handle.id, timeout=5).status == "succeeded"


# ── Ordering and Exclusion Tests ─────────────────────────────────

class TestOrdering:

    def test_same_server_never_overlaps(self, queue, sessions, make_server):
        server = make_server()
        sessions.remote(server.ip).delay = 0.02
        queue.start()

        handles = [
            queue.submit("sync-plugins", server.id, _snapshot(server)) for _ in range(5)
        ]
        for handle in handles:
            assert queue.wait(handle.id, timeout=10).status == "succeeded"

        windows = sorted(w for w in sessions.windows if w[0] == server.ip)
        assert len(windows) == 5
        for (_, _, ended), (_, started, _) in zip(windows, windows[1:]):
            assert ended <= started

    def test_same_server_fifo(self, queue, sessions, make_server):
        server = make_server()
        sessions.remote(server.ip).plugins["redis"] = ("7.2", True)
        sessions.remote(server.ip).delay = 0.01
        queue.start()

        handles = [
            queue.submit("toggle-plugin", server.id, _snapshot(server, {
                "plugin_name": "redis", "enabled": enabled,
            }))
            for enabled in (False, True, False)
        ]
        for handle in handles:
            queue.wait(handle.id, timeout=10)

        toggles = [c for c in sessions.remote(server.ip).commands if "plugin:en" in c or "plugin:dis" in c]
        assert toggles == [
            "sudo dokku plugin:disable redis",
            "sudo dokku plugin:enable redis",
            "sudo dokku plugin:disable redis",
        ]

    def test_different_servers_run_in_parallel(self, queue, sessions, make_server):
        barrier = threading.Barrier(2)
        first = make_server("srv-a", ip="10.0.0.10")
        second = make_server("srv-b", ip="10.0.0.11")
        sessions.remote(first.ip).barrier = barrier
        sessions.remote(second.ip).barrier = barrier
        queue.start()

        a = queue.submit("sync-plugins", first.id, _snapshot(first))
        b = queue.submit("sync-plugins", second.id, _snapshot(second))

        # Each listing waits on the barrier, so both jobs succeed only if
        # they were inside their sessions at the same time.
        assert queue.wait(a.id, timeout=10).status == "succeeded"
        assert queue.wait(b.id, timeout=10).status == "succeeded"


# ── Failure Tests ────────────────────────────────────────────────

class TestFailures:

    def test_unreachable_host(self, queue, sessions, job_store, redis_server, events):
        sessions.unreachable.add(redis_server.ip)
        queue.start()

        handle = queue.submit("sync-plugins", redis_server.id, _snapshot(redis_server))
        job = queue.wait(handle.id, timeout=5)
        assert queue.wait_idle(timeout=5)

        assert job.status == "failed"
        assert job.error["kind"] == "ConnectionError"
        assert events[0].error_kind == "ConnectionError"

    def test_remote_command_failure(self, queue, sessions, state_store, redis_server):
        sessions.remote(redis_server.ip).failures["sudo dokku plugin:uninstall"] = (
            1, " !     Plugin redis is in use",
        )
        queue.start()

        handle = queue.submit("delete-plugin", redis_server.id, _snapshot(redis_server, {
            "plugin_name": "redis",
        }))
        job = queue.wait(handle.id, timeout=5)

        assert job.status == "failed"
        assert job.error["kind"] == "RemoteCommandError"
        assert job.error["exit_code"] == 1
        assert "in use" in job.error["stderr_excerpt"]
        # store untouched, session released
        assert state_store.get_server(redis_server.id).plugins[0].name == "redis"
        assert len(sessions.windows) == 1

    def test_command_timeout(self, queue, sessions, make_server):
        server = make_server()
        remote = sessions.remote(server.ip)
        remote.run = lambda command: ExecResult(
            command, -1, "", "", False, 900000.0, host=server.ip, timed_out=True,
        )
        queue.start()

        handle = queue.submit("install-plugin", server.id, _snapshot(server, {
            "plugin_name": "redis", "plugin_url": "https://x.test/r.git",
        }))
        job = queue.wait(handle.id, timeout=5)

        assert job.status == "failed"
        assert "timed out" in job.error["message"]

    def test_write_back_failure(self, queue, sessions, state_store, redis_server, events):
        sessions.remote(redis_server.ip).plugins["redis"] = ("7.2", True)
        state_store.replace_plugins = MagicMock(side_effect=PersistenceError("disk full"))
        queue.start()

        handle = queue.submit("sync-plugins", redis_server.id, _snapshot(redis_server))
        job = queue.wait(handle.id, timeout=5)
        assert queue.wait_idle(timeout=5)

        assert job.status == "succeeded-with-sync-error"
        assert job.error["kind"] == "PersistenceError"
        assert job.result["plugins"][0]["name"] == "redis"
        assert events[0].status == "succeeded-with-sync-error"

    def test_unexpected_handler_crash(self, queue, sessions, make_server):
        server = make_server()
        # enabling a plugin the fake host doesn't know raises KeyError
        queue.start()

        handle = queue.submit("toggle-plugin", server.id, _snapshot(server, {
            "plugin_name": "redis", "enabled": True,
        }))
        job = queue.wait(handle.id, timeout=5)

        assert job.status == "failed"
        assert job.error["kind"] == "InternalError"
        assert len(sessions.windows) == 1

    def test_failure_does_not_block_lane(self, queue, sessions, make_server):
        server = make_server()
        sessions.remote(server.ip).failures["sudo dokku plugin:uninstall"] = (1, "nope")
        queue.start()

        bad = queue.submit("delete-plugin", server.id, _snapshot(server, {"plugin_name": "redis"}))
        good = queue.submit("sync-plugins", server.id, _snapshot(server))

        assert queue.wait(bad.id, timeout=5).status == "failed"
        assert queue.wait(good.id, timeout=5).status == "succeeded"

    def test_webhook_failure_keeps_status(self, job_store, state_store, sessions, redis_server):
        http = MagicMock()
        http.post.side_effect = requests.ConnectionError("refused")
        notifier = WebhookNotifier("http://ui.test/api/revalidate", secret="s", session=http)
        q = JobQueue(job_store, state_store, sessions, RemoteCommandGateway(), notifier=notifier)
        sessions.remote(redis_server.ip).plugins["redis"] = ("7.2", True)
        q.start()
        try:
            handle = q.submit("sync-plugins", redis_server.id, _snapshot(redis_server))
            assert q.wait(handle.id, timeout=5).status == "succeeded"
            assert q.wait_idle(timeout=5)
        finally:
            q.shutdown()
        assert notifier.failed == 1

    def test_raising_notifier_does_not_stall_lane(self, job_store, state_store, sessions, make_server):
        class ExplodingNotifier(Notifier):
            def publish(self, event):
                raise RuntimeError("notifier down")

        server = make_server()
        q = JobQueue(job_store, state_store, sessions, RemoteCommandGateway(),
                     notifier=ExplodingNotifier())
        q.start()
        try:
            handles = [q.submit("sync-plugins", server.id, _snapshot(server)) for _ in range(2)]
            for handle in handles:
                assert q.wait(handle.id, timeout=5).status == "succeeded"
            assert q.wait_idle(timeout=5)
            assert q.get_stats()["active_servers"] == []
        finally:
            q.shutdown()

    def test_lane_released_when_execution_raises(self, job_store, state_store, sessions, make_server):
        server = make_server()
        q = JobQueue(job_store, state_store, sessions, RemoteCommandGateway(),
                     poll_interval=0.05, stale_after=5)
        real_execute = q._execute
        calls = []

        def flaky(job_id):
            calls.append(job_id)
            if len(calls) == 1:
                raise RuntimeError("lost connection to the job table")
            return real_execute(job_id)

        q.start()
        try:
            with patch.object(q, "_execute", side_effect=flaky):
                first = q.submit("sync-plugins", server.id, _snapshot(server))
                second = q.submit("sync-plugins", server.id, _snapshot(server))

                # the row that blew up stays queued and the next poll retries it
                assert q.wait(first.id, timeout=5).status == "succeeded"
                assert q.wait(second.id, timeout=5).status == "succeeded"
                assert q.wait_idle(timeout=5)
            assert calls.count(first.id) >= 2
            assert q.get_stats()["active_servers"] == []
        finally:
            q.shutdown()


# ── Shared Job Table Tests ───────────────────────────────────────

class TestSharedJobTable:
    """Several processes on one job table, modelled as separate JobStores."""

    def _queue(self, store, state_store, sessions, **kwargs):
        kwargs.setdefault("poll_interval", 0.05)
        kwargs.setdefault("stale_after", 5)
        return JobQueue(store, state_store, sessions, RemoteCommandGateway(), **kwargs)

    def test_worker_picks_up_jobs_from_submit_only_process(self, tmp_path, job_store, state_store,
                                                           sessions, make_server):
        server = make_server()
        worker = self._queue(job_store, state_store, sessions)
        worker.start()
        web_store = JobStore(db_path=str(tmp_path / "jobs.db"))
        web = self._queue(web_store, state_store, sessions)
        try:
            handle = web.submit("sync-plugins", server.id, _snapshot(server))
            job = web.wait(handle.id, timeout=5)

            assert job.status == "succeeded"
            assert job.owner == worker.owner_id
            assert web.running is False
        finally:
            worker.shutdown()
            web_store.close()

    def test_two_workers_never_overlap_on_one_server(self, tmp_path, job_store, state_store,
                                                     sessions, make_server):
        server = make_server()
        sessions.remote(server.ip).delay = 0.05
        other_store = JobStore(db_path=str(tmp_path / "jobs.db"))
        a = self._queue(job_store, state_store, sessions)
        b = self._queue(other_store, state_store, sessions)
        a.start()
        b.start()
        try:
            handles = [(a if i % 2 == 0 else b).submit("sync-plugins", server.id, _snapshot(server))
                       for i in range(4)]
            for handle in handles:
                assert a.wait(handle.id, timeout=10).status == "succeeded"
        finally:
            a.shutdown()
            b.shutdown()
            other_store.close()

        windows = sorted(w for w in sessions.windows if w[0] == server.ip)
        assert len(windows) == 4
        for (_, _, ended), (_, started, _) in zip(windows, windows[1:]):
            assert ended <= started

    def test_live_peer_job_left_alone_until_stale(self, job_store, state_store, sessions,
                                                  make_server, events):
        server = make_server()
        job = job_store.insert(Job(kind="sync-plugins", server_id=server.id,
                                   payload=_snapshot(server)))
        job_store.mark_running(job.id, owner="web-1:4242:deadbeef")
        q = self._queue(job_store, state_store, sessions, stale_after=0.5,
                        notifier=CallbackNotifier(events.append))

        stats = q.start()
        try:
            assert stats["interrupted"] == 0
            assert job_store.get(job.id).status == "running"

            # the peer never heartbeats again, so the monitor settles the row
            stored = q.wait(job.id, timeout=5)
            assert stored.status == "failed"
            assert stored.error["kind"] == "Interrupted"
            assert sessions.acquired == []
            assert [e.error_kind for e in events] == ["Interrupted"]
        finally:
            q.shutdown()

    def test_long_job_survives_peer_recovery(self, tmp_path, job_store, state_store,
                                             sessions, make_server):
        server = make_server()
        sessions.remote(server.ip).delay = 0.8
        other_store = JobStore(db_path=str(tmp_path / "jobs.db"))
        a = self._queue(job_store, state_store, sessions, stale_after=0.3)
        b = self._queue(other_store, state_store, sessions, stale_after=0.3)
        a.start()
        b.start()
        try:
            handle = a.submit("sync-plugins", server.id, _snapshot(server))
            job = a.wait(handle.id, timeout=10)

            assert job.status == "succeeded"
            assert job.error is None
        finally:
            a.shutdown()
            b.shutdown()
            other_store.close()

    def test_rejects_stale_window_shorter_than_poll(self, job_store, state_store, sessions):
        with pytest.raises(ValueError):
            self._queue(job_store, state_store, sessions, poll_interval=5, stale_after=1)


# ── Secrecy Tests ────────────────────────────────────────────────

class TestSecrecy:

    def test_key_absent_from_status_and_events(self, queue, sessions, redis_server, events, caplog):
        sessions.unreachable.add(redis_server.ip)
        queue.start()

        handle = queue.submit("sync-plugins", redis_server.id, _snapshot(redis_server))
        job = queue.wait(handle.id, timeout=5)
        assert queue.wait_idle(timeout=5)

        key = redis_server.private_key
        assert key not in json.dumps(job.to_status())
        assert key not in json.dumps(queue.get_stats())
        assert key not in json.dumps([e.to_dict() for e in events])
        assert "not-a-real-key" not in caplog.text


# ── Recovery Tests ───────────────────────────────────────────────

class TestRecovery:

    def _seed(self, job_store, server, status):
        job = job_store.insert(Job(kind="sync-plugins", server_id=server.id,
                                   payload=_snapshot(server)))
        if status is not JobStatus.QUEUED:
            job_store.mark_running(job.id)
        return job

    def test_queued_jobs_resume(self, queue, job_store, make_server):
        server = make_server()
        job = self._seed(job_store, server, JobStatus.QUEUED)

        stats = queue.start()
        assert stats["resumed"] == 1
        assert queue.wait(job.id, timeout=5).status == "succeeded"

    def test_running_jobs_marked_interrupted(self, queue, job_store, sessions, make_server, events):
        server = make_server()
        job = self._seed(job_store, server, JobStatus.RUNNING)

        stats = queue.start()
        stored = job_store.get(job.id)

        assert stats["interrupted"] == 1
        assert stored.status == "failed"
        assert stored.error["kind"] == "Interrupted"
        assert sessions.acquired == []
        assert events[0].error_kind == "Interrupted"

    def test_running_jobs_requeued_when_configured(self, job_store, state_store, sessions, make_server):
        server = make_server()
        job = self._seed(job_store, server, JobStatus.RUNNING)
        q = JobQueue(job_store, state_store, sessions, RemoteCommandGateway(),
                     requeue_interrupted=True)

        stats = q.start()
        try:
            assert stats["requeued"] == 1
            assert stats["resumed"] == 1
            assert q.wait(job.id, timeout=5).status == "succeeded"
        finally:
            q.shutdown()

    def test_shutdown_leaves_waiting_jobs_queued(self, queue, job_store, sessions, make_server):
        server = make_server()
        sessions.remote(server.ip).delay = 0.1
        queue.start()

        handles = [queue.submit("sync-plugins", server.id, _snapshot(server)) for _ in range(3)]
        deadline = time.monotonic() + 5
        while job_store.get(handles[0].id).status == "queued" and time.monotonic() < deadline:
            time.sleep(0.005)
        queue.shutdown(wait=True, drain=False)

        statuses = [job_store.get(h.id).status for h in handles]
        assert statuses == ["succeeded", "queued", "queued"]


# ── Singleton Tests ──────────────────────────────────────────────

class TestSingleton:

    def test_init_get_shutdown(self, job_store, state_store, sessions):
        try:
            q = init_queue(job_store, state_store, sessions, RemoteCommandGateway())
            assert get_queue() is q
            assert q.running is True
            with pytest.raises(RuntimeError):
                init_queue(job_store, state_store, sessions, RemoteCommandGateway())
        finally:
            shutdown_queue()
        with pytest.raises(RuntimeError):
            get_queue()


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
