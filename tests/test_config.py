from pathlib import Path

import pytest

from core.config import OrchestratorConfig, load_config

REPO_DEFAULTS = Path(__file__).parent.parent / "config" / "orchestrator.defaults.yml"


def test_load_config_defaults(tmp_path):
    path = tmp_path / "config.yml"
    path.write_text("log_level: debug", encoding="utf-8")

    cfg = load_config(path)

    assert isinstance(cfg, OrchestratorConfig)
    assert cfg.log_level == "DEBUG"
    assert cfg.ssh.connect_timeout == 10
    assert cfg.ssh.command_timeout == 300
    assert cfg.ssh.install_timeout == 900
    assert cfg.queue.max_workers == 4
    assert cfg.queue.requeue_interrupted is False
    assert cfg.queue.poll_interval_sec == 2.0
    assert cfg.queue.stale_after_sec == 60.0
    assert cfg.notify.revalidate_url is None


def test_repo_defaults_load():
    cfg = load_config(REPO_DEFAULTS)
    assert cfg.revalidate_paths == ("/onboarding/dokku-install",)
    assert cfg.notify.revalidate_secret is None


def test_env_overrides(monkeypatch, tmp_path):
    source = tmp_path / "config.yml"
    source.write_text("ssh:\n  connect_timeout: 10\n", encoding="utf-8")

    monkeypatch.setenv("SSH_CONNECT_TIMEOUT", "3")
    monkeypatch.setenv("ORCH_MAX_WORKERS", "8")
    monkeypatch.setenv("ORCH_REQUEUE_INTERRUPTED", "yes")
    monkeypatch.setenv("ORCH_POLL_INTERVAL", "0.5")
    monkeypatch.setenv("REVALIDATE_URL", "http://ui.test/api/revalidate")
    monkeypatch.setenv("ORCH_DB_PATH", str(tmp_path / "jobs.db"))

    cfg = load_config(source)

    assert cfg.ssh.connect_timeout == 3
    assert cfg.queue.max_workers == 8
    assert cfg.queue.requeue_interrupted is True
    assert cfg.queue.poll_interval_sec == 0.5
    assert cfg.notify.revalidate_url == "http://ui.test/api/revalidate"
    assert cfg.db_path == tmp_path / "jobs.db"


def test_missing_file(tmp_path):
    with pytest.raises(FileNotFoundError):
        load_config(tmp_path / "nope.yml")
