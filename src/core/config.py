"""Configuration loader for the orchestration worker."""

from __future__ import annotations

import json
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Optional, Tuple

import yaml


@dataclass(frozen=True)
class SSHConfig:
    connect_timeout: int
    command_timeout: int
    install_timeout: int


@dataclass(frozen=True)
class QueueConfig:
    max_workers: int
    requeue_interrupted: bool
    poll_interval_sec: float = 2.0
    stale_after_sec: float = 60.0


@dataclass(frozen=True)
class NotifyConfig:
    revalidate_url: Optional[str]
    revalidate_secret: Optional[str]
    timeout_sec: int


@dataclass(frozen=True)
class OrchestratorConfig:
    db_path: Path
    state_db_path: Path
    ssh: SSHConfig
    queue: QueueConfig
    notify: NotifyConfig
    log_level: str = "INFO"
    revalidate_paths: Tuple[str, ...] = field(default_factory=tuple)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "OrchestratorConfig":
        ssh_data = data.get("ssh", {})
        queue_data = data.get("queue", {})
        notify_data = data.get("notify", {})
        return cls(
            db_path=Path(os.path.expanduser(data.get("db_path", "~/.orchestrator/jobs.db"))),
            state_db_path=Path(os.path.expanduser(
                data.get("state_db_path", "~/.orchestrator/state.db")
            )),
            ssh=SSHConfig(
                connect_timeout=int(ssh_data.get("connect_timeout", 10)),
                command_timeout=int(ssh_data.get("command_timeout", 300)),
                install_timeout=int(ssh_data.get("install_timeout", 900)),
            ),
            queue=QueueConfig(
                max_workers=int(queue_data.get("max_workers", 4)),
                requeue_interrupted=_as_bool(queue_data.get("requeue_interrupted", False)),
                poll_interval_sec=float(queue_data.get("poll_interval_sec", 2.0)),
                stale_after_sec=float(queue_data.get("stale_after_sec", 60.0)),
            ),
            notify=NotifyConfig(
                revalidate_url=notify_data.get("revalidate_url") or None,
                revalidate_secret=notify_data.get("revalidate_secret") or None,
                timeout_sec=int(notify_data.get("timeout_sec", 5)),
            ),
            log_level=str(data.get("log_level", "INFO")).upper(),
            revalidate_paths=tuple(data.get("revalidate_paths", ["/onboarding/dokku-install"])),
        )


ENV_MAP = {
    "db_path": "ORCH_DB_PATH",
    "state_db_path": "ORCH_STATE_DB_PATH",
    "log_level": "ORCH_LOG_LEVEL",
    "ssh.connect_timeout": "SSH_CONNECT_TIMEOUT",
    "ssh.command_timeout": "SSH_COMMAND_TIMEOUT",
    "ssh.install_timeout": "SSH_INSTALL_TIMEOUT",
    "queue.max_workers": "ORCH_MAX_WORKERS",
    "queue.requeue_interrupted": "ORCH_REQUEUE_INTERRUPTED",
    "queue.poll_interval_sec": "ORCH_POLL_INTERVAL",
    "queue.stale_after_sec": "ORCH_STALE_AFTER",
    "notify.revalidate_url": "REVALIDATE_URL",
    "notify.revalidate_secret": "REVALIDATE_SECRET",
    "notify.timeout_sec": "REVALIDATE_TIMEOUT_SEC",
}

INT_KEYS = {"connect_timeout", "command_timeout", "install_timeout", "max_workers", "timeout_sec"}
FLOAT_KEYS = {"poll_interval_sec", "stale_after_sec"}


def _as_bool(value: Any) -> bool:
    if isinstance(value, str):
        return value.strip().lower() in {"1", "true", "yes", "on"}
    return bool(value)


def load_yaml(path: Path) -> Dict[str, Any]:
    with path.open("r", encoding="utf-8") as handle:
        return yaml.safe_load(handle) or {}


def merge_env_overrides(config_data: Dict[str, Any]) -> Dict[str, Any]:
    merged = json.loads(json.dumps(config_data))  # deep copy via json

    for dotted_key, env_name in ENV_MAP.items():
        if env_name not in os.environ:
            continue
        value: Any = os.environ[env_name]
        target = merged
        parts = dotted_key.split(".")
        for part in parts[:-1]:
            target = target.setdefault(part, {})
        last = parts[-1]
        if last in INT_KEYS:
            value = int(value)
        elif last in FLOAT_KEYS:
            value = float(value)
        elif last == "requeue_interrupted":
            value = _as_bool(value)
        target[last] = value

    return merged


def load_config(config_path: str | Path = "config/orchestrator.defaults.yml") -> OrchestratorConfig:
    path = Path(config_path)
    if not path.exists():
        raise FileNotFoundError(f"Config file not found: {path}")

    data = load_yaml(path)
    data = merge_env_overrides(data)
    return OrchestratorConfig.from_dict(data)
