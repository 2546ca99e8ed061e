"""
Remote operations understood by the command gateway.

Each operation owns three things: argument validation, construction of a
single shell command (arguments quoted), and parsing of that command's
output. The gateway only runs them; it never branches on operation type.
"""

from __future__ import annotations

import logging
import re
import shlex
from typing import Any, Dict, List, Optional, Pattern, Tuple

from core.errors import ValidationError

logger = logging.getLogger(__name__)

SUPPORTED_PLUGINS: Tuple[str, ...] = (
    "postgres",
    "mysql",
    "mongo",
    "mariadb",
    "redis",
    "letsencrypt",
    "rabbitmq",
)

DATABASE_TYPES: Tuple[str, ...] = ("postgres", "mysql", "mongo", "mariadb", "redis", "rabbitmq")

# Dokku prefixes user-facing errors with " !"
DOKKU_ERROR = re.compile(r"^[ \t]*![ \t]+", re.MULTILINE)

# "  redis    1.39.1 enabled    dokku redis service plugin"
PLUGIN_LINE = re.compile(
    r"^\s*(?P<name>[A-Za-z0-9_.\-]+)\s+(?P<version>\S+)\s+(?P<status>enabled|disabled)\b"
)

_APP_NAME = re.compile(r"^[a-z0-9][a-z0-9\-]*\Z")
_EMAIL = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+\Z")

NETDATA_UNINSTALLER = "/usr/libexec/netdata/netdata-uninstaller.sh"


class RemoteOperation:
    """Base class. Subclasses set ``name`` and implement ``command``."""

    name = "operation"
    error_patterns: Tuple[Pattern, ...] = (DOKKU_ERROR,)
    # None means "use the session's default command timeout"
    timeout: Optional[int] = None

    def validate(self) -> None:
        """Raise ValidationError if the arguments are unusable."""

    def command(self) -> str:
        raise NotImplementedError

    def parse(self, stdout: str, stderr: str) -> Any:
        """Turn successful output into a structured payload."""
        return {"output": stdout}

    def find_error(self, stdout: str, stderr: str) -> Optional[str]:
        """Return the first line matching an error pattern, if any."""
        for text in (stderr, stdout):
            for pattern in self.error_patterns:
                match = pattern.search(text or "")
                if match:
                    line_end = text.find("\n", match.start())
                    return text[match.start():line_end if line_end != -1 else None].strip()
        return None

    def __repr__(self) -> str:
        return f"{type(self).__name__}()"


def _require_plugin(name: str) -> None:
    if name not in SUPPORTED_PLUGINS:
        raise ValidationError(
            f"Unsupported plugin: {name!r}",
            [f"plugin name must be one of {', '.join(SUPPORTED_PLUGINS)}"],
        )


class ListPlugins(RemoteOperation):
    name = "listPlugins"

    def command(self) -> str:
        return "dokku plugin:list"

    def parse(self, stdout: str, stderr: str) -> List[Dict[str, Any]]:
        plugins = []
        for line in stdout.splitlines():
            if not line.strip():
                continue
            match = PLUGIN_LINE.match(line)
            if not match:
                logger.warning(f"Skipping unparsable plugin line: {line[:120]!r}")
                continue
            plugins.append({
                "name": match.group("name"),
                "version": match.group("version"),
                "status": match.group("status") == "enabled",
            })
        return plugins


class InstallPlugin(RemoteOperation):
    name = "installPlugin"

    def __init__(self, plugin_name: str, url: str, timeout: int = None):
        self.plugin_name = plugin_name
        self.url = url
        self.timeout = timeout

    def validate(self) -> None:
        _require_plugin(self.plugin_name)
        if not self.url or not self.url.strip():
            raise ValidationError("Plugin URL is required", ["url must be a non-empty string"])

    def command(self) -> str:
        return (
            f"sudo dokku plugin:install {shlex.quote(self.url)} "
            f"--name {shlex.quote(self.plugin_name)}"
        )

    def parse(self, stdout: str, stderr: str) -> Dict[str, Any]:
        return {"name": self.plugin_name, "installed": True}

    def __repr__(self) -> str:
        return f"InstallPlugin({self.plugin_name!r})"


class TogglePlugin(RemoteOperation):
    name = "togglePlugin"

    def __init__(self, plugin_name: str, enabled: bool):
        self.plugin_name = plugin_name
        self.enabled = enabled

    def validate(self) -> None:
        _require_plugin(self.plugin_name)
        if not isinstance(self.enabled, bool):
            raise ValidationError("enabled must be a boolean", ["enabled must be a boolean"])

    def command(self) -> str:
        verb = "enable" if self.enabled else "disable"
        return f"sudo dokku plugin:{verb} {shlex.quote(self.plugin_name)}"

    def parse(self, stdout: str, stderr: str) -> Dict[str, Any]:
        return {"name": self.plugin_name, "enabled": self.enabled}

    def __repr__(self) -> str:
        return f"TogglePlugin({self.plugin_name!r}, enabled={self.enabled})"


class DeletePlugin(RemoteOperation):
    name = "deletePlugin"

    def __init__(self, plugin_name: str):
        self.plugin_name = plugin_name

    def validate(self) -> None:
        _require_plugin(self.plugin_name)

    def command(self) -> str:
        return f"sudo dokku plugin:uninstall {shlex.quote(self.plugin_name)}"

    def parse(self, stdout: str, stderr: str) -> Dict[str, Any]:
        return {"name": self.plugin_name, "deleted": True}

    def __repr__(self) -> str:
        return f"DeletePlugin({self.plugin_name!r})"


class ConfigureLetsencrypt(RemoteOperation):
    name = "configureLetsencrypt"

    def __init__(self, email: str, auto_generate_ssl: bool = False):
        self.email = email
        self.auto_generate_ssl = auto_generate_ssl

    def validate(self) -> None:
        if not isinstance(self.email, str) or not _EMAIL.match(self.email):
            raise ValidationError("Email is invalid", ["email is invalid"])

    def command(self) -> str:
        cmd = f"dokku letsencrypt:set --global email {shlex.quote(self.email)}"
        if self.auto_generate_ssl:
            cmd += " && dokku letsencrypt:cron-job --add"
        return cmd

    def parse(self, stdout: str, stderr: str) -> Dict[str, Any]:
        return {"email": self.email, "autoGenerateSSL": self.auto_generate_ssl}


class DestroyDatabase(RemoteOperation):
    name = "destroyDatabase"

    def __init__(self, database_name: str, database_type: str):
        self.database_name = database_name
        self.database_type = database_type

    def validate(self) -> None:
        errors = []
        if self.database_type not in DATABASE_TYPES:
            errors.append(f"database type must be one of {', '.join(DATABASE_TYPES)}")
        if not self.database_name or not _APP_NAME.match(self.database_name):
            errors.append("database name must be lowercase alphanumeric with dashes")
        if errors:
            raise ValidationError("Invalid database destroy request", errors)

    def command(self) -> str:
        return (
            f"dokku {self.database_type}:destroy "
            f"{shlex.quote(self.database_name)} --force"
        )

    def parse(self, stdout: str, stderr: str) -> Dict[str, Any]:
        return {"name": self.database_name, "type": self.database_type, "destroyed": True}

    def __repr__(self) -> str:
        return f"DestroyDatabase({self.database_type}:{self.database_name})"


class UninstallMonitoringAgent(RemoteOperation):
    name = "uninstallMonitoringAgent"
    error_patterns = (DOKKU_ERROR, re.compile(r"^(?:ERROR|FATAL)\b", re.MULTILINE))

    def command(self) -> str:
        return f"sudo {NETDATA_UNINSTALLER} --yes --force"

    def parse(self, stdout: str, stderr: str) -> Dict[str, Any]:
        return {"uninstalled": True}


class UnlockGit(RemoteOperation):
    """Force-release a stale git lock left behind by an interrupted deploy."""

    name = "unlockGit"

    def __init__(self, app_name: str):
        self.app_name = app_name

    def validate(self) -> None:
        if not self.app_name or not _APP_NAME.match(self.app_name):
            raise ValidationError("Invalid app name", ["app name must be lowercase alphanumeric with dashes"])

    def command(self) -> str:
        return f"dokku git:unlock {shlex.quote(self.app_name)} --force"

    def parse(self, stdout: str, stderr: str) -> Dict[str, Any]:
        return {"app": self.app_name, "unlocked": True}
