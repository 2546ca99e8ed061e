"""Server and plugin records as persisted by the state store."""

from __future__ import annotations

from dataclasses import dataclass, field, asdict
from enum import Enum
from typing import Any, Dict, List, Optional

from remote.ssh_session import ConnectionParams


class PluginStatus(Enum):
    ENABLED = "enabled"
    DISABLED = "disabled"


@dataclass
class Plugin:
    """A plugin tracked on a server. ``configuration`` is opaque to the core."""
    name: str
    status: str = PluginStatus.ENABLED.value
    version: Optional[str] = None
    configuration: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Plugin":
        configuration = data.get("configuration")
        return cls(
            name=data["name"],
            status=data.get("status", PluginStatus.ENABLED.value),
            version=data.get("version"),
            configuration=configuration if isinstance(configuration, dict) else {},
        )

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class Server:
    """A deployment target and its credential."""
    id: str
    ip: str
    username: str
    private_key: str = field(repr=False)
    name: str = ""
    port: int = 22
    plugins: List[Plugin] = field(default_factory=list)
    monitoring_agent: Optional[str] = None

    def connection_params(self) -> ConnectionParams:
        return ConnectionParams(
            host=self.ip,
            port=self.port,
            username=self.username,
            private_key=self.private_key,
        )

    def to_dict(self, include_key: bool = False) -> Dict[str, Any]:
        data = {
            "id": self.id,
            "name": self.name,
            "ip": self.ip,
            "port": self.port,
            "username": self.username,
            "plugins": [p.to_dict() for p in self.plugins],
            "monitoring_agent": self.monitoring_agent,
        }
        if include_key:
            data["private_key"] = self.private_key
        return data
