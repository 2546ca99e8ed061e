"""Error taxonomy shared by the remote, inventory and jobs layers."""

from __future__ import annotations

from typing import Any, Dict, List, Optional


class OrchestrationError(Exception):
    """Base class for every failure the orchestration core reports."""

    kind = "OrchestrationError"

    def __init__(self, message: str = "") -> None:
        super().__init__(message)
        self.message = message

    def to_dict(self) -> Dict[str, Any]:
        return {"kind": self.kind, "message": self.message}


class ValidationError(OrchestrationError):
    """Job payload rejected at submission. The job never enters the queue."""

    kind = "ValidationError"

    def __init__(self, message: str, errors: Optional[List[str]] = None) -> None:
        super().__init__(message)
        self.errors = list(errors or [])

    def to_dict(self) -> Dict[str, Any]:
        data = super().to_dict()
        data["errors"] = self.errors
        return data


class SSHConnectionError(OrchestrationError, ConnectionError):
    """Host unreachable, authentication refused, or connect timeout."""

    kind = "ConnectionError"

    def __init__(self, message: str, host: str = "") -> None:
        super().__init__(message)
        self.host = host

    def to_dict(self) -> Dict[str, Any]:
        data = super().to_dict()
        data["host"] = self.host
        return data


class RemoteCommandError(OrchestrationError):
    """The remote tool reported a failure or timed out."""

    kind = "RemoteCommandError"

    def __init__(self, operation: str, exit_code: int, stderr_excerpt: str = "",
                 message: str = "") -> None:
        super().__init__(message or f"{operation} failed with exit code {exit_code}")
        self.operation = operation
        self.exit_code = exit_code
        self.stderr_excerpt = stderr_excerpt

    def to_dict(self) -> Dict[str, Any]:
        data = super().to_dict()
        data.update({
            "operation": self.operation,
            "exit_code": self.exit_code,
            "stderr_excerpt": self.stderr_excerpt,
        })
        return data


class PersistenceError(OrchestrationError):
    """Reading or writing the state/job store failed."""

    kind = "PersistenceError"


class ServerNotFound(PersistenceError):
    kind = "ServerNotFound"

    def __init__(self, server_id: str) -> None:
        super().__init__(f"Server not found: {server_id}")
        self.server_id = server_id


def error_from_dict(data: Optional[Dict[str, Any]]) -> OrchestrationError:
    """Rebuild an exception from a stored ``to_dict()`` payload, e.g. a failed job's error."""
    data = data or {}
    kind = data.get("kind") or OrchestrationError.kind
    message = data.get("message", "")

    if kind == SSHConnectionError.kind:
        return SSHConnectionError(message, host=data.get("host", ""))
    if kind == RemoteCommandError.kind:
        return RemoteCommandError(
            data.get("operation", ""), data.get("exit_code", -1),
            data.get("stderr_excerpt", ""), message,
        )
    if kind == ValidationError.kind:
        return ValidationError(message, data.get("errors"))

    if kind in (PersistenceError.kind, ServerNotFound.kind):
        error = PersistenceError(message)
    else:
        error = OrchestrationError(message)
    error.kind = kind
    return error
