#!/usr/bin/env python3
"""
SSH Session Provider — Scoped Remote Execution Handles

Turns a frozen set of connection parameters into a live SSH session and
guarantees it is released on every exit path. The session is owned by
exactly one job execution and is never shared.

Security model:
- Key-based auth only, key material comes from the job snapshot
- The private key never appears in repr(), logs or error messages
- Bounded connect/banner/auth timeouts and a wall-clock budget per command
- No retries here; retry policy belongs to the caller

Usage:
    provider = SSHSessionProvider(connect_timeout=10, command_timeout=300)
    with provider.session(params) as session:
        result = session.run("dokku plugin:list")
"""

import io
import logging
import socket
import time
from contextlib import contextmanager
from dataclasses import dataclass, field, asdict
from typing import Optional, Dict, Any, Iterator

import paramiko

from core.errors import SSHConnectionError

logger = logging.getLogger(__name__)

KEY_CLASSES = (paramiko.Ed25519Key, paramiko.RSAKey, paramiko.ECDSAKey)
RECV_BUFFER = 32768
IDLE_POLL_SEC = 0.02


@dataclass(frozen=True)
class ConnectionParams:
    """Everything needed to open a session. Frozen at enqueue time."""
    host: str
    username: str
    private_key: str = field(repr=False)
    port: int = 22

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ConnectionParams":
        return cls(
            host=data.get("host", ""),
            username=data.get("username", "root"),
            private_key=data.get("private_key", ""),
            port=int(data.get("port") or 22),
        )

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @property
    def target(self) -> str:
        return f"{self.username}@{self.host}:{self.port}"


@dataclass
class ExecResult:
    """Result of a remote command execution."""
    command: str
    exit_code: int
    stdout: str
    stderr: str
    success: bool
    duration_ms: float
    host: str = ""
    timed_out: bool = False
    timestamp: float = field(default_factory=time.time)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def load_private_key(content: str, host: str = ""):
    """Parse a private key from string content, trying each supported type."""
    if not content:
        raise SSHConnectionError("No SSH private key available", host=host)

    key_file = io.StringIO(content)
    for key_class in KEY_CLASSES:
        try:
            key_file.seek(0)
            return key_class.from_private_key(key_file)
        except (paramiko.SSHException, ValueError):
            continue
    raise SSHConnectionError("Could not parse SSH private key", host=host)


def _decode(chunks) -> str:
    return b"".join(chunks).decode("utf-8", errors="replace").strip()


class SSHSession:
    """A connected SSH client bound to one job execution."""

    def __init__(self, client: "paramiko.SSHClient", params: ConnectionParams,
                 command_timeout: int):
        self._client = client
        self.host = params.host
        self.target = params.target
        self.command_timeout = command_timeout
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def close(self):
        """Close the underlying client. Safe to call repeatedly."""
        if self._closed:
            return
        self._closed = True
        try:
            self._client.close()
        except (paramiko.SSHException, OSError) as e:
            logger.debug(f"Ignoring error while closing SSH session to {self.target}: {e}")
        logger.info(f"SSH session to {self.target} closed")

    def run(self, command: str, timeout: int = None) -> ExecResult:
        """
        Execute a command and collect its output.

        ``timeout`` is a wall-clock budget for the whole command, not a
        per-read limit: a command that keeps printing past it is cut off
        too. On timeout the channel is closed and whatever output arrived
        is kept.

        Failures of the transport (timeout, dropped connection) come back
        as an ExecResult with exit_code -1 rather than an exception, so the
        gateway can map them onto RemoteCommandError with an excerpt.
        """
        cmd_timeout = timeout or self.command_timeout
        start = time.time()

        if self._closed:
            return ExecResult(
                command=command, exit_code=-1, stdout="",
                stderr="SSH session already released", success=False,
                duration_ms=0, host=self.host,
            )

        out_chunks, err_chunks = [], []
        try:
            _, stdout_ch, _ = self._client.exec_command(command, timeout=cmd_timeout)
            exit_code = self._collect(stdout_ch.channel, cmd_timeout, out_chunks, err_chunks)

            result = ExecResult(
                command=command,
                exit_code=exit_code,
                stdout=_decode(out_chunks),
                stderr=_decode(err_chunks),
                success=exit_code == 0,
                duration_ms=round((time.time() - start) * 1000, 1),
                host=self.host,
            )
        except socket.timeout as e:
            partial_err = _decode(err_chunks)
            result = ExecResult(
                command=command, exit_code=-1, stdout=_decode(out_chunks),
                stderr=f"Command timed out after {cmd_timeout}s: {e}"
                       + (f"\n{partial_err}" if partial_err else ""),
                success=False, duration_ms=round((time.time() - start) * 1000, 1),
                host=self.host, timed_out=True,
            )
        except (paramiko.SSHException, OSError) as e:
            result = ExecResult(
                command=command, exit_code=-1, stdout=_decode(out_chunks),
                stderr=str(e), success=False,
                duration_ms=round((time.time() - start) * 1000, 1),
                host=self.host,
            )

        level = logging.INFO if result.success else logging.WARNING
        logger.log(
            level,
            f"[SSH] {command[:80]} -> exit={result.exit_code} "
            f"({result.duration_ms:.0f}ms)"
        )
        return result

    def _collect(self, channel, budget: float, out_chunks, err_chunks) -> int:
        """Drain both streams until exit status, or raise socket.timeout at the deadline."""
        deadline = time.monotonic() + budget
        while True:
            progressed = False
            if channel.recv_ready():
                data = channel.recv(RECV_BUFFER)
                if data:
                    out_chunks.append(data)
                    progressed = True
            if channel.recv_stderr_ready():
                data = channel.recv_stderr(RECV_BUFFER)
                if data:
                    err_chunks.append(data)
                    progressed = True

            if (channel.exit_status_ready()
                    and not channel.recv_ready()
                    and not channel.recv_stderr_ready()):
                return channel.recv_exit_status()

            if time.monotonic() >= deadline:
                try:
                    channel.close()
                except (paramiko.SSHException, OSError) as e:
                    logger.debug(f"Ignoring error closing timed-out channel on {self.target}: {e}")
                raise socket.timeout(f"still running after {budget}s")

            if not progressed:
                time.sleep(IDLE_POLL_SEC)

    def __repr__(self) -> str:
        status = "closed" if self._closed else "open"
        return f"SSHSession({self.target}, {status})"


class SSHSessionProvider:
    """
    Produces SSH sessions from connection parameters.

    acquire() either returns a connected session or raises
    SSHConnectionError. release() is idempotent. Prefer session(),
    which releases on every exit path.
    """

    DEFAULT_CONNECT_TIMEOUT = 10
    DEFAULT_COMMAND_TIMEOUT = 300

    def __init__(self, connect_timeout: int = None, command_timeout: int = None):
        self.connect_timeout = connect_timeout or self.DEFAULT_CONNECT_TIMEOUT
        self.command_timeout = command_timeout or self.DEFAULT_COMMAND_TIMEOUT

    def acquire(self, params: ConnectionParams) -> SSHSession:
        """Open a session or raise SSHConnectionError."""
        if not params.host:
            raise SSHConnectionError("No host configured for SSH session")

        key = load_private_key(params.private_key, host=params.host)

        client = paramiko.SSHClient()
        client.set_missing_host_key_policy(paramiko.AutoAddPolicy())
        try:
            client.connect(
                hostname=params.host,
                port=params.port,
                username=params.username,
                pkey=key,
                timeout=self.connect_timeout,
                banner_timeout=self.connect_timeout,
                auth_timeout=self.connect_timeout,
                allow_agent=False,
                look_for_keys=False,
            )
        except paramiko.AuthenticationException as e:
            client.close()
            logger.error(f"SSH auth failed for {params.target}")
            raise SSHConnectionError(f"Authentication failed: {e}", host=params.host) from e
        except socket.timeout as e:
            client.close()
            logger.error(f"SSH connect to {params.target} timed out")
            raise SSHConnectionError(
                f"Connection timed out after {self.connect_timeout}s", host=params.host,
            ) from e
        except (paramiko.SSHException, OSError) as e:
            client.close()
            logger.error(f"SSH connection failed to {params.target}: {e}")
            raise SSHConnectionError(f"Connection failed: {e}", host=params.host) from e

        logger.info(f"SSH connected to {params.target}")
        return SSHSession(client, params, self.command_timeout)

    def release(self, session: Optional[SSHSession]):
        """Release a session. None and already-closed sessions are ignored."""
        if session is not None:
            session.close()

    @contextmanager
    def session(self, params: ConnectionParams) -> Iterator[SSHSession]:
        handle = self.acquire(params)
        try:
            yield handle
        finally:
            self.release(handle)

    def __repr__(self) -> str:
        return (
            f"SSHSessionProvider(connect_timeout={self.connect_timeout}, "
            f"command_timeout={self.command_timeout})"
        )
