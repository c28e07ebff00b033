# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0

# src/rsboot/execution/executor.py
from __future__ import annotations

import logging
import socket
import subprocess
import threading
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, Optional, Protocol, Tuple

import paramiko

from ..errors import CommandFailedError, ExecTimeoutError, ExecutionError

log = logging.getLogger("rsboot")


@dataclass(frozen=True)
class NodeTarget:
    """
    Where a command runs: the local machine or a host reached over SSH.
    """
    name: str                      # logical node name, e.g. "db1:27017"
    address: str                   # IP or DNS to connect
    local: bool = False
    username: str = "ubuntu"
    port: int = 22
    pkey_path: Optional[Path] = None
    password: Optional[str] = field(default=None, repr=False)


@dataclass(frozen=True)
class CommandResult:
    exit_code: int
    stdout: str
    stderr: str

    @property
    def ok(self) -> bool:
        return self.exit_code == 0


class RemoteExecutor(Protocol):
    def execute(
        self,
        target: NodeTarget,
        command: str,
        *,
        sudo: bool = False,
        stdin: Optional[str] = None,
        timeout: Optional[float] = None,
    ) -> CommandResult: ...


def shq(s: str) -> str:
    """
    Quote for bash -c.
    """
    return "'" + s.replace("'", "'\"'\"'") + "'"


def wrap(command: str, sudo: bool) -> str:
    if sudo:
        return f"sudo -n bash -c {shq(command)}"
    return f"bash -c {shq(command)}"


def checked(
    executor: RemoteExecutor,
    target: NodeTarget,
    command: str,
    *,
    what: str,
    sudo: bool = False,
    stdin: Optional[str] = None,
    timeout: Optional[float] = None,
) -> CommandResult:
    """Run *command* and raise CommandFailedError on a non-zero exit."""
    result = executor.execute(target, command, sudo=sudo, stdin=stdin, timeout=timeout)
    if not result.ok:
        detail = (result.stderr or result.stdout).strip()
        raise CommandFailedError(
            f"{what} failed on {target.name} (rc={result.exit_code}): {detail}", result
        )
    return result


class LocalExecutor:
    """Runs commands on this machine through bash."""

    def __init__(self, cmd_timeout: float = 120.0):
        self.cmd_timeout = cmd_timeout

    def execute(
        self,
        target: NodeTarget,
        command: str,
        *,
        sudo: bool = False,
        stdin: Optional[str] = None,
        timeout: Optional[float] = None,
    ) -> CommandResult:
        argv = ["sudo", "-n", "bash", "-c", command] if sudo else ["bash", "-c", command]
        timeout = timeout or self.cmd_timeout
        log.debug("(%s) $ %s", target.name, command)
        try:
            cp = subprocess.run(
                argv,
                input=stdin.encode("utf-8") if stdin is not None else None,
                capture_output=True,
                timeout=timeout,
            )
        except subprocess.TimeoutExpired as e:
            raise ExecTimeoutError(f"command timed out after {timeout}s on {target.name}") from e
        except OSError as e:
            raise ExecutionError(f"cannot run command on {target.name}: {e}") from e
        log.debug("(%s) [exit %s]", target.name, cp.returncode)
        return CommandResult(
            cp.returncode,
            cp.stdout.decode("utf-8", errors="replace"),
            cp.stderr.decode("utf-8", errors="replace"),
        )


class SSHExecutor:
    """
    Runs commands on remote hosts over SSH. One client is kept per host and
    reused across calls; a broken connection is dropped and reopened on the
    next call.
    """

    def __init__(self, connect_timeout: float = 20.0, cmd_timeout: float = 120.0):
        self.connect_timeout = connect_timeout
        self.cmd_timeout = cmd_timeout
        self._clients: Dict[Tuple[str, int, str], paramiko.SSHClient] = {}
        self._lock = threading.Lock()

    # ------------------ connection ------------------

    def _load_pkey(self, key_path: str):
        for key_cls in (
            paramiko.Ed25519Key,
            paramiko.RSAKey,
            paramiko.ECDSAKey,
        ):
            try:
                return key_cls.from_private_key_file(key_path)
            except paramiko.SSHException:
                continue
        raise ExecutionError(f"Unsupported private key format for {key_path}")

    def _connect(self, target: NodeTarget) -> paramiko.SSHClient:
        client = paramiko.SSHClient()
        client.set_missing_host_key_policy(paramiko.AutoAddPolicy())

        pkey = self._load_pkey(str(target.pkey_path)) if target.pkey_path else None

        client.connect(
            hostname=target.address,
            port=target.port,
            username=target.username,
            password=target.password if not pkey else None,
            pkey=pkey,
            timeout=self.connect_timeout,
            allow_agent=True,
            look_for_keys=pkey is None,
        )
        return client

    def _client(self, target: NodeTarget) -> paramiko.SSHClient:
        key = (target.address, target.port, target.username)
        with self._lock:
            client = self._clients.get(key)
        if client is not None:
            return client

        # connects run unlocked; only the client map is guarded
        try:
            client = self._connect(target)
        except (paramiko.SSHException, OSError) as e:
            raise ExecutionError(f"cannot connect to {target.name} ({target.address}): {e}") from e

        with self._lock:
            kept = self._clients.setdefault(key, client)
        if kept is not client:
            client.close()
        return kept

    def _drop(self, target: NodeTarget) -> None:
        with self._lock:
            client = self._clients.pop((target.address, target.port, target.username), None)
        if client is not None:
            client.close()

    # ------------------ execution ------------------

    def execute(
        self,
        target: NodeTarget,
        command: str,
        *,
        sudo: bool = False,
        stdin: Optional[str] = None,
        timeout: Optional[float] = None,
    ) -> CommandResult:
        timeout = timeout or self.cmd_timeout
        final = wrap(command, sudo)
        client = self._client(target)
        log.debug("(%s) $ %s", target.name, command)
        try:
            chan_in, stdout, stderr = client.exec_command(final, timeout=timeout)
            if stdin is not None:
                chan_in.write(stdin)
                chan_in.flush()
                chan_in.channel.shutdown_write()
            out = stdout.read().decode("utf-8", errors="replace")
            err = stderr.read().decode("utf-8", errors="replace")
            rc = stdout.channel.recv_exit_status()
        except socket.timeout as e:
            self._drop(target)
            raise ExecTimeoutError(f"command timed out after {timeout}s on {target.name}") from e
        except (paramiko.SSHException, OSError) as e:
            self._drop(target)
            raise ExecutionError(f"ssh command failed on {target.name}: {e}") from e
        log.debug("(%s) [exit %s]", target.name, rc)
        return CommandResult(rc, out, err)

    def close(self) -> None:
        with self._lock:
            clients, self._clients = list(self._clients.values()), {}
        for c in clients:
            c.close()


class RoutingExecutor:
    """Sends commands for local targets to a LocalExecutor and the rest over SSH."""

    def __init__(
        self,
        local: Optional[RemoteExecutor] = None,
        remote: Optional[RemoteExecutor] = None,
    ):
        self.local = local or LocalExecutor()
        self.remote = remote or SSHExecutor()

    def execute(
        self,
        target: NodeTarget,
        command: str,
        *,
        sudo: bool = False,
        stdin: Optional[str] = None,
        timeout: Optional[float] = None,
    ) -> CommandResult:
        backend = self.local if target.local else self.remote
        return backend.execute(target, command, sudo=sudo, stdin=stdin, timeout=timeout)

    def close(self) -> None:
        for backend in (self.local, self.remote):
            close = getattr(backend, "close", None)
            if close:
                close()
