"""MikroTik SSH client used for exports and CLI-only commands."""

from __future__ import annotations

import logging
import socket
from typing import Callable

import paramiko

from rosfleet.core.errors import (
    RouterOSAuthenticationError,
    RouterOSCommandError,
    RouterOSConnectionError,
)
from rosfleet.core.models import DEFAULT_SSH_PORT
from rosfleet.mikrotik.parsing import SystemResource, parse_system_resource

logger = logging.getLogger(__name__)

DEFAULT_SSH_TIMEOUT = 30.0


class RouterOSSSHClient:
    """SSH session to a RouterOS device."""

    def __init__(
        self,
        host: str,
        username: str,
        password: str,
        port: int = DEFAULT_SSH_PORT,
        timeout: float = DEFAULT_SSH_TIMEOUT,
        client_factory: Callable[[], paramiko.SSHClient] = paramiko.SSHClient,
    ) -> None:
        self.host = host
        self.username = username
        self.port = port
        self.timeout = timeout
        self._password = password
        self._client_factory = client_factory
        self._client: paramiko.SSHClient | None = None

    @property
    def is_connected(self) -> bool:
        return self._client is not None

    def connect(self) -> None:
        if self._client is not None:
            return

        ssh = self._client_factory()
        ssh.set_missing_host_key_policy(paramiko.AutoAddPolicy())
        target = f"{self.host}:{self.port}"
        try:
            logger.debug("opening ssh session host=%s port=%s", self.host, self.port)
            ssh.connect(
                self.host,
                port=self.port,
                username=self.username,
                password=self._password,
                look_for_keys=False,
                allow_agent=False,
                timeout=self.timeout,
                banner_timeout=self.timeout,
                auth_timeout=self.timeout,
            )
        except paramiko.AuthenticationException as exc:  # pragma: no cover - network dependent
            ssh.close()
            raise RouterOSAuthenticationError(f"SSH authentication failed ({target})") from exc
        except (paramiko.SSHException, socket.error, TimeoutError) as exc:  # pragma: no cover - network dependent
            ssh.close()
            raise RouterOSConnectionError(f"SSH connection to {target} failed - {exc}") from exc

        self._client = ssh
        logger.info("ssh ok host=%s port=%s", self.host, self.port)

    def disconnect(self) -> None:
        if self._client is None:
            return
        client, self._client = self._client, None
        client.close()

    def _run_command(self, command: str) -> tuple[str, str, int]:
        if self._client is None:
            raise RouterOSConnectionError("Not connected. Call connect() first.")
        try:
            _, stdout, stderr = self._client.exec_command(command, timeout=self.timeout)
            output = stdout.read().decode("utf-8", errors="replace")
            error_output = stderr.read().decode("utf-8", errors="replace")
            exit_status = stdout.channel.recv_exit_status()
        except (paramiko.SSHException, socket.error) as exc:  # pragma: no cover - network dependent
            raise RouterOSConnectionError(f"Unable to execute command '{command}' - {exc}") from exc
        return output, error_output, exit_status

    def execute_command(self, command: str) -> str:
        """Run a CLI command and return its standard output."""

        logger.debug("executing mikrotik command='%s'", command)
        output, error_output, exit_status = self._run_command(command)
        if exit_status != 0:
            logger.warning("command failed command=%s status=%s", command, exit_status)
            raise RouterOSCommandError(f"Command failed with code {exit_status}: {error_output}")
        return output

    def export_config(self, compact: bool = False) -> str:
        """Retrieve the configuration export (``/export`` or ``/export compact``)."""

        command = "/export compact" if compact else "/export"
        try:
            output = self.execute_command(command)
        except RouterOSCommandError as exc:
            raise RouterOSCommandError(f"SSH export failed: {exc}") from exc
        if not output.strip():
            raise RouterOSCommandError("SSH export failed: Export command returned no output")
        logger.debug("export received bytes=%d", len(output.encode("utf-8")))
        return output

    def system_resource(self) -> SystemResource:
        return parse_system_resource(self.execute_command("/system resource print"))

    def __enter__(self) -> "RouterOSSSHClient":
        self.connect()
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.disconnect()
