"""Per-operation device sessions.

Services never build transport clients themselves: they ask
:class:`DeviceSessions` for a connected client and it is closed again on every
exit path.
"""

from __future__ import annotations

import logging
import time
from contextlib import contextmanager
from typing import Callable, Iterator

from rosfleet.core.credentials import CredentialResolver
from rosfleet.core.logging import device_context
from rosfleet.core.models import Device
from rosfleet.mikrotik.client import DEFAULT_TIMEOUT, RouterOSApiClient
from rosfleet.mikrotik.executor import CommandExecutor, RetryPolicy
from rosfleet.mikrotik.ssh import DEFAULT_SSH_TIMEOUT, RouterOSSSHClient

logger = logging.getLogger(__name__)


class DeviceSessions:
    """Builds connected API and SSH clients for devices."""

    def __init__(
        self,
        resolver: CredentialResolver,
        api_factory: Callable[..., RouterOSApiClient] = RouterOSApiClient,
        ssh_factory: Callable[..., RouterOSSSHClient] = RouterOSSSHClient,
        api_timeout: float = DEFAULT_TIMEOUT,
        ssh_timeout: float = DEFAULT_SSH_TIMEOUT,
        retry_policy: RetryPolicy | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.resolver = resolver
        self.api_factory = api_factory
        self.ssh_factory = ssh_factory
        self.api_timeout = api_timeout
        self.ssh_timeout = ssh_timeout
        self.retry_policy = retry_policy or RetryPolicy()
        self.sleep = sleep

    def device(self, device_id: str, require_active: bool = True) -> Device:
        return self.resolver.device(device_id, require_active)

    def executor(self, client: RouterOSApiClient) -> CommandExecutor:
        return CommandExecutor(client, self.retry_policy, self.sleep)

    def open_api(self, device: Device) -> RouterOSApiClient:
        """Return a connected API client; the caller must disconnect it."""

        credentials = self.resolver.for_device(device, "api")
        client = self.api_factory(
            host=credentials.host,
            username=credentials.username,
            password=credentials.secret,
            port=credentials.port,
            timeout=self.api_timeout,
        )
        client.connect()
        try:
            self.resolver.repository.touch_device(device.id)
        except Exception:
            client.disconnect()
            raise
        return client

    def open_ssh(self, device: Device) -> RouterOSSSHClient:
        """Return a connected SSH client; the caller must disconnect it."""

        credentials = self.resolver.for_device(device, "ssh")
        client = self.ssh_factory(
            host=credentials.host,
            username=credentials.username,
            password=credentials.secret,
            port=credentials.port,
            timeout=self.ssh_timeout,
        )
        client.connect()
        try:
            self.resolver.repository.touch_device(device.id)
        except Exception:
            client.disconnect()
            raise
        return client

    @contextmanager
    def api(self, device_id: str) -> Iterator[RouterOSApiClient]:
        device = self.device(device_id)
        with device_context(device.name):
            client = self.open_api(device)
            try:
                yield client
            finally:
                client.disconnect()
                logger.debug("api session closed")

    @contextmanager
    def ssh(self, device_id: str) -> Iterator[RouterOSSSHClient]:
        device = self.device(device_id)
        with device_context(device.name):
            client = self.open_ssh(device)
            try:
                yield client
            finally:
                client.disconnect()
                logger.debug("ssh session closed")
