"""Resolve connection parameters and decrypted secrets for a device."""

from __future__ import annotations

import logging

from rosfleet.core.crypto import DecryptionError, decrypt
from rosfleet.core.errors import CredentialError, DeviceInactiveError, DeviceNotFoundError
from rosfleet.core.models import Device, DeviceCredentials, Transport
from rosfleet.core.repository import SQLiteRepository

logger = logging.getLogger(__name__)


class CredentialResolver:
    """Loads a device from the repository and decrypts its password."""

    def __init__(self, repository: SQLiteRepository, encryption_key: str) -> None:
        self.repository = repository
        self._key = encryption_key

    def device(self, device_id: str, require_active: bool = True) -> Device:
        device = self.repository.get_device(device_id)
        if device is None:
            raise DeviceNotFoundError(f"Device with ID {device_id} not found")
        if require_active and device.status != "ACTIVE":
            raise DeviceInactiveError(f"Device is not active (status: {device.status})")
        return device

    def for_device(self, device: Device, transport: Transport = "api") -> DeviceCredentials:
        try:
            secret = decrypt(device.encrypted_password, self._key)
        except DecryptionError as exc:
            logger.error("failed to decrypt device password", extra={"device": device.name})
            raise CredentialError(
                "Failed to decrypt device password. The password may be corrupted "
                "or the encryption key is incorrect."
            ) from exc

        return DeviceCredentials(
            host=device.host,
            port=device.port_for(transport),
            username=device.username,
            secret=secret,
        )

    def resolve(
        self, device_id: str, transport: Transport = "api", require_active: bool = True
    ) -> DeviceCredentials:
        """Return ``{host, port, username, secret}`` for the requested transport."""

        return self.for_device(self.device(device_id, require_active), transport)
