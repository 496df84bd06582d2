"""Exception hierarchy shared by RosFleet modules."""

from __future__ import annotations


class RosFleetError(RuntimeError):
    """Base exception for all RosFleet errors."""


class RouterOSError(RosFleetError):
    """Base exception for RouterOS transport errors."""


class RouterOSConnectionError(RouterOSError, ConnectionError):
    """Raised when a device cannot be reached (timeout, refused, DNS)."""


class RouterOSAuthenticationError(RouterOSError):
    """Raised when the device rejects the supplied credentials.

    Retrying will not help, so callers surface it immediately.
    """


class RouterOSCommandError(RouterOSError):
    """Raised when a CLI command exits with a non-zero status."""


class ResponseParseError(RouterOSError, ValueError):
    """Raised when a device response has an unexpected shape."""


class CredentialError(RosFleetError):
    """Raised when device credentials cannot be resolved or decrypted."""


class DeviceNotFoundError(RosFleetError, LookupError):
    """Raised when a device id is unknown."""


class DeviceInactiveError(RosFleetError):
    """Raised when an operation targets a device that is not ACTIVE."""


class BackupError(RosFleetError):
    """Base exception for backup and restore failures."""


class BackupNotFoundError(BackupError, LookupError):
    """Raised when a backup id is unknown."""


class BackupStateError(BackupError):
    """Raised when a backup is not in the state an operation requires."""


class BackupPinnedError(BackupError):
    """Raised when deleting a pinned backup."""


class BackupIntegrityError(BackupError):
    """Raised when downloaded backup bytes do not match the stored checksum."""


class RestoreError(BackupError):
    """Raised when a restore fails after its record was created."""


class PartialCommandFailure(RouterOSError):
    """Aggregated failure of a continue-on-error batch such as a config import."""

    def __init__(self, line_errors: list[str]) -> None:
        self.line_errors = list(line_errors)
        super().__init__("; ".join(self.line_errors))
