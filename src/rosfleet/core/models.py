"""Data models for devices, command results, backups and restores."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Literal, Mapping, Union


DeviceStatus = Literal["ACTIVE", "INACTIVE", "MAINTENANCE"]
BackupType = Literal["EXPORT", "BINARY", "PARTIAL"]
BackupStatus = Literal["PENDING", "COMPLETED", "FAILED"]
RestoreStatus = Literal["PENDING", "COMPLETED", "FAILED"]
TriggerType = Literal["MANUAL", "SCHEDULED", "PRE_UPDATE"]
Transport = Literal["api", "ssh"]

DEVICE_STATUSES: tuple[str, ...] = ("ACTIVE", "INACTIVE", "MAINTENANCE")
BACKUP_TYPES: tuple[str, ...] = ("EXPORT", "BINARY", "PARTIAL")

DEFAULT_API_PORT = 8728
DEFAULT_SSH_PORT = 22

# A device row: structured API reply or one line of CLI text.
Record = dict[str, Union[str, int]]
RawItem = Union[Mapping[str, Any], str]


@dataclass(slots=True)
class Device:
    """Representation of a managed RouterOS device."""

    id: str
    name: str
    host: str
    username: str
    encrypted_password: str
    status: DeviceStatus = "ACTIVE"
    api_port: int = DEFAULT_API_PORT
    ssh_port: int = DEFAULT_SSH_PORT
    last_seen: datetime | None = None

    def port_for(self, transport: Transport) -> int:
        return self.ssh_port if transport == "ssh" else self.api_port


@dataclass(slots=True)
class DeviceCredentials:
    """Connection parameters with the decrypted secret."""

    host: str
    port: int
    username: str
    secret: str

    def __repr__(self) -> str:
        return f"DeviceCredentials(host={self.host!r}, port={self.port}, username={self.username!r})"


@dataclass(slots=True)
class CommandResult:
    """Outcome of a single device command."""

    success: bool
    records: list[Record] = field(default_factory=list)
    error: str | None = None

    @classmethod
    def failed(cls, error: str) -> "CommandResult":
        return cls(success=False, error=error)


@dataclass(slots=True)
class Backup:
    """Configuration snapshot metadata; bytes live in the blob store."""

    id: str
    device_id: str
    storage_key: str
    backup_type: BackupType = "EXPORT"
    status: BackupStatus = "PENDING"
    trigger_type: TriggerType = "MANUAL"
    triggered_by: str | None = None
    file_size: int = 0
    checksum: str = ""
    device_version: str | None = None
    config_summary: dict[str, int] | None = None
    is_pinned: bool = False
    pinned_by: str | None = None
    pinned_at: datetime | None = None
    pinned_reason: str | None = None
    is_safety_backup: bool = False
    storage_url: str | None = None
    created_at: datetime | None = None
    completed_at: datetime | None = None
    expires_at: datetime | None = None


@dataclass(slots=True)
class Restore:
    """A single attempt to apply a backup to a device."""

    id: str
    backup_id: str
    device_id: str
    restored_by: str | None = None
    status: RestoreStatus = "PENDING"
    safety_backup_id: str | None = None
    error_message: str | None = None
    restore_log: str | None = None
    created_at: datetime | None = None
    completed_at: datetime | None = None
