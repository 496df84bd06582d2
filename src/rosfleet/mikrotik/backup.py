"""Backup and restore orchestration for RouterOS devices.

A backup is an ``/export`` taken over SSH, uploaded to the blob store and
described by a row in the repository. Its life cycle is ``PENDING`` ->
``COMPLETED`` or ``FAILED``; a failed row is kept as the record of the attempt.

A restore downloads a completed backup, verifies its checksum and imports it
line by line over the API. Unless the caller opts out, a compact safety backup
of the target device is taken first and the restore is aborted when it fails.
Lines that fail during the import do not stop the import; they are collected
and make the restore FAILED afterwards, so a partially applied configuration
is possible and is reported in the restore log.
"""

from __future__ import annotations

import logging
import sqlite3
import uuid
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable

from rosfleet.common.diff import DiffOutcome, compare_texts
from rosfleet.core.errors import (
    BackupError,
    BackupIntegrityError,
    BackupNotFoundError,
    BackupPinnedError,
    BackupStateError,
    RestoreError,
    RosFleetError,
    RouterOSError,
)
from rosfleet.core.models import BACKUP_TYPES, Backup, BackupType, Device, Restore, TriggerType
from rosfleet.core.normalize import normalize_mikrotik_export
from rosfleet.core.repository import SQLiteRepository, utcnow
from rosfleet.core.storage import BlobStore, calculate_checksum, download_and_verify
from rosfleet.mikrotik.export import backup_storage_key, extract_routeros_version, parse_config_summary
from rosfleet.mikrotik.sessions import DeviceSessions
from rosfleet.mikrotik.ssh import RouterOSSSHClient

logger = logging.getLogger(__name__)

DEFAULT_PAGE_SIZE = 50
RESTORE_HISTORY_PREVIEW = 10
DOWNLOAD_URL_TTL = 3600
UNKNOWN_VERSION = "Unknown"
RESTORE_OK_MESSAGE = "Configuration restored successfully"


@dataclass(slots=True)
class CreateBackupOptions:
    triggered_by: str | None = None
    trigger_type: TriggerType = "MANUAL"
    backup_type: BackupType = "EXPORT"
    compact: bool = False


@dataclass(slots=True)
class RestoreOptions:
    restored_by: str | None = None
    create_safety_backup: bool = True


@dataclass(slots=True)
class BackupDetails:
    """A backup together with its most recent restore attempts."""

    backup: Backup
    restores: list[Restore]


def _new_id() -> str:
    return uuid.uuid4().hex


class BackupOrchestrator:
    """Creates, restores and manages configuration backups."""

    def __init__(self, repository: SQLiteRepository, blob_store: BlobStore, sessions: DeviceSessions) -> None:
        self.repository = repository
        self.blob_store = blob_store
        self.sessions = sessions

    # creation

    def create_backup(self, device_id: str, options: CreateBackupOptions | None = None) -> Backup:
        options = options or CreateBackupOptions()
        if options.backup_type not in BACKUP_TYPES:
            raise ValueError(f"Unsupported backup type: {options.backup_type}")

        device = self.sessions.device(device_id)
        log_extra = {"device": device.name}

        backup = self.repository.create_backup(
            Backup(
                id=_new_id(),
                device_id=device.id,
                storage_key=backup_storage_key(device.id, options.backup_type),
                backup_type=options.backup_type,
                status="PENDING",
                trigger_type=options.trigger_type,
                triggered_by=options.triggered_by,
            )
        )
        logger.info("backup started id=%s key=%s", backup.id, backup.storage_key, extra=log_extra)

        try:
            content, version = self._export(device, options.compact)
            data = content.encode("utf-8")
            upload = self.blob_store.upload(backup.storage_key, data, "text/plain")
            checksum = calculate_checksum(data)
            if upload.checksum != checksum:
                raise BackupIntegrityError(
                    f"Blob store reported checksum {upload.checksum} for {backup.storage_key}, expected {checksum}"
                )

            completed = self.repository.update_backup(
                backup.id,
                status="COMPLETED",
                file_size=len(data),
                checksum=checksum,
                device_version=version,
                config_summary=self._summary(content, log_extra),
                completed_at=utcnow(),
            )
            self.repository.touch_device(device.id)
        except Exception as exc:
            logger.error("backup failed id=%s error=%s", backup.id, exc, extra=log_extra)
            self._mark_failed(self.repository.update_backup, backup.id, log_extra, status="FAILED")
            if isinstance(exc, BackupError):
                raise
            raise BackupError(f"Backup failed: {exc}") from exc

        logger.info(
            "backup completed id=%s bytes=%d version=%s", completed.id, completed.file_size, version, extra=log_extra
        )
        return completed

    def create_safety_backup(self, device_id: str, restored_by: str | None = None) -> Backup:
        """Take a compact snapshot of the device's current configuration."""

        backup = self.create_backup(
            device_id,
            CreateBackupOptions(triggered_by=restored_by, trigger_type="MANUAL", compact=True),
        )
        return self.repository.update_backup(backup.id, is_safety_backup=True)

    def _export(self, device: Device, compact: bool) -> tuple[str, str]:
        ssh = self.sessions.open_ssh(device)
        try:
            content = ssh.export_config(compact=compact)
            version = self._device_version(device, ssh, content)
        finally:
            ssh.disconnect()
        return content, version

    def _device_version(self, device: Device, ssh: RouterOSSSHClient, content: str) -> str:
        log_extra = {"device": device.name}
        try:
            api = self.sessions.open_api(device)
            try:
                return api.get_version()
            finally:
                api.disconnect()
        except RosFleetError as exc:
            logger.warning("api version probe failed error=%s", exc, extra=log_extra)

        try:
            version = ssh.system_resource().version
        except RouterOSError as exc:
            logger.warning("ssh version probe failed error=%s", exc, extra=log_extra)
        else:
            if version:
                return version

        return extract_routeros_version(content) or UNKNOWN_VERSION

    @staticmethod
    def _summary(content: str, log_extra: dict[str, str]) -> dict[str, int] | None:
        try:
            return parse_config_summary(content)
        except (ValueError, IndexError) as exc:
            logger.warning("config summary unavailable error=%s", exc, extra=log_extra)
            return None

    # restore

    def restore_backup(self, backup_id: str, device_id: str, options: RestoreOptions | None = None) -> Restore:
        options = options or RestoreOptions()
        backup = self._require_backup(backup_id)
        if backup.status != "COMPLETED":
            raise BackupStateError(f"Can only restore completed backups (status: {backup.status})")

        device = self.sessions.device(device_id)
        log_extra = {"device": device.name}

        safety_backup: Backup | None = None
        if options.create_safety_backup:
            try:
                safety_backup = self.create_safety_backup(device.id, options.restored_by)
            except RosFleetError as exc:
                logger.error("restore aborted, safety backup failed error=%s", exc, extra=log_extra)
                raise RestoreError(f"Failed to create safety backup: {exc}") from exc

        restore = self.repository.create_restore(
            Restore(
                id=_new_id(),
                backup_id=backup.id,
                device_id=device.id,
                restored_by=options.restored_by,
                status="PENDING",
                safety_backup_id=safety_backup.id if safety_backup else None,
            )
        )
        logger.info(
            "restore started id=%s backup=%s safety_backup=%s",
            restore.id,
            backup.id,
            restore.safety_backup_id,
            extra=log_extra,
        )

        restore_log: str | None = None
        try:
            content = download_and_verify(self.blob_store, backup.storage_key, backup.checksum)
            api = self.sessions.open_api(device)
            try:
                outcome = api.import_config(content.decode("utf-8"), verbose=True)
            finally:
                api.disconnect()
            restore_log = "\n".join(outcome.log) or outcome.error or RESTORE_OK_MESSAGE
            outcome.raise_for_errors()
        except Exception as exc:
            logger.error("restore failed id=%s error=%s", restore.id, exc, extra=log_extra)
            self._mark_failed(
                self.repository.update_restore,
                restore.id,
                log_extra,
                status="FAILED",
                error_message=str(exc),
                restore_log=restore_log,
                completed_at=utcnow(),
            )
            if isinstance(exc, BackupIntegrityError):
                raise
            raise RestoreError(f"Restore failed: {exc}") from exc

        logger.info("restore completed id=%s", restore.id, extra=log_extra)
        return self.repository.update_restore(
            restore.id, status="COMPLETED", restore_log=restore_log, completed_at=utcnow()
        )

    def _mark_failed(
        self, update: Callable[..., Any], entity_id: str, log_extra: dict[str, str], **changes: Any
    ) -> None:
        try:
            update(entity_id, **changes)
        except (sqlite3.Error, LookupError) as exc:
            logger.error("could not record failure id=%s error=%s", entity_id, exc, extra=log_extra)

    # reads and housekeeping

    def _require_backup(self, backup_id: str) -> Backup:
        backup = self.repository.get_backup(backup_id)
        if backup is None:
            raise BackupNotFoundError(f"Backup not found: {backup_id}")
        return backup

    def list_backups(
        self,
        device_id: str | None = None,
        status: str | None = None,
        is_pinned: bool | None = None,
        limit: int = DEFAULT_PAGE_SIZE,
        offset: int = 0,
    ) -> tuple[list[Backup], int]:
        """Newest first, with the total number of matching backups."""

        return self.repository.list_backups(
            device_id=device_id, status=status, is_pinned=is_pinned, limit=limit, offset=offset
        )

    def get_backup(self, backup_id: str) -> BackupDetails:
        backup = self._require_backup(backup_id)
        restores = self.repository.list_restores(backup.id, RESTORE_HISTORY_PREVIEW)
        return BackupDetails(backup=backup, restores=restores)

    def restore_history(self, backup_id: str) -> list[Restore]:
        return self.repository.list_restores(self._require_backup(backup_id).id)

    def toggle_pin(self, backup_id: str, user: str | None = None, reason: str | None = None) -> Backup:
        backup = self._require_backup(backup_id)
        if backup.is_pinned:
            updated = self.repository.update_backup(
                backup.id, is_pinned=False, pinned_by=None, pinned_at=None, pinned_reason=None
            )
        else:
            updated = self.repository.update_backup(
                backup.id,
                is_pinned=True,
                pinned_by=user,
                pinned_at=utcnow(),
                pinned_reason=reason,
                expires_at=None,
            )
        logger.info("backup id=%s pinned=%s by=%s", backup.id, updated.is_pinned, user)
        return updated

    def download_url(self, backup_id: str, ttl_seconds: int = DOWNLOAD_URL_TTL) -> str:
        backup = self._require_backup(backup_id)
        if backup.status != "COMPLETED":
            raise BackupStateError(f"Can only download completed backups (status: {backup.status})")
        url = self.blob_store.presigned_url(backup.storage_key, ttl_seconds)
        self.repository.update_backup(backup.id, storage_url=url)
        return url

    def delete_backup(self, backup_id: str) -> None:
        backup = self._require_backup(backup_id)
        if backup.is_pinned:
            raise BackupPinnedError("Cannot delete pinned backup. Unpin it first.")

        try:
            self.blob_store.delete(backup.storage_key)
        except Exception as exc:
            logger.error("blob delete failed key=%s error=%s", backup.storage_key, exc)

        self.repository.delete_backup(backup.id)
        logger.info("backup deleted id=%s", backup.id)

    def diff_backups(self, old_backup_id: str, new_backup_id: str) -> DiffOutcome:
        """Compare two completed backups after normalizing volatile header lines."""

        texts: list[str] = []
        labels: list[str] = []
        for backup_id in (old_backup_id, new_backup_id):
            backup = self._require_backup(backup_id)
            if backup.status != "COMPLETED":
                raise BackupStateError(f"Can only compare completed backups (status: {backup.status})")
            content = download_and_verify(self.blob_store, backup.storage_key, backup.checksum)
            texts.append(content.decode("utf-8"))
            labels.append(_label(backup))

        return compare_texts(texts[0], texts[1], normalize_mikrotik_export, labels[0], labels[1])


def _label(backup: Backup) -> str:
    created: datetime | None = backup.created_at
    stamp = created.strftime("%Y-%m-%d %H:%M:%S") if created else "-"
    return f"{backup.id} ({stamp})"
