"""SQLite persistence for devices, backups and restores."""

from __future__ import annotations

import json
import sqlite3
import threading
from contextlib import contextmanager
from dataclasses import fields
from datetime import datetime, timezone
from typing import Any, Generator, Iterable

from rosfleet.core.models import Backup, Device, Restore

_SCHEMA = """
CREATE TABLE IF NOT EXISTS devices (
    id TEXT PRIMARY KEY,
    name TEXT NOT NULL UNIQUE,
    host TEXT NOT NULL,
    username TEXT NOT NULL,
    encrypted_password TEXT NOT NULL,
    status TEXT NOT NULL DEFAULT 'ACTIVE',
    api_port INTEGER NOT NULL DEFAULT 8728,
    ssh_port INTEGER NOT NULL DEFAULT 22,
    last_seen TEXT
);

CREATE TABLE IF NOT EXISTS backups (
    id TEXT PRIMARY KEY,
    device_id TEXT NOT NULL REFERENCES devices(id) ON DELETE CASCADE,
    storage_key TEXT NOT NULL,
    backup_type TEXT NOT NULL DEFAULT 'EXPORT',
    status TEXT NOT NULL DEFAULT 'PENDING',
    trigger_type TEXT NOT NULL DEFAULT 'MANUAL',
    triggered_by TEXT,
    file_size INTEGER NOT NULL DEFAULT 0,
    checksum TEXT NOT NULL DEFAULT '',
    device_version TEXT,
    config_summary TEXT,
    is_pinned INTEGER NOT NULL DEFAULT 0,
    pinned_by TEXT,
    pinned_at TEXT,
    pinned_reason TEXT,
    is_safety_backup INTEGER NOT NULL DEFAULT 0,
    storage_url TEXT,
    created_at TEXT NOT NULL,
    completed_at TEXT,
    expires_at TEXT
);
CREATE INDEX IF NOT EXISTS idx_backups_device_created ON backups(device_id, created_at);
CREATE INDEX IF NOT EXISTS idx_backups_status ON backups(status);

CREATE TABLE IF NOT EXISTS restores (
    id TEXT PRIMARY KEY,
    backup_id TEXT NOT NULL REFERENCES backups(id) ON DELETE CASCADE,
    device_id TEXT NOT NULL REFERENCES devices(id) ON DELETE CASCADE,
    restored_by TEXT,
    status TEXT NOT NULL DEFAULT 'PENDING',
    safety_backup_id TEXT,
    error_message TEXT,
    restore_log TEXT,
    created_at TEXT NOT NULL,
    completed_at TEXT
);
CREATE INDEX IF NOT EXISTS idx_restores_backup ON restores(backup_id);
"""

_DATETIME_FIELDS = {"last_seen", "pinned_at", "created_at", "completed_at", "expires_at"}
_BOOL_FIELDS = {"is_pinned", "is_safety_backup"}


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _to_db(name: str, value: Any) -> Any:
    if value is None:
        return None
    if name in _DATETIME_FIELDS:
        return value.isoformat()
    if name in _BOOL_FIELDS:
        return int(bool(value))
    if name == "config_summary":
        return json.dumps(value, sort_keys=True)
    return value


def _from_db(name: str, value: Any) -> Any:
    if value is None:
        return None
    if name in _DATETIME_FIELDS:
        return datetime.fromisoformat(value)
    if name in _BOOL_FIELDS:
        return bool(value)
    if name == "config_summary":
        return json.loads(value)
    return value


class SQLiteRepository:
    """Stores the entities the orchestration layer reads and writes."""

    def __init__(self, db_path: str = "rosfleet.db") -> None:
        self.db_path = db_path
        self._conn: sqlite3.Connection | None = None
        self._lock = threading.RLock()

    @contextmanager
    def _get_conn(self) -> Generator[sqlite3.Connection, None, None]:
        # One connection shared by worker threads; statements are serialized.
        with self._lock:
            if self._conn is None:
                self._conn = sqlite3.connect(self.db_path, check_same_thread=False)
                self._conn.row_factory = sqlite3.Row
                self._conn.execute("PRAGMA foreign_keys = ON")
            with self._conn:
                yield self._conn

    def initialize(self) -> None:
        with self._get_conn() as conn:
            conn.executescript(_SCHEMA)

    def close(self) -> None:
        with self._lock:
            if self._conn:
                self._conn.close()
                self._conn = None

    # generic helpers

    def _insert(self, table: str, entity: Any) -> None:
        names = [f.name for f in fields(entity)]
        placeholders = ", ".join("?" for _ in names)
        values = [_to_db(name, getattr(entity, name)) for name in names]
        with self._get_conn() as conn:
            conn.execute(
                f"INSERT INTO {table} ({', '.join(names)}) VALUES ({placeholders})",
                values,
            )

    def _update(self, table: str, entity_id: str, changes: dict[str, Any]) -> None:
        if not changes:
            return
        assignments = ", ".join(f"{name} = ?" for name in changes)
        values = [_to_db(name, value) for name, value in changes.items()]
        with self._get_conn() as conn:
            conn.execute(f"UPDATE {table} SET {assignments} WHERE id = ?", [*values, entity_id])

    @staticmethod
    def _row_to(cls: type, row: sqlite3.Row) -> Any:
        return cls(**{key: _from_db(key, row[key]) for key in row.keys()})

    def _select(self, cls: type, sql: str, params: Iterable[Any] = ()) -> list[Any]:
        with self._get_conn() as conn:
            rows = conn.execute(sql, list(params)).fetchall()
        return [self._row_to(cls, row) for row in rows]

    # devices

    def add_device(self, device: Device) -> Device:
        self._insert("devices", device)
        return device

    def get_device(self, device_id: str) -> Device | None:
        found = self._select(Device, "SELECT * FROM devices WHERE id = ?", (device_id,))
        return found[0] if found else None

    def get_device_by_name(self, name: str) -> Device | None:
        found = self._select(Device, "SELECT * FROM devices WHERE name = ?", (name,))
        return found[0] if found else None

    def list_devices(self) -> list[Device]:
        return self._select(Device, "SELECT * FROM devices ORDER BY name")

    def touch_device(self, device_id: str, seen_at: datetime | None = None) -> None:
        self._update("devices", device_id, {"last_seen": seen_at or utcnow()})

    # backups

    def create_backup(self, backup: Backup) -> Backup:
        if backup.created_at is None:
            backup.created_at = utcnow()
        self._insert("backups", backup)
        return backup

    def get_backup(self, backup_id: str) -> Backup | None:
        found = self._select(Backup, "SELECT * FROM backups WHERE id = ?", (backup_id,))
        return found[0] if found else None

    def update_backup(self, backup_id: str, **changes: Any) -> Backup:
        self._update("backups", backup_id, changes)
        backup = self.get_backup(backup_id)
        if backup is None:
            raise LookupError(f"Backup not found: {backup_id}")
        return backup

    def list_backups(
        self,
        device_id: str | None = None,
        status: str | None = None,
        is_pinned: bool | None = None,
        limit: int = 50,
        offset: int = 0,
    ) -> tuple[list[Backup], int]:
        clauses: list[str] = []
        params: list[Any] = []
        if device_id:
            clauses.append("device_id = ?")
            params.append(device_id)
        if status:
            clauses.append("status = ?")
            params.append(status)
        if is_pinned is not None:
            clauses.append("is_pinned = ?")
            params.append(int(is_pinned))

        where = f" WHERE {' AND '.join(clauses)}" if clauses else ""
        with self._get_conn() as conn:
            total = conn.execute(f"SELECT COUNT(*) FROM backups{where}", params).fetchone()[0]

        backups = self._select(
            Backup,
            f"SELECT * FROM backups{where} ORDER BY created_at DESC LIMIT ? OFFSET ?",
            [*params, limit, offset],
        )
        return backups, total

    def delete_backup(self, backup_id: str) -> bool:
        with self._get_conn() as conn:
            cursor = conn.execute("DELETE FROM backups WHERE id = ?", (backup_id,))
        return cursor.rowcount > 0

    # restores

    def create_restore(self, restore: Restore) -> Restore:
        if restore.created_at is None:
            restore.created_at = utcnow()
        self._insert("restores", restore)
        return restore

    def get_restore(self, restore_id: str) -> Restore | None:
        found = self._select(Restore, "SELECT * FROM restores WHERE id = ?", (restore_id,))
        return found[0] if found else None

    def update_restore(self, restore_id: str, **changes: Any) -> Restore:
        self._update("restores", restore_id, changes)
        restore = self.get_restore(restore_id)
        if restore is None:
            raise LookupError(f"Restore not found: {restore_id}")
        return restore

    def list_restores(self, backup_id: str, limit: int | None = None) -> list[Restore]:
        sql = "SELECT * FROM restores WHERE backup_id = ? ORDER BY created_at DESC"
        params: list[Any] = [backup_id]
        if limit is not None:
            sql += " LIMIT ?"
            params.append(limit)
        return self._select(Restore, sql, params)
