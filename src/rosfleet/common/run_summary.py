"""Helpers for building and persisting machine-readable run summaries."""

from __future__ import annotations

import json
from dataclasses import dataclass
from pathlib import Path
from typing import Iterable


@dataclass(slots=True)
class DeviceRunResult:
    """Summary of one device in a fleet-wide backup run."""

    device_id: str
    name: str
    status: str
    backup_id: str | None = None
    storage_key: str | None = None
    size_bytes: int | None = None
    device_version: str | None = None
    config_changed: bool | None = None
    lines_added: int | None = None
    lines_removed: int | None = None
    error: str | None = None

    def to_dict(self) -> dict[str, object]:
        return {
            "device_id": self.device_id,
            "name": self.name,
            "status": self.status,
            "backup_id": self.backup_id,
            "storage_key": self.storage_key,
            "size_bytes": self.size_bytes,
            "device_version": self.device_version,
            "config_changed": self.config_changed,
            "lines_added": self.lines_added,
            "lines_removed": self.lines_removed,
            "error": self.error,
        }


class RunSummaryBuilder:
    """Accumulate per-run data and store it as JSON."""

    def __init__(
        self,
        *,
        run_id: str,
        timestamp: str,
        dry_run: bool,
        trigger_type: str = "MANUAL",
    ) -> None:
        self.run_id = run_id
        self.timestamp = timestamp
        self.dry_run = dry_run
        self.trigger_type = trigger_type
        self.devices_total = 0
        self.devices_processed = 0
        self.devices_success = 0
        self.devices_failed = 0
        self.backups_created = 0
        self.configs_changed = 0
        self._devices: list[DeviceRunResult] = []

    def set_devices_total(self, total: int) -> None:
        self.devices_total = max(0, total)

    def add_device(self, device: DeviceRunResult) -> None:
        self._devices.append(device)

        if device.status != "skipped":
            self.devices_processed += 1
            if device.status == "success":
                self.devices_success += 1
            elif device.status == "failed":
                self.devices_failed += 1

        if device.backup_id and device.status == "success":
            self.backups_created += 1
        if device.config_changed is True:
            self.configs_changed += 1

    def extend(self, devices: Iterable[DeviceRunResult]) -> None:
        for device in devices:
            self.add_device(device)

    def build(self) -> dict[str, object]:
        return {
            "run_id": self.run_id,
            "timestamp": self.timestamp,
            "dry_run": self.dry_run,
            "trigger_type": self.trigger_type,
            "totals": {
                "devices_total": self.devices_total,
                "devices_processed": self.devices_processed,
                "devices_success": self.devices_success,
                "devices_failed": self.devices_failed,
                "backups_created": self.backups_created,
                "configs_changed": self.configs_changed,
            },
            "devices": [device.to_dict() for device in self._devices],
        }

    def save(self, summary_dir: Path, logger) -> Path:
        summary_dir.mkdir(parents=True, exist_ok=True)

        target = summary_dir / f"run_{self.run_id}.json"
        target.write_text(json.dumps(self.build(), indent=2, ensure_ascii=False), encoding="utf-8")

        logger.info("run_summary_json_saved path=%s", target)
        return target
