import sqlite3
import sys
import unittest
from pathlib import Path
from unittest import mock

ROOT_DIR = Path(__file__).resolve().parents[1]
SRC_DIR = ROOT_DIR / "src"
TESTS_DIR = ROOT_DIR / "tests"
for path in (SRC_DIR, TESTS_DIR):
    if str(path) not in sys.path:
        sys.path.insert(0, str(path))

from fakes import FakeApiClient, FakeSSHClient, MemoryBlobStore, add_device, make_repository, make_sessions
from rosfleet.core.errors import (
    BackupError,
    BackupIntegrityError,
    BackupNotFoundError,
    BackupPinnedError,
    BackupStateError,
    DeviceInactiveError,
    RestoreError,
    RouterOSCommandError,
    RouterOSConnectionError,
)
from rosfleet.core.models import Backup
from rosfleet.core.storage import calculate_checksum
from rosfleet.mikrotik.backup import BackupOrchestrator, CreateBackupOptions, RestoreOptions
from rosfleet.mikrotik.client import ImportOutcome

EXPORT = "# 2026-01-07 00:49:07 by RouterOS 7.16\n/interface bridge\nadd name=bridge1\n"


class BackupTestCase(unittest.TestCase):
    def setUp(self) -> None:
        self.repository = make_repository()
        add_device(self.repository)
        self.api = FakeApiClient()
        self.ssh = FakeSSHClient()
        self.store = MemoryBlobStore()
        self.orchestrator = BackupOrchestrator(
            self.repository, self.store, make_sessions(self.repository, api=self.api, ssh=self.ssh)
        )

    def _stored_backup(self, backup_id: str, content: str, status: str = "COMPLETED") -> Backup:
        key = f"backups/dev-1/{backup_id}-export.rsc"
        data = content.encode("utf-8")
        self.store.objects[key] = data
        return self.repository.create_backup(
            Backup(
                id=backup_id,
                device_id="dev-1",
                storage_key=key,
                status=status,
                file_size=len(data),
                checksum=calculate_checksum(data),
            )
        )


class CreateBackupTests(BackupTestCase):
    def test_completed_backup_is_stored_with_checksum(self) -> None:
        backup = self.orchestrator.create_backup("dev-1", CreateBackupOptions(triggered_by="alice"))

        data = EXPORT.encode("utf-8")
        self.assertEqual("COMPLETED", backup.status)
        self.assertEqual(calculate_checksum(data), backup.checksum)
        self.assertEqual(len(data), backup.file_size)
        self.assertEqual("7.16", backup.device_version)
        self.assertEqual("alice", backup.triggered_by)
        self.assertEqual(1, backup.config_summary["interfaces"])
        self.assertIsNotNone(backup.completed_at)
        self.assertTrue(backup.storage_key.startswith("backups/dev-1/"))
        self.assertTrue(backup.storage_key.endswith("-export.rsc"))
        self.assertEqual(data, self.store.objects[backup.storage_key])
        self.assertEqual([False], self.ssh.export_calls)
        self.assertEqual(1, self.ssh.disconnect_calls)

    def test_version_falls_back_to_export_header(self) -> None:
        self.api.connect_error = RouterOSConnectionError("Failed to connect to 192.0.2.1:8728")
        self.ssh.export = "# jan/07/2026 00:49:07 by RouterOS 7.15.3\n/system identity\nset name=r1\n"

        backup = self.orchestrator.create_backup("dev-1")

        self.assertEqual("7.15.3", backup.device_version)

    def test_version_is_unknown_without_any_source(self) -> None:
        self.api.connect_error = RouterOSConnectionError("Failed to connect to 192.0.2.1:8728")
        self.ssh.export = "/system identity\nset name=r1\n"

        self.assertEqual("Unknown", self.orchestrator.create_backup("dev-1").device_version)

    def test_inactive_device_creates_no_record(self) -> None:
        add_device(self.repository, device_id="dev-2", name="edge", status="INACTIVE")

        with self.assertRaises(DeviceInactiveError):
            self.orchestrator.create_backup("dev-2")
        self.assertEqual(0, self.orchestrator.list_backups()[1])
        self.assertEqual([], self.ssh.export_calls)

    def test_unknown_backup_type_is_rejected(self) -> None:
        with self.assertRaises(ValueError):
            self.orchestrator.create_backup("dev-1", CreateBackupOptions(backup_type="FULL"))

    def test_export_failure_marks_backup_failed(self) -> None:
        self.ssh.export = RouterOSCommandError("Command failed with code 1: /export")

        with self.assertRaises(BackupError) as ctx:
            self.orchestrator.create_backup("dev-1")

        self.assertIn("Backup failed", str(ctx.exception))
        failed, total = self.orchestrator.list_backups(status="FAILED")
        self.assertEqual(1, total)
        self.assertEqual("dev-1", failed[0].device_id)
        self.assertEqual({}, self.store.objects)

    def test_upload_failure_marks_backup_failed(self) -> None:
        self.store.fail_upload = OSError("disk full")

        with self.assertRaises(BackupError):
            self.orchestrator.create_backup("dev-1")
        self.assertEqual(1, self.orchestrator.list_backups(status="FAILED")[1])
        self.assertEqual(0, self.orchestrator.list_backups(status="COMPLETED")[1])

    def test_export_error_survives_failed_status_update(self) -> None:
        self.ssh.export = RouterOSCommandError("Command failed with code 1: /export")
        locked = sqlite3.OperationalError("database is locked")

        with mock.patch.object(self.repository, "update_backup", side_effect=locked):
            with self.assertLogs("rosfleet.mikrotik.backup", level="ERROR") as logs:
                with self.assertRaises(BackupError) as ctx:
                    self.orchestrator.create_backup("dev-1")

        self.assertEqual("Backup failed: Command failed with code 1: /export", str(ctx.exception))
        self.assertIs(ctx.exception.__cause__, self.ssh.export)
        self.assertTrue(any("database is locked" in line for line in logs.output))

    def test_safety_backup_is_compact_and_flagged(self) -> None:
        backup = self.orchestrator.create_safety_backup("dev-1", "alice")

        self.assertTrue(backup.is_safety_backup)
        self.assertEqual("MANUAL", backup.trigger_type)
        self.assertEqual([True], self.ssh.export_calls)


class RestoreBackupTests(BackupTestCase):
    def test_restore_takes_safety_backup_then_imports(self) -> None:
        source = self._stored_backup("b1", EXPORT)

        restore = self.orchestrator.restore_backup(source.id, "dev-1", RestoreOptions(restored_by="alice"))

        self.assertEqual("COMPLETED", restore.status)
        self.assertEqual("alice", restore.restored_by)
        self.assertEqual("/system identity set name=r1 -> ok", restore.restore_log)
        self.assertEqual([EXPORT], self.api.imports)
        self.assertEqual([True], self.ssh.export_calls)
        safety = self.repository.get_backup(restore.safety_backup_id)
        self.assertTrue(safety.is_safety_backup)
        self.assertEqual([restore.id], [entry.id for entry in self.orchestrator.restore_history(source.id)])

    def test_restore_without_safety_backup(self) -> None:
        source = self._stored_backup("b1", EXPORT)

        restore = self.orchestrator.restore_backup(source.id, "dev-1", RestoreOptions(create_safety_backup=False))

        self.assertIsNone(restore.safety_backup_id)
        self.assertEqual([], self.ssh.export_calls)

    def test_failed_safety_backup_aborts_before_import(self) -> None:
        source = self._stored_backup("b1", EXPORT)
        self.ssh.export = RouterOSCommandError("Command failed with code 1: /export compact")

        with self.assertRaises(RestoreError) as ctx:
            self.orchestrator.restore_backup(source.id, "dev-1")

        self.assertIn("Failed to create safety backup", str(ctx.exception))
        self.assertEqual([], self.api.imports)
        self.assertEqual([], self.orchestrator.restore_history(source.id))

    def test_checksum_mismatch_is_not_imported(self) -> None:
        source = self._stored_backup("b1", EXPORT)
        self.store.objects[source.storage_key] = b"/system reset-configuration\n"

        with self.assertRaises(BackupIntegrityError):
            self.orchestrator.restore_backup(source.id, "dev-1", RestoreOptions(create_safety_backup=False))

        self.assertEqual([], self.api.imports)
        restore = self.orchestrator.restore_history(source.id)[0]
        self.assertEqual("FAILED", restore.status)
        self.assertIn("Checksum mismatch", restore.error_message)

    def test_failing_lines_make_restore_failed(self) -> None:
        source = self._stored_backup("b1", EXPORT)
        self.api.import_outcome = ImportOutcome(
            success_count=1,
            line_errors=['Error executing "add name=bridge1": already have interface with such name'],
            log=["add name=bridge1 -> already have interface with such name"],
        )

        with self.assertRaises(RestoreError):
            self.orchestrator.restore_backup(source.id, "dev-1", RestoreOptions(create_safety_backup=False))

        restore = self.orchestrator.restore_history(source.id)[0]
        self.assertEqual("FAILED", restore.status)
        self.assertEqual("add name=bridge1 -> already have interface with such name", restore.restore_log)
        self.assertIn("already have interface", restore.error_message)
        self.assertIsNotNone(restore.completed_at)

    def test_import_error_survives_failed_restore_update(self) -> None:
        source = self._stored_backup("b1", EXPORT)
        self.api.connect_error = RouterOSConnectionError("Failed to connect to 192.0.2.1:8728")

        with mock.patch.object(self.repository, "update_restore", side_effect=sqlite3.OperationalError("disk I/O")):
            with self.assertLogs("rosfleet.mikrotik.backup", level="ERROR"):
                with self.assertRaises(RestoreError) as ctx:
                    self.orchestrator.restore_backup(source.id, "dev-1", RestoreOptions(create_safety_backup=False))

        self.assertIn("Failed to connect to 192.0.2.1:8728", str(ctx.exception))

    def test_only_completed_backups_can_be_restored(self) -> None:
        source = self._stored_backup("b1", EXPORT, status="FAILED")

        with self.assertRaises(BackupStateError):
            self.orchestrator.restore_backup(source.id, "dev-1")
        self.assertEqual([], self.ssh.export_calls)

    def test_unknown_backup(self) -> None:
        with self.assertRaises(BackupNotFoundError):
            self.orchestrator.restore_backup("missing", "dev-1")


class BackupHousekeepingTests(BackupTestCase):
    def test_pinned_backup_cannot_be_deleted(self) -> None:
        backup = self._stored_backup("b1", EXPORT)

        pinned = self.orchestrator.toggle_pin(backup.id, "alice", "before upgrade")

        self.assertTrue(pinned.is_pinned)
        self.assertEqual("alice", pinned.pinned_by)
        self.assertEqual("before upgrade", pinned.pinned_reason)
        self.assertIsNotNone(pinned.pinned_at)
        with self.assertRaises(BackupPinnedError):
            self.orchestrator.delete_backup(backup.id)
        self.assertIn(backup.storage_key, self.store.objects)

    def test_unpin_clears_pin_fields_and_allows_delete(self) -> None:
        backup = self._stored_backup("b1", EXPORT)
        self.orchestrator.toggle_pin(backup.id, "alice", "keep")

        unpinned = self.orchestrator.toggle_pin(backup.id, "alice")
        self.orchestrator.delete_backup(backup.id)

        self.assertFalse(unpinned.is_pinned)
        self.assertIsNone(unpinned.pinned_by)
        self.assertIsNone(unpinned.pinned_at)
        self.assertIsNone(unpinned.pinned_reason)
        self.assertEqual([backup.storage_key], self.store.deleted)
        self.assertIsNone(self.repository.get_backup(backup.id))

    def test_blob_delete_failure_still_removes_record(self) -> None:
        backup = self._stored_backup("b1", EXPORT)
        self.store.fail_delete = OSError("bucket unavailable")

        self.orchestrator.delete_backup(backup.id)

        self.assertIsNone(self.repository.get_backup(backup.id))

    def test_download_url_is_cached_on_record(self) -> None:
        backup = self._stored_backup("b1", EXPORT)

        url = self.orchestrator.download_url(backup.id, ttl_seconds=600)

        self.assertEqual(f"https://blobs.example/{backup.storage_key}?ttl=600", url)
        self.assertEqual(url, self.repository.get_backup(backup.id).storage_url)

    def test_download_url_requires_completed_backup(self) -> None:
        backup = self._stored_backup("b1", EXPORT, status="PENDING")

        with self.assertRaises(BackupStateError):
            self.orchestrator.download_url(backup.id)

    def test_details_include_restores(self) -> None:
        backup = self._stored_backup("b1", EXPORT)
        self.orchestrator.restore_backup(backup.id, "dev-1", RestoreOptions(create_safety_backup=False))

        details = self.orchestrator.get_backup(backup.id)

        self.assertEqual(backup.id, details.backup.id)
        self.assertEqual(1, len(details.restores))

    def test_list_filters_and_counts(self) -> None:
        self._stored_backup("b1", EXPORT)
        self._stored_backup("b2", EXPORT, status="FAILED")
        self._stored_backup("b3", EXPORT)

        completed, total = self.orchestrator.list_backups(device_id="dev-1", status="COMPLETED", limit=1)

        self.assertEqual(2, total)
        self.assertEqual(1, len(completed))


class DiffBackupTests(BackupTestCase):
    def test_header_only_changes_are_ignored(self) -> None:
        old = self._stored_backup("b1", EXPORT)
        new = self._stored_backup("b2", EXPORT.replace("2026-01-07 00:49:07", "2026-01-08 03:00:00"))

        outcome = self.orchestrator.diff_backups(old.id, new.id)

        self.assertFalse(outcome.config_changed)
        self.assertIsNone(outcome.diff_text)

    def test_changed_configuration_is_reported(self) -> None:
        old = self._stored_backup("b1", EXPORT)
        new = self._stored_backup("b2", EXPORT + "add name=bridge2\n")

        outcome = self.orchestrator.diff_backups(old.id, new.id)

        self.assertTrue(outcome.config_changed)
        self.assertEqual((1, 0), (outcome.added, outcome.removed))
        self.assertIn("+add name=bridge2", outcome.diff_text)
        self.assertTrue(outcome.baseline_label.startswith("b1 ("))

    def test_diff_requires_completed_backups(self) -> None:
        old = self._stored_backup("b1", EXPORT)
        pending = self._stored_backup("b2", EXPORT, status="PENDING")

        with self.assertRaises(BackupStateError):
            self.orchestrator.diff_backups(old.id, pending.id)


if __name__ == "__main__":
    unittest.main()
