import logging
import os
import sys
import unittest
from pathlib import Path
from tempfile import TemporaryDirectory
from unittest import mock

ROOT_DIR = Path(__file__).resolve().parents[1]
SRC_DIR = ROOT_DIR / "src"
if str(SRC_DIR) not in sys.path:
    sys.path.insert(0, str(SRC_DIR))

from rosfleet.core.config import DevicesConfigError, SettingsError, load_devices, load_settings
from rosfleet.core.secrets import SecretNotFoundError, SecretsConfigError, get_password, load_secrets

KEY = "0123456789abcdef0123456789abcdef"


class ConfigTestCase(unittest.TestCase):
    def setUp(self) -> None:
        self._tmp = TemporaryDirectory()
        self.addCleanup(self._tmp.cleanup)
        self.tmp_path = Path(self._tmp.name)

    def _write(self, name: str, content: str) -> Path:
        path = self.tmp_path / name
        path.write_text(content, encoding="utf-8")
        return path


class LoadSettingsTests(ConfigTestCase):
    def test_defaults_with_key_from_environment(self) -> None:
        settings = load_settings(self.tmp_path / "missing.yml", environ={"ROSFLEET_ENCRYPTION_KEY": KEY})

        self.assertEqual(KEY, settings.encryption_key)
        self.assertEqual("local", settings.storage.backend)
        self.assertEqual((10.0, 30.0), (settings.transport.api_timeout, settings.transport.ssh_timeout))
        retry = settings.retry
        self.assertEqual((3, 1.0, 2.0), (retry.max_retries, retry.base_delay, retry.multiplier))

    def test_file_values_and_environment_priority(self) -> None:
        config = self._write(
            "local.yml",
            f"""
encryption:
  key: "{'x' * 32}"
database:
  path: /var/lib/rosfleet/fleet.db
storage:
  backend: s3
  bucket: fleet-backups
  endpoint_url: https://r2.example.com
  access_key_id: from-file
transport:
  api_timeout: 5
retry:
  max_retries: 1
""",
        )

        settings = load_settings(
            config,
            environ={"ROSFLEET_ENCRYPTION_KEY": KEY, "ROSFLEET_S3_ACCESS_KEY_ID": "from-env"},
        )

        self.assertEqual(KEY, settings.encryption_key)
        self.assertEqual("/var/lib/rosfleet/fleet.db", settings.database)
        self.assertEqual("s3", settings.storage.backend)
        self.assertEqual("fleet-backups", settings.storage.bucket)
        self.assertEqual("from-env", settings.storage.access_key_id)
        self.assertEqual(5, settings.transport.api_timeout)
        self.assertEqual(1, settings.retry.max_retries)

    def test_missing_or_short_key(self) -> None:
        with self.assertRaises(SettingsError):
            load_settings(self.tmp_path / "missing.yml", environ={})
        with self.assertRaises(SettingsError):
            load_settings(self.tmp_path / "missing.yml", environ={"ROSFLEET_ENCRYPTION_KEY": "short"})

    def test_invalid_values(self) -> None:
        cases = {
            "backend": "storage:\n  backend: ftp\n",
            "timeout": "transport:\n  ssh_timeout: -1\n",
            "retry": "retry:\n  multiplier: fast\n",
            "section": "retry: 3\n",
        }
        for name, content in cases.items():
            with self.subTest(name=name):
                config = self._write(f"{name}.yml", content)
                with self.assertRaises(SettingsError):
                    load_settings(config, environ={"ROSFLEET_ENCRYPTION_KEY": KEY})


class LoadDevicesTests(ConfigTestCase):
    def test_valid_entries_and_skipped_invalid_ones(self) -> None:
        devices = self._write(
            "devices.yml",
            """
devices:
  - name: core-rtr-01
    host: 192.0.2.1
    username: backup
    auth:
      secret_ref: core
  - name: edge-rtr-01
    host: 192.0.2.2
    username: backup
    api_port: 8729
    status: MAINTENANCE
    auth:
      secret_ref: edge
  - name: core-rtr-01
    host: 192.0.2.3
    username: backup
    auth:
      secret_ref: dup
  - name: leaky
    host: 192.0.2.4
    username: backup
    auth:
      secret_ref: leaky
      password: hunter2
  - name: bad-status
    host: 192.0.2.5
    username: backup
    status: BROKEN
    auth:
      secret_ref: bad
""",
        )

        with self.assertLogs("rosfleet.test.devices", level="ERROR") as logs:
            entries = load_devices(devices, logging.getLogger("rosfleet.test.devices"))

        self.assertEqual(["core-rtr-01", "edge-rtr-01"], [entry.name for entry in entries])
        self.assertEqual((8728, 22, "ACTIVE"), (entries[0].api_port, entries[0].ssh_port, entries[0].status))
        self.assertEqual((8729, "MAINTENANCE", "edge"), (entries[1].api_port, entries[1].status, entries[1].secret_ref))
        self.assertEqual(3, len(logs.records))

    def test_missing_file(self) -> None:
        with self.assertRaises(FileNotFoundError):
            load_devices(self.tmp_path / "devices.yml")

    def test_devices_must_be_a_list(self) -> None:
        with self.assertRaises(DevicesConfigError):
            load_devices(self._write("devices.yml", "devices:\n  name: r1\n"))


class SecretsTests(ConfigTestCase):
    def test_file_secrets(self) -> None:
        secrets = load_secrets(self._write("secrets.yml", "secrets:\n  core:\n    password: s3cret\n"))

        with mock.patch.dict(os.environ, {}, clear=True):
            self.assertEqual("s3cret", get_password("core", secrets))
            with self.assertRaises(SecretNotFoundError):
                get_password("edge", secrets)

    def test_environment_wins(self) -> None:
        secrets = load_secrets(self._write("secrets.yml", "secrets:\n  core-rtr:\n    password: s3cret\n"))

        with mock.patch.dict(os.environ, {"ROSFLEET_SECRET_CORE_RTR": "from-env"}):
            self.assertEqual("from-env", get_password("core-rtr", secrets))

    def test_missing_file_has_no_entries(self) -> None:
        with self.assertLogs("rosfleet.core.secrets", level="WARNING"):
            secrets = load_secrets(self.tmp_path / "secrets.yml")

        self.assertTrue(secrets.missing_source)
        self.assertIsNone(secrets.get("core"))

    def test_invalid_structure(self) -> None:
        with self.assertRaises(SecretsConfigError):
            load_secrets(self._write("secrets.yml", "secrets:\n  core: s3cret\n"))


if __name__ == "__main__":
    unittest.main()
