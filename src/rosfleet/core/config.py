"""Configuration helpers for RosFleet.

``config/local.yml`` holds service settings (database, storage, encryption,
transport timeouts, retry policy). ``config/devices.yml`` is the operator
inventory used by ``devices import``.
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Mapping

import yaml

from rosfleet.core.models import DEFAULT_API_PORT, DEFAULT_SSH_PORT, DEVICE_STATUSES

PROJECT_ROOT = Path(__file__).resolve().parents[3]
DEFAULT_LOCAL_CONFIG = PROJECT_ROOT / "config" / "local.yml"

ENV_ENCRYPTION_KEY = "ROSFLEET_ENCRYPTION_KEY"
ENV_DATABASE = "ROSFLEET_DATABASE"
ENV_S3_ACCESS_KEY_ID = "ROSFLEET_S3_ACCESS_KEY_ID"
ENV_S3_SECRET_ACCESS_KEY = "ROSFLEET_S3_SECRET_ACCESS_KEY"


class SettingsError(ValueError):
    """Raised when local.yml or environment settings are invalid."""


class DevicesConfigError(ValueError):
    """Raised when devices.yml cannot be parsed or validated."""


@dataclass(slots=True)
class StorageSettings:
    backend: str = "local"
    directory: Path = PROJECT_ROOT / "backups"
    bucket: str = "router-backups"
    endpoint_url: str | None = None
    region: str = "auto"
    access_key_id: str | None = None
    secret_access_key: str | None = None


@dataclass(slots=True)
class TransportSettings:
    api_timeout: float = 10.0
    ssh_timeout: float = 30.0


@dataclass(slots=True)
class RetrySettings:
    max_retries: int = 3
    base_delay: float = 1.0
    multiplier: float = 2.0


@dataclass(slots=True)
class Settings:
    """Service settings resolved from local.yml and the environment."""

    encryption_key: str
    database: str = str(PROJECT_ROOT / "rosfleet.db")
    storage: StorageSettings = field(default_factory=StorageSettings)
    transport: TransportSettings = field(default_factory=TransportSettings)
    retry: RetrySettings = field(default_factory=RetrySettings)


@dataclass(slots=True)
class InventoryEntry:
    """A device as declared in devices.yml; the password is referenced, not stored."""

    name: str
    host: str
    username: str
    secret_ref: str
    api_port: int = DEFAULT_API_PORT
    ssh_port: int = DEFAULT_SSH_PORT
    status: str = "ACTIVE"


def _section(data: Mapping[str, Any], name: str) -> Mapping[str, Any]:
    value = data.get(name) or {}
    if not isinstance(value, Mapping):
        raise SettingsError(f"local.yml: section '{name}' must be a mapping.")
    return value


def _number(section: Mapping[str, Any], key: str, default: float, context: str) -> float:
    value = section.get(key, default)
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise SettingsError(f"local.yml: {context}.{key} must be a number.")
    if value < 0:
        raise SettingsError(f"local.yml: {context}.{key} must not be negative.")
    return value


def load_local_config(config_path: str | Path | None = None) -> Mapping[str, Any]:
    """Load local.yml if it exists and return the mapping (empty when missing)."""

    config_file = Path(config_path) if config_path else DEFAULT_LOCAL_CONFIG
    if not config_file.is_absolute():
        config_file = PROJECT_ROOT / config_file

    if not config_file.exists():
        return {}

    try:
        with config_file.open("r", encoding="utf-8") as handle:
            data = yaml.safe_load(handle) or {}
    except (OSError, yaml.YAMLError) as exc:
        raise SettingsError(f"Unable to read local config file: {config_file}") from exc

    if not isinstance(data, Mapping):
        raise SettingsError("Top-level local.yml structure must be a mapping.")
    return data


def load_settings(
    config_path: str | Path | None = None, environ: Mapping[str, str] | None = None
) -> Settings:
    """Build :class:`Settings` with priority: environment > local.yml > defaults."""

    environ = os.environ if environ is None else environ
    data = load_local_config(config_path)

    encryption = _section(data, "encryption")
    key = environ.get(ENV_ENCRYPTION_KEY) or encryption.get("key")
    if not key:
        raise SettingsError(
            f"Encryption key missing. Set {ENV_ENCRYPTION_KEY} or encryption.key in local.yml."
        )
    if not isinstance(key, str) or len(key.encode("utf-8")) != 32:
        raise SettingsError("Encryption key must be exactly 32 characters for AES-256-GCM.")

    database_section = _section(data, "database")
    database = environ.get(ENV_DATABASE) or database_section.get("path") or str(PROJECT_ROOT / "rosfleet.db")

    storage_section = _section(data, "storage")
    backend = storage_section.get("backend", "local")
    if backend not in ("local", "s3"):
        raise SettingsError(f"local.yml: invalid storage.backend '{backend}'. Allowed values: local, s3.")

    directory = Path(str(storage_section.get("directory", PROJECT_ROOT / "backups"))).expanduser()
    if not directory.is_absolute():
        directory = PROJECT_ROOT / directory

    storage = StorageSettings(
        backend=backend,
        directory=directory,
        bucket=str(storage_section.get("bucket", "router-backups")),
        endpoint_url=storage_section.get("endpoint_url"),
        region=str(storage_section.get("region", "auto")),
        access_key_id=environ.get(ENV_S3_ACCESS_KEY_ID) or storage_section.get("access_key_id"),
        secret_access_key=environ.get(ENV_S3_SECRET_ACCESS_KEY) or storage_section.get("secret_access_key"),
    )
    if storage.backend == "s3" and not storage.bucket:
        raise SettingsError("local.yml: storage.bucket is required for the s3 backend.")

    transport_section = _section(data, "transport")
    transport = TransportSettings(
        api_timeout=_number(transport_section, "api_timeout", 10.0, "transport"),
        ssh_timeout=_number(transport_section, "ssh_timeout", 30.0, "transport"),
    )

    retry_section = _section(data, "retry")
    retry = RetrySettings(
        max_retries=int(_number(retry_section, "max_retries", 3, "retry")),
        base_delay=_number(retry_section, "base_delay", 1.0, "retry"),
        multiplier=_number(retry_section, "multiplier", 2.0, "retry"),
    )

    return Settings(
        encryption_key=key,
        database=str(database),
        storage=storage,
        transport=transport,
        retry=retry,
    )


def _require_string(mapping: Mapping[str, Any], field_name: str, context: str) -> str:
    value = mapping.get(field_name)
    if value is None or value == "":
        raise DevicesConfigError(f"{context}: missing required field '{field_name}'.")
    if not isinstance(value, str):
        raise DevicesConfigError(f"{context}: field '{field_name}' must be a string.")
    return value


def _validate_port(value: Any, default: int, context: str) -> int:
    if value is None:
        return default
    if isinstance(value, bool) or not isinstance(value, int):
        raise DevicesConfigError(f"{context}: port must be an integer.")
    if value <= 0 or value > 65535:
        raise DevicesConfigError(f"{context}: port must be between 1 and 65535.")
    return value


def _validate_status(value: Any, context: str) -> str:
    if value is None:
        return "ACTIVE"
    if value not in DEVICE_STATUSES:
        raise DevicesConfigError(
            f"{context}: invalid status '{value}'. Allowed values: {', '.join(DEVICE_STATUSES)}."
        )
    return value


def _parse_device(raw_device: Mapping[str, Any], context: str) -> InventoryEntry:
    name = _require_string(raw_device, "name", context)
    context = f"{context} '{name}'"
    host = _require_string(raw_device, "host", context)
    username = _require_string(raw_device, "username", context)

    auth_raw = raw_device.get("auth")
    if not isinstance(auth_raw, Mapping):
        raise DevicesConfigError(f"{context}: auth must be a mapping.")
    secret_ref = _require_string(auth_raw, "secret_ref", f"{context} auth")
    if "password" in raw_device or "password" in auth_raw:
        raise DevicesConfigError(
            f"{context}: password must not be stored in devices.yml. Use config/secrets.yml."
        )

    return InventoryEntry(
        name=name,
        host=host,
        username=username,
        secret_ref=secret_ref,
        api_port=_validate_port(raw_device.get("api_port"), DEFAULT_API_PORT, f"{context} api_port"),
        ssh_port=_validate_port(raw_device.get("ssh_port"), DEFAULT_SSH_PORT, f"{context} ssh_port"),
        status=_validate_status(raw_device.get("status"), context),
    )


def load_devices(path: Path, logger: logging.Logger | None = None) -> list[InventoryEntry]:
    """Load and validate devices.yml; invalid entries are logged and skipped."""

    logger = logger or logging.getLogger(__name__)

    if not path.exists():
        raise FileNotFoundError(f"Devices inventory not found: {path}")

    with path.open("r", encoding="utf-8") as handle:
        raw_data = yaml.safe_load(handle) or {}

    if not isinstance(raw_data, dict):
        raise DevicesConfigError("Top-level devices.yml structure must be a mapping.")

    raw_devices = raw_data.get("devices")
    if raw_devices is None:
        raise DevicesConfigError("devices.yml must contain a 'devices' list.")
    if not isinstance(raw_devices, list):
        raise DevicesConfigError("The 'devices' field must be a list of device entries.")

    entries: list[InventoryEntry] = []
    seen_names: set[str] = set()

    for index, raw_device in enumerate(raw_devices, start=1):
        context = f"device #{index}"
        if not isinstance(raw_device, dict):
            logger.error("%s: each device must be a mapping.", context)
            continue

        log_extra = {"device": raw_device.get("name") or "-"}
        try:
            entry = _parse_device(raw_device, context)
        except DevicesConfigError as exc:
            logger.error("%s", exc, extra=log_extra)
            continue

        if entry.name in seen_names:
            logger.error(
                "%s '%s': device name must be unique. Duplicate ignored.", context, entry.name, extra=log_extra
            )
            continue

        seen_names.add(entry.name)
        entries.append(entry)
        logger.debug(
            "device=%s host=%s api_port=%s ssh_port=%s loaded from devices.yml",
            entry.name,
            entry.host,
            entry.api_port,
            entry.ssh_port,
            extra={"device": entry.name},
        )

    return entries
