#!/usr/bin/env python3
"""Entry point for RosFleet."""

from __future__ import annotations

import argparse
import dataclasses
import json
import logging
import sys
import uuid
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

# Ensure src/ is on sys.path for local imports when running as a script
ROOT_DIR = Path(__file__).resolve().parent.parent
SRC_DIR = ROOT_DIR / "src"
if str(SRC_DIR) not in sys.path:
    sys.path.insert(0, str(SRC_DIR))

from rosfleet.common.run_summary import DeviceRunResult, RunSummaryBuilder  # noqa: E402
from rosfleet.core.config import Settings, SettingsError, load_devices, load_settings  # noqa: E402
from rosfleet.core.credentials import CredentialResolver  # noqa: E402
from rosfleet.core.crypto import encrypt  # noqa: E402
from rosfleet.core.errors import DeviceNotFoundError, RosFleetError  # noqa: E402
from rosfleet.core.logging import setup_logging  # noqa: E402
from rosfleet.core.models import BACKUP_TYPES, Device  # noqa: E402
from rosfleet.core.repository import SQLiteRepository  # noqa: E402
from rosfleet.core.secrets import SecretNotFoundError, get_password, load_secrets  # noqa: E402
from rosfleet.core.storage import BlobStore, LocalBlobStore, S3BlobStore  # noqa: E402
from rosfleet.mikrotik.backup import BackupOrchestrator, CreateBackupOptions, RestoreOptions  # noqa: E402
from rosfleet.mikrotik.connectivity import ConnectivityTester  # noqa: E402
from rosfleet.mikrotik.executor import RetryPolicy  # noqa: E402
from rosfleet.mikrotik.routing import RoutingService  # noqa: E402
from rosfleet.mikrotik.sessions import DeviceSessions  # noqa: E402
from rosfleet.mikrotik.troubleshoot import PingParams, TroubleshootEngine  # noqa: E402
from rosfleet.mikrotik.users import UserService  # noqa: E402


@dataclasses.dataclass(slots=True)
class Services:
    settings: Settings
    repository: SQLiteRepository
    blob_store: BlobStore
    sessions: DeviceSessions
    backups: BackupOrchestrator


def build_parser() -> argparse.ArgumentParser:
    """Create the argument parser for the CLI."""

    parser = argparse.ArgumentParser(
        description=(
            "Central management for RouterOS devices: configuration backups and restores, "
            "BGP and user inspection, and on-device diagnostics."
        ),
    )
    parser.add_argument(
        "--local-config",
        type=Path,
        default=ROOT_DIR / "config" / "local.yml",
        help="Path to local.yml (logging, database, storage, encryption)",
    )
    parser.add_argument(
        "--debug",
        action="store_true",
        help="Enable debug-level logging for troubleshooting. Overrides config/local.yml logging.level.",
    )

    commands = parser.add_subparsers(dest="command", title="commands")

    devices = commands.add_parser("devices", help="Manage the device inventory")
    devices_commands = devices.add_subparsers(dest="action", required=True)
    devices_import = devices_commands.add_parser("import", help="Import devices.yml into the database")
    devices_import.add_argument("--config", type=Path, default=ROOT_DIR / "config" / "devices.yml")
    devices_import.add_argument("--secrets", type=Path, default=ROOT_DIR / "config" / "secrets.yml")
    devices_commands.add_parser("list", help="List known devices")

    backup = commands.add_parser("backup", help="Create and manage configuration backups")
    backup_commands = backup.add_subparsers(dest="action", required=True)

    create = backup_commands.add_parser("create", help="Back up one device")
    create.add_argument("device", help="Device id or name")
    create.add_argument("--type", dest="backup_type", choices=BACKUP_TYPES, default="EXPORT")
    create.add_argument("--compact", action="store_true", help="Use /export compact")
    create.add_argument("--by", dest="user", default=None, help="Recorded as triggered_by")

    backup_all = backup_commands.add_parser("all", help="Back up every ACTIVE device and write a run summary")
    backup_all.add_argument("--dry-run", action="store_true", help="Show the devices without connecting")
    backup_all.add_argument("--scheduled", action="store_true", help="Record the run as SCHEDULED")
    backup_all.add_argument("--summary-dir", type=Path, default=None)

    listing = backup_commands.add_parser("list", help="List backups, newest first")
    listing.add_argument("--device", default=None)
    listing.add_argument("--status", choices=("PENDING", "COMPLETED", "FAILED"), default=None)
    listing.add_argument("--pinned", action="store_true", default=None)
    listing.add_argument("--limit", type=int, default=50)
    listing.add_argument("--offset", type=int, default=0)

    show = backup_commands.add_parser("show", help="Show a backup and its latest restores")
    show.add_argument("backup_id")

    pin = backup_commands.add_parser("pin", help="Toggle the pin on a backup")
    pin.add_argument("backup_id")
    pin.add_argument("--by", dest="user", default=None)
    pin.add_argument("--reason", default=None)

    delete = backup_commands.add_parser("delete", help="Delete an unpinned backup")
    delete.add_argument("backup_id")

    url = backup_commands.add_parser("url", help="Print a time-limited download URL")
    url.add_argument("backup_id")
    url.add_argument("--ttl", type=int, default=3600)

    diff = backup_commands.add_parser("diff", help="Diff two completed backups")
    diff.add_argument("old_backup_id")
    diff.add_argument("new_backup_id")

    restore = commands.add_parser("restore", help="Restore a backup onto a device")
    restore.add_argument("backup_id")
    restore.add_argument("device", help="Device id or name")
    restore.add_argument("--by", dest="user", default=None)
    restore.add_argument(
        "--no-safety-backup",
        action="store_true",
        help="Skip the safety backup of the current configuration (not recommended)",
    )

    bgp = commands.add_parser("bgp", help="Read BGP state")
    bgp.add_argument("what", choices=("sessions", "connections", "advertisements", "stats"))
    bgp.add_argument("device", help="Device id or name")
    bgp.add_argument("--prefix", default=None)
    bgp.add_argument("--peer", default=None)

    users = commands.add_parser("users", help="Read device users")
    users.add_argument("action", choices=("list",))
    users.add_argument("device", help="Device id or name")

    ping = commands.add_parser("ping", help="Ping from a device")
    ping.add_argument("device", help="Device id or name")
    ping.add_argument("address")
    ping.add_argument("--count", type=int, default=4)
    ping.add_argument("--size", type=int, default=56)
    ping.add_argument("--repeat", type=int, default=1, help="Rounds, one second apart")

    traceroute = commands.add_parser("traceroute", help="Traceroute from a device")
    traceroute.add_argument("device", help="Device id or name")
    traceroute.add_argument("address")
    traceroute.add_argument("--count", type=int, default=3)

    test = commands.add_parser("test", help="Test API and SSH connectivity")
    test.add_argument("devices", nargs="*", help="Device ids or names; all ACTIVE devices when omitted")

    return parser


def main(argv: list[str] | None = None) -> int:
    """Run the CLI."""
    parser = build_parser()
    args = parser.parse_args(argv)
    logger = setup_logging(args.local_config, cli_level=logging.DEBUG if args.debug else None)
    logger.info("RosFleet run started.")

    if args.command is None:
        parser.print_help()
        logger.info("RosFleet run finished.")
        return 0

    try:
        services = _build_services(load_settings(args.local_config), logger)
    except (SettingsError, OSError):
        logger.exception("Failed to load settings.", extra={"device": "-"})
        return 1

    handler = COMMANDS[args.command]
    try:
        exit_code = handler(args, services, logger)
    except (RosFleetError, ValueError, LookupError, OSError) as exc:
        logger.error("%s failed: %s", args.command, exc)
        exit_code = 1
    finally:
        services.repository.close()

    logger.info("RosFleet run finished.")
    return exit_code


def _build_services(settings: Settings, logger: logging.Logger) -> Services:
    repository = SQLiteRepository(settings.database)
    repository.initialize()
    logger.debug("database ready path=%s", settings.database)

    blob_store = _build_blob_store(settings, logger)
    sessions = DeviceSessions(
        CredentialResolver(repository, settings.encryption_key),
        api_timeout=settings.transport.api_timeout,
        ssh_timeout=settings.transport.ssh_timeout,
        retry_policy=RetryPolicy.from_settings(settings.retry),
    )
    return Services(
        settings=settings,
        repository=repository,
        blob_store=blob_store,
        sessions=sessions,
        backups=BackupOrchestrator(repository, blob_store, sessions),
    )


def _build_blob_store(settings: Settings, logger: logging.Logger) -> BlobStore:
    storage = settings.storage
    if storage.backend == "s3":
        logger.debug("blob store backend=s3 bucket=%s endpoint=%s", storage.bucket, storage.endpoint_url)
        return S3BlobStore(
            bucket=storage.bucket,
            endpoint_url=storage.endpoint_url,
            region=storage.region,
            access_key_id=storage.access_key_id,
            secret_access_key=storage.secret_access_key,
        )

    logger.debug("blob store backend=local directory=%s", storage.directory)
    store = LocalBlobStore(storage.directory)
    store.initialize()
    return store


def _emit(value: Any) -> None:
    """Print dataclasses and plain values as JSON on stdout."""

    def convert(item: Any) -> Any:
        if dataclasses.is_dataclass(item) and not isinstance(item, type):
            return dataclasses.asdict(item)
        if isinstance(item, datetime):
            return item.isoformat()
        return str(item)

    print(json.dumps(value, default=convert, indent=2, ensure_ascii=False))


def _device(services: Services, ref: str) -> Device:
    device = services.repository.get_device(ref) or services.repository.get_device_by_name(ref)
    if device is None:
        raise DeviceNotFoundError(f"Device not found: {ref}")
    return device


# devices


def _run_devices(args: argparse.Namespace, services: Services, logger: logging.Logger) -> int:
    if args.action == "list":
        _emit(
            [
                {
                    "id": device.id,
                    "name": device.name,
                    "host": device.host,
                    "status": device.status,
                    "api_port": device.api_port,
                    "ssh_port": device.ssh_port,
                    "last_seen": device.last_seen,
                }
                for device in services.repository.list_devices()
            ]
        )
        return 0

    entries = load_devices(Path(args.config), logger)
    secrets = load_secrets(Path(args.secrets))
    imported = 0
    for entry in entries:
        log_extra = {"device": entry.name}
        if services.repository.get_device_by_name(entry.name) is not None:
            logger.info("device already present, skipping", extra=log_extra)
            continue
        try:
            password = get_password(entry.secret_ref, secrets)
        except SecretNotFoundError:
            logger.error("Skipping device due to missing secret.", extra=log_extra)
            continue

        services.repository.add_device(
            Device(
                id=uuid.uuid4().hex,
                name=entry.name,
                host=entry.host,
                username=entry.username,
                encrypted_password=encrypt(password, services.settings.encryption_key),
                status=entry.status,
                api_port=entry.api_port,
                ssh_port=entry.ssh_port,
            )
        )
        imported += 1
        logger.info("device imported host=%s", entry.host, extra=log_extra)

    logger.info("devices imported=%d of %d", imported, len(entries))
    return 0


# backups


def _run_backup(args: argparse.Namespace, services: Services, logger: logging.Logger) -> int:
    backups = services.backups

    if args.action == "create":
        device = _device(services, args.device)
        _emit(
            backups.create_backup(
                device.id,
                CreateBackupOptions(triggered_by=args.user, backup_type=args.backup_type, compact=args.compact),
            )
        )
        return 0
    if args.action == "all":
        return _run_backup_all(args, services, logger)
    if args.action == "list":
        device_id = _device(services, args.device).id if args.device else None
        items, total = backups.list_backups(
            device_id=device_id, status=args.status, is_pinned=args.pinned, limit=args.limit, offset=args.offset
        )
        _emit({"total": total, "limit": args.limit, "offset": args.offset, "backups": items})
        return 0
    if args.action == "show":
        _emit(backups.get_backup(args.backup_id))
        return 0
    if args.action == "pin":
        _emit(backups.toggle_pin(args.backup_id, args.user, args.reason))
        return 0
    if args.action == "delete":
        backups.delete_backup(args.backup_id)
        return 0
    if args.action == "url":
        print(backups.download_url(args.backup_id, args.ttl))
        return 0
    if args.action == "diff":
        outcome = backups.diff_backups(args.old_backup_id, args.new_backup_id)
        logger.info(
            "config_changed=%s added=%d removed=%d", outcome.config_changed, outcome.added, outcome.removed
        )
        if outcome.diff_text:
            print(outcome.diff_text, end="")
        return 0

    raise ValueError(f"Unknown backup action: {args.action}")


def _run_backup_all(args: argparse.Namespace, services: Services, logger: logging.Logger) -> int:
    """Back up every ACTIVE device; one failing device does not stop the run."""

    devices = [device for device in services.repository.list_devices() if device.status == "ACTIVE"]
    trigger_type = "SCHEDULED" if args.scheduled else "MANUAL"
    timestamp = _timestamp()
    summary = RunSummaryBuilder(
        run_id=timestamp, timestamp=timestamp, dry_run=args.dry_run, trigger_type=trigger_type
    )
    summary.set_devices_total(len(devices))

    if args.dry_run:
        logger.info("Dry run requested. Devices to process: %s", [device.name for device in devices])
        summary.extend(DeviceRunResult(device_id=d.id, name=d.name, status="skipped") for d in devices)
        _emit(summary.build())
        return 0

    logger.info("Starting backup for %d device(s).", len(devices))
    for device in devices:
        summary.add_device(_backup_one(services, device, trigger_type, logger))

    summary_dir = args.summary_dir or services.settings.storage.directory / "summary"
    summary.save(Path(summary_dir), logger)
    return 0 if summary.devices_failed == 0 else 1


def _backup_one(services: Services, device: Device, trigger_type: str, logger: logging.Logger) -> DeviceRunResult:
    log_extra = {"device": device.name}
    result = DeviceRunResult(device_id=device.id, name=device.name, status="failed")
    previous, _ = services.backups.list_backups(device_id=device.id, status="COMPLETED", limit=1)

    try:
        backup = services.backups.create_backup(
            device.id, CreateBackupOptions(triggered_by="cli", trigger_type=trigger_type)
        )
    except RosFleetError as exc:
        logger.error("Backup failed for device: %s", exc, extra=log_extra)
        result.error = str(exc)
        return result

    result.status = "success"
    result.backup_id = backup.id
    result.storage_key = backup.storage_key
    result.size_bytes = backup.file_size
    result.device_version = backup.device_version
    logger.info("Backup completed successfully key=%s", backup.storage_key, extra=log_extra)

    if not previous:
        logger.info("first_backup=true", extra=log_extra)
        return result

    try:
        outcome = services.backups.diff_backups(previous[0].id, backup.id)
    except RosFleetError as exc:
        logger.warning("diff against previous backup failed: %s", exc, extra=log_extra)
        return result

    result.config_changed = outcome.config_changed
    result.lines_added = outcome.added
    result.lines_removed = outcome.removed
    logger.info("config_changed=%s", outcome.config_changed, extra=log_extra)
    return result


def _run_restore(args: argparse.Namespace, services: Services, logger: logging.Logger) -> int:
    device = _device(services, args.device)
    if args.no_safety_backup:
        logger.warning("restoring without a safety backup", extra={"device": device.name})
    restore = services.backups.restore_backup(
        args.backup_id,
        device.id,
        RestoreOptions(restored_by=args.user, create_safety_backup=not args.no_safety_backup),
    )
    _emit(restore)
    return 0


# device services


def _run_bgp(args: argparse.Namespace, services: Services, logger: logging.Logger) -> int:
    routing = RoutingService(services.sessions)
    device = _device(services, args.device)
    if args.what == "sessions":
        _emit(routing.get_sessions(device.id))
    elif args.what == "connections":
        _emit(routing.get_connections(device.id))
    elif args.what == "advertisements":
        _emit(routing.get_advertisements(device.id, prefix=args.prefix, from_peer=args.peer))
    else:
        _emit(routing.get_session_stats(device.id))
    return 0


def _run_users(args: argparse.Namespace, services: Services, logger: logging.Logger) -> int:
    _emit(UserService(services.sessions).list_users(_device(services, args.device).id))
    return 0


def _run_ping(args: argparse.Namespace, services: Services, logger: logging.Logger) -> int:
    engine = TroubleshootEngine(services.sessions)
    params = PingParams(address=args.address, count=args.count, size=args.size)
    _emit(engine.continuous_ping(_device(services, args.device).id, params, iterations=max(1, args.repeat)))
    return 0


def _run_traceroute(args: argparse.Namespace, services: Services, logger: logging.Logger) -> int:
    engine = TroubleshootEngine(services.sessions)
    _emit(engine.traceroute(_device(services, args.device).id, args.address, args.count))
    return 0


def _run_test(args: argparse.Namespace, services: Services, logger: logging.Logger) -> int:
    tester = ConnectivityTester(services.sessions)
    if not args.devices:
        results = tester.test_all_active()
    else:
        ids = []
        for ref in args.devices:
            device = services.repository.get_device(ref) or services.repository.get_device_by_name(ref)
            ids.append(device.id if device else ref)
        results = tester.test_many(ids)

    _emit(results)
    failed = [result for result in results if not (result.api and result.api.success)]
    return 0 if not failed else 1


def _timestamp() -> str:
    return datetime.now(timezone.utc).strftime("%Y-%m-%d_%H%M%S")


COMMANDS = {
    "devices": _run_devices,
    "backup": _run_backup,
    "restore": _run_restore,
    "bgp": _run_bgp,
    "users": _run_users,
    "ping": _run_ping,
    "traceroute": _run_traceroute,
    "test": _run_test,
}


if __name__ == "__main__":
    raise SystemExit(main())
