"""In-memory stand-ins for devices and storage used across the test suite."""

from __future__ import annotations

from typing import Any, Mapping

from rosfleet.core.credentials import CredentialResolver
from rosfleet.core.crypto import encrypt
from rosfleet.core.errors import RouterOSCommandError
from rosfleet.core.models import CommandResult, Device
from rosfleet.core.repository import SQLiteRepository
from rosfleet.core.storage import BlobStore, UploadResult, calculate_checksum
from rosfleet.mikrotik.client import ImportOutcome
from rosfleet.mikrotik.parsing import SystemResource
from rosfleet.mikrotik.sessions import DeviceSessions

KEY = "0123456789abcdef0123456789abcdef"


class FakeSocket:
    """Socket double: replays ``incoming`` bytes and records what was sent."""

    def __init__(self, incoming: bytes = b"") -> None:
        self.incoming = bytearray(incoming)
        self.sent = bytearray()
        self.closed = False

    def recv(self, size: int) -> bytes:
        chunk = bytes(self.incoming[:size])
        del self.incoming[:size]
        return chunk

    def sendall(self, data: bytes) -> None:
        self.sent.extend(data)

    def close(self) -> None:
        self.closed = True


class FakeApiClient:
    """API client double keyed by command."""

    def __init__(
        self,
        responses: Mapping[str, Any] | None = None,
        connect_error: Exception | None = None,
        version: str = "7.16",
        import_outcome: ImportOutcome | None = None,
        drop_on_failure: bool = False,
    ) -> None:
        self.responses = dict(responses or {})
        self.drop_on_failure = drop_on_failure
        self.connect_error = connect_error
        self.version = version
        self.import_outcome = import_outcome or ImportOutcome(
            success_count=1, log=["/system identity set name=r1 -> ok"]
        )
        self.calls: list[tuple[str, dict[str, Any]]] = []
        self.imports: list[str] = []
        self.connected = False
        self.connect_calls = 0
        self.disconnect_calls = 0
        self.init_kwargs: dict[str, Any] = {}

    def __call__(self, **kwargs: Any) -> "FakeApiClient":
        self.init_kwargs = kwargs
        return self

    @property
    def is_connected(self) -> bool:
        return self.connected

    def connect(self) -> None:
        self.connect_calls += 1
        if self.connect_error is not None:
            raise self.connect_error
        self.connected = True

    def disconnect(self) -> None:
        self.disconnect_calls += 1
        self.connected = False

    def execute(self, command: str, params: Mapping[str, Any] | None = None) -> CommandResult:
        self.calls.append((command, dict(params or {})))
        response = self.responses.get(command, CommandResult(success=True))
        if isinstance(response, list):
            response = response.pop(0) if len(response) > 1 else response[0]
        if isinstance(response, Exception):
            raise response
        if not response.success and self.drop_on_failure:
            self.connected = False
        return response

    def get_version(self) -> str:
        if isinstance(self.version, Exception):
            raise self.version
        return self.version

    def import_config(self, config: str, verbose: bool = False) -> ImportOutcome:
        self.imports.append(config)
        return self.import_outcome


class FakeSSHClient:
    """SSH client double returning canned CLI output."""

    def __init__(
        self,
        outputs: Mapping[str, str] | None = None,
        export: str | Exception = "# 2026-01-07 00:49:07 by RouterOS 7.16\n/interface bridge\nadd name=bridge1\n",
        connect_error: Exception | None = None,
    ) -> None:
        self.outputs = dict(outputs or {})
        self.export = export
        self.connect_error = connect_error
        self.commands: list[str] = []
        self.export_calls: list[bool] = []
        self.connected = False
        self.disconnect_calls = 0

    def __call__(self, **kwargs: Any) -> "FakeSSHClient":
        return self

    @property
    def is_connected(self) -> bool:
        return self.connected

    def connect(self) -> None:
        if self.connect_error is not None:
            raise self.connect_error
        self.connected = True

    def disconnect(self) -> None:
        self.disconnect_calls += 1
        self.connected = False

    def execute_command(self, command: str) -> str:
        self.commands.append(command)
        if command not in self.outputs:
            raise RouterOSCommandError(f"Command failed with code 1: {command}")
        return self.outputs[command]

    def export_config(self, compact: bool = False) -> str:
        self.export_calls.append(compact)
        if isinstance(self.export, Exception):
            raise self.export
        return self.export

    def system_resource(self) -> SystemResource:
        raise RouterOSCommandError("no resource output")


class MemoryBlobStore(BlobStore):
    def __init__(self) -> None:
        self.objects: dict[str, bytes] = {}
        self.deleted: list[str] = []
        self.fail_upload: Exception | None = None
        self.fail_delete: Exception | None = None

    def upload(self, key: str, content: bytes, content_type: str = "application/octet-stream") -> UploadResult:
        if self.fail_upload is not None:
            raise self.fail_upload
        self.objects[key] = content
        return UploadResult(key=key, checksum=calculate_checksum(content), size=len(content))

    def download(self, key: str) -> bytes:
        return self.objects[key]

    def delete(self, key: str) -> None:
        if self.fail_delete is not None:
            raise self.fail_delete
        self.deleted.append(key)
        self.objects.pop(key, None)

    def presigned_url(self, key: str, ttl_seconds: int = 3600) -> str:
        return f"https://blobs.example/{key}?ttl={ttl_seconds}"

    def list(self, prefix: str) -> list[str]:
        return sorted(key for key in self.objects if key.startswith(prefix))

    def exists(self, key: str) -> bool:
        return key in self.objects


def make_repository() -> SQLiteRepository:
    repository = SQLiteRepository(":memory:")
    repository.initialize()
    return repository


def add_device(
    repository: SQLiteRepository,
    device_id: str = "dev-1",
    name: str = "core-rtr-01",
    status: str = "ACTIVE",
    password: str = "s3cret",
) -> Device:
    return repository.add_device(
        Device(
            id=device_id,
            name=name,
            host="192.0.2.1",
            username="backup",
            encrypted_password=encrypt(password, KEY),
            status=status,
        )
    )


def make_sessions(
    repository: SQLiteRepository,
    api: FakeApiClient | None = None,
    ssh: FakeSSHClient | None = None,
) -> DeviceSessions:
    return DeviceSessions(
        CredentialResolver(repository, KEY),
        api_factory=api or FakeApiClient(),
        ssh_factory=ssh or FakeSSHClient(),
        sleep=lambda _: None,
    )
