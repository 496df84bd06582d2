"""API and SSH reachability checks for devices."""

from __future__ import annotations

import logging
import re
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Literal, Sequence

from rosfleet.core.errors import RosFleetError, RouterOSAuthenticationError
from rosfleet.core.models import DEFAULT_API_PORT, DEFAULT_SSH_PORT, Device
from rosfleet.core.repository import utcnow
from rosfleet.mikrotik.sessions import DeviceSessions

logger = logging.getLogger(__name__)

TEST_TIMEOUT = 15.0
BATCH_WIDTH = 5

SYSTEM_INFO_FIELDS = (
    "board-name",
    "version",
    "architecture-name",
    "cpu-frequency",
    "cpu-count",
    "total-memory",
    "free-memory",
    "total-hdd-space",
    "free-hdd-space",
)
SSH_FIELD_PATTERNS = {
    name: re.compile(rf"{name}:\s*(\S+)", re.IGNORECASE)
    for name in ("version", "uptime", "board-name", "architecture-name")
}

SUMMARY_BOTH_OK = "Both API and SSH connections are working properly."
SUMMARY_SSH_FAILED = "API connection is working, but SSH has issues. Check SSH service on router."
SUMMARY_API_FAILED = "SSH connection is working, but API has issues. Check API service on router."
SUMMARY_BOTH_FAILED = "Both API and SSH connections failed. Check network connectivity and router status."

ConnectionKind = Literal["API", "SSH", "BOTH"]


@dataclass(slots=True)
class ProbeDetails:
    host: str = ""
    port: int | None = None
    username: str | None = None
    latency_ms: int | None = None
    version: str | None = None
    uptime: str | None = None
    system_info: dict[str, Any] = field(default_factory=dict)
    error: str | None = None


@dataclass(slots=True)
class ProbeResult:
    success: bool
    kind: ConnectionKind
    message: str
    details: ProbeDetails | None = None
    timestamp: datetime = field(default_factory=utcnow)


@dataclass(slots=True)
class ComprehensiveResult:
    api: ProbeResult
    ssh: ProbeResult
    summary: str


@dataclass(slots=True)
class BatchProbeResult:
    device_id: str
    device_name: str
    host: str
    api: ProbeResult | None
    ssh: ProbeResult | None
    timestamp: datetime = field(default_factory=utcnow)


def summarize(api_ok: bool, ssh_ok: bool) -> str:
    if api_ok and ssh_ok:
        return SUMMARY_BOTH_OK
    if api_ok:
        return SUMMARY_SSH_FAILED
    if ssh_ok:
        return SUMMARY_API_FAILED
    return SUMMARY_BOTH_FAILED


def classify_failure(kind: ConnectionKind, port: int | None, exc: Exception) -> str:
    """Turn a connect/probe failure into an operator-facing hint."""

    label = "API" if kind == "API" else "SSH"
    message = str(exc).lower()
    if isinstance(exc, RouterOSAuthenticationError) or "authentication" in message or "login" in message:
        return "Authentication failed. Please check username and password."
    if isinstance(exc, TimeoutError) or "timeout" in message or "timed out" in message:
        return f"Connection timeout. Router may be unreachable or {label} port ({port}) may be blocked."
    if isinstance(exc, ConnectionRefusedError) or "refused" in message:
        return f"Connection refused. {label} service may not be enabled or wrong port ({port})."
    return f"{label} connection failed: {exc}"


class ConnectivityTester:
    """Runs connection tests; every outcome is returned, none is raised."""

    def __init__(
        self,
        sessions: DeviceSessions,
        timeout: float = TEST_TIMEOUT,
        width: int = BATCH_WIDTH,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.sessions = sessions
        self.timeout = timeout
        self.width = width
        self._clock = clock

    def _device(self, device_id: str) -> Device:
        return self.sessions.device(device_id, require_active=False)

    def test_api(self, device_id: str) -> ProbeResult:
        started = self._clock()
        details = ProbeDetails()
        try:
            device = self._device(device_id)
            details.host, details.username = device.host, device.username
            details.port = device.api_port or DEFAULT_API_PORT
            credentials = self.sessions.resolver.for_device(device, "api")
        except RosFleetError as exc:
            details.error = str(exc)
            return ProbeResult(False, "API", f"Test failed: {exc}", details)

        client = self.sessions.api_factory(
            host=credentials.host,
            username=credentials.username,
            password=credentials.secret,
            port=credentials.port,
            timeout=self.timeout,
        )
        try:
            client.connect()
            details.latency_ms = int((self._clock() - started) * 1000)
            resource = client.execute("/system/resource/print")
            if resource.success and resource.records:
                record = resource.records[0]
                details.version = _optional_str(record.get("version"))
                details.uptime = _optional_str(record.get("uptime"))
                details.system_info = {name: record[name] for name in SYSTEM_INFO_FIELDS if name in record}
        except (RosFleetError, OSError) as exc:
            details.error = str(exc)
            logger.warning("api test failed error=%s", exc, extra={"device": device.name})
            return ProbeResult(False, "API", classify_failure("API", details.port, exc), details)
        finally:
            client.disconnect()

        logger.info("api test ok latency_ms=%s", details.latency_ms, extra={"device": device.name})
        return ProbeResult(
            True, "API", f"API connection successful. RouterOS version: {details.version or 'Unknown'}", details
        )

    def test_ssh(self, device_id: str) -> ProbeResult:
        started = self._clock()
        details = ProbeDetails()
        try:
            device = self._device(device_id)
            details.host, details.username = device.host, device.username
            details.port = device.ssh_port or DEFAULT_SSH_PORT
            credentials = self.sessions.resolver.for_device(device, "ssh")
        except RosFleetError as exc:
            details.error = str(exc)
            return ProbeResult(False, "SSH", f"Test failed: {exc}", details)

        client = self.sessions.ssh_factory(
            host=credentials.host,
            username=credentials.username,
            password=credentials.secret,
            port=credentials.port,
            timeout=self.timeout,
        )
        try:
            client.connect()
            details.latency_ms = int((self._clock() - started) * 1000)
            output = client.execute_command("/system resource print")
        except (RosFleetError, OSError) as exc:
            details.error = str(exc)
            logger.warning("ssh test failed error=%s", exc, extra={"device": device.name})
            return ProbeResult(False, "SSH", classify_failure("SSH", details.port, exc), details)
        finally:
            client.disconnect()

        found = {name: pattern.search(output) for name, pattern in SSH_FIELD_PATTERNS.items()}
        values = {name: match.group(1) for name, match in found.items() if match}
        details.version = values.get("version")
        details.uptime = values.get("uptime")
        details.system_info = {
            name: values[name] for name in ("board-name", "version", "architecture-name") if name in values
        }

        logger.info("ssh test ok latency_ms=%s", details.latency_ms, extra={"device": device.name})
        return ProbeResult(
            True, "SSH", f"SSH connection successful. RouterOS version: {details.version or 'Unknown'}", details
        )

    def test_both(self, device_id: str) -> tuple[ProbeResult, ProbeResult]:
        with ThreadPoolExecutor(max_workers=2) as pool:
            api_future = pool.submit(self.test_api, device_id)
            ssh_future = pool.submit(self.test_ssh, device_id)
            return api_future.result(), ssh_future.result()

    def comprehensive(self, device_id: str) -> ComprehensiveResult:
        api, ssh = self.test_both(device_id)
        return ComprehensiveResult(api=api, ssh=ssh, summary=summarize(api.success, ssh.success))

    def _test_one(self, device_id: str) -> BatchProbeResult:
        device = self.sessions.resolver.repository.get_device(device_id)
        if device is None:
            return BatchProbeResult(
                device_id=device_id,
                device_name="Unknown",
                host="Unknown",
                api=ProbeResult(False, "API", "Device not found"),
                ssh=None,
            )
        api, ssh = self.test_both(device_id)
        return BatchProbeResult(device_id=device.id, device_name=device.name, host=device.host, api=api, ssh=ssh)

    def test_many(self, device_ids: Sequence[str]) -> list[BatchProbeResult]:
        """Test devices ``width`` at a time; results keep the input order."""

        results: list[BatchProbeResult] = []
        with ThreadPoolExecutor(max_workers=self.width) as pool:
            for start in range(0, len(device_ids), self.width):
                chunk = device_ids[start:start + self.width]
                results.extend(pool.map(self._test_one, chunk))
        return results

    def test_all_active(self) -> list[BatchProbeResult]:
        devices = self.sessions.resolver.repository.list_devices()
        return self.test_many([device.id for device in devices if device.status == "ACTIVE"])

    def diagnostics(self, device_id: str, kind: ConnectionKind) -> list[str]:
        """Suggestions to work through after a failed test."""

        device = self._device(device_id)
        suggestions: list[str] = []
        if device.status != "ACTIVE":
            suggestions.append(f"Router status is {device.status}. Only ACTIVE routers can be tested.")
        if kind in ("API", "BOTH"):
            suggestions.append("Check if API service is enabled on the router: /ip service enable api")
            suggestions.append(f"Verify API port ({device.api_port}) is correct and not blocked by firewall.")
            suggestions.append("Ensure the API IP is allowed in /ip service api settings.")
        if kind in ("SSH", "BOTH"):
            suggestions.append("Check if SSH service is enabled on the router: /ip service enable ssh")
            suggestions.append(f"Verify SSH port ({device.ssh_port}) is correct and not blocked by firewall.")
        suggestions.append("Verify username and password are correct.")
        suggestions.append("Check network connectivity between this server and the router.")
        suggestions.append("Ensure the router is powered on and functioning properly.")
        return suggestions


def _optional_str(value: Any) -> str | None:
    return str(value) if value not in (None, "") else None
