"""Ping and traceroute run on the device over SSH.

MikroTik v7 ping output::

      SEQ HOST                                     SIZE TTL TIME       STATUS
        0 1.1.1.1                                    64  61 20ms688us
        1 1.1.1.1                                                      timeout
      sent=2 received=1 packet-loss=50% min-rtt=20ms688us avg-rtt=20ms688us
      max-rtt=20ms688us

Traceroute prints one report block per probe round, each starting with
``Columns: ADDRESS, LOSS, SENT, LAST, AVG, BEST, WORST, STD-DEV``; only the
last block is complete.
"""

from __future__ import annotations

import logging
import re
import statistics
import time
from dataclasses import dataclass, field
from typing import Callable, Literal

from rosfleet.core.errors import RouterOSCommandError
from rosfleet.mikrotik.parsing import parse_duration_ms
from rosfleet.mikrotik.sessions import DeviceSessions

logger = logging.getLogger(__name__)

PING_DEFAULT_COUNT = 4
PING_DEFAULT_SIZE = 56
TRACEROUTE_DEFAULT_COUNT = 3
CONTINUOUS_PING_PAUSE = 1.0

TRACEROUTE_BLOCK_MARKER = "Columns: ADDRESS, LOSS, SENT, LAST, AVG, BEST, WORST, STD-DEV"

ADDRESS_PATTERN = re.compile(r"^[\w.:\-]+$")
INTERFACE_PATTERN = re.compile(r"^[\w.\-/]+$")
PING_REPLY_LINE = re.compile(r"^(\d+)\s+(\S+)\s+(\d+)\s+(\d+)\s+(\S+)\s*(.*)$")
PING_TIMEOUT_LINE = re.compile(r"^(\d+)\s+(\S+)\s+(timeout|host unreachable|.*error.*)$", re.IGNORECASE)
PING_STATS = re.compile(r"sent=(\d+)\s+received=(\d+)\s+packet-loss=([\d.]+)%")
PING_RTT = {
    "min": re.compile(r"min-rtt=(\S+)"),
    "avg": re.compile(r"avg-rtt=(\S+)"),
    "max": re.compile(r"max-rtt=(\S+)"),
}
HOP_LINE = re.compile(
    r"^(\d+)\s+(\S+)\s+(\d+(?:\.\d+)?%)\s+(\d+)\s+(\S+)\s+(\S+)\s+(\S+)\s+(\S+)\s+(\S+)$"
)
TIMEOUT_HOP_LINE = re.compile(r"^(\d+)\s+(\d+(?:\.\d+)?%)\s+(\d+)(?:\s+(\S+))?\s*$")

PingStatus = Literal["reply", "timeout", "error"]


@dataclass(slots=True)
class PingEntry:
    sequence: int
    bytes: int
    time: float
    ttl: int | None = None
    status: PingStatus = "reply"


@dataclass(slots=True)
class RoundTrip:
    min: float = 0.0
    avg: float = 0.0
    max: float = 0.0
    stddev: float = 0.0


@dataclass(slots=True)
class PingResult:
    host: str
    sent: int = 0
    received: int = 0
    packet_loss: float = 0.0
    rtt: RoundTrip = field(default_factory=RoundTrip)
    results: list[PingEntry] = field(default_factory=list)
    raw_output: str = ""


@dataclass(slots=True)
class TracerouteHop:
    hop: int
    address: str
    loss: str
    sent: int
    last: float = 0.0
    avg: float = 0.0
    best: float = 0.0
    worst: float = 0.0
    std_dev: float = 0.0


@dataclass(slots=True)
class TracerouteResult:
    target: str
    hops: list[TracerouteHop] = field(default_factory=list)
    raw_output: str = ""


@dataclass(slots=True)
class PingParams:
    address: str
    count: int = PING_DEFAULT_COUNT
    size: int = PING_DEFAULT_SIZE
    ttl: int | None = None
    src_address: str | None = None
    interface: str | None = None
    do_not_fragment: bool = False
    dscp: int | None = None


def _validate_address(value: str, what: str, label: str = "target address") -> str:
    if not value:
        raise ValueError(f"{label.capitalize()} is required for {what}")
    if not ADDRESS_PATTERN.match(value):
        raise ValueError(f"Invalid {label} for {what}: {value!r}")
    return value


def _validate_interface(value: str, what: str) -> str:
    if not INTERFACE_PATTERN.match(value):
        raise ValueError(f"Invalid interface name for {what}: {value!r}")
    return value


def build_ping_command(params: PingParams) -> str:
    _validate_address(params.address, "ping")
    parts = [f"/ping {params.address}", f"count={params.count or PING_DEFAULT_COUNT}"]
    parts.append(f"size={params.size or PING_DEFAULT_SIZE}")
    if params.src_address:
        parts.append(f"src-address={_validate_address(params.src_address, 'ping', 'source address')}")
    if params.ttl:
        parts.append(f"ttl={params.ttl}")
    if params.interface:
        parts.append(f"interface={_validate_interface(params.interface, 'ping')}")
    if params.do_not_fragment:
        parts.append("do-not-fragment=yes")
    if params.dscp:
        parts.append(f"dscp={params.dscp}")
    return " ".join(parts)


def build_traceroute_command(address: str, count: int = TRACEROUTE_DEFAULT_COUNT) -> str:
    _validate_address(address, "traceroute")
    return f"/tool traceroute {address} count={count or TRACEROUTE_DEFAULT_COUNT}"


def _ms(value: str) -> float:
    parsed = parse_duration_ms(value)
    return parsed if parsed is not None else 0.0


def parse_ping_output(output: str, address: str) -> PingResult:
    result = PingResult(host=address, raw_output=output)
    saw_stats = False
    rtt: dict[str, float] = {}

    for raw_line in output.strip().splitlines():
        line = raw_line.strip()
        if not line or ("SEQ" in line and "HOST" in line):
            continue

        reply = PING_REPLY_LINE.match(line)
        timeout = None if reply else PING_TIMEOUT_LINE.match(line)
        if reply and parse_duration_ms(reply.group(5)) is not None:
            status = reply.group(6).strip().lower()
            result.results.append(
                PingEntry(
                    sequence=int(reply.group(1)),
                    bytes=int(reply.group(3)),
                    time=_ms(reply.group(5)),
                    ttl=int(reply.group(4)),
                    status="timeout" if status == "timeout" else "reply",
                )
            )
        elif timeout:
            status = timeout.group(3).strip().lower()
            result.results.append(
                PingEntry(
                    sequence=int(timeout.group(1)),
                    bytes=0,
                    time=0.0,
                    status="timeout" if status == "timeout" else "error",
                )
            )

        stats = PING_STATS.search(line)
        if stats:
            saw_stats = True
            result.sent = int(stats.group(1))
            result.received = int(stats.group(2))
            result.packet_loss = float(stats.group(3))

        for name, pattern in PING_RTT.items():
            match = pattern.search(line)
            if match:
                rtt[name] = _ms(match.group(1))

    result.results.sort(key=lambda entry: entry.sequence)
    reply_times = [entry.time for entry in result.results if entry.status == "reply"]

    if not saw_stats:
        result.sent = len(result.results)
        result.received = len(reply_times)
        if result.sent:
            result.packet_loss = round((result.sent - result.received) * 100 / result.sent, 2)

    if reply_times:
        result.rtt = RoundTrip(
            min=rtt.get("min", min(reply_times)),
            avg=rtt.get("avg", statistics.fmean(reply_times)),
            max=rtt.get("max", max(reply_times)),
            stddev=statistics.pstdev(reply_times),
        )
    else:
        result.rtt = RoundTrip(min=rtt.get("min", 0.0), avg=rtt.get("avg", 0.0), max=rtt.get("max", 0.0))
    return result


def parse_traceroute_output(output: str, target: str) -> TracerouteResult:
    result = TracerouteResult(target=target, raw_output=output)
    last_block = output.split(TRACEROUTE_BLOCK_MARKER)[-1]

    for raw_line in last_block.strip().splitlines():
        line = raw_line.strip()
        if not line or line.startswith("#") or "ADDRESS" in line:
            continue

        timeout = TIMEOUT_HOP_LINE.match(line)
        if timeout:
            last = _ms(timeout.group(4) or "")
            result.hops.append(
                TracerouteHop(
                    hop=int(timeout.group(1)),
                    address="*",
                    loss=timeout.group(2),
                    sent=int(timeout.group(3)),
                    last=last,
                    avg=last,
                    best=last,
                    worst=last,
                    std_dev=0.0,
                )
            )
            continue

        hop = HOP_LINE.match(line)
        if hop:
            result.hops.append(
                TracerouteHop(
                    hop=int(hop.group(1)),
                    address=hop.group(2),
                    loss=hop.group(3),
                    sent=int(hop.group(4)),
                    last=_ms(hop.group(5)),
                    avg=_ms(hop.group(6)),
                    best=_ms(hop.group(7)),
                    worst=_ms(hop.group(8)),
                    std_dev=_ms(hop.group(9)),
                )
            )
    return result


class TroubleshootEngine:
    """Runs diagnostics from the device itself."""

    def __init__(self, sessions: DeviceSessions, sleep: Callable[[float], None] = time.sleep) -> None:
        self.sessions = sessions
        self._sleep = sleep

    def _run(self, device_id: str, command: str, what: str) -> str:
        with self.sessions.ssh(device_id) as client:
            output = client.execute_command(command)
        if not output or not output.strip():
            raise RouterOSCommandError(f"{what} command returned no output")
        return output

    def ping(self, device_id: str, params: PingParams) -> PingResult:
        command = build_ping_command(params)
        logger.info("ping target=%s count=%s", params.address, params.count, extra={"device": device_id})
        return parse_ping_output(self._run(device_id, command, "Ping"), params.address)

    def traceroute(self, device_id: str, address: str, count: int = TRACEROUTE_DEFAULT_COUNT) -> TracerouteResult:
        command = build_traceroute_command(address, count)
        logger.info("traceroute target=%s count=%s", address, count, extra={"device": device_id})
        return parse_traceroute_output(self._run(device_id, command, "Traceroute"), address)

    def continuous_ping(self, device_id: str, params: PingParams, iterations: int = 1) -> list[PingResult]:
        """Ping ``iterations`` times with a one-second pause between rounds."""

        results: list[PingResult] = []
        for iteration in range(iterations):
            results.append(self.ping(device_id, params))
            if iteration < iterations - 1:
                self._sleep(CONTINUOUS_PING_PAUSE)
        return results
