"""BGP read and control operations."""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from typing import Any, Iterable, Mapping

from rosfleet.core.errors import ResponseParseError, RouterOSCommandError
from rosfleet.mikrotik.parsing import ensure_raw_item, to_bool, to_int
from rosfleet.mikrotik.sessions import DeviceSessions

logger = logging.getLogger(__name__)

BGP_CONNECTION_PRINT = "/routing/bgp/connection/print"
BGP_ADVERTISEMENTS_PRINT = "/routing/bgp/advertisements/print"
BGP_SESSION_PRINT = "/routing/bgp/session/print"

SESSION_STATE_FLAGS = {
    "E": "established",
    "D": "down",
    "I": "idle",
    "A": "active",
    "C": "connect",
    "O": "opensent",
}
ORIGIN_CODES = {0: "IGP", 1: "EGP"}

_STATE_FLAG = re.compile(r"^\s*(?:\d+\s+)?([A-Za-z])\s")
_SESSION_FIELDS = {
    "name": re.compile(r"\bname=(\S+)"),
    "remote_address": re.compile(r"remote\.address=([\d.:a-fA-F]+)"),
    "remote_as": re.compile(r"remote\.as=(\d+)"),
    "local_address": re.compile(r"local\.address=([\d.:a-fA-F]+)"),
    "local_as": re.compile(r"local\.as=(\d+)"),
    "uptime": re.compile(r"uptime=(\S+)"),
    "received_update": re.compile(r"remote\.messages=(\d+)"),
    "sent_update": re.compile(r"local\.messages=(\d+)"),
}
_PREFIX_COUNT = re.compile(r"prefix-count=(\d+)")
_DISABLED = re.compile(r"disabled=(yes|true)", re.IGNORECASE)

_ADV_PEER = re.compile(r"peer=([\w.\-]+)")
_ADV_DST = re.compile(r"dst=([\w.:/]+)")
_ADV_NEXTHOP = re.compile(r"nexthop=([\w.:]+)")
_ADV_ORIGIN = re.compile(r"origin=(\d+)")
_ADV_AS_PATH = re.compile(r"as-path=sequence\s+([\d\s]+)")
_ADV_AFI = re.compile(r"afi=(\w+)")


@dataclass(slots=True)
class ParsedBGPConnection:
    id: str
    name: str | None = None
    remote_address: str | None = None
    remote_as: str | None = None
    local_address: str | None = None
    local_as: str | None = None
    state: str | None = None
    uptime: str | None = None
    prefix_count: int | None = None
    disabled: bool = False
    in_filter: str | None = None
    out_filter: str | None = None


@dataclass(slots=True)
class ParsedBGPSession:
    id: str
    name: str | None = None
    remote_address: str | None = None
    remote_port: int | None = None
    remote_as: str | None = None
    local_address: str | None = None
    local_port: int | None = None
    local_as: str | None = None
    established: str | None = None
    state: str | None = None
    uptime: str | None = None
    received_update: str | None = None
    sent_update: str | None = None
    withdrawn: str | None = None
    keepalive: str | None = None
    disabled: bool = False
    prefix_count: int | None = None


@dataclass(slots=True)
class ParsedBGPAdvertisement:
    id: str
    dst_address: str | None = None
    prefix: str | None = None
    gateway: str | None = None
    interface: str | None = None
    scope: str | None = None
    peer: str | None = None
    as_path: str | None = None
    origin: str | None = None
    afi: str | None = None
    local_pref: int | None = None
    med: int | None = None
    bgp_communities: str | None = None


@dataclass(slots=True)
class BGPSessionStats:
    total: int = 0
    established: int = 0
    active: int = 0
    idle: int = 0
    down: int = 0


@dataclass(slots=True)
class BGPOverview:
    connections: list[ParsedBGPConnection]
    advertisements: list[ParsedBGPAdvertisement]
    sessions: list[ParsedBGPSession]


def parse_bgp_connection(item: Any, index: int = 0) -> ParsedBGPConnection:
    item = ensure_raw_item(item, "BGP connection")
    if not isinstance(item, Mapping):
        raise ResponseParseError("BGP connections are only returned as records")

    return ParsedBGPConnection(
        id=str(item.get(".id") or f"connection-{index}"),
        name=item.get("name"),
        remote_address=item.get("remote.address"),
        remote_as=item.get("remote.as"),
        local_address=item.get("local.address"),
        local_as=item.get("local.as"),
        state=item.get("state"),
        uptime=item.get("uptime"),
        prefix_count=to_int(item.get("prefix-count")),
        disabled=to_bool(item.get("disabled")),
        in_filter=item.get("in.filter"),
        out_filter=item.get("out.filter"),
    )


def _parse_session_text(line: str, index: int) -> ParsedBGPSession:
    session = ParsedBGPSession(id=f"session-{index}")

    flag = _STATE_FLAG.match(line)
    session.state = SESSION_STATE_FLAGS.get(flag.group(1), "unknown") if flag else "unknown"
    if session.state == "established":
        session.established = "true"

    for attribute, pattern in _SESSION_FIELDS.items():
        match = pattern.search(line)
        if match:
            setattr(session, attribute, match.group(1))

    prefix_count = _PREFIX_COUNT.search(line)
    if prefix_count:
        session.prefix_count = int(prefix_count.group(1))
    session.disabled = bool(_DISABLED.search(line))
    return session


def parse_bgp_session(item: Any, index: int = 0) -> ParsedBGPSession:
    """Parse a session record or one line of the text print format.

    Text lines look like ``0 E name=GMIX-1 remote.address=10.98.80.44 ...``
    where the flag after the row number encodes the session state.
    """

    item = ensure_raw_item(item, "BGP session")
    if isinstance(item, str):
        return _parse_session_text(item, index)

    established = item.get("established")
    state = item.get("state") or ("established" if established == "true" else None)
    return ParsedBGPSession(
        id=str(item.get(".id") or f"session-{index}"),
        name=item.get("name"),
        remote_address=item.get("remote.address"),
        remote_port=to_int(item.get("remote.port")),
        remote_as=item.get("remote.as"),
        local_address=item.get("local.address"),
        local_port=to_int(item.get("local.port")),
        local_as=item.get("local.as"),
        established=established,
        state=state,
        uptime=item.get("uptime"),
        received_update=item.get("remote.messages") or item.get("received.update"),
        sent_update=item.get("local.messages") or item.get("sent.update"),
        withdrawn=item.get("withdrawn"),
        keepalive=item.get("keepalive"),
        disabled=to_bool(item.get("disabled")),
        prefix_count=to_int(item.get("prefix-count")),
    )


def _origin_name(code: int) -> str:
    return ORIGIN_CODES.get(code, "INCOMPLETE")


def _parse_advertisement_text(line: str, index: int) -> ParsedBGPAdvertisement:
    advertisement = ParsedBGPAdvertisement(id=f"adv-{index}")

    if match := _ADV_PEER.search(line):
        advertisement.peer = match.group(1)
    if match := _ADV_DST.search(line):
        advertisement.prefix = advertisement.dst_address = match.group(1)
    if match := _ADV_NEXTHOP.search(line):
        advertisement.gateway = match.group(1)
    if match := _ADV_ORIGIN.search(line):
        advertisement.origin = _origin_name(int(match.group(1)))
    if match := _ADV_AS_PATH.search(line):
        as_numbers = match.group(1).split()
        if as_numbers:
            advertisement.as_path = " ".join(as_numbers)
    if match := _ADV_AFI.search(line):
        advertisement.afi = match.group(1)
    return advertisement


def parse_bgp_advertisement(item: Any, index: int = 0) -> ParsedBGPAdvertisement:
    """Parse an advertisement record or a text line.

    Text lines look like
    ``peer=AMAZON-1 dst=160.25.54.0/24 afi=ip nexthop=119.11.187.29 origin=0 as-path=sequence 15306``.
    """

    item = ensure_raw_item(item, "BGP advertisement")
    if isinstance(item, str):
        return _parse_advertisement_text(item, index)

    origin = item.get("origin")
    origin_code = to_int(origin)
    return ParsedBGPAdvertisement(
        id=str(item.get(".id") or f"adv-{index}"),
        dst_address=item.get("dst-address") or item.get("dst"),
        prefix=item.get("prefix"),
        gateway=item.get("gateway") or item.get("nexthop"),
        interface=item.get("interface"),
        scope=item.get("scope"),
        peer=item.get("from") or item.get("peer"),
        as_path=item.get("as-path"),
        origin=_origin_name(origin_code) if origin_code is not None else origin,
        afi=item.get("afi"),
        local_pref=to_int(item.get("local-pref")),
        med=to_int(item.get("med")),
        bgp_communities=item.get("bgp-communities"),
    )


def session_stats(sessions: Iterable[ParsedBGPSession]) -> BGPSessionStats:
    stats = BGPSessionStats()
    for session in sessions:
        stats.total += 1
        state = (session.state or "").lower()
        if "established" in state:
            stats.established += 1
        elif "active" in state:
            stats.active += 1
        elif "idle" in state:
            stats.idle += 1
        else:
            stats.down += 1
    return stats


class RoutingService:
    """BGP operations for one device per call."""

    def __init__(self, sessions: DeviceSessions) -> None:
        self.sessions = sessions

    def _fetch(self, client, command: str, what: str, params: Mapping[str, Any] | None = None):
        result = client.execute(command, params)
        if not result.success:
            raise RouterOSCommandError(f"Failed to fetch {what}: {result.error}")
        return result.records

    def _control(self, device_id: str, connection_id: str, action: str) -> None:
        with self.sessions.api(device_id) as client:
            result = client.execute(f"/routing/bgp/connection/{action}", {".id": connection_id})
            if not result.success:
                raise RouterOSCommandError(f"Failed to {action} BGP connection: {result.error}")
            logger.info("bgp connection %s id=%s", action, connection_id)

    def get_connections(self, device_id: str) -> list[ParsedBGPConnection]:
        with self.sessions.api(device_id) as client:
            records = self._fetch(client, BGP_CONNECTION_PRINT, "BGP connections")
        return [parse_bgp_connection(item, index) for index, item in enumerate(records)]

    def get_connection(self, device_id: str, connection_id: str) -> ParsedBGPConnection | None:
        with self.sessions.api(device_id) as client:
            records = self._fetch(client, BGP_CONNECTION_PRINT, "BGP connection", {"?.id": connection_id})
        return parse_bgp_connection(records[0]) if records else None

    def get_advertisements(
        self,
        device_id: str,
        prefix: str | None = None,
        dst_address: str | None = None,
        from_peer: str | None = None,
    ) -> list[ParsedBGPAdvertisement]:
        params = {"?prefix": prefix, "?dst-address": dst_address, "?from": from_peer}
        with self.sessions.api(device_id) as client:
            records = self._fetch(client, BGP_ADVERTISEMENTS_PRINT, "BGP advertisements", params)
        return [parse_bgp_advertisement(item, index) for index, item in enumerate(records)]

    def get_sessions(self, device_id: str) -> list[ParsedBGPSession]:
        with self.sessions.api(device_id) as client:
            records = self._fetch(client, BGP_SESSION_PRINT, "BGP sessions")
        return [parse_bgp_session(item, index) for index, item in enumerate(records)]

    def get_session(self, device_id: str, session_id: str) -> ParsedBGPSession | None:
        with self.sessions.api(device_id) as client:
            records = self._fetch(client, BGP_SESSION_PRINT, "BGP session", {"?.id": session_id})
        return parse_bgp_session(records[0]) if records else None

    def get_all_bgp_data(self, device_id: str) -> BGPOverview:
        """Connections, advertisements and sessions over a single session."""

        with self.sessions.api(device_id) as client:
            connections = self._fetch(client, BGP_CONNECTION_PRINT, "BGP connections")
            advertisements = self._fetch(client, BGP_ADVERTISEMENTS_PRINT, "BGP advertisements")
            sessions = self._fetch(client, BGP_SESSION_PRINT, "BGP sessions")

        return BGPOverview(
            connections=[parse_bgp_connection(item, index) for index, item in enumerate(connections)],
            advertisements=[parse_bgp_advertisement(item, index) for index, item in enumerate(advertisements)],
            sessions=[parse_bgp_session(item, index) for index, item in enumerate(sessions)],
        )

    def enable_connection(self, device_id: str, connection_id: str) -> None:
        self._control(device_id, connection_id, "enable")

    def disable_connection(self, device_id: str, connection_id: str) -> None:
        self._control(device_id, connection_id, "disable")

    def reset_connection(self, device_id: str, connection_id: str) -> None:
        self._control(device_id, connection_id, "reset")

    def get_session_stats(self, device_id: str) -> BGPSessionStats:
        return session_stats(self.get_sessions(device_id))
