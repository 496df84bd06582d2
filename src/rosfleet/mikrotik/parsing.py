"""Helpers shared by the RouterOS response parsers."""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Any, Mapping

from rosfleet.core.errors import ResponseParseError
from rosfleet.core.models import RawItem

NUMBER_PATTERN = re.compile(r"^\d+(?:\.\d+)?$")
DURATION_PATTERN = re.compile(
    r"^(?:(?P<s>\d+(?:\.\d+)?)s)?(?:(?P<ms>\d+(?:\.\d+)?)ms)?(?:(?P<us>\d+(?:\.\d+)?)us)?$"
)
KV_TOKEN_PATTERN = re.compile(r'([\w.\-]+)=("[^"]*"|\S+)')
DETAIL_LINE_PATTERN = re.compile(r"^\s*([\w.\-]+(?: [\w.\-]+)*):\s+(.*?)\s*$")


def to_bool(value: Any) -> bool:
    """RouterOS booleans arrive as ``true``/``false`` or ``yes``/``no``."""

    if isinstance(value, bool):
        return value
    if value is None:
        return False
    return str(value).strip().lower() in ("true", "yes")


def to_int(value: Any) -> int | None:
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    try:
        return int(str(value).strip())
    except ValueError:
        return None


def parse_duration_ms(value: Any) -> float | None:
    """Parse ``20ms688us`` style durations into milliseconds (20.688)."""

    if value is None:
        return None
    text = str(value).strip()
    if not text:
        return None
    if NUMBER_PATTERN.match(text):
        return float(text)

    match = DURATION_PATTERN.match(text)
    if not match or not any(match.groupdict().values()):
        return None
    seconds = float(match.group("s") or 0)
    millis = float(match.group("ms") or 0)
    micros = float(match.group("us") or 0)
    # accumulate in microseconds: 20ms688us -> 20.688
    return (seconds * 1_000_000 + millis * 1000 + micros) / 1000


def parse_kv_tokens(text: str) -> dict[str, str]:
    """Extract ``key=value`` tokens from a free-text line; quotes are stripped."""

    return {key: value.strip('"') for key, value in KV_TOKEN_PATTERN.findall(text)}


def parse_print_detail(text: str) -> dict[str, str]:
    """Parse CLI ``key: value`` output such as ``/system resource print``."""

    values: dict[str, str] = {}
    for line in text.splitlines():
        match = DETAIL_LINE_PATTERN.match(line)
        if match:
            values[match.group(1).strip()] = match.group(2)
    return values


def ensure_raw_item(item: Any, kind: str) -> RawItem:
    """Reject reply items that are neither a mapping nor a text line."""

    if isinstance(item, (Mapping, str)):
        return item
    raise ResponseParseError(f"Unexpected {kind} item of type {type(item).__name__}")


@dataclass(slots=True)
class SystemResource:
    """Subset of ``/system resource`` used by probes and backups."""

    version: str | None = None
    uptime: str | None = None
    cpu_load: int | None = None
    free_memory: int | None = None
    total_memory: int | None = None
    architecture_name: str | None = None
    board_name: str | None = None
    platform: str | None = None


def parse_system_resource(item: Any) -> SystemResource:
    """Parse an API record or the CLI text of ``/system resource print``."""

    item = ensure_raw_item(item, "system resource")
    values: Mapping[str, Any] = parse_print_detail(item) if isinstance(item, str) else item

    return SystemResource(
        version=values.get("version"),
        uptime=values.get("uptime"),
        cpu_load=to_int(str(values.get("cpu-load", "")).rstrip("%") or None),
        free_memory=to_int(values.get("free-memory")),
        total_memory=to_int(values.get("total-memory")),
        architecture_name=values.get("architecture-name"),
        board_name=values.get("board-name"),
        platform=values.get("platform"),
    )
