"""Helpers for RouterOS ``/export`` text."""

from __future__ import annotations

import re
import time

from rosfleet.core.models import BackupType

_VERSION_HEADER = re.compile(r"by RouterOS ([\d.]+)")
_SOFTWARE_ID = re.compile(r"# software id = ([^\n]+)")

VERBS = frozenset(
    {"add", "set", "remove", "enable", "disable", "unset", "move", "reset", "print", "comment"}
)

# summary key -> (menu prefix, counted verbs)
SUMMARY_SECTIONS: dict[str, tuple[str, frozenset[str]]] = {
    "interfaces": ("/interface", frozenset({"add", "set"})),
    "ip_addresses": ("/ip/address", frozenset({"add"})),
    "firewall_rules": ("/ip/firewall/filter", frozenset({"add"})),
    "nat_rules": ("/ip/firewall/nat", frozenset({"add"})),
    "routes": ("/ip/route", frozenset({"add"})),
    "dhcp_servers": ("/ip/dhcp-server", frozenset({"add"})),
    "users": ("/user", frozenset({"add"})),
    "scripts": ("/system/script", frozenset({"add"})),
    "scheduler": ("/system/scheduler", frozenset({"add"})),
    "queues": ("/queue", frozenset({"add"})),
}


def join_continuations(text: str) -> list[str]:
    """Join lines ending with a backslash onto the following line."""

    lines: list[str] = []
    pending = ""
    for raw_line in text.splitlines():
        line = raw_line.rstrip()
        if line.endswith("\\"):
            pending += line[:-1] if not pending else line[:-1].lstrip()
            continue
        lines.append(pending + (line.lstrip() if pending else line))
        pending = ""
    if pending:
        lines.append(pending)
    return lines


def menu_path(segments: list[str]) -> str:
    """``["/ip", "firewall", "filter"]`` -> ``/ip/firewall/filter``."""

    parts: list[str] = []
    for segment in segments:
        parts.extend(part for part in segment.split("/") if part)
    return "/" + "/".join(parts)


def _menu_and_verb(line: str, menu: str) -> tuple[str, str | None]:
    tokens = line.split()
    index = 0
    if tokens[0].startswith("/"):
        while index < len(tokens) and tokens[index] not in VERBS and "=" not in tokens[index]:
            index += 1
        menu = menu_path(tokens[:index])
    verb = tokens[index] if index < len(tokens) and tokens[index] in VERBS else None
    return menu, verb


def _in_menu(menu: str, prefix: str) -> bool:
    return menu == prefix or menu.startswith(prefix + "/")


def parse_config_summary(content: str) -> dict[str, int]:
    """Count configuration entries per section of an export.

    The counts are advisory metadata stored with a backup.
    """

    summary = dict.fromkeys(SUMMARY_SECTIONS, 0)
    menu = "/"
    for line in join_continuations(content):
        stripped = line.strip()
        if not stripped or stripped.startswith("#"):
            continue
        menu, verb = _menu_and_verb(stripped, menu)
        if verb is None:
            continue
        for key, (prefix, verbs) in SUMMARY_SECTIONS.items():
            if verb in verbs and _in_menu(menu, prefix):
                summary[key] += 1
    return summary


def extract_routeros_version(content: str) -> str | None:
    """Read the version from the ``# ... by RouterOS 7.16`` export header."""

    match = _VERSION_HEADER.search(content)
    if match:
        return match.group(1)

    match = _SOFTWARE_ID.search(content)
    if match:
        return match.group(1).strip()
    return None


def backup_storage_key(device_id: str, backup_type: BackupType = "EXPORT", now_ms: int | None = None) -> str:
    """``backups/{device_id}/{epoch_millis}-{type}.rsc`` (``.backup`` for BINARY)."""

    timestamp = now_ms if now_ms is not None else int(time.time() * 1000)
    extension = "backup" if backup_type == "BINARY" else "rsc"
    return f"backups/{device_id}/{timestamp}-{backup_type.lower()}.{extension}"
