"""Normalization helpers for backup configuration texts."""

from __future__ import annotations

import re

_TIMESTAMP_COMMENT = re.compile(r"^#\s.*\bby RouterOS\b", re.IGNORECASE)
_METADATA_HEADER = "# backup_metadata"


def _normalize_line_endings(text: str) -> str:
    """Convert CRLF/CR line endings to LF for consistent processing."""

    return text.replace("\r\n", "\n").replace("\r", "\n")


def _trim_trailing_blank_lines(lines: list[str]) -> list[str]:
    """Remove trailing empty lines while preserving internal spacing."""

    while lines and not lines[-1].strip():
        lines.pop()
    return lines


def _strip_metadata_block(lines: list[str]) -> list[str]:
    """Drop a leading ``# backup_metadata`` comment block and the blank lines after it."""

    if not lines or lines[0].strip() != _METADATA_HEADER:
        return lines

    index = 1
    while index < len(lines) and lines[index].startswith("#"):
        index += 1
    while index < len(lines) and not lines[index].strip():
        index += 1
    return lines[index:]


def normalize_mikrotik_export(text: str) -> str:
    """Normalize MikroTik export text.

    - unify line endings
    - drop the backup metadata header and the ``by RouterOS`` timestamp line
    - rstrip each line
    - drop blank lines at the end
    """

    normalized = _normalize_line_endings(text)
    lines = [line.rstrip() for line in normalized.split("\n")]
    lines = _strip_metadata_block(lines)
    lines = [line for line in lines if not _TIMESTAMP_COMMENT.match(line)]
    trimmed = _trim_trailing_blank_lines(lines)
    return "\n".join(trimmed)
