"""Logging setup for RosFleet.

Handlers are configured from the ``logging`` section of ``config/local.yml``
(``directory``, ``filename``, ``level``). Every record carries a ``device``
field: an explicit ``extra={"device": ...}`` wins, otherwise the name set by
:func:`device_context` for the running device operation is used, and ``-``
outside of one.

Credentials never reach a handler. The scrubber redacts RouterOS API login
words (``=password=``, ``=response=``), ``name=value`` credential fields and
encrypted password tokens (``iv:tag:cipher`` hex).
"""

from __future__ import annotations

import contextvars
import logging
import re
import sys
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Iterator, Mapping, TextIO

from rosfleet.core.config import SettingsError, load_local_config

DEFAULT_DIRECTORY = Path("/var/log/rosfleet")
DEFAULT_FILENAME = "rosfleet.log"
FALLBACK_DIRECTORY = Path("./logs")

LOG_FORMAT = "%(asctime)s | %(levelname)s | device=%(device)s | %(message)s"
LOG_DATE_FORMAT = "%Y-%m-%d %H:%M:%S"

# Third-party loggers that are only useful when debugging transport problems.
QUIET_LOGGERS = ("paramiko", "botocore", "boto3", "urllib3")

REDACTED = "***"

_current_device: contextvars.ContextVar[str] = contextvars.ContextVar("rosfleet_device", default="-")


@contextmanager
def device_context(name: str) -> Iterator[None]:
    """Tag records logged inside the block with ``device=name``."""

    token = _current_device.set(name)
    try:
        yield
    finally:
        _current_device.reset(token)


class DeviceContextFilter(logging.Filter):
    def filter(self, record: logging.LogRecord) -> bool:
        if not getattr(record, "device", None):
            record.device = _current_device.get()
        return True


class SecretScrubberFilter(logging.Filter):
    """Redact credentials from the formatted message."""

    PATTERNS = (
        (re.compile(r"(=(?:password|response)=)[^\s]+"), rf"\1{REDACTED}"),
        (
            re.compile(
                r"(?<![\w=-])(password|passwd|secret|secret_access_key|encryption_key|token)=([^\s]+)",
                re.IGNORECASE,
            ),
            rf"\1={REDACTED}",
        ),
        (re.compile(r"\b[0-9a-f]{32}:[0-9a-f]{32}:[0-9a-f]+\b", re.IGNORECASE), REDACTED),
    )

    def scrub(self, message: str) -> str:
        for pattern, replacement in self.PATTERNS:
            message = pattern.sub(replacement, message)
        return message

    def filter(self, record: logging.LogRecord) -> bool:
        try:
            message = record.getMessage()
        except (TypeError, ValueError):
            return True

        cleaned = self.scrub(message)
        if cleaned != message:
            record.msg = cleaned
            record.args = ()
        return True


@dataclass(slots=True)
class LoggingSettings:
    directory: Path = DEFAULT_DIRECTORY
    filename: str = DEFAULT_FILENAME
    level: int = logging.INFO

    @classmethod
    def from_section(cls, section: Mapping[str, Any]) -> "LoggingSettings":
        settings = cls()
        if section.get("directory"):
            settings.directory = Path(str(section["directory"])).expanduser()
        if section.get("filename"):
            settings.filename = str(section["filename"])
        settings.level = parse_level(section.get("level"), settings.level)
        return settings


def parse_level(raw_level: Any, default: int = logging.INFO) -> int:
    if isinstance(raw_level, bool):
        return default
    if isinstance(raw_level, int):
        return raw_level
    if isinstance(raw_level, str):
        level = logging.getLevelName(raw_level.strip().upper())
        if isinstance(level, int):
            return level
    return default


def _writable_directory(*candidates: Path) -> Path:
    for candidate in candidates:
        try:
            candidate.mkdir(parents=True, exist_ok=True)
            probe = candidate / ".write-test"
            probe.touch()
            probe.unlink()
        except OSError:
            continue
        return candidate
    raise OSError("Unable to create a writable logging directory.")


def setup_logging(
    config_path: str | Path | None = None,
    cli_level: int | None = None,
    stream: TextIO | None = None,
) -> logging.Logger:
    """Configure root handlers and return the ``rosfleet`` logger.

    ``cli_level`` (``--debug``) wins over ``logging.level`` from local.yml. An
    unreadable local.yml does not stop logging: defaults are used and the
    problem is reported once the handlers exist.
    """

    problem: SettingsError | None = None
    try:
        section = load_local_config(config_path).get("logging") or {}
    except SettingsError as exc:
        problem, section = exc, {}
    if not isinstance(section, Mapping):
        section = {}

    settings = LoggingSettings.from_section(section)
    if cli_level is not None:
        settings.level = cli_level

    directory = _writable_directory(settings.directory, FALLBACK_DIRECTORY)
    log_path = directory / settings.filename

    formatter = logging.Formatter(LOG_FORMAT, datefmt=LOG_DATE_FORMAT)
    handlers: list[logging.Handler] = [
        logging.FileHandler(log_path, encoding="utf-8"),
        logging.StreamHandler(stream or sys.stdout),
    ]

    root_logger = logging.getLogger()
    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)
        handler.close()
    root_logger.setLevel(settings.level)
    for handler in handlers:
        handler.setFormatter(formatter)
        handler.addFilter(DeviceContextFilter())
        handler.addFilter(SecretScrubberFilter())
        root_logger.addHandler(handler)

    quiet_level = logging.DEBUG if settings.level <= logging.DEBUG else logging.WARNING
    for name in QUIET_LOGGERS:
        logging.getLogger(name).setLevel(quiet_level)

    logger = logging.getLogger("rosfleet")
    logger.setLevel(settings.level)

    if problem is not None:
        logger.warning("%s. Logging with defaults.", problem)
    if directory != settings.directory:
        logger.warning("Logging directory '%s' is not writable. Falling back to '%s'.", settings.directory, directory)
    logger.info("Logging initialized at %s level=%s", log_path, logging.getLevelName(settings.level))
    return logger
