"""RouterOS API client."""

from __future__ import annotations

import logging
import shlex
import socket
from dataclasses import dataclass, field
from typing import Any, Callable, Mapping

from rosfleet.core.errors import (
    PartialCommandFailure,
    RouterOSAuthenticationError,
    RouterOSCommandError,
    RouterOSConnectionError,
)
from rosfleet.core.models import DEFAULT_API_PORT, CommandResult
from rosfleet.mikrotik.api import REPLY_FATAL, REPLY_RECORD, REPLY_TRAP, ApiConnection, login
from rosfleet.mikrotik.export import VERBS, join_continuations, menu_path

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 10.0


def encode_params(params: Mapping[str, Any] | None) -> list[str]:
    """Encode API parameters: ``?key`` becomes a query word, anything else ``=key=value``."""

    words: list[str] = []
    for key, value in (params or {}).items():
        if value is None:
            continue
        if isinstance(value, bool):
            value = "yes" if value else "no"
        if key.startswith("?"):
            words.append(f"{key}={value}")
        else:
            words.append(f"={key}={value}")
    return words


def _find_target(tokens: list[str], line: str) -> str:
    terms = [token for token in tokens if token not in ("find", "where")]
    if len(terms) == 1 and "=" in terms[0]:
        key, _, value = terms[0].partition("=")
        if key in ("name", "default-name"):
            return value
    raise ValueError(f"unsupported find expression in: {line}")


def translate_cli_line(line: str, menu: str) -> tuple[str, list[str] | None]:
    """Translate one exported CLI line into an API sentence.

    Returns ``(menu, words)``. ``words`` is None when the line only switches the
    current menu (``/ip address``).
    """

    stripped = line.strip()
    if stripped.startswith(":"):
        raise ValueError(f"scripting commands are not supported over the API: {stripped}")

    tokens = shlex.split(stripped.replace("[", " [ ").replace("]", " ] "))
    path: list[str] = []
    index = 0
    if tokens and tokens[0].startswith("/"):
        while index < len(tokens) and tokens[index] not in VERBS and "=" not in tokens[index]:
            path.append(tokens[index])
            index += 1
        menu = menu_path(path)
        if index == len(tokens):
            return menu, None

    if index >= len(tokens) or tokens[index] not in VERBS:
        raise ValueError(f"no command verb found in: {stripped}")

    verb = tokens[index]
    command = f"{menu.rstrip('/')}/{verb}"
    words = [command]
    rest = tokens[index + 1:]
    position = 0
    while position < len(rest):
        token = rest[position]
        if token == "[":
            end = rest.index("]", position) if "]" in rest[position:] else len(rest)
            words.append(f"=numbers={_find_target(rest[position + 1:end], stripped)}")
            position = end + 1
            continue
        if "=" in token:
            key, _, value = token.partition("=")
            words.append(f"={key}={value}")
        else:
            words.append(f"=numbers={token}")
        position += 1
    return menu, words


@dataclass(slots=True)
class ImportOutcome:
    """Result of a line-by-line configuration import."""

    success_count: int = 0
    line_errors: list[str] = field(default_factory=list)
    log: list[str] = field(default_factory=list)

    @property
    def success(self) -> bool:
        return not self.line_errors

    @property
    def error(self) -> str | None:
        return "; ".join(self.line_errors) if self.line_errors else None

    def record_failure(self, line: str, error: str, verbose: bool = False) -> None:
        self.line_errors.append(f'Error executing "{line}": {error}')
        if verbose:
            self.log.append(f"{line} -> {error}")

    def raise_for_errors(self) -> None:
        if self.line_errors:
            raise PartialCommandFailure(self.line_errors)


class RouterOSApiClient:
    """Client for the RouterOS binary API."""

    def __init__(
        self,
        host: str,
        username: str,
        password: str,
        port: int = DEFAULT_API_PORT,
        timeout: float = DEFAULT_TIMEOUT,
        socket_factory: Callable[..., socket.socket] = socket.create_connection,
    ) -> None:
        self.host = host
        self.username = username
        self.port = port
        self.timeout = timeout
        self._password = password
        self._socket_factory = socket_factory
        self._connection: ApiConnection | None = None

    @property
    def is_connected(self) -> bool:
        return self._connection is not None

    def connect(self) -> None:
        if self._connection is not None:
            return

        target = f"{self.host}:{self.port}"
        logger.debug("connecting to RouterOS api target=%s", target)
        try:
            sock = self._socket_factory((self.host, self.port), timeout=self.timeout)
        except OSError as exc:
            raise RouterOSConnectionError(f"Failed to connect to RouterOS at {target} - {exc}") from exc

        connection = ApiConnection(sock)
        try:
            login(connection, self.username, self._password)
        except RouterOSAuthenticationError as exc:
            connection.close()
            raise RouterOSAuthenticationError(f"{exc} ({target})") from exc
        except (OSError, RouterOSConnectionError) as exc:
            connection.close()
            raise RouterOSConnectionError(f"Failed to connect to RouterOS at {target} - {exc}") from exc

        self._connection = connection
        logger.info("api ok host=%s port=%s", self.host, self.port)

    def disconnect(self) -> None:
        if self._connection is None:
            return
        connection, self._connection = self._connection, None
        try:
            connection.close()
        except OSError as exc:
            logger.warning("error while closing api connection host=%s error=%s", self.host, exc)

    def _mark_disconnected(self) -> None:
        if self._connection is not None:
            try:
                self._connection.close()
            except OSError as exc:
                logger.debug("ignoring close error host=%s error=%s", self.host, exc)
            self._connection = None

    def execute(self, command: str, params: Mapping[str, Any] | None = None) -> CommandResult:
        """Run one API command; failures come back as an unsuccessful result."""

        if self._connection is None:
            return CommandResult.failed("Not connected to RouterOS. Call connect() first.")
        return self._talk([command, *encode_params(params)])

    def _talk(self, words: list[str]) -> CommandResult:
        assert self._connection is not None
        try:
            replies = self._connection.talk(words)
        except (OSError, RouterOSConnectionError) as exc:
            logger.warning("api command failed command=%s error=%s", words[0], exc)
            self._mark_disconnected()
            return CommandResult.failed(str(exc) or exc.__class__.__name__)

        for reply in replies:
            if reply.type == REPLY_TRAP:
                return CommandResult.failed(reply.message or "Unknown error")
            if reply.type == REPLY_FATAL:
                self._mark_disconnected()
                return CommandResult.failed(reply.message or "Connection closed by device")

        records = [dict(reply.attributes) for reply in replies if reply.type == REPLY_RECORD]
        return CommandResult(success=True, records=records)

    def get_version(self) -> str:
        result = self.execute("/system/resource/print")
        if not result.success or not result.records:
            raise RouterOSCommandError(
                f"Failed to get RouterOS version: {result.error or 'no system resource data'}"
            )
        return str(result.records[0].get("version") or "Unknown")

    def import_config(self, config: str, verbose: bool = False) -> ImportOutcome:
        """Apply an exported configuration line by line.

        Failing lines are recorded and the import continues with the next one.
        """

        outcome = ImportOutcome()
        if self._connection is None:
            outcome.line_errors.append("Not connected to RouterOS. Call connect() first.")
            return outcome

        menu = "/"
        for line in join_continuations(config):
            stripped = line.strip()
            if not stripped or stripped.startswith("#"):
                continue

            try:
                menu, words = translate_cli_line(stripped, menu)
            except ValueError as exc:
                outcome.record_failure(stripped, str(exc), verbose)
                continue
            if words is None:
                continue

            if self._connection is None:
                outcome.record_failure(stripped, "connection lost", verbose)
                continue

            result = self._talk(words)
            if result.success:
                outcome.success_count += 1
                if verbose:
                    outcome.log.append(f"{stripped} -> ok")
            else:
                outcome.record_failure(stripped, result.error or "Unknown error", verbose)

        logger.info(
            "import finished host=%s applied=%d failed=%d",
            self.host,
            outcome.success_count,
            len(outcome.line_errors),
        )
        return outcome

    def __enter__(self) -> "RouterOSApiClient":
        self.connect()
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.disconnect()
