"""Retrying command execution on top of a RouterOS API client."""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, replace
from typing import Any, Callable, Iterable, Iterator, Mapping

from rosfleet.core.config import RetrySettings
from rosfleet.core.errors import RouterOSAuthenticationError, RouterOSError
from rosfleet.core.models import CommandResult
from rosfleet.mikrotik.client import RouterOSApiClient

logger = logging.getLogger(__name__)

Command = tuple[str, Mapping[str, Any] | None]


@dataclass(slots=True, frozen=True)
class RetryPolicy:
    """Exponential backoff without jitter: 1s, 2s, 4s for the defaults."""

    max_retries: int = 3
    base_delay: float = 1.0
    multiplier: float = 2.0

    @classmethod
    def from_settings(cls, settings: RetrySettings) -> "RetryPolicy":
        return cls(
            max_retries=settings.max_retries,
            base_delay=settings.base_delay,
            multiplier=settings.multiplier,
        )

    @property
    def max_attempts(self) -> int:
        return self.max_retries + 1

    def delays(self) -> Iterator[float]:
        delay = self.base_delay
        for _ in range(self.max_retries):
            yield delay
            delay *= self.multiplier


class CommandExecutor:
    """Runs commands with reconnect-and-retry semantics."""

    def __init__(
        self,
        client: RouterOSApiClient,
        policy: RetryPolicy | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.client = client
        self.policy = policy or RetryPolicy()
        self._sleep = sleep

    def execute_with_retry(
        self,
        command: str,
        params: Mapping[str, Any] | None = None,
        max_retries: int | None = None,
    ) -> CommandResult:
        """Execute ``command``, reconnecting and backing off between failed attempts.

        Only transport failures are retried: a failed connect, or a failed
        command that left the client disconnected. Replies the device rejected
        with ``!trap`` and authentication failures are returned at once. The
        error of the last attempt is returned when every attempt fails; this
        method never raises.
        """

        policy = self.policy if max_retries is None else replace(self.policy, max_retries=max_retries)
        delays = list(policy.delays())
        last_error = "Max retries exceeded"

        for attempt in range(1, policy.max_attempts + 1):
            try:
                if not self.client.is_connected:
                    self.client.connect()
                result = self.client.execute(command, params)
            except RouterOSAuthenticationError as exc:
                logger.error("authentication failed command=%s error=%s", command, exc)
                return CommandResult.failed(str(exc))
            except RouterOSError as exc:
                last_error = str(exc)
            else:
                if result.success:
                    return result
                if self.client.is_connected:
                    logger.warning("command rejected by device command=%s error=%s", command, result.error)
                    return result
                last_error = result.error or "Unknown error"

            if attempt <= len(delays):
                delay = delays[attempt - 1]
                logger.warning(
                    "attempt %d/%d failed command=%s error=%s retrying in %.1fs",
                    attempt,
                    policy.max_attempts,
                    command,
                    last_error,
                    delay,
                )
                self._sleep(delay)

        logger.error("command failed after %d attempts command=%s", policy.max_attempts, command)
        return CommandResult.failed(last_error)

    def execute_many(self, commands: Iterable[Command]) -> list[CommandResult]:
        """Run commands in order and stop at the first failure."""

        results: list[CommandResult] = []
        for command, params in commands:
            result = self.client.execute(command, params)
            results.append(result)
            if not result.success:
                logger.warning("batch stopped command=%s error=%s", command, result.error)
                break
        return results
