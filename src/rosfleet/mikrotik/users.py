"""Local user accounts on RouterOS devices."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Mapping

from rosfleet.core.errors import ResponseParseError, RouterOSCommandError
from rosfleet.mikrotik.parsing import ensure_raw_item, to_bool
from rosfleet.mikrotik.sessions import DeviceSessions

logger = logging.getLogger(__name__)

USER_PRINT = "/user/print"
USER_ADD = "/user/add"
USER_SET = "/user/set"
USER_REMOVE = "/user/remove"

# RouterOS 7 prints ``2024-01-31 10:20:30``, v6 ``jan/31/2024 10:20:30``.
LAST_LOGIN_FORMATS = ("%Y-%m-%d %H:%M:%S", "%b/%d/%Y %H:%M:%S")


@dataclass(slots=True)
class RouterUser:
    id: str
    name: str
    group: str | None = None
    address: str | None = None
    comment: str | None = None
    disabled: bool = False
    last_logged_in: datetime | None = None


def _parse_last_login(value: Any) -> datetime | None:
    if not value:
        return None
    text = str(value).strip()
    for fmt in LAST_LOGIN_FORMATS:
        try:
            return datetime.strptime(text, fmt)
        except ValueError:
            continue
    return None


def parse_router_user(item: Any) -> RouterUser:
    item = ensure_raw_item(item, "user")
    if not isinstance(item, Mapping):
        raise ResponseParseError("User entries are only returned as records")
    return RouterUser(
        id=str(item.get(".id", "")),
        name=str(item.get("name", "")),
        group=item.get("group"),
        address=item.get("address"),
        comment=item.get("comment"),
        disabled=to_bool(item.get("disabled")),
        last_logged_in=_parse_last_login(item.get("last-logged-in")),
    )


def _user_params(
    name: str | None = None,
    password: str | None = None,
    group: str | None = None,
    address: str | None = None,
    comment: str | None = None,
    disabled: bool | None = None,
) -> dict[str, Any]:
    params: dict[str, Any] = {
        "name": name or None,
        "password": password or None,
        "group": group or None,
        "address": address or None,
        "comment": comment or None,
    }
    if disabled is not None:
        params["disabled"] = "yes" if disabled else "no"
    return {key: value for key, value in params.items() if value is not None}


class UserService:
    """CRUD for ``/user`` entries, each call over its own API session."""

    def __init__(self, sessions: DeviceSessions) -> None:
        self.sessions = sessions

    def list_users(self, device_id: str) -> list[RouterUser]:
        with self.sessions.api(device_id) as client:
            result = self.sessions.executor(client).execute_with_retry(USER_PRINT)
        if not result.success:
            raise RouterOSCommandError(f"Failed to fetch users: {result.error}")
        return [parse_router_user(item) for item in result.records]

    def get_user_by_name(self, device_id: str, username: str) -> RouterUser | None:
        with self.sessions.api(device_id) as client:
            result = self.sessions.executor(client).execute_with_retry(USER_PRINT, {"?name": username})
        if not result.success:
            raise RouterOSCommandError(f"Failed to fetch user: {result.error}")
        return parse_router_user(result.records[0]) if result.records else None

    def create_user(
        self,
        device_id: str,
        name: str,
        password: str,
        group: str | None = None,
        address: str | None = None,
        comment: str | None = None,
        disabled: bool | None = None,
    ) -> RouterUser:
        if not name or not password:
            raise ValueError("Username and password are required")

        params = _user_params(name, password, group, address, comment, disabled)
        with self.sessions.api(device_id) as client:
            executor = self.sessions.executor(client)
            result = executor.execute_with_retry(USER_ADD, params)
            if not result.success:
                raise RouterOSCommandError(f"Failed to create user: {result.error}")
            logger.info("user created name=%s", name)
            fetched = executor.execute_with_retry(USER_PRINT, {"?name": name})

        if not fetched.success or not fetched.records:
            raise RouterOSCommandError("User created but could not be retrieved")
        return parse_router_user(fetched.records[0])

    def update_user(self, device_id: str, user_id: str, **changes: Any) -> RouterUser:
        params = {".id": user_id, **_user_params(**changes)}
        with self.sessions.api(device_id) as client:
            executor = self.sessions.executor(client)
            result = executor.execute_with_retry(USER_SET, params)
            if not result.success:
                raise RouterOSCommandError(f"Failed to update user: {result.error}")
            fetched = executor.execute_with_retry(USER_PRINT, {"?.id": user_id})

        if not fetched.success or not fetched.records:
            raise RouterOSCommandError("User updated but could not be retrieved")
        return parse_router_user(fetched.records[0])

    def delete_user(self, device_id: str, user_id: str) -> None:
        with self.sessions.api(device_id) as client:
            result = self.sessions.executor(client).execute_with_retry(USER_REMOVE, {".id": user_id})
            if not result.success:
                raise RouterOSCommandError(f"Failed to delete user: {result.error}")
            logger.info("user removed id=%s", user_id)

    def enable_user(self, device_id: str, user_id: str) -> RouterUser:
        return self.update_user(device_id, user_id, disabled=False)

    def disable_user(self, device_id: str, user_id: str) -> RouterUser:
        return self.update_user(device_id, user_id, disabled=True)
