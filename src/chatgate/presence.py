from __future__ import annotations

import logging
from typing import Dict, Iterable, List

from .hub import Connection, make_frame

logger = logging.getLogger(__name__)


class PresenceRegistry:
    """Maps each user id to the single live connection that receives its events.

    A newer connection for the same user replaces the older one. The older
    socket stays open but is no longer addressable, and its eventual
    disconnect leaves the newer mapping untouched.
    """

    def __init__(self) -> None:
        self._by_user: Dict[str, Connection] = {}
        self._by_connection: Dict[int, str] = {}

    def set_online(self, user_id: str, connection: Connection) -> None:
        prior = self._by_user.get(user_id)
        if prior is not None and prior is not connection:
            self._by_connection.pop(prior.connection_id, None)
            logger.debug("connection %s for %s superseded by %s", prior.connection_id, user_id, connection.connection_id)
        self._by_user[user_id] = connection
        self._by_connection[connection.connection_id] = user_id
        self._notify(user_id, True)

    def resolve(self, user_id: str) -> Connection | None:
        return self._by_user.get(user_id)

    def clear(self, connection: Connection) -> str | None:
        """Forget ``connection`` and return the user id it was serving, if any."""

        user_id = self._by_connection.pop(connection.connection_id, None)
        if user_id is None:
            return None
        if self._by_user.get(user_id) is not connection:
            return None
        self._by_user.pop(user_id, None)
        self._notify(user_id, False)
        return user_id

    def is_online(self, user_id: str) -> bool:
        return user_id in self._by_user

    def online_users(self) -> List[str]:
        return list(self._by_user)

    def connections(self, user_ids: Iterable[str]) -> List[Connection]:
        """Return the live connections for ``user_ids`` in order, skipping absent users."""

        found: List[Connection] = []
        seen: set[str] = set()
        for user_id in user_ids:
            if user_id in seen:
                continue
            seen.add(user_id)
            connection = self._by_user.get(user_id)
            if connection is not None:
                found.append(connection)
        return found

    def _notify(self, user_id: str, online: bool) -> None:
        frame = make_frame("user_status", {"user_id": user_id, "online": online})
        for connection in list(self._by_user.values()):
            connection.deliver(frame)
