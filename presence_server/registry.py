# presence_server/registry.py

import asyncio
import logging
from typing import Any, Dict, List, Optional

from presence_common import protocol

from typing import TYPE_CHECKING
if TYPE_CHECKING:
    from .connection import ClientConnection

logger = logging.getLogger(__name__)

DEFAULT_SEND_TIMEOUT = 5.0


class PresenceRegistry:
    """
    The authoritative map of online users to their live connection.

    A user holds at most one entry. Registering a second connection for the
    same user closes the older one first ("last connection wins"). Every
    change to the map is followed by a ``presence.update`` broadcast carrying
    the full set of online user ids.
    """

    def __init__(self, send_timeout: float = DEFAULT_SEND_TIMEOUT):
        self._sessions: Dict[str, "ClientConnection"] = {}
        self._lock = asyncio.Lock()
        self.send_timeout = send_timeout

    def __len__(self) -> int:
        return len(self._sessions)

    def __contains__(self, user_id: object) -> bool:
        return user_id in self._sessions

    def online_user_ids(self) -> List[str]:
        return protocol.presence_payload(self._sessions)

    async def register(self, user_id: Optional[str], handle: "ClientConnection") -> None:
        """Installs ``handle`` as the session for ``user_id`` and broadcasts."""
        if not user_id:
            logger.debug("Anonymous connection %s takes no presence entry.", handle)
            return

        async with self._lock:
            previous = self._sessions.get(user_id)
            if previous is not None and previous is not handle:
                logger.info("User '%s' connected again; evicting previous connection %s.", user_id, previous)
                try:
                    await previous.close(notify=True)
                except (ConnectionError, OSError) as e:
                    logger.warning("Error while evicting connection for '%s': %s", user_id, e)

            self._sessions[user_id] = handle
            logger.info("User '%s' registered (%d online).", user_id, len(self._sessions))
            await self._broadcast(protocol.PRESENCE_UPDATE, self.online_user_ids())

    async def unregister(self, handle: "ClientConnection") -> None:
        """
        Removes the entry owned by ``handle``, if it still owns one.

        Anonymous handles and handles that were already replaced by a newer
        connection are ignored and trigger no broadcast.
        """
        user_id = getattr(handle, "user_id", None)
        if not user_id:
            return

        async with self._lock:
            if self._sessions.get(user_id) is not handle:
                return
            del self._sessions[user_id]
            logger.info("User '%s' unregistered (%d online).", user_id, len(self._sessions))
            await self._broadcast(protocol.PRESENCE_UPDATE, self.online_user_ids())

    async def lookup(self, user_id: str) -> Optional["ClientConnection"]:
        """Returns the live connection for ``user_id``, or None when offline."""
        async with self._lock:
            return self._sessions.get(user_id)

    async def broadcast(self, event: str, payload: Any) -> None:
        async with self._lock:
            await self._broadcast(event, payload)

    async def close_all(self) -> None:
        """Closes every registered connection. Used on server shutdown."""
        async with self._lock:
            handles = list(self._sessions.values())
            self._sessions.clear()
        for handle in handles:
            try:
                await handle.close(notify=True)
            except (ConnectionError, OSError) as e:
                logger.warning("Error closing connection %s: %s", handle, e)

    async def _broadcast(self, event: str, payload: Any) -> None:
        # Callers hold the lock, so the recipients and the payload both
        # reflect the same state of the map.
        handles = list(self._sessions.items())
        if not handles:
            return
        results = await asyncio.gather(
            *(asyncio.wait_for(handle.send_event(event, payload), self.send_timeout) for _, handle in handles),
            return_exceptions=True,
        )
        for (user_id, _), result in zip(handles, results):
            if isinstance(result, BaseException):
                logger.warning("Failed to deliver '%s' to '%s': %r", event, user_id, result)
