# presence_client/state_manager.py

import logging
from typing import Any, FrozenSet

from presence_common import protocol

logger = logging.getLogger(__name__)


class PresenceState:
    """
    Local mirror of who is online.

    The server is the only source of truth: the set is replaced wholesale by
    each presence.update and emptied when the connection is torn down.
    Nothing else writes to it.
    """

    def __init__(self):
        self._online_users: FrozenSet[str] = frozenset()

    @property
    def online_users(self) -> FrozenSet[str]:
        return self._online_users

    @property
    def count(self) -> int:
        return len(self._online_users)

    def is_online(self, user_id: str) -> bool:
        return user_id in self._online_users

    def apply_update(self, payload: Any) -> FrozenSet[str]:
        """Replaces the online set with the contents of a presence.update payload."""
        self._online_users = protocol.parse_presence_update(payload)
        logger.debug("Online users: %s", sorted(self._online_users))
        return self._online_users

    def clear(self):
        self._online_users = frozenset()
