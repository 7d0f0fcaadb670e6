# presence_client/session.py

import logging
from typing import Any, Dict, Optional

from typing import TYPE_CHECKING
if TYPE_CHECKING:
    from .network_client import ConnectionManager

logger = logging.getLogger(__name__)


class UserSession:
    """
    The signed-in user as returned by the REST login endpoint.

    Signing in opens the presence connection for that user; signing out
    tears it down before the user is forgotten, so no listener or socket
    outlives the login.
    """

    def __init__(self, manager: "ConnectionManager"):
        self.manager = manager
        self.user: Optional[Dict[str, Any]] = None

    @property
    def user_id(self) -> Optional[str]:
        return self.user.get("id") if self.user else None

    async def sign_in(self, user: Dict[str, Any]):
        if not user or not user.get("id"):
            raise ValueError("user must carry an 'id'")
        self.user = dict(user)
        await self.manager.connect(self.user["id"])

    async def sign_out(self):
        await self.manager.disconnect()
        if self.user is not None:
            logger.info("Signed out '%s'.", self.user_id)
        self.user = None
