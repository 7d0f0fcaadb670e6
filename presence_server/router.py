# presence_server/router.py

import logging

from presence_common import protocol
from presence_common.protocol import ProtocolError

from typing import TYPE_CHECKING
if TYPE_CHECKING:
    from .registry import PresenceRegistry
    from .db_async import Database
    from .connection import ClientConnection

logger = logging.getLogger(__name__)


class Router:
    """
    Direct messages between identified users.

    A message is stored, echoed to the sender and pushed to the recipient if
    the registry has a live connection for them. Offline recipients get no
    push; they see the message the next time they load the conversation.
    """
    def __init__(self, registry: "PresenceRegistry", db: "Database", history_limit: int = 200):
        self.registry = registry
        self.db = db
        self.history_limit = history_limit

    async def route_direct_message(self, sender: "ClientConnection", envelope: dict):
        try:
            recipient_id, text = protocol.parse_direct_message(envelope.get("payload"))
        except ProtocolError as e:
            await sender.send_json(protocol.error_response(str(e)))
            return

        # The sender is always the identity from the handshake, never a payload field.
        message = await self.db.store_message(sender.user_id, recipient_id, text)
        await sender.send_event(protocol.MESSAGE_SENT, message)

        recipient = await self.registry.lookup(recipient_id)
        if recipient is None:
            logger.info("Recipient '%s' is offline; message %s not pushed.", recipient_id, message["id"])
            return

        try:
            await recipient.send_event(protocol.NEW_MESSAGE, message)
            logger.info("Routed message %s from '%s' to '%s'.", message["id"], sender.user_id, recipient_id)
        except (ConnectionError, OSError) as e:
            logger.warning("Push of message %s to '%s' failed: %r", message["id"], recipient_id, e)

    async def send_history(self, requester: "ClientConnection", envelope: dict):
        try:
            peer_id, limit = protocol.parse_history_request(envelope.get("payload"), self.history_limit)
        except ProtocolError as e:
            await requester.send_json(protocol.error_response(str(e)))
            return

        messages = await self.db.get_conversation(requester.user_id, peer_id, limit)
        await requester.send_event(protocol.MESSAGES, {"peer_id": peer_id, "messages": messages})
