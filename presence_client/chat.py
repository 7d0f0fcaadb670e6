# presence_client/chat.py

import logging
from contextlib import ExitStack
from typing import Any, Dict, List, Optional

from presence_common import protocol

from typing import TYPE_CHECKING
if TYPE_CHECKING:
    from .network_client import ConnectionManager

logger = logging.getLogger(__name__)


class ChatSession:
    """
    The direct-message conversation currently open in the UI.

    Listeners for the open conversation live in one ExitStack scope. Opening
    another conversation closes that scope before acquiring a new one, so
    each event has exactly one handler no matter how often the user switches.
    """

    def __init__(self, manager: "ConnectionManager"):
        self.manager = manager
        self.peer_id: Optional[str] = None
        self.messages: List[Dict[str, Any]] = []
        self._scope = ExitStack()

    def __enter__(self):
        return self

    def __exit__(self, *exc_info):
        self.close_conversation()
        return False

    async def open_conversation(self, peer_id: str):
        """Switches to ``peer_id`` and requests the conversation history."""
        if not peer_id:
            raise ValueError("peer_id is required")
        self._switch(peer_id)
        if self.manager.is_connected:
            await self.manager.emit(protocol.GET_MESSAGES, {"peer_id": peer_id})

    def close_conversation(self):
        self._switch(None)

    async def send(self, text: str):
        if self.peer_id is None:
            raise RuntimeError("No conversation is open.")
        await self.manager.emit(protocol.SEND_MESSAGE, {"recipient_id": self.peer_id, "text": text})

    def _switch(self, peer_id: Optional[str]):
        self._scope.close()
        self._scope = ExitStack()
        self.peer_id = peer_id
        self.messages = []
        if peer_id is None:
            return
        self._scope.enter_context(self.manager.listening(protocol.NEW_MESSAGE, self._on_new_message))
        self._scope.enter_context(self.manager.listening(protocol.MESSAGE_SENT, self._on_message_sent))
        self._scope.enter_context(self.manager.listening(protocol.MESSAGES, self._on_history))

    def _append(self, message: Any):
        if not isinstance(message, dict) or not message.get("id"):
            return
        # Live pushes can race the history backfill.
        if any(existing["id"] == message["id"] for existing in self.messages):
            return
        self.messages.append(message)

    def _on_new_message(self, message: Any):
        if isinstance(message, dict) and message.get("sender_id") == self.peer_id:
            self._append(message)

    def _on_message_sent(self, message: Any):
        if isinstance(message, dict) and message.get("recipient_id") == self.peer_id:
            self._append(message)

    def _on_history(self, payload: Any):
        if not isinstance(payload, dict) or payload.get("peer_id") != self.peer_id:
            return
        history = payload.get("messages")
        if not isinstance(history, list):
            logger.warning("Ignoring malformed history for '%s'.", self.peer_id)
            return
        live, self.messages = self.messages, []
        for message in history + live:
            self._append(message)
