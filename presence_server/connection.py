# presence_server/connection.py

import asyncio
import base64
import json
import logging
from cryptography.hazmat.primitives.asymmetric import padding
from cryptography.hazmat.primitives import hashes

from presence_common import protocol
from presence_common.protocol import ProtocolError
from presence_common.secure_channel import SecureChannel

from typing import TYPE_CHECKING, Any, Optional
if TYPE_CHECKING:
    from .app import Server

logger = logging.getLogger(__name__)


class ClientConnection:
    """
    One accepted client connection: the handle stored in the presence registry.

    The user id is read once from the handshake metadata and never changes
    for the lifetime of the connection. Connections without one are served
    but stay anonymous.
    """

    def __init__(self, server: 'Server', reader: asyncio.StreamReader, writer: asyncio.StreamWriter):
        self.server = server
        self.settings = server.settings
        self.reader = reader
        self.writer = writer

        self.user_id: Optional[str] = None
        self.origin: Optional[str] = None

        self.addr = writer.get_extra_info('peername')
        self.secure_channel: Optional[SecureChannel] = None
        self._closed = False

    def __repr__(self) -> str:
        return f"<ClientConnection {self.addr!r} user={self.user_id!r}>"

    @property
    def is_closed(self) -> bool:
        return self._closed

    async def _send_plaintext_json(self, data: dict):
        """Sends a plaintext JSON message. Used ONLY for the initial handshake."""
        self.writer.write(protocol.encode_line(data))
        await self.writer.drain()

    def _write_encrypted(self, data: dict):
        encrypted_payload = self.secure_channel.encrypt(json.dumps(data))
        self.writer.write(protocol.encode_line(protocol.envelope(protocol.ENCRYPTED_PAYLOAD, encrypted_payload)))

    async def send_json(self, data: dict):
        """Encrypts and sends a JSON message through the secure channel."""
        if self._closed:
            raise ConnectionError(f"{self!r} is closed")
        if not self.secure_channel:
            raise ConnectionError("secure channel not established")
        self._write_encrypted(data)
        await self.writer.drain()

    async def send_event(self, event: str, payload: Any = None):
        await self.send_json(protocol.envelope(event, payload))

    async def close(self, notify: bool = False):
        """
        Closes the transport. Safe to call more than once.

        With ``notify`` the client is told the close is deliberate so that it
        does not try to reconnect.
        """
        if self._closed:
            return
        self._closed = True

        if notify and self.secure_channel is not None:
            try:
                self._write_encrypted(protocol.envelope(protocol.DISCONNECT))
                await asyncio.wait_for(self.writer.drain(), self.settings.SEND_TIMEOUT)
            except (ConnectionError, OSError, asyncio.TimeoutError) as e:
                logger.debug("Could not notify %r before closing: %r", self, e)

        self.writer.close()
        try:
            await asyncio.wait_for(self.writer.wait_closed(), self.settings.SEND_TIMEOUT)
        except asyncio.TimeoutError:
            self.writer.transport.abort()
        except (ConnectionError, OSError) as e:
            logger.debug("Transport error while closing %r: %r", self, e)

    def _decrypt_key(self, encrypted_key_b64: str) -> bytes:
        return self.server.rsa_private_key.decrypt(
            base64.b64decode(encrypted_key_b64),
            padding.OAEP(
                mgf=padding.MGF1(algorithm=hashes.SHA256()),
                algorithm=hashes.SHA256(),
                label=None
            )
        )

    def _read_metadata(self, blob: Any) -> protocol.HandshakeMetadata:
        if blob is None:
            return protocol.HandshakeMetadata()
        try:
            return protocol.parse_handshake_metadata(json.loads(self.secure_channel.decrypt(blob)))
        except (TypeError, ValueError) as e:
            # Unreadable metadata only costs the connection its presence entry.
            logger.warning("Unreadable handshake metadata from %r, treating as anonymous: %s", self.addr, e)
            return protocol.HandshakeMetadata()

    def _origin_allowed(self, origin: Optional[str]) -> bool:
        allowed = self.settings.ALLOWED_ORIGINS
        return origin is None or not allowed or origin in allowed

    async def _perform_handshake(self) -> bool:
        """Key exchange followed by the one-time read of the connection metadata."""
        await self._send_plaintext_json(protocol.envelope(
            protocol.HANDSHAKE_START, {"public_key": self.server.public_key_pem}
        ))

        line_bytes = await self.reader.readline()
        if not line_bytes:
            return False

        envelope = protocol.decode_line(line_bytes)
        payload = envelope.get("payload")
        if envelope["type"] != protocol.KEY_EXCHANGE or not isinstance(payload, dict):
            logger.warning("Expected key_exchange from %r, got %r.", self.addr, envelope["type"])
            return False

        try:
            self.secure_channel = SecureChannel(self._decrypt_key(payload["key"]))
        except (KeyError, TypeError, ValueError) as e:
            logger.warning("Key exchange failed for %r: %s", self.addr, e)
            return False

        metadata = self._read_metadata(payload.get("metadata"))
        if not self._origin_allowed(metadata.origin):
            logger.warning("Rejected connection from %r: origin %r is not allowed.", self.addr, metadata.origin)
            return False

        self.user_id = metadata.user_id
        self.origin = metadata.origin
        await self.send_event(protocol.HANDSHAKE_COMPLETE, {
            "user_id": self.user_id,
            "heartbeat_interval": self.settings.HEARTBEAT_INTERVAL,
            "heartbeat_timeout": self.settings.HEARTBEAT_TIMEOUT,
        })
        logger.info("Handshake complete for %r.", self)
        return True

    async def _heartbeat_loop(self):
        while not self.is_closed:
            await asyncio.sleep(self.settings.HEARTBEAT_INTERVAL)
            try:
                await asyncio.wait_for(self.send_event(protocol.PING), self.settings.SEND_TIMEOUT)
            except (ConnectionError, OSError, asyncio.TimeoutError) as e:
                # The read side notices the silence and ends the connection.
                logger.debug("Heartbeat to %r failed: %r", self, e)
                return

    def _decrypt_envelope(self, line_bytes: bytes) -> dict:
        outer = protocol.decode_line(line_bytes)
        if outer["type"] != protocol.ENCRYPTED_PAYLOAD:
            raise ProtocolError(f"expected an encrypted frame, got {outer['type']!r}")
        return protocol.decode_json(self.secure_channel.decrypt(outer.get("payload")))

    async def handle_connection(self):
        """Manages the full lifecycle: handshake, registration, messaging, cleanup."""
        heartbeat: Optional[asyncio.Task] = None
        try:
            if not await asyncio.wait_for(self._perform_handshake(), self.settings.CONNECT_TIMEOUT):
                logger.info("Handshake failed for %r. Closing connection.", self.addr)
                return

            await self.server.registry.register(self.user_id, self)
            heartbeat = asyncio.create_task(self._heartbeat_loop())

            while not self._closed:
                line_bytes = await asyncio.wait_for(self.reader.readline(), self.settings.read_timeout)
                if not line_bytes:
                    break
                await self._process_message(self._decrypt_envelope(line_bytes))

        except asyncio.TimeoutError:
            logger.warning("Connection %r timed out.", self)
        except ValueError as e:
            logger.warning("Invalid message format from %r: %s", self, e)
        except (ConnectionError, OSError) as e:
            logger.info("Connection %r lost: %r", self, e)
        except Exception:
            logger.error("An unexpected error occurred with client %r", self, exc_info=True)
        finally:
            if heartbeat is not None:
                heartbeat.cancel()
            await self.server.registry.unregister(self)
            await self.close()
            logger.info("Connection to %r closed.", self.addr)

    async def _process_message(self, envelope: dict):
        msg_type = envelope["type"]

        if msg_type == protocol.PONG:
            return

        if msg_type == protocol.PING:
            await self.send_event(protocol.PONG)

        elif msg_type in (protocol.SEND_MESSAGE, protocol.GET_MESSAGES) and not self.user_id:
            await self.send_json(protocol.error_response("Not identified. Connect with a user_id to chat."))

        elif msg_type == protocol.SEND_MESSAGE:
            await self.server.router.route_direct_message(self, envelope)

        elif msg_type == protocol.GET_MESSAGES:
            await self.server.router.send_history(self, envelope)

        else:
            await self.send_json(protocol.error_response(f"Unknown command type: {msg_type}"))
