# presence_client/network_client.py

import asyncio
import base64
import contextlib
import json
import logging
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Tuple

from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import padding
from cryptography.hazmat.primitives import hashes

from presence_common import protocol
from presence_common.protocol import ProtocolError
from presence_common.secure_channel import SecureChannel
from .config import Settings, settings as default_settings
from .state_manager import PresenceState

logger = logging.getLogger(__name__)

Handler = Callable[[Any], Any]

# Local lifecycle events, dispatched to listeners like server events.
CONNECT = "connect"
DISCONNECT = "disconnect"
RECONNECTING = "reconnecting"
OFFLINE = "offline"


class ConnectionState(str, Enum):
    IDLE = "idle"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    RECONNECTING = "reconnecting"


class PresenceConnectionError(ConnectionError):
    """No usable connection: retries ran out, or the manager is not connected."""


async def perform_handshake(reader: asyncio.StreamReader, writer: asyncio.StreamWriter,
                            user_id: Optional[str], origin: Optional[str] = None) -> Tuple[SecureChannel, dict]:
    """
    Runs the client half of the handshake.

    Returns the established channel and the validated ``handshake_complete``
    payload, which carries the server's heartbeat timing. A malformed
    payload raises ProtocolError.
    """
    # 1. Receive the server's public key
    line = await reader.readline()
    if not line:
        raise ConnectionError("Server closed the connection during the handshake.")
    start = protocol.decode_line(line)
    if start["type"] != protocol.HANDSHAKE_START:
        raise ConnectionError("Server did not start handshake correctly.")
    try:
        server_pubkey_pem = start["payload"]["public_key"].encode()
    except (KeyError, TypeError, AttributeError) as e:
        raise ProtocolError("handshake_start carries no public key") from e
    server_public_key = serialization.load_pem_public_key(server_pubkey_pem)

    # 2. Fresh AES key, encrypted for the server; metadata under the AES key
    aes_key = SecureChannel.generate_key()
    secure_channel = SecureChannel(aes_key)
    encrypted_aes_key = server_public_key.encrypt(
        aes_key,
        padding.OAEP(
            mgf=padding.MGF1(algorithm=hashes.SHA256()),
            algorithm=hashes.SHA256(),
            label=None
        )
    )
    metadata = secure_channel.encrypt(json.dumps({"user_id": user_id, "origin": origin}))
    writer.write(protocol.encode_line(protocol.envelope(protocol.KEY_EXCHANGE, {
        "key": base64.b64encode(encrypted_aes_key).decode('utf-8'),
        "metadata": metadata,
    })))
    await writer.drain()

    # 3. Encrypted confirmation
    line = await reader.readline()
    if not line:
        raise ConnectionError("Server rejected the handshake.")
    outer = protocol.decode_line(line)
    confirmation = protocol.decode_json(secure_channel.decrypt(outer.get("payload")))
    if confirmation["type"] != protocol.HANDSHAKE_COMPLETE:
        raise ConnectionError("Server did not confirm secure channel.")
    return secure_channel, protocol.parse_handshake_complete(confirmation.get("payload"))


class ConnectionManager:
    """
    Owns the single connection of a signed-in user.

    ``connect`` is idempotent for the same user and switches accounts for a
    different one. Unexpected drops are retried with exponential backoff; a
    deliberate close from the server is not. Event listeners are attached
    through the manager so ``disconnect`` can detach every one of them.
    """

    def __init__(self, presence: Optional[PresenceState] = None, config: Settings = default_settings):
        self.settings = config
        self.presence = presence or PresenceState()
        self.state = ConnectionState.IDLE
        self.user_id: Optional[str] = None
        # Account the attached listeners belong to; outlives a server-side
        # end of the session and is only cleared by disconnect().
        self._session_user: Optional[str] = None

        self._listeners: Dict[str, List[Handler]] = {}
        self._supervisor: Optional[asyncio.Task] = None
        self._ready: Optional[asyncio.Future] = None
        self._writer: Optional[asyncio.StreamWriter] = None
        self._secure_channel: Optional[SecureChannel] = None
        self._read_timeout = config.HEARTBEAT_INTERVAL + config.HEARTBEAT_TIMEOUT

    @property
    def is_connected(self) -> bool:
        return self.state is ConnectionState.CONNECTED

    # --- Listeners ---

    def on(self, event: str, handler: Handler):
        """Attaches ``handler`` to ``event``; attaching the same handler twice has no effect."""
        handlers = self._listeners.setdefault(event, [])
        if handler not in handlers:
            handlers.append(handler)

    def off(self, event: str, handler: Handler):
        handlers = self._listeners.get(event)
        if handlers and handler in handlers:
            handlers.remove(handler)
            if not handlers:
                del self._listeners[event]

    @contextlib.contextmanager
    def listening(self, event: str, handler: Handler):
        """Keeps ``handler`` attached for the duration of the block."""
        self.on(event, handler)
        try:
            yield handler
        finally:
            self.off(event, handler)

    def listener_count(self, event: Optional[str] = None) -> int:
        if event is None:
            return sum(len(handlers) for handlers in self._listeners.values())
        return len(self._listeners.get(event, ()))

    def _dispatch(self, event: str, payload: Any = None):
        for handler in list(self._listeners.get(event, ())):
            try:
                handler(payload)
            except Exception:
                logger.exception("Listener for '%s' failed", event)

    def _on_presence_update(self, payload: Any):
        try:
            self.presence.apply_update(payload)
        except ProtocolError as e:
            logger.warning("Ignoring malformed presence update: %s", e)

    def _set_state(self, state: ConnectionState):
        if state is not self.state:
            logger.debug("Connection state %s -> %s", self.state.value, state.value)
            self.state = state

    # --- Public operations ---

    async def connect(self, user_id: str):
        """
        Connects as ``user_id`` and returns once the connection is up.

        Raises PresenceConnectionError if every attempt allowed by the
        reconnect policy fails.
        """
        if not user_id:
            raise ValueError("user_id is required to connect")

        if self.state is not ConnectionState.IDLE:
            if self.user_id == user_id:
                if self.state is ConnectionState.CONNECTING:
                    await asyncio.shield(self._ready)
                return
            logger.info("Switching connection from '%s' to '%s'.", self.user_id, user_id)
            await self.disconnect()
        elif self._session_user is not None and self._session_user != user_id:
            logger.info("Dropping listeners of ended session '%s' before connecting '%s'.",
                        self._session_user, user_id)
            await self.disconnect()

        self.user_id = user_id
        self._session_user = user_id
        self._set_state(ConnectionState.CONNECTING)
        self.on(protocol.PRESENCE_UPDATE, self._on_presence_update)
        self._ready = asyncio.get_running_loop().create_future()
        self._supervisor = asyncio.create_task(self._supervise())
        await asyncio.shield(self._ready)

    async def disconnect(self):
        """
        Detaches every listener, closes the connection and forgets who is
        online. Safe to call in any state.

        Must not be awaited from inside a listener.
        """
        self._listeners.clear()

        task, self._supervisor = self._supervisor, None
        if task is not None and not task.done():
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task
        await self._close_transport()

        if self._ready is not None and not self._ready.done():
            self._ready.set_exception(PresenceConnectionError("Disconnected before the connection was established."))

        if self.state is not ConnectionState.IDLE:
            logger.info("Disconnected '%s'.", self.user_id)
        self.presence.clear()
        self.user_id = None
        self._session_user = None
        self._set_state(ConnectionState.IDLE)

    async def emit(self, event: str, payload: Any = None):
        if not self.is_connected or self._writer is None:
            raise PresenceConnectionError("Not connected.")
        await self._send_json(protocol.envelope(event, payload))

    # --- Transport ---

    async def _send_json(self, data: dict):
        encrypted_payload = self._secure_channel.encrypt(json.dumps(data))
        self._writer.write(protocol.encode_line(protocol.envelope(protocol.ENCRYPTED_PAYLOAD, encrypted_payload)))
        await self._writer.drain()

    async def _open(self) -> asyncio.StreamReader:
        reader, writer = await asyncio.open_connection(self.settings.SERVER_HOST, self.settings.SERVER_PORT)
        try:
            secure_channel, info = await perform_handshake(reader, writer, self.user_id, self.settings.ORIGIN)
        except BaseException:
            writer.close()
            raise
        self._writer = writer
        self._secure_channel = secure_channel
        interval = info["heartbeat_interval"] or self.settings.HEARTBEAT_INTERVAL
        timeout = info["heartbeat_timeout"] or self.settings.HEARTBEAT_TIMEOUT
        self._read_timeout = interval + timeout
        return reader

    async def _close_transport(self):
        writer, self._writer, self._secure_channel = self._writer, None, None
        if writer is None:
            return
        writer.close()
        try:
            await asyncio.wait_for(writer.wait_closed(), self.settings.CONNECT_TIMEOUT)
        except (ConnectionError, OSError, asyncio.TimeoutError) as e:
            logger.debug("Error while closing transport: %r", e)

    async def _establish(self) -> asyncio.StreamReader:
        delay = self.settings.RECONNECT_DELAY
        last_error: Optional[BaseException] = None
        attempts = self.settings.RECONNECT_ATTEMPTS + 1

        for attempt in range(1, attempts + 1):
            if attempt > 1:
                await asyncio.sleep(delay)
                delay = min(self.settings.RECONNECT_DELAY_MAX, delay * 2)
            try:
                reader = await asyncio.wait_for(self._open(), self.settings.CONNECT_TIMEOUT)
            except (asyncio.TimeoutError, ConnectionError, OSError, ValueError) as e:
                last_error = e
                logger.warning("Connection attempt %d/%d for '%s' failed: %r", attempt, attempts, self.user_id, e)
                continue

            self._set_state(ConnectionState.CONNECTED)
            logger.info("Connected as '%s'.", self.user_id)
            if not self._ready.done():
                self._ready.set_result(None)
            self._dispatch(CONNECT)
            return reader

        raise PresenceConnectionError(f"Could not connect after {attempts} attempts.") from last_error

    async def _read_loop(self, reader: asyncio.StreamReader):
        """Dispatches server events until the server says goodbye; raises on any other end."""
        while True:
            line = await asyncio.wait_for(reader.readline(), self._read_timeout)
            if not line:
                raise ConnectionError("Server closed the connection.")
            outer = protocol.decode_line(line)
            envelope = protocol.decode_json(self._secure_channel.decrypt(outer.get("payload")))
            msg_type = envelope["type"]

            if msg_type == protocol.PING:
                await self._send_json(protocol.envelope(protocol.PONG))
            elif msg_type == protocol.DISCONNECT:
                return
            else:
                self._dispatch(msg_type, envelope.get("payload"))

    async def _supervise(self):
        try:
            await self._run_sessions()
        except Exception as e:
            logger.exception("Connection supervisor for '%s' failed.", self.user_id)
            await self._close_transport()
            error = PresenceConnectionError(f"Connection failed unexpectedly: {e!r}")
            error.__cause__ = e
            self._give_up(error)

    async def _run_sessions(self):
        while True:
            try:
                reader = await self._establish()
            except PresenceConnectionError as e:
                self._give_up(e)
                return

            try:
                await self._read_loop(reader)
            except (asyncio.TimeoutError, ConnectionError, OSError, ValueError) as e:
                logger.warning("Connection for '%s' lost: %r. Reconnecting.", self.user_id, e)
                self._set_state(ConnectionState.RECONNECTING)
                self._dispatch(RECONNECTING, str(e))
            else:
                logger.info("Server closed the connection for '%s'.", self.user_id)
                self.presence.clear()
                self.user_id = None
                self._set_state(ConnectionState.IDLE)
                self._dispatch(DISCONNECT, "server disconnect")
                return
            finally:
                await self._close_transport()

    def _give_up(self, error: PresenceConnectionError):
        logger.warning("Giving up on connection for '%s': %s", self.user_id, error)
        self.presence.clear()
        self.user_id = None
        self._set_state(ConnectionState.IDLE)
        if not self._ready.done():
            self._ready.set_exception(error)
        self._dispatch(OFFLINE, str(error))
