# presence_server/app.py

import asyncio
import logging
from typing import Optional, Set

from cryptography.hazmat.primitives.asymmetric import rsa
from cryptography.hazmat.primitives import serialization

from .config import Settings, settings as default_settings
from .db_async import Database
from .registry import PresenceRegistry
from .connection import ClientConnection
from .router import Router

logger = logging.getLogger(__name__)


def configure_logging(level: str):
    logging.basicConfig(
        level=level.upper(),
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    )


class Server:
    """
    The presence server.

    Owns the registry for its whole lifetime: a registry is created (or
    injected) with the server and emptied when the server stops.
    """
    def __init__(self, config: Settings = default_settings,
                 registry: Optional[PresenceRegistry] = None,
                 db: Optional[Database] = None):
        self.settings = config
        self.host = config.SERVER_HOST
        self.port = config.SERVER_PORT

        # --- RSA key pair for the key exchange ---
        self.rsa_private_key = rsa.generate_private_key(
            public_exponent=65537,
            key_size=2048,
        )
        self.public_key_pem = self.rsa_private_key.public_key().public_bytes(
            encoding=serialization.Encoding.PEM,
            format=serialization.PublicFormat.SubjectPublicKeyInfo
        ).decode('utf-8')

        self.db = db or Database(config.DATABASE_PATH)
        self.registry = registry or PresenceRegistry(send_timeout=config.SEND_TIMEOUT)
        self.router = Router(self.registry, self.db, history_limit=config.HISTORY_LIMIT)

        self._server: Optional[asyncio.AbstractServer] = None
        self._connections: Set[ClientConnection] = set()

    async def handle_client(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter):
        connection = ClientConnection(self, reader, writer)
        self._connections.add(connection)
        try:
            await connection.handle_connection()
        finally:
            self._connections.discard(connection)

    async def start(self):
        """Opens the database and starts accepting connections."""
        await self.db.connect()
        self._server = await asyncio.start_server(self.handle_client, self.host, self.port)

        # Port 0 asks the OS for a free port; report the real one.
        self.port = self._server.sockets[0].getsockname()[1]
        addrs = ', '.join(str(sock.getsockname()) for sock in self._server.sockets)
        logger.info("Serving on %s", addrs)

    async def serve_forever(self):
        if self._server is None:
            await self.start()
        async with self._server:
            await self._server.serve_forever()

    async def stop(self):
        """Stops accepting, disconnects every client and closes the database."""
        logger.info("Shutting down server...")
        if self._server:
            self._server.close()

        await self.registry.close_all()
        for connection in list(self._connections):
            if not connection.is_closed:
                await connection.close(notify=True)

        # Newer interpreters wait here for open connections, so clients go first.
        if self._server:
            await self._server.wait_closed()
            self._server = None

        await self.db.close()
        logger.info("Server shut down gracefully.")


async def main():
    configure_logging(default_settings.LOG_LEVEL)
    server = Server()
    try:
        await server.serve_forever()
    finally:
        await server.stop()


def run():
    try:
        asyncio.run(main())
    except KeyboardInterrupt:
        logger.info("Keyboard interrupt received.")


if __name__ == "__main__":
    run()
