# presence_server/config.py

from pydantic_settings import BaseSettings, SettingsConfigDict
from pathlib import Path
from typing import List

# Define the base directory of the server component
SERVER_DIR = Path(__file__).parent.parent.resolve()


class Settings(BaseSettings):
    """
    Presence server configuration, read from environment variables or
    a server.env file.
    """

    model_config = SettingsConfigDict(
        env_file="server.env",
        env_file_encoding="utf-8"
    )

    # --- Network Settings ---
    SERVER_HOST: str = "127.0.0.1"
    SERVER_PORT: int = 8888

    # Handshake metadata may carry an origin; one outside this list is
    # rejected. Connections that send no origin are accepted.
    ALLOWED_ORIGINS: List[str] = ["http://localhost:5173"]

    # --- Transport Timing (seconds) ---
    HEARTBEAT_INTERVAL: float = 25.0
    HEARTBEAT_TIMEOUT: float = 60.0
    CONNECT_TIMEOUT: float = 10.0
    SEND_TIMEOUT: float = 5.0

    # --- Database Settings ---
    DATABASE_PATH: Path = SERVER_DIR / "presence_server.db"
    HISTORY_LIMIT: int = 200

    # --- Logging Settings ---
    LOG_LEVEL: str = "INFO"

    @property
    def read_timeout(self) -> float:
        """Longest silence tolerated from a peer before it is considered gone."""
        return self.HEARTBEAT_INTERVAL + self.HEARTBEAT_TIMEOUT


settings = Settings()
