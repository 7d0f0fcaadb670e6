# presence_client/config.py

from pydantic_settings import BaseSettings, SettingsConfigDict
from typing import Optional


class Settings(BaseSettings):
    """
    Client connection settings, read from environment variables or a
    client.env file.
    """

    model_config = SettingsConfigDict(
        env_file="client.env",
        env_file_encoding="utf-8"
    )

    # --- Network Settings ---
    SERVER_HOST: str = "127.0.0.1"
    SERVER_PORT: int = 8888
    ORIGIN: Optional[str] = None

    # --- Connection Policy (seconds) ---
    CONNECT_TIMEOUT: float = 10.0
    RECONNECT_ATTEMPTS: int = 5
    RECONNECT_DELAY: float = 1.0
    RECONNECT_DELAY_MAX: float = 10.0

    # Used until the server announces its own values in handshake_complete.
    HEARTBEAT_INTERVAL: float = 25.0
    HEARTBEAT_TIMEOUT: float = 60.0


settings = Settings()
