"""
elegoo-bridge — Configuration settings.

Loads from environment variables (and an optional .env file) with sensible defaults.
"""

from typing import Optional
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment."""

    # Printer link
    printer_ip: str = ""
    printer_port: int = 3030
    # Mainboard ID is learned from the first inbound frame when left empty
    mainboard_id: str = ""
    auto_connect: bool = False
    connect_timeout: float = 5.0

    # Reconnect backoff for the device link (seconds)
    reconnect_base_delay: float = 1.0
    reconnect_max_delay: float = 30.0

    # Commands
    command_timeout: float = 5.0
    resync_delay: float = 0.3

    # State broadcast cadence (seconds)
    broadcast_interval: float = 1.0
    broadcast_min_spacing: float = 0.1

    # UV inference heuristic threshold (°C)
    uv_temp_threshold: float = 30.0

    # Opaque settings blob storage
    database_path: str = "./elegoo_bridge.db"

    # Server
    host: str = "0.0.0.0"
    port: int = 3000
    log_level: str = "INFO"

    # Comma-separated list, e.g. CORS_ORIGINS=http://localhost:8080,http://10.0.0.5:8080
    cors_origins: str = ""

    # Consumer-facing stream client
    stream_max_attempts: Optional[int] = 5

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")


settings = Settings()
