"""Application configuration with environment variable support.

All settings can be overridden via environment variables prefixed with ``HOOKRELAY_``,
or via a ``.env`` file in the project root.

Examples::

    HOOKRELAY_PORT=9000 hookrelay start
    HOOKRELAY_REQUIRE_MANUAL_KEY_MANAGEMENT=true hookrelay start
    HOOKRELAY_ENABLE_HEARTBEAT=true HOOKRELAY_HEARTBEAT_INTERVAL=15 hookrelay start
    HOOKRELAY_LOG_LEVEL=DEBUG hookrelay start
"""

from pathlib import Path

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

# Project root: two levels up from this file (hookrelay/app/config.py -> project/)
_BASE_DIR = Path(__file__).resolve().parent.parent.parent


class Settings(BaseSettings):
    """HookRelay configuration — all values overridable via env vars."""

    model_config = SettingsConfigDict(
        env_prefix="HOOKRELAY_",
        env_file=str(_BASE_DIR / ".env"),
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Server
    host: str = "0.0.0.0"
    port: int = 3000
    cors_origins: list[str] = Field(default_factory=lambda: ["*"])

    # Paths
    data_dir: Path = _BASE_DIR / "data"
    database_url: str | None = None

    # Logging
    log_level: str = "INFO"
    log_to_file: bool = True
    max_log_entries: int = 1000

    # Admin API guard (None = unguarded, e.g. behind a trusted proxy)
    admin_token: str | None = None

    # Security / admission
    enable_signature_validation: bool = True
    default_allow_new_connections: bool = True
    max_connections_per_secret: int = 5
    require_manual_key_management: bool = False

    # Heartbeat (seconds)
    enable_heartbeat: bool = False
    heartbeat_interval: float = 30.0
    heartbeat_timeout: float = 5.0
    heartbeat_max_missed: int = 3
    client_heartbeat_interval: float = 25.0

    # Handshake detection: body[envelope][timestamp_field] + body[envelope][token_field]
    handshake_envelope: str = "d"
    handshake_timestamp_field: str = "event_ts"
    handshake_token_field: str = "plain_token"

    @property
    def db_path(self) -> Path:
        return self.data_dir / "hookrelay.db"

    @property
    def db_url(self) -> str:
        if self.database_url:
            return self.database_url
        return f"sqlite+aiosqlite:///{self.db_path}"

    @property
    def base_url(self) -> str:
        host = "localhost" if self.host in ("0.0.0.0", "::") else self.host
        return f"http://{host}:{self.port}"

    @property
    def webhook_url(self) -> str:
        return f"{self.base_url}/api/webhook?secret=YOUR_SECRET"

    @property
    def ws_url(self) -> str:
        return f"{self.base_url.replace('http://', 'ws://', 1)}/ws/YOUR_SECRET"


# Default instance; create_app() falls back to this when no settings are passed
settings = Settings()
