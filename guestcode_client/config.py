from pathlib import Path

from pydantic_settings import BaseSettings, SettingsConfigDict

ENV_PATH = Path(__file__).resolve().parent.parent / ".env.local"


class Settings(BaseSettings):
    # Environment settings
    environment: str = "development"
    debug: bool = False
    LOG_LEVEL: str = "INFO"

    # Backend endpoints
    API_BASE_URL: str = "http://localhost:5000/api"
    SOCKET_URL: str | None = None
    SOCKET_PATH: str = "socket.io"
    SOCKET_TRANSPORTS: list[str] = ["websocket", "polling"]
    REQUEST_TIMEOUT: float = 10.0

    # =================================================================
    # TOKEN LIFECYCLE
    # =================================================================
    TOKEN_REFRESH_THRESHOLD: float = 0.75  # fraction of lifetime before proactive refresh
    TOKEN_CHECK_INTERVAL: float = 300.0  # 5 minutes
    SESSION_PING_INTERVAL: float = 120.0  # 2 minutes

    # =================================================================
    # REALTIME CONNECTION
    # =================================================================
    RECONNECT_DELAY: float = 1.0
    MAX_RECONNECT_ATTEMPTS: int = 5
    CONNECT_TIMEOUT: float = 10.0

    # Token storage (in-memory when no path is configured)
    TOKEN_STORE_PATH: str | None = None
    ENCRYPTION_KEY: str | None = None

    model_config = SettingsConfigDict(
        env_file=str(ENV_PATH),
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # derive sensible defaults if not provided
    def socket_url(self) -> str:
        if self.SOCKET_URL:
            return self.SOCKET_URL
        base = self.API_BASE_URL.rstrip("/")
        if base.endswith("/api"):
            base = base[: -len("/api")]
        return base

    def token_store_config(self) -> dict:
        """
        Get token storage configuration.
        Development without an explicit path keeps tokens in memory only.
        """
        return {
            "path": self.TOKEN_STORE_PATH,
            "encrypted": bool(self.ENCRYPTION_KEY),
        }


settings = Settings()
