from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(env_file=".env", case_sensitive=False)

    # Upstream production-line API (REST + SSE)
    upstream_api_url: str = Field(default="http://localhost:8080/api/v1")
    stream_path: str = Field(default="/events/stream")
    stream_connected_event: str = Field(default="connected")
    stream_enabled: bool = Field(default=True)
    http_timeout_seconds: float = Field(default=10.0)
    history_limit: int = Field(default=1000)
    list_refresh_seconds: float = Field(default=5.0)

    # Cached status logs keep this many days before their newest record (0 = unbounded)
    log_retention_days: int = Field(default=30)

    # Reconnect backoff
    reconnect_floor_seconds: float = Field(default=1.0)
    reconnect_multiplier: float = Field(default=2.0)
    reconnect_ceiling_seconds: float = Field(default=30.0)

    # Analytics
    default_timezone: str = Field(default="UTC")
    ticker_period_seconds: float = Field(default=1.0)

    # App
    app_env: str = Field(default="development")
    app_url: str = Field(default="http://localhost")
    app_host: str = Field(default="0.0.0.0")
    app_port: int = Field(default=8000)
    log_level: str = Field(default="INFO")

    @property
    def stream_url(self) -> str:
        """Full URL of the server-sent events endpoint."""
        return self.upstream_api_url.rstrip("/") + self.stream_path


# Singleton instance
settings = Settings()
