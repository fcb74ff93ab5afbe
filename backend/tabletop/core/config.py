from functools import lru_cache

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    app_name: str = "Tabletop Sync API"
    debug: bool = False
    api_prefix: str = "/api/v1"
    cors_origins: list[str] = Field(default_factory=lambda: ["http://localhost:3000"])
    log_level: str = "INFO"

    state_store_backend: str = "redis"
    redis_url: str = "redis://localhost:6379/0"

    default_board_id: str = "default"
    auto_join_default_board: bool = True
    token_ttl_seconds: float = 30.0
    token_exclusive_grant: bool = False
    drag_min_interval_ms: int = 0
    max_piece_id_length: int = 128

    rate_limit_enabled: bool = True
    rate_limit_global_limit: int = 180
    rate_limit_global_window_seconds: int = 60
    rate_limit_upload_limit: int = 20
    rate_limit_upload_window_seconds: int = 60
    websocket_connect_limit: int = 20
    websocket_connect_window_seconds: int = 60
    websocket_event_limit: int = 600
    websocket_event_window_seconds: int = 60

    upload_dir: str = "uploads"
    upload_max_bytes: int = 5 * 1024 * 1024
    upload_allowed_extensions: list[str] = Field(
        default_factory=lambda: ["jpeg", "jpg", "png", "gif"]
    )

    snapshot_list_default_limit: int = 20
    board_idle_ttl_hours: float = 24.0
    maintenance_interval_seconds: float = 60.0

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )


@lru_cache
def get_settings() -> Settings:
    return Settings()
