"""Application configuration loaded from environment variables."""

from functools import lru_cache

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """All configuration is loaded from environment variables (or .env file).

    Variables carry the ``HEARTSYNC_`` prefix, e.g. ``HEARTSYNC_REMOTE_BASE_URL``.
    """

    # --- App ---
    app_name: str = "HeartSync"
    app_version: str = "0.1.0"
    debug: bool = False
    log_level: str = "INFO"
    environment: str = "development"  # development | staging | production

    # --- Remote record store ---
    remote_base_url: str = ""  # empty = in-memory store
    remote_api_token: str = ""  # bearer token for the signed-in account

    # --- Local staging ---
    database_path: str = "data/heartsync.sqlite3"
    use_in_memory_store: bool = False  # in-memory key-value and record store (dev / tests)

    # --- CORS ---
    cors_origins: list[str] = ["http://localhost:3000"]

    model_config = {
        "env_file": ".env",
        "env_file_encoding": "utf-8",
        "env_prefix": "HEARTSYNC_",
    }


@lru_cache
def get_settings() -> Settings:
    return Settings()
