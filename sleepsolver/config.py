"""Application configuration loaded from environment variables."""

from functools import lru_cache

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """All configuration is loaded from environment variables (or .env file)."""

    # --- App ---
    app_name: str = "SleepSolver"
    app_version: str = "0.1.0"
    debug: bool = False
    log_level: str = "INFO"
    environment: str = "development"  # development | staging | production

    # --- Database ---
    database_url: str = ""  # asyncpg DSN; empty keeps records in memory
    database_pool_size: int = 10

    # --- Health bridge ---
    health_bridge_url: str = "http://127.0.0.1:8765"
    health_bridge_token: str = ""

    # --- Pipeline ---
    pipeline_config_path: str = ""  # empty uses the bundled pipeline_config.yaml
    sync_on_startup: bool = False

    # --- CORS ---
    cors_origins: list[str] = ["http://localhost:3000"]

    model_config = {"env_file": ".env", "env_file_encoding": "utf-8"}


@lru_cache
def get_settings() -> Settings:
    return Settings()
