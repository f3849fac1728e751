"""
CallSync - Configuration Management

Centralized configuration using Pydantic Settings.
All secrets and environment-specific values are loaded from environment variables.
"""

from functools import lru_cache
from typing import List

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """
    Application settings loaded from environment variables.

    Hierarchy (highest to lowest priority):
    1. Environment variables
    2. .env file
    3. Default values
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # --- Application ---
    app_env: str = "development"
    app_debug: bool = True
    app_log_level: str = "INFO"
    log_json_format: bool = False

    # --- Server ---
    backend_host: str = "0.0.0.0"
    backend_port: int = 8000

    # --- Upstream Call Service ---
    upstream_base_url: str = "https://api.bland.ai"
    upstream_api_key: str = ""
    upstream_timeout_seconds: float = 30.0
    upstream_create_timeout_seconds: float = 60.0  # call placement is slow
    upstream_stop_timeout_seconds: float = 15.0
    upstream_user_agent: str = "callsync-backend/0.1"

    # --- Call Analysis ---
    # "dummy" = keyword heuristics (default, no network)
    # "openai" = LLM extraction (requires the openai package)
    analysis_backend: str = "dummy"
    openai_api_key: str = ""
    openai_model: str = "gpt-4.1-nano"
    analysis_timeout_seconds: float = 60.0

    # --- Admission Control ---
    rate_limit_enabled: bool = True
    rate_limit_sweep_interval_seconds: int = 300
    rate_limit_max_entries: int = 10000
    rate_limit_idle_ttl_seconds: int = 3600

    # --- Input Validation ---
    task_min_length: int = 10
    task_max_length: int = 5000
    max_duration_min_minutes: int = 1
    max_duration_max_minutes: int = 30
    temperature_min: float = 0.0
    temperature_max: float = 2.0

    # --- Session Tracker ---
    poll_interval_seconds: float = 2.5
    analysis_kind: str = "pizza_order"

    # --- Security ---
    allowed_origins: str = "http://localhost:5173,http://127.0.0.1:5173"

    @property
    def allowed_origins_list(self) -> List[str]:
        """Parse comma-separated origins into list."""
        return [origin.strip() for origin in self.allowed_origins.split(",") if origin.strip()]

    @property
    def is_production(self) -> bool:
        """Check if running in production mode."""
        return self.app_env.lower() == "production"


@lru_cache
def get_settings() -> Settings:
    """
    Cached settings instance.

    Use dependency injection in routes:
        settings: Settings = Depends(get_settings)
    """
    return Settings()


# Convenience export
settings = get_settings()
