from functools import lru_cache
from typing import Literal
from uuid import UUID

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    app_name: str = "Healz API"
    database_url: str = (
        "postgresql+psycopg2://healz:healz@db:5432/healz"  # pragma: allowlist secret
    )
    redis_url: str = "redis://redis:6379/0"
    timezone: str = "America/Sao_Paulo"
    cors_origins: list[str] = ["http://localhost:3000"]
    rate_limit_requests: int = 120
    rate_limit_window_seconds: int = 60
    evolution_api_base_url: str = "http://localhost:8080"
    evolution_instance_name: str = ""
    evolution_api_key: str = ""
    webhook_verify_token: str = ""
    whatsapp_mock_mode: bool = False
    whatsapp_default_clinic_id: UUID | None = None

    event_bus_backend: Literal["local", "celery"] = "local"
    event_dispatch_max_retries: int = 5

    carol_escalation_confidence: float = 0.4
    carol_max_consecutive_bot_messages: int = 3
    carol_max_tool_rounds: int = 5

    openai_api_key: str = ""
    openai_model: str = "gpt-4o-mini"
    openai_base_url: str = "https://api.openai.com/v1"

    reminders_enabled: bool = True

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8")


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Return a cached settings instance."""

    return Settings()


settings = get_settings()
