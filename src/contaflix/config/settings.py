"""Configuration settings for the ContaFlix automation worker."""

from functools import lru_cache
from typing import Literal

from pydantic import Field, SecretStr
from pydantic_settings import BaseSettings, SettingsConfigDict


class FlatSettings(BaseSettings):
    """Flat settings read from environment variables or a .env file."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # BaaS (hosted Postgres + REST/RPC + functions)
    supabase_url: str = Field(
        default="http://localhost:54321", validation_alias="SUPABASE_URL"
    )
    supabase_service_role_key: SecretStr = Field(
        ..., validation_alias="SUPABASE_SERVICE_ROLE_KEY"
    )
    supabase_timeout: float = Field(default=30.0, validation_alias="SUPABASE_TIMEOUT")
    supabase_max_retries: int = Field(default=3, validation_alias="SUPABASE_MAX_RETRIES")

    # LLM-assisted analysis (optional)
    openai_api_key: SecretStr | None = Field(default=None, validation_alias="OPENAI_API_KEY")
    gpt_model: str = Field(default="gpt-4o-mini", validation_alias="GPT_MODEL")
    llm_max_tokens: int = Field(default=1000, validation_alias="LLM_MAX_TOKENS")
    llm_temperature: float = Field(default=0.3, validation_alias="LLM_TEMPERATURE")

    # Realtime event publishing
    ws_host: str = Field(default="0.0.0.0", validation_alias="WS_HOST")
    ws_port: int = Field(default=8765, validation_alias="WS_PORT")

    # Processing queue
    queue_batch_size: int = Field(default=10, validation_alias="QUEUE_BATCH_SIZE")
    queue_task_timeout_minutes: int = Field(
        default=5, validation_alias="QUEUE_TASK_TIMEOUT_MINUTES"
    )
    queue_retention_days: int = Field(default=30, validation_alias="QUEUE_RETENTION_DAYS")

    # Logging
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = Field(
        default="INFO", validation_alias="LOG_LEVEL"
    )
    log_format: Literal["json", "console"] = Field(
        default="console", validation_alias="LOG_FORMAT"
    )


@lru_cache
def get_settings() -> FlatSettings:
    """Get cached settings instance."""
    return FlatSettings()
