import os
from pathlib import Path

from dotenv import load_dotenv
from pydantic import AliasChoices, Field, model_validator
from typing import Optional
from pydantic_settings import BaseSettings
from sqlalchemy.engine.url import make_url, URL

DEFAULT_DATABASE_URL = "sqlite:///./chatstream.db"
DEFAULT_TEST_DATABASE_URL = "sqlite:///:memory:"

# Project root (parent of app/) - used so .env is found regardless of cwd
_PROJECT_ROOT = Path(__file__).resolve().parent.parent

# Explicitly load .env into os.environ so it works in tests and subprocesses
load_dotenv(_PROJECT_ROOT / ".env")


class Settings(BaseSettings):
    app_name: str = "chatstream-api"
    database_url: Optional[str] = None  # Will be set dynamically
    environment: str = Field(
        default="development",
        validation_alias=AliasChoices("ENV", "ENVIRONMENT"),
    )
    log_level: str = Field(default="INFO", json_schema_extra={"env": "LOG_LEVEL"})
    port: int = Field(default=8000, json_schema_extra={"env": "PORT"})

    # LLM / LiteLLM
    llm_model: str = Field(
        default="gpt-4o-mini", json_schema_extra={"env": "LLM_MODEL"}
    )
    litellm_api_key: Optional[str] = Field(
        default=None, json_schema_extra={"env": "LITELLM_API_KEY"}
    )
    litellm_api_base: Optional[str] = Field(
        default=None, json_schema_extra={"env": "LITELLM_API_BASE"}
    )
    llm_temperature: float = Field(
        default=0.7, ge=0.0, le=2.0, json_schema_extra={"env": "LLM_TEMPERATURE"}
    )
    llm_max_tokens: int = Field(
        default=8192, ge=1, json_schema_extra={"env": "LLM_MAX_TOKENS"}
    )
    llm_history_limit: int = Field(
        default=50, ge=1, json_schema_extra={"env": "LLM_HISTORY_LIMIT"}
    )

    # Streaming reconciliation
    stream_flush_interval_ms: int = Field(
        default=100, ge=1, json_schema_extra={"env": "STREAM_FLUSH_INTERVAL_MS"}
    )
    stream_error_message: str = Field(
        default="Something went wrong while generating a response. Please try again.",
        json_schema_extra={"env": "STREAM_ERROR_MESSAGE"},
    )
    resubscribe_backoff_seconds: float = Field(
        default=1.0, gt=0, json_schema_extra={"env": "RESUBSCRIBE_BACKOFF_SECONDS"}
    )
    resubscribe_backoff_max_seconds: float = Field(
        default=1.0,
        gt=0,
        json_schema_extra={"env": "RESUBSCRIBE_BACKOFF_MAX_SECONDS"},
    )
    resubscribe_max_attempts: Optional[int] = Field(
        default=None,
        ge=1,
        json_schema_extra={"env": "RESUBSCRIBE_MAX_ATTEMPTS"},
    )  # None retries forever
    echo_dedup_window_seconds: float = Field(
        default=10.0, ge=0, json_schema_extra={"env": "ECHO_DEDUP_WINDOW_SECONDS"}
    )
    cancel_abandoned_streams: bool = Field(
        default=False, json_schema_extra={"env": "CANCEL_ABANDONED_STREAMS"}
    )

    @model_validator(mode="before")
    def set_database_url(cls, values):
        """Set the database_url dynamically based on the environment field."""
        environment = values.get("environment", os.getenv("ENV", "development"))
        if environment.lower() == "test":
            values["database_url"] = os.getenv(
                "TEST_DATABASE_URL", DEFAULT_TEST_DATABASE_URL
            )
        else:
            values["database_url"] = os.getenv("DATABASE_URL", DEFAULT_DATABASE_URL)

        return values

    @property
    def is_production(self) -> bool:
        """Check if the current environment is production."""
        return self.environment.lower() == "production"

    @property
    def is_test(self) -> bool:
        """Check if the current environment is test."""
        return self.environment.lower() == "test"

    @property
    def database_url_obj(self) -> URL:
        """Return the database URL as a URL object using sqlalchemy's make_url."""
        if not self.database_url:
            raise ValueError("Database URL is not set.")
        return make_url(self.database_url)

    @property
    def stream_flush_interval_seconds(self) -> float:
        return self.stream_flush_interval_ms / 1000.0

    class ConfigDict:
        env_file = str(_PROJECT_ROOT / ".env")
        env_file_encoding = "utf-8"
        extra = "allow"  # Allow extra environment variables


def get_settings() -> Settings:
    """Get application settings with required environment variables."""
    return Settings()
