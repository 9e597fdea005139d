"""Configuration management for Conveyor."""

from __future__ import annotations

import os
from functools import lru_cache
from pathlib import Path

from pydantic import Field, ValidationError, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from .errors import ConfigurationError


class ConveyorSettings(BaseSettings):
    """Runtime configuration sourced from environment variables and optional .env file."""

    model_config = SettingsConfigDict(
        env_file=".env", env_file_encoding="utf-8", extra="ignore", populate_by_name=True
    )

    anthropic_api_key: str = Field(validation_alias="ANTHROPIC_API_KEY")
    webhook_url: str = Field(validation_alias="WEBHOOK_URL")
    webhook_secret: str = Field(validation_alias="WEBHOOK_SECRET")
    project_id: str = Field(validation_alias="PROJECT_ID")
    github_url: str | None = Field(default=None, validation_alias="GITHUB_URL")
    github_token: str | None = Field(default=None, validation_alias="GITHUB_TOKEN")
    log_level: str = Field(default="INFO", validation_alias="CONVEYOR_LOG_LEVEL")
    model: str = Field(default="claude-haiku-4-5", validation_alias="CONVEYOR_MODEL")
    webhook_timeout: float = Field(default=5.0, validation_alias="CONVEYOR_WEBHOOK_TIMEOUT")
    build_command: str = Field(default="npm run build", validation_alias="CONVEYOR_BUILD_COMMAND")
    tasks_file: Path | None = Field(default=None, validation_alias="CONVEYOR_TASKS_FILE")
    max_tasks: int = Field(default=3, validation_alias="CONVEYOR_MAX_TASKS")
    workdir: Path = Field(default=Path("."), validation_alias="CONVEYOR_WORKDIR")
    default_branch: str = Field(default="main", validation_alias="CONVEYOR_DEFAULT_BRANCH")

    @field_validator("anthropic_api_key", "webhook_url", "webhook_secret", "project_id")
    @classmethod
    def _require_non_blank(cls, value: str) -> str:
        normalized = value.strip()
        if not normalized:
            raise ValueError("value must not be blank")
        return normalized

    @field_validator("github_url", "github_token", "tasks_file", mode="before")
    @classmethod
    def _blank_as_unset(cls, value):
        if isinstance(value, str) and not value.strip():
            return None
        return value

    @field_validator("log_level")
    @classmethod
    def _normalize_log_level(cls, value: str) -> str:
        normalized = value.strip().upper()
        if normalized not in {"CRITICAL", "ERROR", "WARNING", "INFO", "DEBUG"}:
            raise ValueError(
                "CONVEYOR_LOG_LEVEL must be one of CRITICAL, ERROR, WARNING, INFO, DEBUG"
            )
        return normalized

    @field_validator("webhook_timeout")
    @classmethod
    def _validate_webhook_timeout(cls, value: float) -> float:
        if value <= 0:
            raise ValueError("CONVEYOR_WEBHOOK_TIMEOUT must be > 0")
        return value

    @field_validator("max_tasks")
    @classmethod
    def _validate_max_tasks(cls, value: int) -> int:
        if value < 1:
            raise ValueError("CONVEYOR_MAX_TASKS must be >= 1")
        return value

    @property
    def publication_enabled(self) -> bool:
        return bool(self.github_url and self.github_token)


def load_settings(**overrides) -> ConveyorSettings:
    """Build settings, converting validation failures into ``ConfigurationError``."""

    try:
        settings = ConveyorSettings(**overrides)
    except ValidationError as exc:
        missing = [
            str(error["loc"][0]) for error in exc.errors() if error.get("type") == "missing"
        ]
        if missing:
            message = "Missing required environment variables: " + ", ".join(missing)
        else:
            message = f"Invalid configuration: {exc}"
        raise ConfigurationError(message) from exc
    settings.workdir = settings.workdir.expanduser().resolve()
    if settings.tasks_file is not None:
        settings.tasks_file = settings.tasks_file.expanduser().resolve()
    # The agent SDK reads the key from the process environment.
    os.environ["ANTHROPIC_API_KEY"] = settings.anthropic_api_key
    return settings


@lru_cache(maxsize=1)
def get_settings() -> ConveyorSettings:
    """Return cached settings instance."""

    return load_settings()


__all__ = ["ConveyorSettings", "get_settings", "load_settings"]
