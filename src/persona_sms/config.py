"""Configuration models and YAML loading."""

from __future__ import annotations

import os
import re
from pathlib import Path
from typing import Any

import yaml
from dotenv import load_dotenv
from loguru import logger
from pydantic import BaseModel, Field, ValidationError, model_validator

from .exceptions import ConfigError

DEFAULT_FALLBACK_REPLY = "Sorry, I got distracted for a second. What were you saying?"

_ENV_PATTERN = re.compile(r"\$\{(\w+)\}")


class ServerConfig(BaseModel):
    """HTTP server configuration."""

    host: str = "0.0.0.0"
    port: int = 8787
    log_level: str = "INFO"
    admin_api_key: str = ""
    cors_origins: list[str] = Field(default_factory=lambda: ["*"])

    @model_validator(mode="after")
    def _unresolved_key_disables_admin(self) -> "ServerConfig":
        if _ENV_PATTERN.fullmatch(self.admin_api_key):
            logger.warning(
                f"admin_api_key placeholder {self.admin_api_key} is unset, admin endpoints disabled"
            )
            self.admin_api_key = ""
        return self


class StorageConfig(BaseModel):
    """Storage paths configuration."""

    sqlite_db_path: str = "./data/persona_sms.db"

    @model_validator(mode="after")
    def _validate_paths(self) -> "StorageConfig":
        normalized = os.path.normpath(self.sqlite_db_path)
        parts = normalized.replace("\\", "/").split("/")
        if ".." in parts:
            raise ValueError(
                f"sqlite_db_path must not contain '..' components: "
                f"{self.sqlite_db_path!r}"
            )
        self.sqlite_db_path = normalized
        return self


class ContextConfig(BaseModel):
    """Context assembly configuration."""

    budget_tokens: int = Field(default=4096, gt=0)
    recent_window: int = Field(default=10, ge=0)
    warm_top_k: int = Field(default=3, ge=0)
    warm_recency_days: int = Field(default=30, ge=0)
    cold_max: int = Field(default=3, ge=0)
    cold_months: int = Field(default=6, ge=1)
    # None forces the character-based estimate
    token_model: str | None = "gpt-4"


class WorkerConfig(BaseModel):
    """Background worker pool configuration."""

    worker_count: int = Field(default=4, ge=1)
    max_queue_size: int = Field(default=1000, ge=1)
    stop_timeout: float = Field(default=10.0, ge=0)


class MaintenanceConfig(BaseModel):
    """Scheduled maintenance configuration."""

    # Longer than any provider's webhook retry window
    delivery_retention_days: int = Field(default=7, ge=1)


class GenerationConfig(BaseModel):
    """Reply generation collaborator configuration."""

    base_url: str = "https://api.anthropic.com"
    api_key: str = ""
    model: str = "claude-sonnet-4-5"
    max_tokens: int = 300
    timeout: float = 30.0


class DeliveryConfig(BaseModel):
    """SMS delivery collaborator configuration."""

    base_url: str = "https://api.sendblue.co"
    api_key: str = ""
    api_secret: str = ""
    status_callback: str | None = None
    timeout: float = 10.0


class PersonaSeed(BaseModel):
    """Operator-defined persona upserted by slug at startup."""

    slug: str
    name: str
    phone_number: str
    personality_prompt: str
    tagline: str | None = None
    max_free_messages: int = Field(default=50, ge=1)
    active: bool = True


class AppConfig(BaseModel):
    """Top-level application configuration."""

    server: ServerConfig = Field(default_factory=ServerConfig)
    storage: StorageConfig = Field(default_factory=StorageConfig)
    context: ContextConfig = Field(default_factory=ContextConfig)
    workers: WorkerConfig = Field(default_factory=WorkerConfig)
    maintenance: MaintenanceConfig = Field(default_factory=MaintenanceConfig)
    generation: GenerationConfig = Field(default_factory=GenerationConfig)
    delivery: DeliveryConfig = Field(default_factory=DeliveryConfig)
    fallback_reply: str = DEFAULT_FALLBACK_REPLY
    personas: list[PersonaSeed] = Field(default_factory=list)


def read_yaml(config_path: str | Path) -> dict[str, Any]:
    """Read a YAML file, substituting ``${VAR}`` from the environment.

    Args:
        config_path: Path to the YAML configuration file.

    Returns:
        Configuration data as a dictionary.

    Raises:
        FileNotFoundError: If the configuration file is not found.
    """
    path = Path(config_path)
    if not path.exists():
        raise FileNotFoundError(f"Configuration file not found: {config_path}")

    content = path.read_text(encoding="utf-8")

    def replacer(match: re.Match) -> str:
        return os.getenv(match.group(1), match.group(0))

    content = _ENV_PATTERN.sub(replacer, content)

    try:
        return yaml.safe_load(content) or {}
    except yaml.YAMLError as e:
        logger.critical(f"Error parsing YAML file: {e}")
        raise


def _format_validation_error(error: ValidationError) -> str:
    lines = []
    for err in error.errors():
        location = " -> ".join(str(loc) for loc in err["loc"])
        if err["type"] == "missing":
            lines.append(f"  - '{location}': required field is missing")
        else:
            lines.append(f"  - '{location}': {err['msg']} (type: {err['type']})")
    return "\n".join(lines)


def validate_config(config_data: dict[str, Any]) -> AppConfig:
    """Validate raw configuration data against AppConfig.

    Raises:
        ConfigError: With a per-field summary when validation fails.
    """
    try:
        return AppConfig.model_validate(config_data)
    except ValidationError as e:
        message = _format_validation_error(e)
        logger.error(f"Configuration validation failed:\n{message}")
        raise ConfigError(f"Invalid configuration:\n{message}") from e


def load_config(config_path: str | Path | None = None) -> AppConfig:
    """Load ``.env`` and the YAML config file; defaults when no path is given."""
    load_dotenv()
    if config_path is None:
        return AppConfig()
    return validate_config(read_yaml(config_path))
