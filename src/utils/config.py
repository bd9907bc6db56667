"""Configuration management for the scan pipeline.

Loads and validates YAML configuration with sensible defaults
for the extraction service, batch dispatch, and template catalogue.
"""

import logging
from pathlib import Path

import yaml
from pydantic import BaseModel, Field

logger = logging.getLogger(__name__)


class ServiceConfig(BaseModel):
    """Connection settings for the remote extraction service."""

    base_url: str = "http://localhost:3000"
    timeout_seconds: float = 60.0
    connect_timeout_seconds: float = 10.0
    api_key: str | None = None


class RetryConfig(BaseModel):
    """Retry policy for transport failures. One attempt means no retry."""

    max_attempts: int = Field(default=1, ge=1)
    initial_delay_seconds: float = 1.0
    backoff: float = 2.0


class BatchConfig(BaseModel):
    """Configuration for sequential batch dispatch and intake."""

    inter_item_delay_seconds: float = Field(default=0.5, ge=0.0)
    max_file_size_bytes: int = 10 * 1024 * 1024
    retry: RetryConfig = Field(default_factory=RetryConfig)


class TemplatesConfig(BaseModel):
    """Where the template catalogue comes from."""

    templates_path: str = "configs/templates.yaml"
    load_from_service: bool = False


class ServerConfig(BaseModel):
    """Bind address of the API server."""

    host: str = "0.0.0.0"
    port: int = 8000


class AppConfig(BaseModel):
    """Top-level application configuration."""

    server: ServerConfig = Field(default_factory=ServerConfig)
    service: ServiceConfig = Field(default_factory=ServiceConfig)
    batch: BatchConfig = Field(default_factory=BatchConfig)
    templates: TemplatesConfig = Field(default_factory=TemplatesConfig)
    log_level: str = "INFO"


def load_config(path: Path | None = None) -> AppConfig:
    """Load configuration from a YAML file.

    Args:
        path: Path to the YAML configuration file.
            Defaults to configs/config.yaml.

    Returns:
        Validated application configuration.
    """
    if path is None:
        path = Path("configs/config.yaml")

    if path.exists():
        logger.info("Loading configuration from %s", path)
        with open(path) as f:
            raw = yaml.safe_load(f) or {}
        return AppConfig(**raw)

    logger.info("No config file found at %s, using defaults", path)
    return AppConfig()
