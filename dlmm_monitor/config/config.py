"""
Configuration models for the DLMM position monitor.

Uses Pydantic for validation and type safety.
"""
import os
import re
from pathlib import Path
from typing import Literal, Optional

import yaml
from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class SystemConfig(BaseSettings):
    """System metadata."""
    model_config = SettingsConfigDict(extra="ignore")

    name: str = "DLMM Position Monitor"
    version: str = "1.0.0"


class SchedulerConfig(BaseSettings):
    """Task scheduler configuration."""
    model_config = SettingsConfigDict(extra="ignore")

    poll_interval_seconds: float = Field(default=1.0, gt=0.0, le=60.0)
    # Snapshot of registered tasks, for observability only (callbacks are not restorable)
    registry_path: Optional[str] = "data/tasks.json"
    # Cancel the underlying coroutine when a task exceeds its timeout
    cancel_stuck_tasks: bool = False


class MonitorConfig(BaseSettings):
    """Position monitoring (reconciliation) configuration."""
    model_config = SettingsConfigDict(extra="ignore")

    interval_seconds: float = Field(default=10.0, gt=0.0, description="Seconds between bulk checks")
    max_retries: int = Field(default=3, ge=0, le=20)
    retry_delay_seconds: float = Field(default=30.0, ge=0.0, description="Base delay for exponential backoff")
    timeout_seconds: Optional[float] = Field(default=120.0, gt=0.0, description="Presume a bulk check stuck after this")
    range_step_bins: int = Field(default=5, ge=1, le=500, description="Bin window used to derive the current price range")
    price_drift_tolerance: float = Field(default=0.0001, ge=0.0)
    auto_start: bool = True


class StorageConfig(BaseSettings):
    """Persistence configuration."""
    model_config = SettingsConfigDict(extra="ignore")

    backend: Literal["file", "database"] = "file"
    data_dir: str = "data"
    database_url: Optional[str] = None


class ChainConfig(BaseSettings):
    """Pool query service configuration."""
    model_config = SettingsConfigDict(extra="ignore")

    pool_api_url: str = "http://127.0.0.1:8787"
    request_timeout_seconds: float = Field(default=15.0, gt=0.0, le=120.0)


class NotificationConfig(BaseSettings):
    """Notification delivery configuration."""
    model_config = SettingsConfigDict(extra="ignore")

    telegram_bot_token: Optional[str] = None
    telegram_api_url: str = "https://api.telegram.org"
    parse_mode: Literal["Markdown", "MarkdownV2", "HTML"] = "Markdown"
    request_timeout_seconds: float = Field(default=10.0, gt=0.0, le=60.0)


class MonitoringConfig(BaseSettings):
    """Logging configuration."""
    model_config = SettingsConfigDict(extra="ignore")

    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = "INFO"
    log_format: Literal["json", "text"] = "json"
    log_file: Optional[str] = "logs/monitor.log"


class Config(BaseSettings):
    """Main configuration class."""
    model_config = SettingsConfigDict(
        env_nested_delimiter="__",
        extra="ignore",
    )

    system: SystemConfig = Field(default_factory=SystemConfig)
    scheduler: SchedulerConfig = Field(default_factory=SchedulerConfig)
    monitor: MonitorConfig = Field(default_factory=MonitorConfig)
    storage: StorageConfig = Field(default_factory=StorageConfig)
    chain: ChainConfig = Field(default_factory=ChainConfig)
    notifications: NotificationConfig = Field(default_factory=NotificationConfig)
    monitoring: MonitoringConfig = Field(default_factory=MonitoringConfig)
    environment: Literal["dev", "prod"] = "prod"

    @classmethod
    def from_yaml(cls, yaml_path: str | Path) -> "Config":
        """Load configuration from YAML file."""
        yaml_path = Path(yaml_path)
        if not yaml_path.exists():
            raise FileNotFoundError(f"Configuration file not found: {yaml_path}")

        with open(yaml_path, "r") as f:
            raw_content = f.read()

        # Regex to find ${VAR} or $VAR
        pattern = re.compile(r'\$\{([^}]+)\}|\$([a-zA-Z_][a-zA-Z0-9_]*)')

        def replace_match(match):
            var_name = match.group(1) or match.group(2)
            return os.environ.get(var_name, match.group(0))  # Return original if not found

        expanded_content = pattern.sub(replace_match, raw_content)
        config_dict = yaml.safe_load(expanded_content) or {}

        if "ENVIRONMENT" in os.environ:
            config_dict["environment"] = os.environ["ENVIRONMENT"]

        db_url = os.getenv("DATABASE_URL")
        if db_url:
            config_dict.setdefault("storage", {})["database_url"] = db_url

        bot_token = os.getenv("TELEGRAM_BOT_TOKEN")
        if bot_token:
            config_dict.setdefault("notifications", {})["telegram_bot_token"] = bot_token

        pool_api_url = os.getenv("POOL_API_URL")
        if pool_api_url:
            config_dict.setdefault("chain", {})["pool_api_url"] = pool_api_url

        return cls(**config_dict)

    def validate_config(self) -> None:
        """Perform additional validation checks."""
        if self.storage.backend == "database" and not self.storage.database_url:
            raise ValueError("storage.backend=database requires storage.database_url (or DATABASE_URL)")

        if self.monitor.timeout_seconds is not None and self.monitor.timeout_seconds <= self.scheduler.poll_interval_seconds:
            raise ValueError("monitor.timeout_seconds must exceed scheduler.poll_interval_seconds")


def load_config(config_path: str | Path | None = None) -> Config:
    """
    Load and validate configuration.

    Args:
        config_path: Path to config.yaml file. If None, uses dlmm_monitor/config/config.yaml

    Returns:
        Validated Config object

    Raises:
        FileNotFoundError: If config file not found
        ValueError: If configuration validation fails
    """
    if config_path is None:
        config_path = Path(__file__).parent / "config.yaml"

    config = Config.from_yaml(config_path)
    config.validate_config()

    return config
