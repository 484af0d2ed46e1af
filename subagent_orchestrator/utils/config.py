"""
Configuration management for the Subagent Orchestrator.
"""

import json
import os
from typing import List, Optional
from pydantic import BaseModel, Field
from pathlib import Path

from .logging import get_logger

logger = get_logger(__name__)


class OrchestrationConfig(BaseModel):
    """Configuration for dispatching and workflow sequencing."""
    tick_interval_seconds: float = Field(default=5.0, gt=0.0, le=3600.0)
    auto_dispatch: bool = Field(default=True)
    require_acknowledgement: bool = Field(default=False)
    auto_start_agents: bool = Field(default=True)
    default_max_concurrent_tasks: int = Field(default=3, ge=1, le=1000)
    event_history_size: int = Field(default=1000, ge=0, le=100000)
    message_history_limit: int = Field(default=200, ge=1, le=10000)


class MonitoringConfig(BaseModel):
    """Configuration for the performance monitor."""
    include_process_metrics: bool = Field(default=True)
    metrics_history_size: int = Field(default=1000, ge=10, le=100000)


class ApiConfig(BaseModel):
    """Configuration for the HTTP adapter."""
    host: str = Field(default="127.0.0.1")
    port: int = Field(default=8000, ge=1, le=65535)
    cors_origins: List[str] = Field(default_factory=lambda: ["*"])


class SystemConfig(BaseModel):
    """Main system configuration."""
    debug: bool = Field(default=False)
    log_level: str = Field(default="INFO")
    json_logging: bool = Field(default=False)

    # Component configurations
    orchestration: OrchestrationConfig = Field(default_factory=OrchestrationConfig)
    monitoring: MonitoringConfig = Field(default_factory=MonitoringConfig)
    api: ApiConfig = Field(default_factory=ApiConfig)


def _env_bool(name: str) -> bool:
    return os.getenv(name, "").lower() in ("1", "true", "yes")


def load_config_from_env() -> SystemConfig:
    """
    Load configuration from environment variables.

    Returns:
        SystemConfig: Configuration object with values from environment
    """
    config_data = {}

    # System settings
    if os.getenv("ORCHESTRATOR_DEBUG"):
        config_data["debug"] = _env_bool("ORCHESTRATOR_DEBUG")

    if os.getenv("ORCHESTRATOR_LOG_LEVEL"):
        config_data["log_level"] = os.getenv("ORCHESTRATOR_LOG_LEVEL")

    if os.getenv("ORCHESTRATOR_JSON_LOGGING"):
        config_data["json_logging"] = _env_bool("ORCHESTRATOR_JSON_LOGGING")

    # Orchestration settings
    orchestration_config = {}
    if os.getenv("ORCHESTRATOR_TICK_INTERVAL"):
        orchestration_config["tick_interval_seconds"] = float(os.getenv("ORCHESTRATOR_TICK_INTERVAL"))

    if os.getenv("ORCHESTRATOR_AUTO_DISPATCH"):
        orchestration_config["auto_dispatch"] = _env_bool("ORCHESTRATOR_AUTO_DISPATCH")

    if os.getenv("ORCHESTRATOR_REQUIRE_ACK"):
        orchestration_config["require_acknowledgement"] = _env_bool("ORCHESTRATOR_REQUIRE_ACK")

    if os.getenv("ORCHESTRATOR_AUTO_START_AGENTS"):
        orchestration_config["auto_start_agents"] = _env_bool("ORCHESTRATOR_AUTO_START_AGENTS")

    if os.getenv("ORCHESTRATOR_DEFAULT_MAX_TASKS"):
        orchestration_config["default_max_concurrent_tasks"] = int(os.getenv("ORCHESTRATOR_DEFAULT_MAX_TASKS"))

    if orchestration_config:
        config_data["orchestration"] = orchestration_config

    # Monitoring settings
    monitoring_config = {}
    if os.getenv("ORCHESTRATOR_PROCESS_METRICS"):
        monitoring_config["include_process_metrics"] = _env_bool("ORCHESTRATOR_PROCESS_METRICS")

    if monitoring_config:
        config_data["monitoring"] = monitoring_config

    # API settings
    api_config = {}
    if os.getenv("ORCHESTRATOR_HOST"):
        api_config["host"] = os.getenv("ORCHESTRATOR_HOST")

    if os.getenv("ORCHESTRATOR_PORT"):
        api_config["port"] = int(os.getenv("ORCHESTRATOR_PORT"))

    if api_config:
        config_data["api"] = api_config

    return SystemConfig(**config_data)


def load_config_from_file(config_path: Optional[Path] = None) -> SystemConfig:
    """
    Load configuration from a JSON file.

    Args:
        config_path: Path to configuration file

    Returns:
        SystemConfig: Configuration object
    """
    if config_path is None:
        config_path = Path(os.getenv("ORCHESTRATOR_CONFIG", "orchestrator.json"))

    if not config_path.exists():
        return SystemConfig()

    try:
        with open(config_path, 'r') as f:
            config_data = json.load(f)
        return SystemConfig(**config_data)
    except (OSError, ValueError) as e:
        logger.warning("Could not load config file, using defaults", path=str(config_path), error=str(e))
        return SystemConfig()


def _merge(base: dict, override: dict) -> dict:
    merged = dict(base)
    for key, value in override.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = _merge(merged[key], value)
        else:
            merged[key] = value
    return merged


# Global configuration instance
_config: Optional[SystemConfig] = None


def get_config() -> SystemConfig:
    """
    Get the global configuration instance.

    Returns:
        SystemConfig: Global configuration
    """
    global _config
    if _config is None:
        # File first, then environment on top
        _config = load_config_from_file()
        env_overrides = load_config_from_env().model_dump(exclude_unset=True)

        if env_overrides:
            _config = SystemConfig(**_merge(_config.model_dump(), env_overrides))

    return _config


def set_config(config: Optional[SystemConfig]) -> None:
    """
    Set the global configuration instance.

    Args:
        config: Configuration to set as global, or None to reload on next access
    """
    global _config
    _config = config
