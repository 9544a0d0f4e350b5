"""
Configuration loading for the uplink.

The YAML file is parsed with yaml.safe_load and validated into pydantic
models, so a typo in a key or a wrong type fails at startup instead of
two seconds into an exercise.
"""

import logging
from pathlib import Path
from typing import Any, Dict, Optional, Union

import yaml
from pydantic import BaseModel, Field, ValidationError

log = logging.getLogger(__name__)

DEFAULT_CONFIG_PATH = Path("config/uplink.yaml")


class ConfigError(Exception):
    """Raised when a configuration file does not validate."""
    pass


class ServerConfig(BaseModel):
    url: str = "ws://10.0.2.2:8090"
    client_type_header: str = "websocket_client_type"
    client_type: str = "wearOS"

    def headers(self) -> Dict[str, str]:
        return {self.client_type_header: self.client_type}


class UplinkConfig(BaseModel):
    update_interval_s: float = Field(2.0, gt=0)
    max_retries: int = Field(10, ge=0)
    send_timeout_s: Optional[float] = Field(None, gt=0)
    close_code: int = 1000
    connect_poll_s: float = Field(0.5, gt=0)


class LoggingConfig(BaseModel):
    level: str = "INFO"
    event_log: Optional[str] = "logs/uplink.jsonl"


class SimulationConfig(BaseModel):
    start_lat: float = 1.2966
    start_lng: float = 103.7764
    dest_lat: Optional[float] = 1.3048
    dest_lng: Optional[float] = 103.7735
    speed_ms: float = Field(2.8, ge=0)
    resting_heart_rate: float = 70.0
    max_heart_rate: float = 175.0
    stride_m: float = Field(1.1, gt=0)
    kcal_per_km: float = 62.0


class AppConfig(BaseModel):
    server: ServerConfig = Field(default_factory=ServerConfig)
    uplink: UplinkConfig = Field(default_factory=UplinkConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)
    simulation: SimulationConfig = Field(default_factory=SimulationConfig)


def load_config(config_path: Union[str, Path]) -> Dict[str, Any]:
    """
    Loads a YAML configuration file from the given path.

    Args:
        config_path: The file path to the .yaml config file.

    Returns:
        A dictionary containing the loaded configuration ({} for an empty file).
    """
    log.info(f"[Config] Loading configuration from: {config_path}")
    try:
        with open(config_path, 'r') as f:
            config_data = yaml.safe_load(f)
    except FileNotFoundError:
        log.error(f"[Config] Configuration file not found: {config_path}")
        raise
    except yaml.YAMLError as e:
        log.error(f"[Config] Failed to parse YAML file {config_path}: {e}")
        raise
    if config_data is None:
        return {}
    if not isinstance(config_data, dict):
        raise ConfigError(f"Top level of {config_path} must be a mapping, got {type(config_data).__name__}")
    return config_data


def load_app_config(config_path: Optional[Union[str, Path]] = None) -> AppConfig:
    """Loads and validates a config file into an AppConfig. No path means defaults."""
    if config_path is None:
        return AppConfig()
    raw_config = load_config(config_path)
    try:
        return AppConfig(**raw_config)
    except ValidationError as e:
        raise ConfigError(f"Invalid configuration in {config_path}:\n{e}") from e
