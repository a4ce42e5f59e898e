"""Configuration management for kubeinstall.

Configuration is loaded from multiple sources with the following precedence:
1. Environment variables (``KUBEINSTALL_<SECTION>__<FIELD>``)
2. Configuration file
3. Default values
"""
import logging
import os
from pathlib import Path
from typing import Any, Dict, Optional, Union

import yaml
from dotenv import load_dotenv
from pydantic import BaseModel, Field, field_validator

# Load environment variables from .env file if it exists
load_dotenv()

logger = logging.getLogger("kubeinstall.config")

ENV_PREFIX = "KUBEINSTALL_"
ENV_NESTED_DELIMITER = "__"

DEFAULT_CONFIG_PATHS = [
    Path("/etc/kubeinstall/config.yaml"),
    Path("~/.config/kubeinstall/config.yaml").expanduser(),
    Path("kubeinstall.yaml").absolute(),
]


class SSHConfig(BaseModel):
    """SSH connection configuration."""
    connect_timeout: int = Field(default=30, description="SSH dial timeout in seconds")
    command_timeout: int = Field(
        default=3600,
        description="Remote command timeout in seconds; package installs can take a long time"
    )
    default_user: str = Field(default="root", description="Username used when a node omits one")
    default_port: int = Field(default=22, description="SSH port used when a node omits one")


class BatchConfig(BaseModel):
    """Batch controller configuration."""
    max_workers: int = Field(default=10, description="Maximum concurrent SSH operations per batch")

    @field_validator("max_workers")
    @classmethod
    def positive_workers(cls, v: int) -> int:
        if v < 1:
            raise ValueError("max_workers must be at least 1")
        return v


class LoggingConfig(BaseModel):
    """Logging configuration."""
    level: str = Field(default="INFO", description="Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)")
    file: Optional[str] = Field(default=None, description="Path to log file (if None, logs to stderr)")
    max_size_mb: int = Field(default=100, description="Maximum log file size in MB before rotation")
    backup_count: int = Field(default=5, description="Number of backup log files to keep")
    stream_buffer: int = Field(default=100, description="Per-subscriber live log buffer size")


class StoreConfig(BaseModel):
    """Record store configuration."""
    backend: str = Field(default="sqlite", description="Record store backend: sqlite or memory")
    path: str = Field(
        default="~/.local/share/kubeinstall/kubeinstall.db",
        description="SQLite database path"
    )

    @field_validator("path")
    @classmethod
    def expand_path(cls, v: str) -> str:
        """Expand the user home directory in the database path."""
        return os.path.expanduser(v)


class APIConfig(BaseModel):
    host: str = Field(default="0.0.0.0")
    port: int = Field(default=8080)
    api_key: str = Field(default="kubeinstall-secret", description="Value expected in X-API-Key")


class ClusterDefaults(BaseModel):
    """Defaults applied to cluster specs that omit a value."""
    version: str = Field(default="v1.30.0")
    pod_subnet: str = Field(default="10.244.0.0/16")
    service_subnet: str = Field(default="10.96.0.0/12")
    dns_domain: str = Field(default="cluster.local")
    network_plugin: str = Field(default="flannel")
    runtime: str = Field(default="containerd")
    version_sync_hours: int = Field(default=3)


class AppConfig(BaseModel):
    """kubeinstall configuration."""
    ssh: SSHConfig = Field(default_factory=SSHConfig)
    batch: BatchConfig = Field(default_factory=BatchConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)
    store: StoreConfig = Field(default_factory=StoreConfig)
    api: APIConfig = Field(default_factory=APIConfig)
    cluster: ClusterDefaults = Field(default_factory=ClusterDefaults)

    model_config = {"extra": "ignore"}

    @classmethod
    def load(cls, config_path: Optional[Union[str, Path]] = None) -> "AppConfig":
        """Load configuration from file and environment variables."""
        config_data: Dict[str, Any] = {}

        if config_path:
            config_path = Path(config_path).expanduser().absolute()
            if config_path.exists():
                config_data = cls._load_config_file(config_path)
            else:
                logger.warning(f"Config file {config_path} does not exist, using defaults")
        else:
            for path in DEFAULT_CONFIG_PATHS:
                path = path.expanduser().absolute()
                if path.exists():
                    config_data = cls._load_config_file(path)
                    break

        _apply_env_overrides(config_data, os.environ)
        return cls(**config_data)

    @classmethod
    def _load_config_file(cls, path: Path) -> Dict[str, Any]:
        """Load configuration from a YAML file."""
        try:
            with open(path, "r") as f:
                return yaml.safe_load(f) or {}
        except (OSError, yaml.YAMLError) as e:
            logger.warning(f"Failed to load config from {path}: {e}")
            return {}

    def save(self, path: Union[str, Path]) -> None:
        """Save configuration to a file."""
        path = Path(path).expanduser().absolute()
        path.parent.mkdir(parents=True, exist_ok=True)
        with open(path, "w") as f:
            yaml.safe_dump(self.model_dump(exclude_none=True), f, default_flow_style=False, sort_keys=False)


def _apply_env_overrides(config_data: Dict[str, Any], environ) -> None:
    """Merge ``KUBEINSTALL_SECTION__FIELD=value`` variables into config_data."""
    sections = set(AppConfig.model_fields)
    for key, value in environ.items():
        if not key.startswith(ENV_PREFIX):
            continue
        parts = key[len(ENV_PREFIX):].lower().split(ENV_NESTED_DELIMITER)
        if len(parts) != 2 or parts[0] not in sections:
            continue
        section, name = parts
        config_data.setdefault(section, {})[name] = value


# Global configuration instance
_config: Optional[AppConfig] = None


def get_config(config_path: Optional[Union[str, Path]] = None) -> AppConfig:
    """Get or create the global configuration instance."""
    global _config
    if _config is None:
        _config = AppConfig.load(config_path)
    return _config


def set_config(config: Optional[AppConfig]) -> None:
    """Set the global configuration instance."""
    global _config
    _config = config
