"""
Configuration management for replicore.

Loads config.yaml from the replicore home directory:
  $REPLICORE_HOME/config.yaml  (default ~/.config/replicore/config.yaml)

Environment overrides:
  REPLICORE_STORE_PATH  - store directory for the file backend
  REPLICORE_LOG_LEVEL   - logging level
"""

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Optional

import yaml

from replicore.cluster import InMemoryClusterRegistry
from replicore.store import DocumentStore, open_store

STORE_BACKENDS = ("memory", "file")
LOG_FORMATS = ("structured", "pretty")
LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")


class ConfigError(Exception):
    """Configuration validation error."""
    pass


def get_replicore_home() -> Path:
    """Directory holding config.yaml (REPLICORE_HOME or ~/.config/replicore)."""
    home = os.environ.get("REPLICORE_HOME")
    if home:
        return Path(home).expanduser()
    return Path("~/.config/replicore").expanduser()


@dataclass
class ReplicoreConfig:
    """
    Process configuration.

    Attributes:
        local_cluster: Name of the cluster this process replicates from
        clusters: Known clusters as {"name", "url", "type"} mappings
        store_backend: "memory" or "file"
        store_path: Directory for the file backend
        transport: Transport entry point name
        max_workers: Upper bound on concurrent legs per run (None = one per target)
        timezone: Timezone cron expressions are written in
        log_level / log_format / log_file / console: Logging setup
    """
    local_cluster: str
    clusters: list[dict[str, Any]] = field(default_factory=list)
    store_backend: str = "file"
    store_path: str = "~/.local/share/replicore/store"
    transport: str = "noop"
    max_workers: Optional[int] = None
    timezone: str = "UTC"
    log_level: str = "INFO"
    log_format: str = "structured"
    log_file: str = "~/.local/share/replicore/logs/replicore-{date}.log"
    console: bool = True

    def validate(self) -> None:
        """
        Raises:
            ConfigError: On an invalid value
        """
        if not self.local_cluster:
            raise ConfigError("local_cluster is required")
        if self.store_backend not in STORE_BACKENDS:
            raise ConfigError(f"store_backend must be one of {', '.join(STORE_BACKENDS)}")
        if self.log_format not in LOG_FORMATS:
            raise ConfigError(f"log_format must be one of {', '.join(LOG_FORMATS)}")
        if self.log_level.upper() not in LOG_LEVELS:
            raise ConfigError(f"log_level must be one of {', '.join(LOG_LEVELS)}")
        if self.max_workers is not None and self.max_workers < 1:
            raise ConfigError("max_workers must be >= 1")
        names = [c.get("name") for c in self.clusters]
        if any(not n for n in names):
            raise ConfigError("every cluster needs a name")
        if len(set(names)) != len(names):
            raise ConfigError("cluster names must be unique")

    def store_dir(self) -> Path:
        return Path(self.store_path).expanduser()

    def log_file_path(self, date: str) -> Path:
        return Path(self.log_file.replace("{date}", date)).expanduser()

    def open_store(self) -> DocumentStore:
        return open_store(self.store_backend, self.store_dir())

    def cluster_registry(self) -> InMemoryClusterRegistry:
        return InMemoryClusterRegistry.from_config(self.local_cluster, self.clusters)

    def to_dict(self) -> dict[str, Any]:
        return {
            "local_cluster": self.local_cluster,
            "clusters": self.clusters,
            "store_backend": self.store_backend,
            "store_path": self.store_path,
            "transport": self.transport,
            "max_workers": self.max_workers,
            "timezone": self.timezone,
            "log_level": self.log_level,
            "log_format": self.log_format,
            "log_file": self.log_file,
            "console": self.console,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ReplicoreConfig":
        known = set(cls.__dataclass_fields__)
        unknown = sorted(set(data) - known)
        if unknown:
            raise ConfigError(f"Unknown config key(s): {', '.join(unknown)}")
        if "local_cluster" not in data:
            raise ConfigError("local_cluster is required")
        return cls(**data)


def default_config() -> ReplicoreConfig:
    """Config written by `replicore init`."""
    return ReplicoreConfig(
        local_cluster="center",
        clusters=[
            {"name": "center", "url": "http://localhost:25901", "type": "CENTER"},
        ],
    )


def load_config(config_path: Optional[Path] = None) -> ReplicoreConfig:
    """
    Load and validate replicore configuration.

    Args:
        config_path: Path to config file. Defaults to $REPLICORE_HOME/config.yaml

    Returns:
        ReplicoreConfig instance

    Raises:
        FileNotFoundError: If the config file does not exist
        ConfigError: If the config is invalid
    """
    if config_path is None:
        config_path = get_replicore_home() / "config.yaml"
    config_path = Path(config_path)
    if not config_path.exists():
        raise FileNotFoundError(f"replicore config.yaml not found at {config_path}")

    try:
        with open(config_path, "r") as f:
            data = yaml.safe_load(f)
    except yaml.YAMLError as e:
        raise ConfigError(f"Invalid YAML syntax: {e}") from e
    if not data:
        raise ConfigError("Configuration file is empty")
    if not isinstance(data, dict):
        raise ConfigError("Configuration must be a mapping")

    if os.environ.get("REPLICORE_STORE_PATH"):
        data["store_path"] = os.environ["REPLICORE_STORE_PATH"]
    if os.environ.get("REPLICORE_LOG_LEVEL"):
        data["log_level"] = os.environ["REPLICORE_LOG_LEVEL"]

    config = ReplicoreConfig.from_dict(data)
    config.validate()
    return config
