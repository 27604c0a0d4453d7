"""Configuration loading for serverkeeper.

Settings come from a YAML file merged over built-in defaults, then from
``SKR_*`` environment variables (e.g. ``SKR_MAX_BACKUPS=20``).
"""

import os
import logging
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml

logger = logging.getLogger(__name__)

ENV_PREFIX = "SKR_"
DEFAULT_CONFIG_PATH = Path("/etc/serverkeeper/serverkeeper.yaml")


class ConfigError(ValueError):
    """Raised when the configuration is missing or invalid."""


@dataclass
class KeeperConfig:
    """Runtime settings for one supervised game server."""

    service_name: str
    source_path: Path
    backup_root: Path
    max_backups: int = 10
    compress_backups: bool = True
    log_file: str = "logs/server.log"

    # Health / repair
    staleness_minutes: int = 15
    repair_cooldown_s: float = 5.0
    kill_settle_s: float = 2.0
    stop_lookback_minutes: int = 10
    startup_timeout_s: float = 120.0
    startup_poll_s: float = 2.0
    wrapper_process_names: List[str] = field(
        default_factory=lambda: ["screen", "tmux: server", "bash", "sh", "tini", "dumb-init"]
    )
    workload_process_names: List[str] = field(default_factory=lambda: ["*Server*", "java"])
    use_sudo: bool = True

    # Scheduling
    check_interval_s: float = 60.0
    backup_interval_minutes: int = 60
    restart_cooldown_minutes: int = 5
    max_restarts_per_hour: int = 3

    # Collaborators
    notify_webhook_url: Optional[str] = None
    bulk_copy_command: str = "rsync"

    @property
    def log_path(self) -> Path:
        """Absolute path of the server's primary log."""
        return self.source_path / self.log_file

    def validate(self) -> "KeeperConfig":
        if not self.service_name:
            raise ConfigError("service_name is required")
        if self.max_backups < 0:
            raise ConfigError(f"max_backups must be >= 0, got {self.max_backups}")
        if self.staleness_minutes <= 0:
            raise ConfigError("staleness_minutes must be positive")
        if self.startup_poll_s <= 0:
            raise ConfigError("startup_poll_s must be positive")
        if self.source_path == self.backup_root:
            raise ConfigError("backup_root must differ from source_path")
        return self


def _coerce(value: Any, current: Any, name: str) -> Any:
    """Convert a raw YAML/env value to the type of the default."""
    if isinstance(current, bool):
        if isinstance(value, str):
            return value.strip().lower() in ("1", "true", "yes", "on")
        return bool(value)
    if isinstance(current, int):
        try:
            return int(value)
        except (TypeError, ValueError):
            raise ConfigError(f"{name} must be an integer, got {value!r}")
    if isinstance(current, float):
        try:
            return float(value)
        except (TypeError, ValueError):
            raise ConfigError(f"{name} must be a number, got {value!r}")
    if isinstance(current, list):
        if isinstance(value, str):
            return [part.strip() for part in value.split(",") if part.strip()]
        return list(value)
    return value


def _env_overrides() -> Dict[str, str]:
    overrides = {}
    for f in fields(KeeperConfig):
        raw = os.getenv(ENV_PREFIX + f.name.upper())
        if raw is not None:
            overrides[f.name] = raw
    return overrides


def load_config(path: Optional[Path] = None, **overrides) -> KeeperConfig:
    """Load configuration from YAML, environment and keyword overrides.

    Args:
        path: YAML file; defaults to ``$SKR_CONFIG`` or
            ``/etc/serverkeeper/serverkeeper.yaml``. A missing file is not an
            error as long as the required keys come from elsewhere.
        **overrides: Highest-priority values (used by the CLI and tests)

    Returns:
        Validated KeeperConfig

    Raises:
        ConfigError: If required keys are missing or values are invalid
    """
    config_path = Path(path or os.getenv(ENV_PREFIX + "CONFIG", DEFAULT_CONFIG_PATH))

    data: Dict[str, Any] = {}
    if config_path.exists():
        try:
            with open(config_path) as f:
                data = yaml.safe_load(f) or {}
        except yaml.YAMLError as e:
            raise ConfigError(f"Failed to parse {config_path}: {e}")
        if not isinstance(data, dict):
            raise ConfigError(f"{config_path} must contain a mapping")
        logger.info(f"[config] Loaded {config_path}")
    else:
        logger.debug(f"[config] No config file at {config_path}, using defaults")

    data.update(_env_overrides())
    data.update({k: v for k, v in overrides.items() if v is not None})

    known = {f.name for f in fields(KeeperConfig)}
    unknown = set(data) - known
    if unknown:
        logger.warning(f"[config] Ignoring unknown keys: {', '.join(sorted(unknown))}")

    for required in ("service_name", "source_path", "backup_root"):
        if not data.get(required):
            raise ConfigError(f"{required} is required")

    defaults = KeeperConfig(service_name="", source_path=Path("."), backup_root=Path(".."))
    kwargs: Dict[str, Any] = {}
    for f in fields(KeeperConfig):
        if f.name not in data:
            continue
        if f.name in ("source_path", "backup_root"):
            kwargs[f.name] = Path(data[f.name]).expanduser()
        elif f.name == "notify_webhook_url":
            kwargs[f.name] = data[f.name] or None
        else:
            kwargs[f.name] = _coerce(data[f.name], getattr(defaults, f.name), f.name)

    return KeeperConfig(**kwargs).validate()
