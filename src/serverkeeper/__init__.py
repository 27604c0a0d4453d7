"""serverkeeper: keeps a game server running and its save data backed up.

Health diagnosis, crash-vs-intentional stop classification, escalating repair
and tiered backups with retention.
"""

from .config import KeeperConfig, ConfigError, load_config
from .supervisor import ServerKeeper, RestartPolicy

__version__ = "0.1.0"

__all__ = [
    "KeeperConfig",
    "ConfigError",
    "load_config",
    "ServerKeeper",
    "RestartPolicy",
]
