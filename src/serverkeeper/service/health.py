"""Health diagnosis for the supervised game server."""

import logging
import time
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any, Callable, Optional

from .control import ServiceStatus

logger = logging.getLogger(__name__)

DEFAULT_STALENESS_MINUTES = 15


@dataclass(frozen=True)
class HealthVerdict:
    """Point-in-time health snapshot. Not persisted."""
    is_healthy: bool
    reason: str
    service_status: ServiceStatus
    process_found: bool
    database_responsive: bool
    log_active: bool
    checked_at: datetime = field(default_factory=datetime.now)


def _probe_succeeded(result: Any) -> bool:
    if result is None:
        return False
    if isinstance(result, dict):
        return bool(result.get("success", result.get("Success", False)))
    return bool(getattr(result, "success", False))


class HealthDiagnostician:
    """Combines service state, process presence and liveness signals."""

    def __init__(self, controller, resolver, log_name: str = "logs/server.log",
                 staleness_minutes: int = DEFAULT_STALENESS_MINUTES):
        """Initialize diagnostician.

        Args:
            controller: ServiceController
            resolver: ProcessTreeResolver
            log_name: Primary log path relative to the data directory
            staleness_minutes: Max age of the log's last write to count as active
        """
        self.controller = controller
        self.resolver = resolver
        self.log_name = log_name
        self.staleness_s = staleness_minutes * 60
        self._log_unreadable = False

    def diagnose(
        self,
        service_name: str,
        data_dir: Optional[Path] = None,
        db_probe: Optional[Callable[[], Any]] = None
    ) -> HealthVerdict:
        """Produce a HealthVerdict. Never raises.

        A found process plus either a reachable database or a fresh log is
        enough: each alone shows the server is doing work.
        """
        try:
            status = self.controller.status(service_name)
        except Exception as e:
            logger.warning(f"[health] Service status check failed: {e}")
            status = ServiceStatus.UNKNOWN

        if status != ServiceStatus.RUNNING:
            return HealthVerdict(False, "service not running", status, False, False, False)

        try:
            leaf = self.resolver.resolve(service_name)
        except Exception as e:
            logger.warning(f"[health] Process resolution failed: {e}")
            leaf = None

        if leaf is None:
            return HealthVerdict(False, "process not found", status, False, False, False)

        db_ok = self._check_database(db_probe)
        log_ok = self._check_log(data_dir)

        if db_ok or log_ok:
            signals = [name for name, ok in (("database", db_ok), ("log", log_ok)) if ok]
            return HealthVerdict(True, f"healthy ({', '.join(signals)})", status, True, db_ok, log_ok)

        return HealthVerdict(
            False, "no activity: database unreachable and log stale", status, True, db_ok, log_ok
        )

    def _check_database(self, db_probe: Optional[Callable[[], Any]]) -> bool:
        if db_probe is None:
            return False
        try:
            return _probe_succeeded(db_probe())
        except Exception as e:
            logger.warning(f"[health] Database probe failed: {e}")
            return False

    def _check_log(self, data_dir: Optional[Path]) -> bool:
        if data_dir is None:
            return False
        log_path = Path(data_dir) / self.log_name
        try:
            age = time.time() - log_path.stat().st_mtime
        except OSError as e:
            # Warn once until the log is readable again
            level = logging.DEBUG if self._log_unreadable else logging.WARNING
            logger.log(level, f"[health] Cannot stat log {log_path}: {e}")
            self._log_unreadable = True
            return False
        if self._log_unreadable:
            logger.info(f"[health] Log {log_path} is readable again")
            self._log_unreadable = False
        return age <= self.staleness_s
