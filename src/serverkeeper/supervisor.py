"""
Long-lived supervisor for one game server.

Owns every component, runs health checks and scheduled backups serially on a
single thread, and decides what to do with an unhealthy server:

- stopped on purpose  -> leave it alone
- stopped by a crash  -> start it again
- running but stuck   -> escalate through RepairEscalator

Restarts are rate limited with a cooldown and an hourly budget.
"""

import logging
import threading
import time
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional

from .backup import BackupPipeline, IntegrityVerifier, RetentionManager
from .config import KeeperConfig
from .events import SERVICE_REPAIR_FAILED, SERVICE_REPAIRED, mk_event
from .journal import JournalReader
from .notify import Notifier, build_notifier
from .service import (
    HealthDiagnostician, HealthVerdict, ProcessTable, ProcessTreeResolver,
    RepairEscalator, ServiceController, ServiceStatus, StartupWatcher, StopClassifier,
)

logger = logging.getLogger(__name__)


class RestartPolicy:
    """Cooldown plus max-restarts-per-hour gate."""

    def __init__(self, cooldown_minutes: int = 5, max_per_hour: int = 3,
                 clock: Callable[[], datetime] = datetime.now):
        self.cooldown = timedelta(minutes=cooldown_minutes)
        self.max_per_hour = max_per_hour
        self._clock = clock
        self.history: List[datetime] = []

    def allows(self) -> bool:
        now = self._clock()
        if self.history and now - self.history[-1] < self.cooldown:
            logger.info("[supervisor] Restart suppressed: in cooldown period")
            return False

        one_hour_ago = now - timedelta(hours=1)
        self.history = [t for t in self.history if t > one_hour_ago]
        if len(self.history) >= self.max_per_hour:
            logger.warning(
                f"[supervisor] Restart suppressed: {len(self.history)}/{self.max_per_hour} in last hour"
            )
            return False
        return True

    def record(self) -> None:
        self.history.append(self._clock())


class ServerKeeper:
    """Wires components together from a KeeperConfig."""

    def __init__(
        self,
        config: KeeperConfig,
        controller: Optional[ServiceController] = None,
        table: Optional[ProcessTable] = None,
        journal: Optional[JournalReader] = None,
        notifier: Optional[Notifier] = None,
        db_probe: Optional[Callable[[], Any]] = None,
        sleep: Callable[[float], None] = time.sleep
    ):
        self.config = config
        self.db_probe = db_probe
        self.notifier = notifier or build_notifier(config.notify_webhook_url)

        self.controller = controller or ServiceController(use_sudo=config.use_sudo)
        self.resolver = ProcessTreeResolver(
            self.controller,
            wrapper_names=config.wrapper_process_names,
            workload_names=config.workload_process_names,
            table=table
        )
        self.diagnostician = HealthDiagnostician(
            self.controller, self.resolver,
            log_name=config.log_file,
            staleness_minutes=config.staleness_minutes
        )
        self.classifier = StopClassifier.default(config.log_file, journal)
        self.escalator = RepairEscalator(
            self.controller, self.resolver,
            cooldown_s=config.repair_cooldown_s,
            settle_s=config.kill_settle_s,
            sleep=sleep
        )
        self.watcher = StartupWatcher(self.controller, sleep=sleep)

        self.retention = RetentionManager(config.backup_root)
        self.verifier = IntegrityVerifier()
        self.pipeline = BackupPipeline(
            config.source_path,
            config.backup_root,
            exclude=[config.log_file],
            notifier=self.notifier,
            retention=self.retention,
            verifier=self.verifier,
            compress_default=config.compress_backups,
            bulk_copy_command=config.bulk_copy_command
        )
        self.restart_policy = RestartPolicy(config.restart_cooldown_minutes, config.max_restarts_per_hour)

        self._last_check: Optional[float] = None
        self._last_backup: Optional[float] = None
        # Wall-clock end of our last stop/start; journal evidence before it is ours
        self._last_self_action: Optional[datetime] = None
        self._stop_event = threading.Event()
        self._thread: Optional[threading.Thread] = None

    # ------------------------------------------------------------------
    # Health
    # ------------------------------------------------------------------

    def check_health(self) -> HealthVerdict:
        verdict = self.diagnostician.diagnose(
            self.config.service_name,
            data_dir=self.config.source_path,
            db_probe=self.db_probe
        )
        level = logging.DEBUG if verdict.is_healthy else logging.WARNING
        logger.log(level, f"[supervisor] {self.config.service_name}: {verdict.reason}")
        return verdict

    def heal(self) -> Dict[str, Any]:
        """Check health and act on the verdict. Returns what was done."""
        name = self.config.service_name
        verdict = self.check_health()

        if verdict.is_healthy:
            return {"action": "none", "reason": verdict.reason}

        if verdict.service_status == ServiceStatus.NOT_FOUND:
            logger.error(f"[supervisor] Unit {name} does not exist; nothing to heal")
            return {"action": "none", "reason": "service not found"}

        if verdict.service_status == ServiceStatus.UNKNOWN:
            return {"action": "wait", "reason": "service state in transition"}

        if verdict.service_status == ServiceStatus.STOPPED:
            intentional = self.classifier.was_intentional(
                name,
                data_dir=self.config.source_path,
                lookback=timedelta(minutes=self.config.stop_lookback_minutes),
                not_before=self._last_self_action
            )
            if intentional:
                return {"action": "left_stopped", "reason": "intentional stop"}
            if not self.restart_policy.allows():
                return {"action": "suppressed", "reason": "restart rate limited"}
            return self._restart_after_crash()

        # Running but not doing useful work
        if not self.restart_policy.allows():
            return {"action": "suppressed", "reason": "restart rate limited"}
        return self._repair(verdict.reason)

    def _restart_after_crash(self) -> Dict[str, Any]:
        name = self.config.service_name
        logger.warning(f"[supervisor] {name} crashed; restarting")
        self.restart_policy.record()
        result = self.controller.start(name)
        elapsed = self._wait_for_startup() if result else None
        self._last_self_action = datetime.now()
        success = bool(result) and elapsed is not None
        self._notify_repair(success, reason="crash restart", detail=getattr(result, "detail", ""))
        return {"action": "restarted", "success": success, "startup_s": elapsed}

    def _repair(self, reason: str) -> Dict[str, Any]:
        name = self.config.service_name
        logger.warning(f"[supervisor] {name} unhealthy ({reason}); starting repair")
        self.restart_policy.record()
        outcome = self.escalator.repair(name)
        elapsed = self._wait_for_startup() if outcome.success else None
        self._last_self_action = datetime.now()
        success = outcome.success and elapsed is not None
        self._notify_repair(success, reason=reason, detail=outcome.reason, forced=outcome.forced)
        return {"action": "repaired", "success": success, "startup_s": elapsed, "outcome": outcome.to_dict()}

    def repair(self):
        """Manual repair, bypassing the restart budget."""
        outcome = self.escalator.repair(self.config.service_name)
        self._last_self_action = datetime.now()
        return outcome

    def _wait_for_startup(self) -> Optional[float]:
        return self.watcher.wait_until_running(
            self.config.service_name,
            timeout_s=self.config.startup_timeout_s,
            interval_s=self.config.startup_poll_s
        )

    def _notify_repair(self, success: bool, **payload) -> None:
        kind = SERVICE_REPAIRED if success else SERVICE_REPAIR_FAILED
        event = mk_event("supervisor", kind, severity="info" if success else "error",
                         service=self.config.service_name, **payload)
        try:
            self.notifier.notify(event)
        except Exception as e:
            logger.warning(f"[supervisor] Notification {kind} failed: {e}")

    # ------------------------------------------------------------------
    # Backups
    # ------------------------------------------------------------------

    def backup_now(self, compress: Optional[bool] = None):
        return self.pipeline.run(compress=compress, max_backups=self.config.max_backups)

    def prune(self):
        return self.retention.enforce(self.config.max_backups)

    def statistics(self):
        return self.retention.statistics()

    def verify_latest(self) -> bool:
        stats = self.retention.statistics()
        if stats.newest is None:
            logger.warning(f"[supervisor] No backups in {self.config.backup_root}")
            return False
        return self.verifier.verify(stats.newest)

    # ------------------------------------------------------------------
    # Scheduling
    # ------------------------------------------------------------------

    def run_once(self, now: Optional[float] = None) -> Dict[str, Any]:
        """One scheduler tick: health check and backup when due."""
        now = time.monotonic() if now is None else now
        report: Dict[str, Any] = {}

        if self._last_check is None or now - self._last_check >= self.config.check_interval_s:
            self._last_check = now
            report["heal"] = self.heal()

        backup_every = self.config.backup_interval_minutes * 60
        if backup_every > 0 and (self._last_backup is None or now - self._last_backup >= backup_every):
            self._last_backup = now
            report["backup"] = self.backup_now()

        return report

    def start(self) -> None:
        if self._thread and self._thread.is_alive():
            logger.info("[supervisor] Already running")
            return
        self._stop_event.clear()
        self._thread = threading.Thread(target=self._loop, name="serverkeeper", daemon=True)
        self._thread.start()
        logger.info(f"[supervisor] Started (checking every {self.config.check_interval_s:.0f}s)")

    def stop(self, timeout: Optional[float] = None) -> None:
        self._stop_event.set()
        if self._thread:
            self._thread.join(timeout=timeout)
        logger.info("[supervisor] Stopped")

    def is_alive(self) -> bool:
        return bool(self._thread and self._thread.is_alive())

    def join(self, timeout: Optional[float] = None) -> None:
        if self._thread:
            self._thread.join(timeout=timeout)

    def _loop(self) -> None:
        while not self._stop_event.is_set():
            try:
                self.run_once()
            except Exception as e:
                logger.error(f"[supervisor] Error in supervisor loop: {e}")
            self._stop_event.wait(self.config.check_interval_s)
