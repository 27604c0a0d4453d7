"""
systemd service control primitives.

Every primitive is idempotent (acting on a unit that is already in the
requested state is a no-op success) and performs no retries; retrying is the
caller's decision, guided by ``ControlResult.retryable``.
"""

import logging
import subprocess
from dataclasses import dataclass
from enum import Enum
from typing import List, Optional

logger = logging.getLogger(__name__)

SYSTEMCTL_TIMEOUT_S = 30
QUERY_TIMEOUT_S = 5

_NOT_FOUND_MARKERS = ("not found", "not-found", "no such file", "not loaded", "could not be found")
_ACCESS_DENIED_MARKERS = (
    "access denied",
    "permission denied",
    "interactive authentication required",
    "a password is required",
    "not in the sudoers",
)
_INVALID_STATE_MARKERS = ("job for", "canceled", "cancelled", "refusing", "transaction", "masked")


class ServiceStatus(Enum):
    """Coarse service state as seen by the keeper."""
    NOT_FOUND = "not_found"
    STOPPED = "stopped"
    RUNNING = "running"
    UNKNOWN = "unknown"


class FailureKind(Enum):
    """Why a control operation failed."""
    NOT_FOUND = "not_found"
    ACCESS_DENIED = "access_denied"
    INVALID_STATE = "invalid_state"
    TIMEOUT = "timeout"
    UNKNOWN = "unknown"


@dataclass(frozen=True)
class ControlResult:
    """Outcome of a start/stop call. Truthy on success."""
    ok: bool
    action: str
    service: str
    failure: Optional[FailureKind] = None
    detail: str = ""
    noop: bool = False

    def __bool__(self) -> bool:
        return self.ok

    @property
    def retryable(self) -> bool:
        """False when retrying without operator action cannot help."""
        if self.ok:
            return False
        return self.failure not in (FailureKind.NOT_FOUND, FailureKind.ACCESS_DENIED)


def classify_failure(stderr: str, returncode: int) -> FailureKind:
    """Map systemctl stderr/exit code to a FailureKind."""
    text = (stderr or "").lower()
    if any(marker in text for marker in _ACCESS_DENIED_MARKERS):
        return FailureKind.ACCESS_DENIED
    if any(marker in text for marker in _NOT_FOUND_MARKERS):
        return FailureKind.NOT_FOUND
    if any(marker in text for marker in _INVALID_STATE_MARKERS):
        return FailureKind.INVALID_STATE
    # LSB exit codes used by systemctl: 4 = no such unit, 5 = not installed
    if returncode in (4, 5):
        return FailureKind.NOT_FOUND
    return FailureKind.UNKNOWN


class ServiceController:
    """Start/stop/query a systemd unit through ``systemctl``."""

    def __init__(self, use_sudo: bool = True, systemctl: str = "systemctl"):
        """Initialize controller.

        Args:
            use_sudo: Prefix mutating commands with ``sudo``
            systemctl: systemctl binary to call
        """
        self.use_sudo = use_sudo
        self.systemctl = systemctl

    def _run(self, args: List[str], mutating: bool = False, timeout: int = QUERY_TIMEOUT_S):
        cmd = [self.systemctl] + args
        if mutating and self.use_sudo:
            cmd = ["sudo", "-n"] + cmd
        return subprocess.run(cmd, capture_output=True, text=True, timeout=timeout)

    def _show(self, name: str, prop: str) -> Optional[str]:
        try:
            result = self._run(["show", name, f"--property={prop}", "--value"])
        except (subprocess.TimeoutExpired, OSError) as e:
            logger.warning(f"[service] systemctl show {prop} for {name} failed: {e}")
            return None
        if result.returncode != 0:
            return None
        return result.stdout.strip()

    def exists(self, name: str) -> bool:
        """True if systemd has a unit file loaded under this name."""
        load_state = self._show(name, "LoadState")
        return load_state not in (None, "", "not-found")

    def status(self, name: str) -> ServiceStatus:
        """Current status of the unit. Never raises."""
        try:
            result = self._run(["is-active", name])
        except (subprocess.TimeoutExpired, OSError) as e:
            logger.warning(f"[service] Failed to check {name}: {e}")
            return ServiceStatus.UNKNOWN

        state = result.stdout.strip()
        if state in ("active", "reloading"):
            return ServiceStatus.RUNNING
        if state in ("inactive", "failed", "dead"):
            # is-active reports "inactive" for unknown units too
            return ServiceStatus.STOPPED if self.exists(name) else ServiceStatus.NOT_FOUND
        if state in ("activating", "deactivating"):
            return ServiceStatus.UNKNOWN
        if classify_failure(result.stderr, result.returncode) == FailureKind.NOT_FOUND:
            return ServiceStatus.NOT_FOUND
        return ServiceStatus.UNKNOWN

    def is_running(self, name: str) -> bool:
        """True only when the unit is active. Unknown units return False."""
        return self.status(name) == ServiceStatus.RUNNING

    def main_pid(self, name: str) -> Optional[int]:
        """PID of the unit's main process, or None when not running."""
        value = self._show(name, "MainPID")
        try:
            pid = int(value) if value else 0
        except ValueError:
            return None
        return pid or None

    def _mutate(self, action: str, name: str, args: List[str]) -> ControlResult:
        try:
            result = self._run(args, mutating=True, timeout=SYSTEMCTL_TIMEOUT_S)
        except subprocess.TimeoutExpired:
            logger.error(f"[service] {action} {name} timed out after {SYSTEMCTL_TIMEOUT_S}s")
            return ControlResult(False, action, name, FailureKind.TIMEOUT, "timed out")
        except OSError as e:
            logger.error(f"[service] {action} {name} could not run: {e}")
            return ControlResult(False, action, name, FailureKind.UNKNOWN, str(e))

        if result.returncode != 0:
            kind = classify_failure(result.stderr, result.returncode)
            detail = result.stderr.strip()
            logger.error(f"[service] {action} {name} failed ({kind.value}): {detail}")
            return ControlResult(False, action, name, kind, detail)
        return ControlResult(True, action, name)

    def start(self, name: str) -> ControlResult:
        """Start the unit; already running is a no-op success."""
        status = self.status(name)
        if status == ServiceStatus.RUNNING:
            logger.debug(f"[service] {name} already running")
            return ControlResult(True, "start", name, noop=True)
        if status == ServiceStatus.NOT_FOUND:
            logger.error(f"[service] Cannot start {name}: unit not found")
            return ControlResult(False, "start", name, FailureKind.NOT_FOUND, "unit not found")

        logger.info(f"[service] Starting {name}")
        return self._mutate("start", name, ["start", name])

    def stop(self, name: str, force: bool = False) -> ControlResult:
        """Stop the unit; already stopped is a no-op success.

        Args:
            name: Unit name
            force: SIGKILL every process in the unit's cgroup before stopping
        """
        status = self.status(name)
        if status == ServiceStatus.NOT_FOUND:
            logger.error(f"[service] Cannot stop {name}: unit not found")
            return ControlResult(False, "stop", name, FailureKind.NOT_FOUND, "unit not found")
        if status == ServiceStatus.STOPPED:
            logger.debug(f"[service] {name} already stopped")
            return ControlResult(True, "stop", name, noop=True)

        if force:
            logger.warning(f"[service] Force-stopping {name}")
            killed = self._mutate("kill", name, ["kill", "--signal=SIGKILL", name])
            if not killed and killed.failure in (FailureKind.NOT_FOUND, FailureKind.ACCESS_DENIED):
                return ControlResult(False, "stop", name, killed.failure, killed.detail)
        else:
            logger.info(f"[service] Stopping {name}")

        result = self._mutate("stop", name, ["stop", name])
        if not result and not self.is_running(name):
            # The unit went down anyway (e.g. SIGKILL landed first)
            return ControlResult(True, "stop", name, detail=result.detail)
        return result

    def restart(self, name: str) -> ControlResult:
        """Stop (if running) then start. A stopped unit is simply started."""
        stopped = self.stop(name)
        if not stopped:
            return ControlResult(False, "restart", name, stopped.failure, stopped.detail)
        started = self.start(name)
        return ControlResult(started.ok, "restart", name, started.failure, started.detail)
