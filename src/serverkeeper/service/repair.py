"""
Escalating repair: graceful stop, forced kills, forced stop, restart.

The sequence is an explicit state machine driven by one transition function.
Every step tolerates an earlier step having already done its job (a process
that is gone, a unit that is already stopped).
"""

import logging
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, List, Optional

from .process_tree import ProcessTable, Resolution

logger = logging.getLogger(__name__)

DEFAULT_COOLDOWN_S = 5.0
DEFAULT_SETTLE_S = 2.0


class RepairState(Enum):
    DETECTED = "detected"
    GRACEFUL_STOP_ATTEMPTED = "graceful_stop_attempted"
    GRACEFUL_SUCCEEDED = "graceful_succeeded"
    GRACEFUL_FAILED = "graceful_failed"
    FORCED_CHILD_KILL = "forced_child_kill"
    FORCED_PARENT_KILL = "forced_parent_kill"
    SERVICE_FORCE_STOP = "service_force_stop"
    COOLDOWN = "cooldown"
    RESTARTED = "restarted"
    SUCCESS = "success"
    FAILED = "failed"


TERMINAL_STATES = (RepairState.SUCCESS, RepairState.FAILED)


@dataclass
class RepairContext:
    """Mutable scratch state for one repair run."""
    service_name: str
    graceful_ok: bool = False
    resolution: Optional[Resolution] = None
    killed_pids: List[int] = field(default_factory=list)
    kill_failures: List[int] = field(default_factory=list)
    restart_ok: bool = False
    reason: str = ""


@dataclass
class RepairOutcome:
    success: bool
    service_name: str
    states: List[RepairState]
    killed_pids: List[int]
    forced: bool
    reason: str

    def to_dict(self):
        return {
            "success": self.success,
            "service": self.service_name,
            "states": [s.value for s in self.states],
            "killed_pids": self.killed_pids,
            "forced": self.forced,
            "reason": self.reason,
        }


class RepairEscalator:
    """Drives one service through the repair state machine."""

    def __init__(
        self,
        controller,
        resolver,
        table: Optional[ProcessTable] = None,
        cooldown_s: float = DEFAULT_COOLDOWN_S,
        settle_s: float = DEFAULT_SETTLE_S,
        sleep: Callable[[float], None] = time.sleep
    ):
        """Initialize escalator.

        Args:
            controller: ServiceController (start/stop/is_running)
            resolver: ProcessTreeResolver
            table: Process table used for forced kills
            cooldown_s: Wait between stopping and restarting
            settle_s: Wait between killing the workload and its wrapper
            sleep: Blocking sleep function
        """
        self.controller = controller
        self.resolver = resolver
        self.table = table or resolver.table
        self.cooldown_s = cooldown_s
        self.settle_s = settle_s
        self._sleep = sleep

    def repair(self, service_name: str) -> RepairOutcome:
        """Run the full escalation. Never raises."""
        ctx = RepairContext(service_name=service_name)
        state = RepairState.DETECTED
        states = [state]
        logger.warning(f"[repair] Repair started for {service_name}")

        while state not in TERMINAL_STATES:
            try:
                state = self._transition(state, ctx)
            except Exception as e:
                logger.error(f"[repair] Unexpected error in {state.value}: {e}")
                ctx.reason = f"error in {state.value}: {e}"
                state = RepairState.FAILED
            states.append(state)

        success = state == RepairState.SUCCESS
        if success:
            logger.info(f"[repair] {service_name} repaired ({' -> '.join(s.value for s in states)})")
        else:
            logger.error(f"[repair] {service_name} repair failed: {ctx.reason}")

        return RepairOutcome(
            success=success,
            service_name=service_name,
            states=states,
            killed_pids=list(ctx.killed_pids),
            forced=RepairState.GRACEFUL_FAILED in states,
            reason=ctx.reason or ("restarted" if success else "restart failed")
        )

    def _transition(self, state: RepairState, ctx: RepairContext) -> RepairState:
        name = ctx.service_name

        if state == RepairState.DETECTED:
            result = self.controller.stop(name, force=False)
            ctx.graceful_ok = bool(result) and not self.controller.is_running(name)
            return RepairState.GRACEFUL_STOP_ATTEMPTED

        if state == RepairState.GRACEFUL_STOP_ATTEMPTED:
            if ctx.graceful_ok:
                logger.info(f"[repair] Graceful stop of {name} succeeded")
                return RepairState.GRACEFUL_SUCCEEDED
            logger.warning(f"[repair] Graceful stop of {name} failed, escalating")
            return RepairState.GRACEFUL_FAILED

        if state == RepairState.GRACEFUL_SUCCEEDED:
            return RepairState.COOLDOWN

        if state == RepairState.GRACEFUL_FAILED:
            ctx.resolution = self.resolver.resolve_tree(name)
            return RepairState.FORCED_CHILD_KILL

        if state == RepairState.FORCED_CHILD_KILL:
            resolution = ctx.resolution
            if resolution and resolution.leaf:
                self._kill(resolution.leaf.pid, ctx)
                if resolution.wrapper:
                    self._sleep(self.settle_s)
            elif resolution and resolution.service_pid and not resolution.wrapper:
                self._kill(resolution.service_pid, ctx)
            return RepairState.FORCED_PARENT_KILL

        if state == RepairState.FORCED_PARENT_KILL:
            resolution = ctx.resolution
            if resolution and resolution.wrapper:
                self._kill(resolution.wrapper.pid, ctx)
            return RepairState.SERVICE_FORCE_STOP

        if state == RepairState.SERVICE_FORCE_STOP:
            result = self.controller.stop(name, force=True)
            if not result:
                logger.warning(f"[repair] Forced stop of {name} reported failure, continuing: {result.detail}")
            return RepairState.COOLDOWN

        if state == RepairState.COOLDOWN:
            logger.info(f"[repair] Cooling down {self.cooldown_s:.0f}s before restarting {name}")
            self._sleep(self.cooldown_s)
            return RepairState.RESTARTED

        if state == RepairState.RESTARTED:
            result = self.controller.start(name)
            ctx.restart_ok = bool(result)
            if not ctx.restart_ok:
                detail = getattr(result, "detail", "")
                ctx.reason = f"restart failed: {detail}" if detail else "restart failed"
                return RepairState.FAILED
            return RepairState.SUCCESS

        raise ValueError(f"No transition from {state}")

    def _kill(self, pid: int, ctx: RepairContext) -> None:
        if pid in ctx.killed_pids:
            return
        if self.table.kill(pid):
            ctx.killed_pids.append(pid)
        else:
            ctx.kill_failures.append(pid)
            logger.error(f"[repair] Could not kill PID {pid} for {ctx.service_name}")
