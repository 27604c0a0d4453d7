"""
Resolve the real game-server process behind a systemd unit.

Units often launch the server through a thin wrapper (screen, tmux, a
start script). The wrapper is the unit's MainPID; the workload is one of its
direct children. Lookups return value snapshots and never keep a live
``psutil.Process`` past a single call.
"""

import fnmatch
import logging
from dataclasses import dataclass
from typing import Iterable, List, Optional

import psutil

logger = logging.getLogger(__name__)

_GONE = (psutil.NoSuchProcess, psutil.ZombieProcess, psutil.AccessDenied)


@dataclass(frozen=True)
class ProcessRecord:
    """Snapshot of one OS process."""
    pid: int
    name: str
    ppid: int


@dataclass(frozen=True)
class Resolution:
    """Result of walking from the unit's main process to the workload."""
    service_pid: Optional[int]
    wrapper: Optional[ProcessRecord]
    leaf: Optional[ProcessRecord]


class ProcessTable:
    """Query interface over the OS process table (psutil-backed)."""

    def get(self, pid: int) -> Optional[ProcessRecord]:
        try:
            proc = psutil.Process(pid)
            with proc.oneshot():
                return ProcessRecord(pid=proc.pid, name=proc.name(), ppid=proc.ppid())
        except _GONE:
            return None

    def children_of(self, pid: int) -> List[ProcessRecord]:
        children = []
        for proc in psutil.process_iter(['pid', 'name', 'ppid']):
            try:
                if proc.info['ppid'] == pid:
                    children.append(ProcessRecord(
                        pid=proc.info['pid'],
                        name=proc.info['name'] or "",
                        ppid=proc.info['ppid']
                    ))
            except _GONE:
                continue
        return children

    def kill(self, pid: int) -> bool:
        """SIGKILL a process. A process that is already gone counts as killed."""
        try:
            psutil.Process(pid).kill()
            logger.warning(f"[process] Killed PID {pid}")
            return True
        except (psutil.NoSuchProcess, psutil.ZombieProcess):
            logger.info(f"[process] PID {pid} already gone")
            return True
        except psutil.AccessDenied as e:
            logger.error(f"[process] Access denied killing PID {pid}: {e}")
            return False


def _matches(name: str, patterns: Iterable[str]) -> bool:
    lowered = name.lower()
    return any(fnmatch.fnmatch(lowered, pattern.lower()) for pattern in patterns)


class ProcessTreeResolver:
    """Finds the workload (leaf) process for a service."""

    def __init__(
        self,
        controller,
        wrapper_names: Iterable[str],
        workload_names: Iterable[str],
        table: Optional[ProcessTable] = None
    ):
        """Initialize resolver.

        Args:
            controller: Object exposing ``main_pid(service_name)``
            wrapper_names: Process names (glob patterns) that are wrappers
            workload_names: Glob patterns the workload process name matches
            table: Process table; defaults to the psutil-backed one
        """
        self.controller = controller
        self.wrapper_names = list(wrapper_names)
        self.workload_names = list(workload_names)
        self.table = table or ProcessTable()
        self._last_leaf_pid: Optional[int] = None

    def is_wrapper(self, record: ProcessRecord) -> bool:
        return _matches(record.name, self.wrapper_names)

    def resolve_tree(self, service_name: str) -> Resolution:
        """Walk one level below the service's main process if it is a wrapper."""
        service_pid = self.controller.main_pid(service_name)
        if not service_pid:
            return self._remember(Resolution(None, None, None), service_name)

        main = self.table.get(service_pid)
        if main is None:
            return self._remember(Resolution(service_pid, None, None), service_name)

        if not self.is_wrapper(main):
            return self._remember(Resolution(service_pid, None, main), service_name)

        candidates = [
            child for child in self.table.children_of(main.pid)
            if _matches(child.name, self.workload_names)
        ]
        if len(candidates) != 1:
            if len(candidates) > 1:
                pids = ", ".join(str(c.pid) for c in candidates)
                logger.warning(f"[process] Ambiguous workload under {main.name} ({main.pid}): {pids}")
            return self._remember(Resolution(service_pid, main, None), service_name)

        # The child may have exited between enumeration and now
        leaf = self.table.get(candidates[0].pid)
        return self._remember(Resolution(service_pid, main, leaf), service_name)

    def resolve(self, service_name: str) -> Optional[ProcessRecord]:
        """Leaf process record, or None on absence/ambiguity."""
        return self.resolve_tree(service_name).leaf

    def _remember(self, resolution: Resolution, service_name: str) -> Resolution:
        leaf_pid = resolution.leaf.pid if resolution.leaf else None
        if leaf_pid != self._last_leaf_pid:
            if resolution.leaf:
                via = f" via {resolution.wrapper.name} ({resolution.wrapper.pid})" if resolution.wrapper else ""
                logger.info(
                    f"[process] {service_name} workload is {resolution.leaf.name} "
                    f"(PID {resolution.leaf.pid}){via}"
                )
            else:
                logger.info(f"[process] {service_name} workload process not found")
            self._last_leaf_pid = leaf_pid
        return resolution
