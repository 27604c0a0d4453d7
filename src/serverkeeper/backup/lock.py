"""
Per-root backup gate.

Only one backup may write into a backup root at a time, whether triggered by
the schedule, by hand, or by a second keeper process. Uses an fcntl lock on a
file inside the root with PID metadata for diagnostics.
"""

import fcntl
import json
import logging
import os
import socket
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

logger = logging.getLogger(__name__)

LOCK_NAME = ".serverkeeper-backup.lock"


class BackupInProgress(RuntimeError):
    """Another backup holds the lock for this root."""


@dataclass
class BackupLock:
    """Held lock on a backup root. Use as a context manager."""
    root: Path
    pid: int
    hostname: str
    started_at: float
    path: Path
    _fd: Optional[int] = None

    def release(self) -> None:
        if self._fd is None:
            return
        try:
            fcntl.flock(self._fd, fcntl.LOCK_UN)
            os.close(self._fd)
            logger.debug(f"[backup-lock] Released {self.path}")
        except OSError as e:
            logger.error(f"[backup-lock] Error releasing {self.path}: {e}")
        finally:
            self._fd = None

    def __enter__(self) -> "BackupLock":
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.release()


def _holder_description(lock_path: Path) -> str:
    try:
        data = json.loads(lock_path.read_text())
        return f"PID {data.get('pid')} on {data.get('hostname')}"
    except (OSError, ValueError):
        return "another process"


def acquire(root: Path) -> BackupLock:
    """Take the backup lock for ``root`` without blocking.

    Raises:
        BackupInProgress: If another holder has the lock
    """
    root = Path(root)
    root.mkdir(parents=True, exist_ok=True)
    lock_path = root / LOCK_NAME

    fd = os.open(lock_path, os.O_CREAT | os.O_RDWR, 0o600)
    try:
        fcntl.flock(fd, fcntl.LOCK_EX | fcntl.LOCK_NB)
    except BlockingIOError:
        os.close(fd)
        raise BackupInProgress(f"Backup already running in {root} ({_holder_description(lock_path)})")
    except OSError:
        os.close(fd)
        raise

    handle = BackupLock(
        root=root,
        pid=os.getpid(),
        hostname=socket.gethostname(),
        started_at=time.time(),
        path=lock_path,
        _fd=fd
    )
    try:
        os.lseek(fd, 0, os.SEEK_SET)
        os.ftruncate(fd, 0)
        os.write(fd, json.dumps({
            "pid": handle.pid,
            "hostname": handle.hostname,
            "started_at": handle.started_at,
        }).encode())
    except OSError as e:
        # Metadata is informational; the flock is what matters
        logger.warning(f"[backup-lock] Could not write lock metadata: {e}")

    logger.debug(f"[backup-lock] Acquired {lock_path}")
    return handle
