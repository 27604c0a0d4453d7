"""Read recent entries from the systemd journal."""

import json
import logging
import subprocess
from datetime import datetime
from typing import Any, Dict, List, Optional

logger = logging.getLogger(__name__)

JOURNAL_TIMEOUT_S = 15


class JournalReader:
    """Thin wrapper over ``journalctl -o json``."""

    def __init__(self, journalctl: str = "journalctl", max_entries: int = 2000):
        self.journalctl = journalctl
        self.max_entries = max_entries

    def entries(self, since: datetime, unit: Optional[str] = None) -> List[Dict[str, Any]]:
        """Journal entries newer than ``since``.

        Args:
            since: Lower time bound (local time)
            unit: Restrict to entries about this unit (``journalctl -u``)

        Returns:
            Parsed entries; empty list if journalctl is unavailable
        """
        cmd = [
            self.journalctl,
            "--since", since.strftime("%Y-%m-%d %H:%M:%S"),
            "-o", "json",
            "--no-pager",
            "-n", str(self.max_entries),
        ]
        if unit:
            cmd += ["-u", unit]

        try:
            result = subprocess.run(cmd, capture_output=True, text=True, timeout=JOURNAL_TIMEOUT_S)
        except (subprocess.TimeoutExpired, OSError) as e:
            logger.warning(f"[journal] journalctl failed: {e}")
            return []

        if result.returncode != 0:
            logger.warning(f"[journal] journalctl exited {result.returncode}: {result.stderr.strip()}")
            return []

        entries = []
        for line in result.stdout.splitlines():
            line = line.strip()
            if not line:
                continue
            try:
                entries.append(json.loads(line))
            except json.JSONDecodeError:
                continue
        return entries


def entry_time(entry: Dict[str, Any]) -> Optional[datetime]:
    """Local timestamp of a journal entry (``__REALTIME_TIMESTAMP`` is in µs)."""
    raw = entry.get("__REALTIME_TIMESTAMP")
    if raw is None:
        return None
    try:
        return datetime.fromtimestamp(int(raw) / 1_000_000)
    except (TypeError, ValueError, OSError):
        return None


def entry_message(entry: Dict[str, Any]) -> str:
    message = entry.get("MESSAGE", "")
    # journald emits non-UTF8 messages as byte arrays
    if isinstance(message, list):
        try:
            return bytes(message).decode("utf-8", errors="replace")
        except (TypeError, ValueError):
            return ""
    return str(message)
