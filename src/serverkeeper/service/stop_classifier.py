"""
Decide whether a stopped server was shut down on purpose or crashed.

Evidence providers are consulted in order of confidence and the first match
wins. No match means crash: an unexplained stop gets repaired.
"""

import logging
import os
import re
from dataclasses import dataclass
from datetime import datetime, timedelta
from pathlib import Path
from typing import List, Optional

from ..journal import JournalReader, entry_message, entry_time

logger = logging.getLogger(__name__)

DEFAULT_LOOKBACK = timedelta(minutes=10)
TAIL_LINES = 20

STOP_VOCABULARY = re.compile(r"\b(stop(ped|ping)?|terminat(e|ed|ing)|shut(ting)?\s?down)\b", re.I)
SYSTEMD_STOP_MESSAGE = re.compile(r"^(Stopping|Stopped)\b", re.I)

CLEAN_SHUTDOWN_PATTERNS = [
    re.compile(r"server (is )?shutting down", re.I),
    re.compile(r"shutdown complete", re.I),
    re.compile(r"stopping (the )?server", re.I),
    re.compile(r"saving (the )?world", re.I),
    re.compile(r"all (chunks|worlds?) (are )?saved", re.I),
    re.compile(r"received (sigterm|sigint|shutdown request)", re.I),
    re.compile(r"exiting gracefully", re.I),
]


@dataclass(frozen=True)
class Evidence:
    """One provider's finding."""
    source: str
    matched: bool
    confidence: float
    detail: str = ""


@dataclass(frozen=True)
class StopContext:
    service_name: str
    data_dir: Optional[Path]
    since: datetime
    now: datetime


def tail_lines(path: Path, count: int = TAIL_LINES, block_size: int = 4096) -> List[str]:
    """Last ``count`` lines of a file, reading backwards in fixed blocks."""
    with open(path, "rb") as f:
        f.seek(0, os.SEEK_END)
        position = f.tell()
        data = b""
        while position > 0 and data.count(b"\n") <= count:
            step = min(block_size, position)
            position -= step
            f.seek(position)
            data = f.read(step) + data
    lines = data.decode("utf-8", errors="replace").splitlines()
    return lines[-count:]


class EvidenceProvider:
    """Base class for stop evidence sources."""

    name = "evidence"
    confidence = 0.0

    def collect(self, ctx: StopContext) -> Evidence:
        raise NotImplementedError

    def _miss(self, detail: str = "") -> Evidence:
        return Evidence(self.name, False, 0.0, detail)

    def _hit(self, detail: str) -> Evidence:
        return Evidence(self.name, True, self.confidence, detail)


class ApplicationLogEvidence(EvidenceProvider):
    """A non-systemd journal entry naming the service with stop vocabulary.

    Typically the sudo audit line of an operator running
    ``systemctl stop <unit>`` or a management tool logging its action.
    Kernel messages (an OOM kill names the unit's cgroup) and the keeper's
    own log lines are not operator actions and are skipped.
    """

    name = "application_log"
    confidence = 0.9

    def __init__(self, journal: JournalReader, own_identifiers=("serverkeeper",)):
        self.journal = journal
        self.own_identifiers = set(own_identifiers)

    def _ignored(self, entry: dict) -> bool:
        identifier = entry.get("SYSLOG_IDENTIFIER")
        if entry.get("_PID") == "1" or identifier == "systemd":
            return True
        if identifier == "kernel" or entry.get("_TRANSPORT") == "kernel":
            return True
        return identifier in self.own_identifiers or entry.get("_PID") == str(os.getpid())

    def collect(self, ctx: StopContext) -> Evidence:
        service = ctx.service_name.lower()
        short = service[:-len(".service")] if service.endswith(".service") else service
        for entry in self.journal.entries(ctx.since):
            if self._ignored(entry):
                continue
            when = entry_time(entry)
            if when is not None and when < ctx.since:
                continue
            message = entry_message(entry)
            lowered = message.lower()
            if (service in lowered or short in lowered) and STOP_VOCABULARY.search(message):
                return self._hit(message.strip()[:200])
        return self._miss()


class ServiceStateEvidence(EvidenceProvider):
    """systemd itself recorded a stop job for the unit."""

    name = "service_state"
    confidence = 0.8

    def __init__(self, journal: JournalReader):
        self.journal = journal

    def collect(self, ctx: StopContext) -> Evidence:
        for entry in self.journal.entries(ctx.since, unit=ctx.service_name):
            if entry.get("_PID") != "1" and entry.get("SYSLOG_IDENTIFIER") != "systemd":
                continue
            when = entry_time(entry)
            if when is not None and when < ctx.since:
                continue
            if entry.get("JOB_TYPE") == "stop":
                return self._hit(f"stop job {entry.get('JOB_RESULT', 'queued')}")
            message = entry_message(entry)
            if SYSTEMD_STOP_MESSAGE.search(message) and "failed" not in message.lower():
                return self._hit(message.strip()[:200])
        return self._miss()


class CleanShutdownLogEvidence(EvidenceProvider):
    """The server's own log ends with a clean shutdown sequence."""

    name = "clean_shutdown_log"
    confidence = 0.6

    def __init__(self, log_name: str):
        self.log_name = log_name

    def collect(self, ctx: StopContext) -> Evidence:
        if ctx.data_dir is None:
            return self._miss("no data directory")
        log_path = Path(ctx.data_dir) / self.log_name
        try:
            lines = tail_lines(log_path)
        except OSError as e:
            return self._miss(f"log unreadable: {e}")
        for line in reversed(lines):
            for pattern in CLEAN_SHUTDOWN_PATTERNS:
                if pattern.search(line):
                    return self._hit(line.strip()[:200])
        return self._miss()


class TimeOfDayHint(EvidenceProvider):
    """Stops in the small hours look like scheduled maintenance.

    Recorded for diagnostics only; never decides the classification.
    """

    name = "time_of_day"
    confidence = 0.1

    def __init__(self, start_hour: int = 3, end_hour: int = 6):
        self.start_hour = start_hour
        self.end_hour = end_hour

    def collect(self, ctx: StopContext) -> Evidence:
        hour = ctx.now.hour
        if self.start_hour <= hour < self.end_hour:
            return self._hit(f"stopped at {ctx.now:%H:%M}, inside maintenance hours")
        return self._miss(f"stopped at {ctx.now:%H:%M}")


class StopClassifier:
    """Ordered evidence aggregation: intentional stop vs crash."""

    def __init__(self, providers: List[EvidenceProvider], hints: Optional[List[EvidenceProvider]] = None):
        self.providers = providers
        self.hints = hints if hints is not None else [TimeOfDayHint()]

    @classmethod
    def default(cls, log_name: str, journal: Optional[JournalReader] = None) -> "StopClassifier":
        journal = journal or JournalReader()
        return cls([
            ApplicationLogEvidence(journal),
            ServiceStateEvidence(journal),
            CleanShutdownLogEvidence(log_name),
        ])

    def was_intentional(
        self,
        service_name: str,
        data_dir: Optional[Path] = None,
        lookback: timedelta = DEFAULT_LOOKBACK,
        now: Optional[datetime] = None,
        not_before: Optional[datetime] = None
    ) -> bool:
        """True if the stop was intentional, False for a crash.

        ``not_before`` raises the start of the evidence window, so stop records
        left by the keeper's own repair are not read as an operator's stop.
        """
        now = now or datetime.now()
        since = now - lookback
        if not_before is not None and not_before > since:
            since = not_before
        ctx = StopContext(service_name, data_dir, since, now)

        for hint in self.hints:
            try:
                evidence = hint.collect(ctx)
                logger.debug(f"[stop] hint {evidence.source}: matched={evidence.matched} {evidence.detail}")
            except Exception as e:
                logger.debug(f"[stop] hint {hint.name} failed: {e}")

        for provider in self.providers:
            try:
                evidence = provider.collect(ctx)
            except Exception as e:
                logger.warning(f"[stop] {provider.name} evidence failed: {e}")
                continue
            if evidence.matched:
                logger.info(
                    f"[stop] {service_name} stop classified intentional "
                    f"({evidence.source}, confidence {evidence.confidence:.1f}): {evidence.detail}"
                )
                return True

        logger.warning(f"[stop] No shutdown evidence for {service_name}; treating as crash")
        return False
