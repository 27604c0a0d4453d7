"""Service supervision: control, diagnosis, stop classification, repair."""

from .control import ServiceController, ServiceStatus, ControlResult, FailureKind
from .process_tree import ProcessTable, ProcessRecord, ProcessTreeResolver, Resolution
from .health import HealthDiagnostician, HealthVerdict
from .stop_classifier import StopClassifier, Evidence
from .repair import RepairEscalator, RepairOutcome, RepairState
from .startup import StartupWatcher

__all__ = [
    "ServiceController",
    "ServiceStatus",
    "ControlResult",
    "FailureKind",
    "ProcessTable",
    "ProcessRecord",
    "ProcessTreeResolver",
    "Resolution",
    "HealthDiagnostician",
    "HealthVerdict",
    "StopClassifier",
    "Evidence",
    "RepairEscalator",
    "RepairOutcome",
    "RepairState",
    "StartupWatcher",
]
