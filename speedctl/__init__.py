"""Speed test controller -- server selection, run lifecycle, and progress."""

from .catalog import ServerCatalog
from .controller import SpeedtestController
from .errors import InvalidServerDefinition, InvalidStateTransition, SpeedctlError
from .probe import LatencyProbe
from .selector import ServerSelector, best_candidate, partition
from .servers import ServerCandidate, ServerDefinition, validate_server
from .snapshot import StatusSnapshot
from .state import RunState, TestPhase
from .stats import calculate_jitter, calculate_speed_mbps, format_latency, format_speed
from .worker import TransferWorker

__all__ = [
    "InvalidServerDefinition",
    "InvalidStateTransition",
    "LatencyProbe",
    "RunState",
    "ServerCandidate",
    "ServerCatalog",
    "ServerDefinition",
    "ServerSelector",
    "SpeedctlError",
    "SpeedtestController",
    "StatusSnapshot",
    "TestPhase",
    "TransferWorker",
    "best_candidate",
    "calculate_jitter",
    "calculate_speed_mbps",
    "format_latency",
    "format_speed",
    "partition",
    "validate_server",
]
