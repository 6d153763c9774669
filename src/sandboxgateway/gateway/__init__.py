"""Backend supervision, CLI bridging and durable storage sync."""

from .cli_bridge import CliBridge, CommandResult, extract_json, is_action_success, wait_for_process
from .devices import BulkApprovalResult, DeviceCli
from .env import build_env_vars
from .probe import GatewayState, ProbeResult, ProcessProbe
from .storage import MountResult, StorageMountManager
from .supervisor import GatewaySupervisor, HealthReport, RestartResult, startup_failure_body, startup_failure_hint
from .sync import SyncEngine, SyncResult

__all__ = [
    "BulkApprovalResult",
    "CliBridge",
    "CommandResult",
    "DeviceCli",
    "GatewayState",
    "GatewaySupervisor",
    "HealthReport",
    "MountResult",
    "ProbeResult",
    "ProcessProbe",
    "RestartResult",
    "StorageMountManager",
    "SyncEngine",
    "SyncResult",
    "build_env_vars",
    "extract_json",
    "is_action_success",
    "startup_failure_body",
    "startup_failure_hint",
    "wait_for_process",
]
