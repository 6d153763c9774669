"""Sandbox runtime interface and implementations."""

from .base import ProcessLogs, ProcessStatus, Sandbox, SandboxProcess
from .local import LocalProcess, LocalSandbox

__all__ = ["LocalProcess", "LocalSandbox", "ProcessLogs", "ProcessStatus", "Sandbox", "SandboxProcess"]
