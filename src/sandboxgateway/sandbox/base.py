"""Sandbox runtime interface."""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Dict, Optional, Protocol, Sequence


class ProcessStatus(str, Enum):
    STARTING = "starting"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    KILLED = "killed"
    ERROR = "error"

    @property
    def is_active(self) -> bool:
        return self in (ProcessStatus.STARTING, ProcessStatus.RUNNING)

    @property
    def lifecycle(self) -> str:
        """Collapse runtime statuses onto starting|running|exited|unknown."""
        if self in (ProcessStatus.STARTING, ProcessStatus.RUNNING):
            return self.value
        if self in (ProcessStatus.COMPLETED, ProcessStatus.FAILED, ProcessStatus.KILLED):
            return "exited"
        return "unknown"


@dataclass(frozen=True)
class ProcessLogs:
    stdout: str = ""
    stderr: str = ""


class SandboxProcess(Protocol):
    id: str
    command: str

    @property
    def status(self) -> ProcessStatus:
        ...

    @property
    def exit_code(self) -> Optional[int]:
        ...

    async def get_logs(self) -> ProcessLogs:
        ...

    async def wait_for_port(self, port: int, *, timeout_s: float) -> None:
        ...

    async def kill(self) -> None:
        ...


class Sandbox(Protocol):
    async def list_processes(self) -> Sequence[SandboxProcess]:
        ...

    async def start_process(self, command: str, *, env: Optional[Dict[str, str]] = None) -> SandboxProcess:
        ...

    async def mount_bucket(
        self,
        bucket: str,
        mount_path: str,
        *,
        endpoint: str,
        access_key_id: str,
        secret_access_key: str,
    ) -> None:
        ...

    def service_url(self, port: int, *, scheme: str = "http") -> str:
        ...
