from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Optional, Sequence

from ..errors import GatewayUnavailableError
from ..sandbox.base import Sandbox, SandboxProcess


logger = logging.getLogger(__name__)


class GatewayState(str, Enum):
    ABSENT = "absent"
    STARTING = "starting"
    RUNNING = "running"
    NOT_RESPONDING = "not_responding"
    RESTARTING = "restarting"


@dataclass(frozen=True)
class ProbeResult:
    state: GatewayState
    process: Optional[SandboxProcess] = None
    error: Optional[str] = None

    @property
    def process_id(self) -> Optional[str]:
        return self.process.id if self.process is not None else None


class ProcessProbe:
    """Finds the backend in the sandbox process table and checks its service port.

    Every call re-reads the process table; process handles are never kept between calls.
    """

    def __init__(
        self,
        sandbox: Sandbox,
        *,
        port: int,
        signature: Sequence[str],
        cli_bin: Optional[str] = None,
    ):
        self._sandbox = sandbox
        self._port = int(port)
        self._signature = tuple(s for s in signature if s)
        # CLI helper invocations (`clawdbot devices ...`) share the binary name with the backend.
        self._cli_prefix = f"{cli_bin} " if cli_bin else None

    @property
    def port(self) -> int:
        return self._port

    def matches(self, command: str) -> bool:
        cmd = str(command or "")
        if not any(sig in cmd for sig in self._signature):
            return False
        if self._cli_prefix and cmd.lstrip().startswith(self._cli_prefix):
            return cmd.lstrip().startswith(f"{self._cli_prefix}gateway")
        return True

    async def find_running(self) -> Optional[SandboxProcess]:
        for proc in await self._sandbox.list_processes():
            if proc.status.is_active and self.matches(proc.command):
                return proc
        return None

    async def check_responsive(self, proc: SandboxProcess, *, timeout_s: float) -> bool:
        try:
            await proc.wait_for_port(self._port, timeout_s=timeout_s)
        except GatewayUnavailableError as e:
            logger.debug("process %s not responding on port %s: %s", proc.id, self._port, e)
            return False
        return True

    async def probe(self, *, timeout_s: float) -> ProbeResult:
        proc = await self.find_running()
        if proc is None:
            return ProbeResult(state=GatewayState.ABSENT)
        if await self.check_responsive(proc, timeout_s=timeout_s):
            return ProbeResult(state=GatewayState.RUNNING, process=proc)
        return ProbeResult(state=GatewayState.NOT_RESPONDING, process=proc)
