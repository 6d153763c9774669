"""Gateway supervisor: keeps exactly one healthy backend process per deployment unit.

States: absent -> starting -> running | not_responding; running -> restarting -> starting.
There is no terminal state; `ensure_running` is re-evaluated on every request against the
live process table, never against a cached flag.
"""

from __future__ import annotations

import asyncio
import logging
import weakref
from dataclasses import dataclass, field
from typing import Any, Dict, Optional, Set

from ..config import GatewayHostConfig
from ..errors import GatewayUnavailableError
from ..sandbox.base import Sandbox, SandboxProcess
from .env import build_env_vars, has_model_credentials
from .probe import GatewayState, ProcessProbe
from .sync import SyncEngine


logger = logging.getLogger(__name__)

# Boot locks are per event loop, then per deployment unit.
_BOOT_LOCKS: "weakref.WeakKeyDictionary[asyncio.AbstractEventLoop, Dict[str, asyncio.Lock]]" = weakref.WeakKeyDictionary()


def _boot_lock(unit_id: str) -> asyncio.Lock:
    loop = asyncio.get_running_loop()
    locks = _BOOT_LOCKS.setdefault(loop, {})
    lock = locks.get(unit_id)
    if lock is None:
        lock = asyncio.Lock()
        locks[unit_id] = lock
    return lock


@dataclass(frozen=True)
class HealthReport:
    status: str
    process_id: Optional[str] = None
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.status == "running"

    def to_dict(self) -> Dict[str, Any]:
        out: Dict[str, Any] = {"ok": self.ok, "status": self.status}
        if self.process_id is not None:
            out["processId"] = self.process_id
        if self.error is not None:
            out["error"] = self.error
        return out


@dataclass
class RestartResult:
    success: bool
    message: str
    previous_process_id: Optional[str] = None
    boot_task: Optional["asyncio.Task[Any]"] = field(default=None, repr=False, compare=False)

    def to_dict(self) -> Dict[str, Any]:
        out: Dict[str, Any] = {"success": self.success, "message": self.message}
        if self.previous_process_id is not None:
            out["previousProcessId"] = self.previous_process_id
        return out


def startup_failure_hint(error: BaseException, config: GatewayHostConfig) -> str:
    text = f"{error} {getattr(error, 'details', '') or ''}"
    if not has_model_credentials(config):
        return "ANTHROPIC_API_KEY is not set. Set it (or AI_GATEWAY_API_KEY) in the gateway environment and retry."
    if "heap out of memory" in text or "OOM" in text:
        return "Gateway ran out of memory. Try again or check for memory leaks."
    if getattr(error, "kind", None) == "not_responding":
        return (
            f"Gateway did not answer on port {config.backend_port} within {config.startup_timeout_s:g}s. "
            "It may still be booting; retry shortly or restart it via /api/admin/gateway/restart."
        )
    return "Check the gateway logs (server output, or /debug/logs when DEBUG_ROUTES=true)."


def startup_failure_body(error: BaseException, config: GatewayHostConfig) -> Dict[str, Any]:
    """JSON body for a request that could not be served because the backend did not come up."""
    details = "\n".join(x for x in (str(error), getattr(error, "details", None)) if x)
    return {
        "error": "Gateway failed to start",
        "details": details or type(error).__name__,
        "hint": startup_failure_hint(error, config),
    }


class GatewaySupervisor:
    def __init__(
        self,
        sandbox: Sandbox,
        probe: ProcessProbe,
        *,
        config: GatewayHostConfig,
        sync_engine: Optional[SyncEngine] = None,
    ):
        self._sandbox = sandbox
        self._probe = probe
        self._config = config
        self._sync_engine = sync_engine
        self._background: Set["asyncio.Task[Any]"] = set()

    @property
    def probe(self) -> ProcessProbe:
        return self._probe

    async def ensure_running(self) -> SandboxProcess:
        """Return a responsive backend process, booting one when none is usable.

        Concurrent callers share one boot attempt per deployment unit.
        """
        async with _boot_lock(self._config.sandbox_id):
            return await self._ensure_running_locked()

    async def _ensure_running_locked(self) -> SandboxProcess:
        existing = await self._probe.find_running()
        if existing is not None:
            # A candidate may be mid-boot; give it the full startup window before replacing it.
            if await self._probe.check_responsive(existing, timeout_s=self._config.startup_timeout_s):
                return existing
            logger.warning(
                "gateway %s -> %s (process %s); restarting",
                GatewayState.STARTING.value,
                GatewayState.NOT_RESPONDING.value,
                existing.id,
            )
            try:
                await existing.kill()
            except Exception as e:
                logger.warning("failed to kill unresponsive gateway process %s: %s", existing.id, e)

        logger.info("gateway %s -> %s", GatewayState.ABSENT.value, GatewayState.STARTING.value)
        await self._restore_before_boot()

        proc = await self._sandbox.start_process(self._config.backend_command, env=build_env_vars(self._config))
        try:
            await proc.wait_for_port(self._config.backend_port, timeout_s=self._config.startup_timeout_s)
        except GatewayUnavailableError as e:
            logs = await proc.get_logs()
            details = "\n".join(x for x in (e.details, logs.stderr, logs.stdout) if x).strip() or None
            logger.error("gateway failed to start (%s): %s", e.kind, e)
            raise GatewayUnavailableError(str(e), kind=e.kind, details=details) from e

        logger.info("gateway %s -> %s (process %s)", GatewayState.STARTING.value, GatewayState.RUNNING.value, proc.id)
        return proc

    async def _restore_before_boot(self) -> None:
        if self._sync_engine is None or not self._config.restore_on_boot or not self._config.r2.configured:
            return
        try:
            outcome = await self._sync_engine.restore(self._config.r2)
        except Exception:
            logger.exception("restore from durable storage failed; booting with local state")
            return
        logger.info("restore before boot: %s", outcome.reason)

    async def health(self) -> HealthReport:
        try:
            result = await self._probe.probe(timeout_s=self._config.health_timeout_s)
        except Exception as e:
            return HealthReport(status="error", error=str(e) or type(e).__name__)
        if result.state == GatewayState.ABSENT:
            return HealthReport(status="not_running")
        return HealthReport(status=result.state.value, process_id=result.process_id)

    async def restart(self) -> RestartResult:
        """Kill the current backend, settle, then boot a new one in the background."""
        existing = await self._probe.find_running()
        if existing is not None:
            logger.info("gateway %s: killing process %s", GatewayState.RESTARTING.value, existing.id)
            try:
                await existing.kill()
            except Exception as e:
                logger.error("error killing gateway process %s: %s", existing.id, e)
            await asyncio.sleep(self._config.restart_settle_s)

        task = self.schedule_boot()
        return RestartResult(
            success=True,
            message=(
                "Gateway process killed, new instance starting..."
                if existing is not None
                else "No existing process found, starting new instance..."
            ),
            previous_process_id=existing.id if existing is not None else None,
            boot_task=task,
        )

    def schedule_boot(self) -> "asyncio.Task[Any]":
        task = asyncio.ensure_future(self.ensure_running())
        self._background.add(task)
        task.add_done_callback(self._on_boot_done)
        return task

    def _on_boot_done(self, task: "asyncio.Task[Any]") -> None:
        self._background.discard(task)
        if task.cancelled():
            return
        err = task.exception()
        if err is not None:
            logger.error("gateway restart failed: %s", err)

    async def aclose(self) -> None:
        for task in list(self._background):
            task.cancel()
        self._background.clear()
