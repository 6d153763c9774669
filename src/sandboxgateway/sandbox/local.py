"""Local sandbox implementation backed by asyncio subprocesses."""

from __future__ import annotations

import asyncio
import logging
import os
import signal
import tempfile
from pathlib import Path
from typing import Dict, List, Optional, Sequence
from uuid import uuid4

from ..errors import GatewayUnavailableError, PortTimeoutError, SandboxTransportError
from .base import ProcessLogs, ProcessStatus, SandboxProcess


logger = logging.getLogger(__name__)

_MAX_EXITED_RECORDS = 200


class LocalProcess:
    def __init__(self, *, command: str, proc: asyncio.subprocess.Process, host: str = "127.0.0.1"):
        self.id = f"proc_{uuid4().hex[:12]}"
        self.command = command
        self._proc = proc
        self._host = host
        self._killed = False
        self._stdout: List[str] = []
        self._stderr: List[str] = []
        self._pumps = [
            asyncio.ensure_future(self._pump(proc.stdout, self._stdout)),
            asyncio.ensure_future(self._pump(proc.stderr, self._stderr)),
        ]

    @property
    def pid(self) -> int:
        return int(self._proc.pid)

    @property
    def status(self) -> ProcessStatus:
        rc = self._proc.returncode
        if rc is None:
            return ProcessStatus.RUNNING
        if self._killed:
            return ProcessStatus.KILLED
        return ProcessStatus.COMPLETED if rc == 0 else ProcessStatus.FAILED

    @property
    def exit_code(self) -> Optional[int]:
        return self._proc.returncode

    async def get_logs(self) -> ProcessLogs:
        # Let readers drain whatever is already buffered before snapshotting.
        await asyncio.sleep(0)
        if self._proc.returncode is not None:
            await asyncio.wait(self._pumps, timeout=1.0)
        return ProcessLogs(stdout="".join(self._stdout), stderr="".join(self._stderr))

    async def wait_for_port(self, port: int, *, timeout_s: float) -> None:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + max(0.0, float(timeout_s))
        while True:
            remaining = deadline - loop.time()
            if remaining <= 0:
                raise PortTimeoutError(port, timeout_s)
            try:
                _reader, writer = await asyncio.wait_for(
                    asyncio.open_connection(self._host, int(port)), timeout=min(1.0, remaining)
                )
            except (OSError, asyncio.TimeoutError):
                if self._proc.returncode is not None:
                    logs = await self.get_logs()
                    raise GatewayUnavailableError(
                        f"Process exited with code {self._proc.returncode} before port {port} was ready",
                        kind="startup_failed",
                        details=(logs.stderr or logs.stdout)[-4000:] or None,
                    )
                await asyncio.sleep(min(0.25, max(0.0, deadline - loop.time())))
                continue
            writer.close()
            try:
                await writer.wait_closed()
            except OSError:
                pass
            return

    async def kill(self) -> None:
        if self._proc.returncode is not None:
            return
        self._killed = True
        try:
            os.killpg(self._proc.pid, signal.SIGTERM)
        except ProcessLookupError:
            return
        except OSError:
            self._proc.terminate()
        try:
            await asyncio.wait_for(self._proc.wait(), timeout=5.0)
        except asyncio.TimeoutError:
            try:
                os.killpg(self._proc.pid, signal.SIGKILL)
            except OSError:
                self._proc.kill()

    @staticmethod
    async def _pump(stream: Optional[asyncio.StreamReader], sink: List[str]) -> None:
        if stream is None:
            return
        while True:
            chunk = await stream.read(4096)
            if not chunk:
                return
            sink.append(chunk.decode("utf-8", errors="replace"))


class LocalSandbox:
    """Sandbox whose process table is the set of processes it started.

    Processes run in their own session so they can be signalled as a group. Exited
    processes stay listed (with their status and output) until pruned.
    """

    def __init__(self, *, host: str = "127.0.0.1", base_env: Optional[Dict[str, str]] = None):
        self._host = host
        self._base_env = dict(base_env) if base_env is not None else None
        self._processes: Dict[str, LocalProcess] = {}

    async def list_processes(self) -> Sequence[SandboxProcess]:
        self._prune()
        return list(self._processes.values())

    async def start_process(self, command: str, *, env: Optional[Dict[str, str]] = None) -> SandboxProcess:
        merged = dict(self._base_env if self._base_env is not None else os.environ)
        if env:
            merged.update({str(k): str(v) for k, v in env.items()})
        try:
            proc = await asyncio.create_subprocess_shell(
                command,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                env=merged,
                start_new_session=True,
            )
        except OSError as e:
            raise SandboxTransportError(f"Failed to start process: {e}", details=command)
        record = LocalProcess(command=command, proc=proc, host=self._host)
        self._processes[record.id] = record
        logger.debug("sandbox started %s pid=%s: %s", record.id, record.pid, command)
        return record

    async def mount_bucket(
        self,
        bucket: str,
        mount_path: str,
        *,
        endpoint: str,
        access_key_id: str,
        secret_access_key: str,
    ) -> None:
        target = Path(mount_path)
        if os.path.ismount(target):
            raise SandboxTransportError(f"Mount point {mount_path} is already in use")
        target.mkdir(parents=True, exist_ok=True)

        fd, passwd_path = tempfile.mkstemp(prefix=f".passwd-s3fs-{bucket}-")
        try:
            os.fchmod(fd, 0o600)
            os.write(fd, f"{access_key_id}:{secret_access_key}\n".encode("utf-8"))
        finally:
            os.close(fd)

        try:
            proc = await asyncio.create_subprocess_exec(
                "s3fs",
                bucket,
                str(target),
                "-o",
                f"passwd_file={passwd_path}",
                "-o",
                f"url={endpoint}",
                "-o",
                "use_path_request_style",
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
            out, err = await proc.communicate()
        except OSError as e:
            raise SandboxTransportError(f"Failed to run s3fs: {e}")
        finally:
            try:
                os.unlink(passwd_path)
            except OSError:
                pass

        if proc.returncode != 0:
            text = (err or out or b"").decode("utf-8", errors="replace").strip()
            raise SandboxTransportError(text or f"s3fs exited with code {proc.returncode}")

    def service_url(self, port: int, *, scheme: str = "http") -> str:
        return f"{scheme}://{self._host}:{int(port)}"

    def _prune(self) -> None:
        exited = [p for p in self._processes.values() if not p.status.is_active]
        for p in exited[: max(0, len(exited) - _MAX_EXITED_RECORDS)]:
            self._processes.pop(p.id, None)
