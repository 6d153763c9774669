from __future__ import annotations

import datetime
import os
import shlex
from typing import Any, Dict, List, Optional, Set, Union

import pytest

from sandboxgateway.config import INTEGRATION_ENV_NAMES, GatewayHostConfig, R2Credentials
from sandboxgateway.errors import GatewayUnavailableError, PortTimeoutError, SandboxTransportError
from sandboxgateway.sandbox.base import ProcessLogs, ProcessStatus
from sandboxgateway.security import GatewayAuthPolicy


_GATEWAY_ENV = (
    "R2_ACCESS_KEY_ID",
    "R2_SECRET_ACCESS_KEY",
    "CF_ACCOUNT_ID",
    "R2_BUCKET_NAME",
    "DEV_MODE",
    "DEBUG_ROUTES",
    "SANDBOX_SLEEP_AFTER",
    "CLAWDBOT_GATEWAY_TOKEN",
    "CF_ACCESS_TEAM_DOMAIN",
    "CF_ACCESS_AUD",
    "ANTHROPIC_API_KEY",
    "ANTHROPIC_BASE_URL",
    "AI_GATEWAY_API_KEY",
    "AI_GATEWAY_BASE_URL",
    "OPENAI_API_KEY",
    "SANDBOXGATEWAY_AUTH_ENABLED",
)


@pytest.fixture(autouse=True)
def _isolate_gateway_env(monkeypatch: pytest.MonkeyPatch) -> None:
    # Never pick up a developer's real credentials or tokens.
    for name in (*_GATEWAY_ENV, *INTEGRATION_ENV_NAMES):
        monkeypatch.delenv(name, raising=False)
    for name in list(os.environ):
        if name.startswith("SANDBOXGATEWAY_"):
            monkeypatch.delenv(name, raising=False)


@pytest.fixture(autouse=True)
def _reset_gateway_service():
    from sandboxgateway.service import set_gateway_service

    set_gateway_service(None)
    yield
    set_gateway_service(None)


def _now_iso() -> str:
    return datetime.datetime.now(datetime.timezone.utc).isoformat(timespec="seconds")


class FakeProcess:
    _seq = 0

    def __init__(
        self,
        command: str,
        *,
        status: ProcessStatus = ProcessStatus.COMPLETED,
        exit_code: Optional[int] = 0,
        stdout: str = "",
        stderr: str = "",
        port_ok: bool = True,
        env: Optional[Dict[str, str]] = None,
    ):
        FakeProcess._seq += 1
        self.id = f"fake_{FakeProcess._seq}"
        self.command = command
        self.env = dict(env or {})
        self._status = status
        self._exit_code = exit_code
        self.stdout = stdout
        self.stderr = stderr
        self.port_ok = port_ok
        self.kill_calls = 0

    @property
    def status(self) -> ProcessStatus:
        return self._status

    @status.setter
    def status(self, value: ProcessStatus) -> None:
        self._status = value

    @property
    def exit_code(self) -> Optional[int]:
        return self._exit_code

    async def get_logs(self) -> ProcessLogs:
        return ProcessLogs(stdout=self.stdout, stderr=self.stderr)

    async def wait_for_port(self, port: int, *, timeout_s: float) -> None:
        if self._status == ProcessStatus.FAILED:
            raise GatewayUnavailableError(f"Process exited with code {self._exit_code} before port {port} was ready")
        if not self.port_ok:
            raise PortTimeoutError(port, timeout_s)

    async def kill(self) -> None:
        self.kill_calls += 1
        self._status = ProcessStatus.KILLED
        self._exit_code = -15


class FakeSandbox:
    """In-memory sandbox that answers the shell commands the gateway issues."""

    def __init__(self, *, backend_command: str = "/usr/local/bin/start-clawdbot.sh"):
        self.backend_command = backend_command
        self.processes: List[FakeProcess] = []
        self.commands: List[str] = []
        self.files: Set[str] = set()
        self.markers: Dict[str, str] = {}

        self.mounted = False
        self.mount_calls = 0
        self.mount_error: Optional[str] = None

        self.mirror_calls = 0
        self.mirror_fails = False
        self.marker_stale = False
        self.restore_calls = 0
        self.restore_hangs = False

        self.boots: List[FakeProcess] = []
        self.boot_port_ok = True
        self.boot_fails_with: Optional[str] = None

        self.devices_stdout = '{"pending": [], "paired": []}'
        self.approvals: Dict[str, Union[Exception, tuple]] = {}
        self.stuck_commands: Set[str] = set()
        self.start_error: Optional[Exception] = None

    def add_process(self, command: str, **kwargs: Any) -> FakeProcess:
        kwargs.setdefault("status", ProcessStatus.RUNNING)
        kwargs.setdefault("exit_code", None)
        proc = FakeProcess(command, **kwargs)
        self.processes.append(proc)
        return proc

    async def list_processes(self):
        return list(self.processes)

    async def start_process(self, command: str, *, env: Optional[Dict[str, str]] = None) -> FakeProcess:
        self.commands.append(command)
        if self.start_error is not None:
            raise self.start_error
        if command == self.backend_command:
            proc = self._boot(command, env)
        else:
            proc = self._run_helper(command)
        self.processes.append(proc)
        return proc

    async def mount_bucket(self, bucket, mount_path, *, endpoint, access_key_id, secret_access_key) -> None:
        self.mount_calls += 1
        if self.mount_error:
            raise SandboxTransportError(self.mount_error)
        self.mounted = True

    def service_url(self, port: int, *, scheme: str = "http") -> str:
        return f"{scheme}://127.0.0.1:{int(port)}"

    def _boot(self, command: str, env: Optional[Dict[str, str]]) -> FakeProcess:
        if self.boot_fails_with is not None:
            proc = FakeProcess(command, status=ProcessStatus.FAILED, exit_code=1, stderr=self.boot_fails_with, env=env)
        else:
            proc = FakeProcess(command, status=ProcessStatus.RUNNING, exit_code=None, port_ok=self.boot_port_ok, env=env)
        self.boots.append(proc)
        return proc

    def _run_helper(self, command: str) -> FakeProcess:
        if command in self.stuck_commands:
            return FakeProcess(command, status=ProcessStatus.RUNNING, exit_code=None, stdout="partial output")

        if command.startswith("mount |"):
            needle = shlex.split(command.split("|", 1)[1])[-1]
            if self.mounted:
                return FakeProcess(command, stdout=f"{needle}type fuse.s3fs (rw,nosuid,nodev)\n")
            return FakeProcess(command, exit_code=1)

        argv = shlex.split(command)

        if argv[:2] == ["test", "-f"]:
            return FakeProcess(command, stdout="ok\n" if argv[2] in self.files else "", exit_code=0 if argv[2] in self.files else 1)

        if argv[:2] == ["mkdir", "-p"]:
            self.restore_calls += 1
            if self.restore_hangs:
                return FakeProcess(command, status=ProcessStatus.RUNNING, exit_code=None)
            data_dir = argv[2]
            src, dst = argv[-2], argv[-1]
            if src in self.markers:
                self.markers[dst] = self.markers[src]
            self.files.add(f"{data_dir.rstrip('/')}/clawdbot.json")
            return FakeProcess(command)

        if argv[0] == "rsync":
            self.mirror_calls += 1
            if self.mirror_fails:
                return FakeProcess(command, exit_code=23, stderr="rsync error: some files could not be transferred")
            if not self.marker_stale:
                marker = shlex.split(command.rsplit(">", 1)[1])[0]
                self.markers[marker] = _now_iso()
            return FakeProcess(command)

        if argv[0] == "cat":
            return FakeProcess(command, stdout=self.markers.get(argv[1], ""))

        if argv[1:3] == ["devices", "list"]:
            return FakeProcess(command, stdout=self.devices_stdout)

        if argv[1:3] == ["devices", "approve"]:
            outcome = self.approvals.get(argv[3], ("Device approved", 0))
            if isinstance(outcome, Exception):
                raise outcome
            stdout, code = outcome
            return FakeProcess(command, stdout=stdout, exit_code=code, status=ProcessStatus.COMPLETED if code == 0 else ProcessStatus.FAILED)

        return FakeProcess(command)


@pytest.fixture
def fake_sandbox() -> FakeSandbox:
    return FakeSandbox()


@pytest.fixture
def r2_credentials() -> R2Credentials:
    return R2Credentials(access_key_id="AKIA-test", secret_access_key="secret-test", account_id="acct123")


@pytest.fixture
def gateway_config(r2_credentials: R2Credentials) -> GatewayHostConfig:
    return GatewayHostConfig(
        startup_timeout_s=0.1,
        health_timeout_s=0.1,
        restart_settle_s=0.0,
        cli_timeout_s=0.2,
        cli_poll_interval_s=0.01,
        sync_interval_s=0.0,
        r2=r2_credentials,
        integration_env={"ANTHROPIC_API_KEY": "sk-ant-test"},
    )


@pytest.fixture
def open_policy() -> GatewayAuthPolicy:
    return GatewayAuthPolicy(enabled=True, dev_mode=True)


@pytest.fixture
def gateway_service(gateway_config, fake_sandbox, open_policy):
    from sandboxgateway.service import build_gateway_service, set_gateway_service

    svc = build_gateway_service(config=gateway_config, sandbox=fake_sandbox, auth_policy=open_policy)
    set_gateway_service(svc)
    return svc
