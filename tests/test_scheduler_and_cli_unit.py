from __future__ import annotations

import asyncio
import dataclasses
import json
import types

import pytest

from sandboxgateway.config import R2Credentials
from sandboxgateway.scheduler import BackupScheduler
from sandboxgateway.service import build_gateway_service, set_gateway_service


@pytest.mark.basic
def test_scheduler_disabled_without_storage(gateway_service) -> None:
    sched = BackupScheduler(gateway_service.sync_engine, credentials=R2Credentials(), interval_s=300)
    assert sched.enabled is False

    async def _run():
        sched.start()
        return sched.running

    assert asyncio.run(_run()) is False


@pytest.mark.basic
def test_scheduler_runs_periodically(gateway_service, fake_sandbox, r2_credentials) -> None:
    fake_sandbox.files.add("/root/.clawdbot/clawdbot.json")
    sched = BackupScheduler(gateway_service.sync_engine, credentials=r2_credentials, interval_s=0.01)

    async def _run():
        sched.start()
        assert sched.running
        for _ in range(200):
            if fake_sandbox.mirror_calls >= 2:
                break
            await asyncio.sleep(0.01)
        await sched.stop()
        return sched.running

    assert asyncio.run(_run()) is False
    assert fake_sandbox.mirror_calls >= 2


@pytest.mark.basic
def test_scheduler_run_once_logs_failure(gateway_service, caplog: pytest.LogCaptureFixture) -> None:
    result = asyncio.run(gateway_service.scheduler.run_once())
    assert result.success is False
    assert "[cron] Backup sync failed: Sync aborted: source missing clawdbot.json" in caplog.text


@pytest.mark.basic
def test_build_uvicorn_log_config_keeps_access_formatter() -> None:
    from sandboxgateway.cli import _build_uvicorn_log_config

    base = {
        "version": 1,
        "disable_existing_loggers": False,
        "formatters": {
            "default": {"()": "uvicorn.logging.DefaultFormatter", "fmt": "%(message)s", "use_colors": None},
            "access": {"()": "uvicorn.logging.AccessFormatter", "fmt": "%(message)s", "use_colors": None},
        },
    }
    uvicorn_stub = types.SimpleNamespace(config=types.SimpleNamespace(LOGGING_CONFIG=base))

    cfg = _build_uvicorn_log_config(uvicorn=uvicorn_stub)
    assert cfg["formatters"]["access"]["()"] == "uvicorn.logging.AccessFormatter"
    assert "%(status_code)s" in cfg["formatters"]["access"]["fmt"]
    assert cfg["formatters"]["default"]["datefmt"] == "%H:%M:%S"
    # The input config is not mutated.
    assert base["formatters"]["access"]["fmt"] == "%(message)s"

    assert _build_uvicorn_log_config(uvicorn=types.SimpleNamespace()) == {}


@pytest.mark.basic
def test_weak_token_detection() -> None:
    from sandboxgateway.cli import _is_public_bind_host, _is_weak_token

    assert _is_weak_token("")
    assert _is_weak_token("changeme")
    assert _is_weak_token("short")
    assert not _is_weak_token("k8Jd93nVx0Qw7ZpL2s")
    assert _is_public_bind_host("0.0.0.0")
    assert not _is_public_bind_host("127.0.0.1")


@pytest.mark.basic
def test_serve_refuses_weak_token_on_public_host(monkeypatch: pytest.MonkeyPatch) -> None:
    from sandboxgateway.cli import main

    monkeypatch.setenv("CLAWDBOT_GATEWAY_TOKEN", "changeme")
    with pytest.raises(SystemExit) as excinfo:
        main(["serve", "--host", "0.0.0.0"])
    assert "weak gateway token" in str(excinfo.value.code)


@pytest.mark.basic
def test_cli_sync_prints_result_and_fails(fake_sandbox, gateway_config, capsys: pytest.CaptureFixture[str]) -> None:
    from sandboxgateway.cli import main

    set_gateway_service(build_gateway_service(config=dataclasses.replace(gateway_config, r2=R2Credentials()), sandbox=fake_sandbox))
    with pytest.raises(SystemExit) as excinfo:
        main(["sync"])
    assert excinfo.value.code == 1
    out = json.loads(capsys.readouterr().out)
    assert out["success"] is False
    assert out["error"] == "R2 storage is not configured"


@pytest.mark.basic
def test_cli_sync_success(gateway_service, fake_sandbox, capsys: pytest.CaptureFixture[str]) -> None:
    from sandboxgateway.cli import main

    fake_sandbox.files.add("/root/.clawdbot/clawdbot.json")
    main(["sync"])
    out = json.loads(capsys.readouterr().out)
    assert out["success"] is True
    assert out["lastSync"]


@pytest.mark.basic
def test_cli_status(gateway_service, capsys: pytest.CaptureFixture[str]) -> None:
    from sandboxgateway.cli import main

    main(["status"])
    assert json.loads(capsys.readouterr().out) == {"ok": False, "status": "not_running"}
