"""Diagnostics under /debug (disabled unless DEBUG_ROUTES=true).

The prefix is still guarded by GatewaySecurityMiddleware, so unauthenticated callers are
rejected before the disabled check can answer 404.
"""

from __future__ import annotations

import shlex
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Query, Request
from fastapi.responses import JSONResponse

from ..config import INTEGRATION_ENV_NAMES
from ..service import get_gateway_service


router = APIRouter(prefix="/debug", tags=["debug"])


def _disabled() -> Optional[JSONResponse]:
    if not get_gateway_service().config.debug_routes:
        return JSONResponse({"error": "Debug routes are disabled"}, status_code=404)
    return None


@router.get("/processes")
async def debug_processes(logs: bool = Query(False, description="Include captured stdout/stderr per process.")):
    disabled = _disabled()
    if disabled is not None:
        return disabled
    svc = get_gateway_service()
    items: List[Dict[str, Any]] = []
    for proc in await svc.sandbox.list_processes():
        item: Dict[str, Any] = {
            "id": proc.id,
            "command": proc.command,
            "status": proc.status.value,
            "lifecycle": proc.status.lifecycle,
            "exitCode": proc.exit_code,
            "isGateway": svc.probe.matches(proc.command),
        }
        if logs:
            captured = await proc.get_logs()
            item["stdout"] = captured.stdout
            item["stderr"] = captured.stderr
        items.append(item)
    return {"count": len(items), "processes": items}


@router.get("/logs")
async def debug_logs(id: Optional[str] = Query(None, description="Process id (defaults to the running gateway).")):
    disabled = _disabled()
    if disabled is not None:
        return disabled
    svc = get_gateway_service()
    target = None
    if id:
        for proc in await svc.sandbox.list_processes():
            if proc.id == id:
                target = proc
                break
        if target is None:
            return JSONResponse({"status": "not_found", "message": f"Process {id} not found"}, status_code=404)
    else:
        target = await svc.probe.find_running()
        if target is None:
            return {"status": "no_process", "message": "No gateway process is currently running", "stdout": "", "stderr": ""}
    captured = await target.get_logs()
    return {"status": "ok", "processId": target.id, "stdout": captured.stdout, "stderr": captured.stderr}


@router.get("/version")
async def debug_version():
    disabled = _disabled()
    if disabled is not None:
        return disabled
    svc = get_gateway_service()
    result = await svc.bridge.run(f"{shlex.quote(svc.config.cli_bin)} --version", timeout_s=10.0)
    return {
        "cliVersion": result.stdout.strip() or None,
        "stderr": result.stderr.strip() or None,
        "exitCode": result.exit_code,
        "completed": result.completed,
    }


@router.get("/env")
async def debug_env(request: Request):
    disabled = _disabled()
    if disabled is not None:
        return disabled
    cfg = get_gateway_service().config
    present = set(cfg.integration_env or {})
    return {
        "integrations": {name: name in present for name in INTEGRATION_ENV_NAMES},
        "r2": {"configured": cfg.r2.configured, "missing": cfg.r2.missing()},
        "devMode": cfg.dev_mode,
        "accessConfigured": bool(cfg.access_team_domain and cfg.access_aud),
        "gatewayTokenSet": bool(cfg.gateway_token),
        "sandboxKeepAlive": cfg.keep_alive,
        "accessUser": getattr(request.state, "access_user", None),
    }
