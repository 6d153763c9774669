"""Gateway API.

- `/api/status`: public health check (no auth)
- `/api/admin/*`: device pairing, storage backup and restart (protected by GatewaySecurityMiddleware)
"""

from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional

from fastapi import APIRouter
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict, Field

from ..errors import CliParseError, GatewayError
from ..gateway.devices import is_valid_request_id
from ..gateway.supervisor import startup_failure_body
from ..service import get_gateway_service


router = APIRouter(tags=["gateway"])
admin_router = APIRouter(prefix="/admin", tags=["admin"])
logger = logging.getLogger(__name__)


class HealthResponse(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    ok: bool
    status: str = Field(..., description="running|not_running|not_responding|error")
    process_id: Optional[str] = Field(default=None, alias="processId")
    error: Optional[str] = None


class ApproveDeviceResponse(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    success: bool
    request_id: str = Field(..., alias="requestId")
    message: str
    stdout: str = ""
    stderr: str = ""


class StorageStatusResponse(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    configured: bool
    missing: Optional[List[str]] = Field(default=None, description="Names of missing credential variables.")
    last_sync: Optional[str] = Field(default=None, alias="lastSync")
    message: str


class SyncResponse(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    success: bool
    message: str
    last_sync: Optional[str] = Field(default=None, alias="lastSync")


class RestartResponse(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    success: bool
    message: str
    previous_process_id: Optional[str] = Field(default=None, alias="previousProcessId")


def _error(message: str, status_code: int = 500, **extra: Any) -> JSONResponse:
    body: Dict[str, Any] = {"error": message}
    body.update({k: v for k, v in extra.items() if v is not None})
    return JSONResponse(body, status_code=status_code)


async def _ensure_gateway() -> Optional[JSONResponse]:
    svc = get_gateway_service()
    try:
        await svc.supervisor.ensure_running()
    except GatewayError as e:
        logger.error("Failed to start gateway: %s", e)
        return JSONResponse(startup_failure_body(e, svc.config), status_code=503)
    return None


@router.get("/status", response_model=HealthResponse, response_model_exclude_none=True)
async def gateway_status():
    svc = get_gateway_service()
    report = await svc.supervisor.health()
    return report.to_dict()


@admin_router.get("/devices")
async def list_devices():
    unavailable = await _ensure_gateway()
    if unavailable is not None:
        return unavailable
    svc = get_gateway_service()
    try:
        return await svc.devices.list_devices()
    except Exception as e:
        logger.exception("device listing failed")
        return _error(str(e) or "Unknown error")


@admin_router.post("/devices/approve-all")
async def approve_all_devices():
    unavailable = await _ensure_gateway()
    if unavailable is not None:
        return unavailable
    svc = get_gateway_service()
    try:
        result = await svc.devices.approve_all()
    except CliParseError as e:
        return _error(str(e), raw=e.raw)
    except Exception as e:
        logger.exception("bulk approval failed")
        return _error(str(e) or "Unknown error")
    return result.to_dict()


@admin_router.post("/devices/{request_id}/approve", response_model=ApproveDeviceResponse)
async def approve_device(request_id: str):
    if not is_valid_request_id(request_id):
        return _error("requestId is required and may only contain letters, digits, '-' and '_'", 400)
    unavailable = await _ensure_gateway()
    if unavailable is not None:
        return unavailable
    svc = get_gateway_service()
    try:
        result = await svc.devices.approve(request_id)
    except Exception as e:
        logger.exception("approval of %s failed", request_id)
        return _error(str(e) or "Unknown error")
    return {
        "success": result.success,
        "requestId": request_id,
        "message": "Device approved" if result.success else "Approval may have failed",
        "stdout": result.stdout,
        "stderr": result.stderr,
    }


@admin_router.get("/storage", response_model=StorageStatusResponse, response_model_exclude_unset=True)
async def storage_status():
    svc = get_gateway_service()
    creds = svc.config.r2
    missing: List[str] = creds.missing()

    last_sync: Optional[str] = None
    if creds.configured:
        try:
            last_sync = await svc.sync_engine.read_last_sync(creds)
        except Exception as e:
            logger.warning("could not read last sync marker: %s", e)

    body: Dict[str, Any] = {
        "configured": creds.configured,
        "lastSync": last_sync,
        "message": (
            "R2 storage is configured. Your data will persist across container restarts."
            if creds.configured
            else "R2 storage is not configured. Paired devices and conversations will be lost when the container restarts."
        ),
    }
    if missing:
        body["missing"] = missing
    return body


@admin_router.post("/storage/sync", response_model=SyncResponse)
async def trigger_storage_sync():
    svc = get_gateway_service()
    result = await svc.sync_engine.sync(svc.config.r2)
    if result.success:
        return {"success": True, "message": "Sync completed successfully", "lastSync": result.last_sync}
    status = 400 if result.not_configured else 500
    return JSONResponse(
        {"success": False, "error": result.error, "details": result.details},
        status_code=status,
    )


@admin_router.post("/gateway/restart", response_model=RestartResponse, response_model_exclude_none=True)
async def restart_gateway():
    svc = get_gateway_service()
    try:
        result = await svc.supervisor.restart()
    except Exception as e:
        logger.exception("gateway restart failed")
        return _error(str(e) or "Unknown error")
    return result.to_dict()


router.include_router(admin_router)
