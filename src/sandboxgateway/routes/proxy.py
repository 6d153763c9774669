"""Catch-all forwarding to the backend (HTTP + WebSocket).

Every request re-checks the backend through the supervisor before it is forwarded.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
from typing import Any, Dict, List, Optional

import httpx
import websockets
from fastapi import APIRouter, Request, WebSocket
from fastapi.responses import JSONResponse, Response
from starlette.websockets import WebSocketDisconnect

from ..errors import GatewayError
from ..gateway.supervisor import startup_failure_body
from ..service import get_gateway_service


router = APIRouter(tags=["proxy"])
logger = logging.getLogger(__name__)

PROXY_TIMEOUT_S = 60.0

_HOP_BY_HOP = {
    "connection",
    "keep-alive",
    "proxy-authenticate",
    "proxy-authorization",
    "te",
    "trailers",
    "transfer-encoding",
    "upgrade",
    "host",
    "content-length",
    "content-encoding",
}

_METHODS = ["GET", "POST", "PUT", "PATCH", "DELETE", "HEAD", "OPTIONS"]


def _forward_headers(items: Any) -> Dict[str, str]:
    return {k: v for k, v in items if k.lower() not in _HOP_BY_HOP}


def _websocket_connect_kwargs(headers: Dict[str, str], subprotocols: List[str]) -> Dict[str, Any]:
    params = inspect.signature(websockets.connect).parameters
    kwargs: Dict[str, Any] = {"open_timeout": 30}
    key = "additional_headers" if "additional_headers" in params else "extra_headers"
    kwargs[key] = headers
    if subprotocols:
        kwargs["subprotocols"] = subprotocols
    return kwargs


async def _ensure_backend() -> Optional[GatewayError]:
    svc = get_gateway_service()
    try:
        await svc.supervisor.ensure_running()
    except GatewayError as e:
        logger.error("Failed to start gateway: %s", e)
        return e
    return None


@router.api_route("/{path:path}", methods=_METHODS, include_in_schema=False)
async def proxy_http(path: str, request: Request):
    svc = get_gateway_service()
    err = await _ensure_backend()
    if err is not None:
        return JSONResponse(startup_failure_body(err, svc.config), status_code=503)

    url = f"{svc.sandbox.service_url(svc.config.backend_port)}/{path}"
    logger.debug("Proxying HTTP request: /%s?%s", path, request.url.query)
    async with httpx.AsyncClient(timeout=PROXY_TIMEOUT_S) as client:
        try:
            upstream = await client.request(
                request.method,
                url,
                params=request.query_params.multi_items(),
                headers=_forward_headers(request.headers.items()),
                content=await request.body(),
            )
        except httpx.HTTPError as e:
            return JSONResponse({"error": "Gateway request failed", "details": str(e)}, status_code=502)
    return Response(
        content=upstream.content,
        status_code=upstream.status_code,
        headers=_forward_headers(upstream.headers.items()),
    )


@router.websocket("/{path:path}")
async def proxy_websocket(websocket: WebSocket, path: str):
    svc = get_gateway_service()
    err = await _ensure_backend()
    if err is not None:
        await websocket.close(code=1011, reason="Gateway failed to start")
        return

    url = f"{svc.sandbox.service_url(svc.config.backend_port, scheme='ws')}/{path}"
    if websocket.url.query:
        url = f"{url}?{websocket.url.query}"
    subprotocols = [p.strip() for p in (websocket.headers.get("sec-websocket-protocol") or "").split(",") if p.strip()]
    headers = {
        k: v
        for k, v in websocket.headers.items()
        if k.lower() in {"authorization", "cookie", "origin", "user-agent", "x-gateway-token"}
    }

    logger.info("Proxying WebSocket connection to gateway: /%s", path)
    try:
        upstream_cm = websockets.connect(url, **_websocket_connect_kwargs(headers, subprotocols))
        async with upstream_cm as upstream:
            await websocket.accept(subprotocol=getattr(upstream, "subprotocol", None))
            await _relay(websocket, upstream)
    except (OSError, websockets.exceptions.WebSocketException) as e:
        logger.warning("WebSocket proxy to gateway failed: %s", e)
        try:
            await websocket.close(code=1011, reason="Gateway connection failed")
        except RuntimeError:
            pass


async def _relay(client: WebSocket, upstream: Any) -> None:
    async def client_to_upstream() -> None:
        try:
            while True:
                message = await client.receive()
                if message["type"] == "websocket.disconnect":
                    return
                if message.get("text") is not None:
                    await upstream.send(message["text"])
                elif message.get("bytes") is not None:
                    await upstream.send(message["bytes"])
        except WebSocketDisconnect:
            return

    async def upstream_to_client() -> None:
        try:
            async for message in upstream:
                if isinstance(message, bytes):
                    await client.send_bytes(message)
                else:
                    await client.send_text(message)
        except websockets.exceptions.ConnectionClosed:
            pass
        try:
            await client.close()
        except RuntimeError:
            pass

    tasks = [asyncio.ensure_future(client_to_upstream()), asyncio.ensure_future(upstream_to_client())]
    done, pending = await asyncio.wait(tasks, return_when=asyncio.FIRST_COMPLETED)
    for task in pending:
        task.cancel()
    for task in done:
        if task.exception() is not None:
            logger.debug("WebSocket relay ended with error: %s", task.exception())
