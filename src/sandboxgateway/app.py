"""Sandbox gateway FastAPI application."""

from __future__ import annotations

from contextlib import asynccontextmanager

from fastapi import FastAPI

from . import __version__
from .routes import api_router, debug_router, proxy_router
from .security import GatewaySecurityMiddleware
from .service import get_gateway_service


@asynccontextmanager
async def _lifespan(_app: FastAPI):
    # Periodic backup sync runs in the background, independent of request traffic.
    from .service import start_gateway_background, stop_gateway_background

    start_gateway_background()
    try:
        yield
    finally:
        await stop_gateway_background()


def create_app() -> FastAPI:
    app = FastAPI(
        title="Sandbox Gateway",
        description="Supervises a sandboxed backend process, proxies traffic to it and backs its state up to durable storage.",
        version=__version__,
        lifespan=_lifespan,
    )

    # Policy is resolved per request from the active service.
    app.add_middleware(GatewaySecurityMiddleware, policy=lambda: get_gateway_service().auth_policy)

    @app.get("/sandbox-health")
    async def sandbox_health():
        cfg = get_gateway_service().config
        return {"status": "ok", "service": "sandbox-gateway", "gateway_port": cfg.backend_port}

    app.include_router(api_router, prefix="/api")
    app.include_router(debug_router)
    # Must stay last: everything else is forwarded to the backend.
    app.include_router(proxy_router)
    return app


app = create_app()
