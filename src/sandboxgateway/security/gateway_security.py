"""Access control for admin/debug route groups.

Two schemes, either one sufficient:
- shared gateway token (machine callers): `?token=`, `X-Gateway-Token`, or `Authorization: Bearer`
- Cloudflare Access JWT (human callers): `CF-Access-JWT-Assertion` header or `CF_Authorization` cookie
"""

from __future__ import annotations

import asyncio
import functools
import hmac
import logging
import os
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional, Tuple, Union

import jwt
from starlette.requests import HTTPConnection
from starlette.responses import JSONResponse
from starlette.types import ASGIApp, Receive, Scope, Send


logger = logging.getLogger(__name__)

DEFAULT_PROTECTED_PREFIXES: Tuple[str, ...] = ("/api/admin", "/debug", "/_admin")

_TRUE = {"1", "true", "yes", "on"}


@dataclass(frozen=True)
class GatewayAuthPolicy:
    enabled: bool = True
    dev_mode: bool = False
    gateway_token: Optional[str] = None
    access_team_domain: Optional[str] = None
    access_aud: Optional[str] = None
    protected_prefixes: Tuple[str, ...] = DEFAULT_PROTECTED_PREFIXES

    @property
    def access_configured(self) -> bool:
        return bool(self.access_team_domain and self.access_aud)

    def is_protected(self, path: str) -> bool:
        p = str(path or "")
        return any(p == prefix or p.startswith(prefix.rstrip("/") + "/") for prefix in self.protected_prefixes)


def load_gateway_auth_policy_from_env() -> GatewayAuthPolicy:
    def _get(name: str) -> Optional[str]:
        v = os.getenv(name)
        return str(v).strip() if v is not None and str(v).strip() else None

    return GatewayAuthPolicy(
        enabled=str(os.getenv("SANDBOXGATEWAY_AUTH_ENABLED", "1")).strip().lower() in _TRUE,
        dev_mode=str(os.getenv("DEV_MODE", "")).strip().lower() in _TRUE,
        gateway_token=_get("CLAWDBOT_GATEWAY_TOKEN"),
        access_team_domain=_get("CF_ACCESS_TEAM_DOMAIN"),
        access_aud=_get("CF_ACCESS_AUD"),
    )


def _team_origin(team_domain: str) -> str:
    d = str(team_domain or "").strip().rstrip("/")
    if not d.startswith("http://") and not d.startswith("https://"):
        d = f"https://{d}"
    return d


@functools.lru_cache(maxsize=8)
def _jwks_client(team_origin: str) -> jwt.PyJWKClient:
    return jwt.PyJWKClient(f"{team_origin}/cdn-cgi/access/certs", cache_keys=True)


def verify_access_jwt(token: str, *, team_domain: str, audience: str) -> Dict[str, Any]:
    """Verify a Cloudflare Access assertion; raises `jwt.PyJWTError` on failure."""
    origin = _team_origin(team_domain)
    signing_key = _jwks_client(origin).get_signing_key_from_jwt(token)
    return jwt.decode(
        token,
        signing_key.key,
        algorithms=["RS256"],
        audience=audience,
        issuer=origin,
    )


def extract_access_jwt(conn: HTTPConnection) -> Optional[str]:
    header = conn.headers.get("cf-access-jwt-assertion")
    if header:
        return header
    cookie = conn.cookies.get("CF_Authorization")
    return cookie or None


def has_valid_gateway_token(conn: HTTPConnection, expected: Optional[str]) -> bool:
    if not expected:
        return False
    candidates = [conn.query_params.get("token"), conn.headers.get("x-gateway-token")]
    auth = conn.headers.get("authorization") or ""
    if auth.lower().startswith("bearer "):
        candidates.append(auth[7:].strip())
    return any(c and hmac.compare_digest(str(c), str(expected)) for c in candidates)


class GatewaySecurityMiddleware:
    """ASGI middleware enforcing `GatewayAuthPolicy` on protected path prefixes (HTTP and WebSocket)."""

    def __init__(
        self,
        app: ASGIApp,
        *,
        policy: Union[GatewayAuthPolicy, Callable[[], GatewayAuthPolicy]],
    ):
        self.app = app
        self._policy = policy

    @property
    def policy(self) -> GatewayAuthPolicy:
        # A callable is resolved per request so the policy follows the active service.
        return self._policy() if callable(self._policy) else self._policy

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        if scope.get("type") not in ("http", "websocket"):
            await self.app(scope, receive, send)
            return
        policy = self.policy
        if not policy.enabled or not policy.is_protected(str(scope.get("path") or "")):
            await self.app(scope, receive, send)
            return

        conn = HTTPConnection(scope)
        user, rejection = await self._authenticate(conn, policy)
        if rejection is not None:
            status, body = rejection
            if scope["type"] == "websocket":
                await send({"type": "websocket.close", "code": 1008, "reason": str(body.get("error") or "")})
                return
            await JSONResponse(body, status_code=status)(scope, receive, send)
            return

        scope.setdefault("state", {})["access_user"] = user
        await self.app(scope, receive, send)

    async def _authenticate(
        self, conn: HTTPConnection, policy: GatewayAuthPolicy
    ) -> Tuple[Optional[Dict[str, Any]], Optional[Tuple[int, Dict[str, Any]]]]:
        if policy.dev_mode:
            return {"email": "dev@localhost", "name": "Dev User"}, None
        if has_valid_gateway_token(conn, policy.gateway_token):
            return {"email": "gateway-token@cli", "name": "CLI User"}, None

        if not policy.access_configured:
            return None, (
                500,
                {
                    "error": "Cloudflare Access not configured",
                    "hint": "Set CF_ACCESS_TEAM_DOMAIN and CF_ACCESS_AUD environment variables",
                },
            )

        token = extract_access_jwt(conn)
        if not token:
            return None, (
                401,
                {
                    "error": "Unauthorized",
                    "hint": "Missing Cloudflare Access JWT. Ensure this route is protected by Cloudflare Access.",
                },
            )

        try:
            payload = await asyncio.to_thread(
                verify_access_jwt,
                token,
                team_domain=str(policy.access_team_domain),
                audience=str(policy.access_aud),
            )
        except jwt.PyJWTError as e:
            logger.warning("access JWT verification failed: %s", e)
            return None, (401, {"error": "Unauthorized", "details": str(e) or "JWT verification failed"})

        return {"email": payload.get("email"), "name": payload.get("name")}, None
