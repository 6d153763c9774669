from __future__ import annotations

import argparse
import asyncio
import copy
import json
import logging
import sys


def _stderr(line: str) -> None:
    print(str(line), file=sys.stderr)


def _configure_console_logging(level: int = logging.INFO) -> None:
    fmt = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"
    datefmt = "%H:%M:%S"
    formatter = logging.Formatter(fmt, datefmt=datefmt)
    root = logging.getLogger()
    if root.handlers:
        for h in list(root.handlers):
            h.setFormatter(formatter)
        root.setLevel(int(level))
        return
    logging.basicConfig(level=int(level), format=fmt, datefmt=datefmt)


def _build_uvicorn_log_config(*, uvicorn) -> dict:
    """Return a uvicorn log_config dict using the console log format."""
    base = getattr(getattr(uvicorn, "config", None), "LOGGING_CONFIG", None)
    if not isinstance(base, dict):
        return {}
    log_config = copy.deepcopy(base)

    datefmt = "%H:%M:%S"
    default_fmt = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"
    access_fmt = '%(asctime)s [%(levelname)s] %(name)s: %(client_addr)s - "%(request_line)s" %(status_code)s'

    fmts = log_config.setdefault("formatters", {})
    # Keep uvicorn's formatter classes: the access format relies on fields they add.
    default = dict(fmts.get("default") or {"()": "uvicorn.logging.DefaultFormatter"})
    access = dict(fmts.get("access") or {"()": "uvicorn.logging.AccessFormatter"})
    default.update({"fmt": default_fmt, "datefmt": datefmt})
    access.update({"fmt": access_fmt, "datefmt": datefmt})
    fmts["default"] = default
    fmts["access"] = access
    return log_config


def _is_public_bind_host(host: str) -> bool:
    h = str(host or "").strip().lower()
    return h in {"0.0.0.0", "::"}


def _is_weak_token(token: str) -> bool:
    t = str(token or "").strip()
    if not t:
        return True
    if t.lower() in {"dev-token", "devtoken", "token", "changeme", "password", "admin", "root"}:
        return True
    return len(t) < 15


def main(argv: list[str] | None = None) -> None:
    _configure_console_logging()
    parser = argparse.ArgumentParser(prog="sandbox-gateway", description="Sandbox gateway (supervisor + proxy + backup sync)")
    sub = parser.add_subparsers(dest="cmd", required=True)

    serve = sub.add_parser("serve", help="Run the gateway HTTP/WebSocket server")
    serve.add_argument("--host", default="0.0.0.0", help="Bind host (default: 0.0.0.0)")
    serve.add_argument("--port", type=int, default=8080, help="Bind port (default: 8080)")
    serve.add_argument("--reload", action="store_true", help="Enable auto-reload (dev only)")

    sub.add_parser("sync", help="Run one backup sync to durable storage and print the result as JSON")
    sub.add_parser("status", help="Print the backend health as JSON")

    args = parser.parse_args(argv)

    if args.cmd == "serve":
        from .security import load_gateway_auth_policy_from_env

        policy = load_gateway_auth_policy_from_env()
        host = str(getattr(args, "host", "") or "")
        if policy.dev_mode:
            _stderr("[WARN] DEV_MODE is enabled: admin and debug routes are served without authentication.")
        elif not policy.gateway_token and not policy.access_configured:
            _stderr(
                "[WARN] Neither CLAWDBOT_GATEWAY_TOKEN nor CF_ACCESS_TEAM_DOMAIN/CF_ACCESS_AUD is set; "
                "admin routes will reject every request."
            )
        if _is_public_bind_host(host) and policy.gateway_token and _is_weak_token(policy.gateway_token):
            raise SystemExit(
                "Refusing to start: weak gateway token detected while binding to a non-loopback host.\n"
                "Set a stronger CLAWDBOT_GATEWAY_TOKEN (>=15 chars, random) and try again."
            )

        import uvicorn

        run_kwargs: dict[str, object] = {
            "host": host,
            "port": int(args.port),
            "reload": bool(args.reload),
        }
        log_config = _build_uvicorn_log_config(uvicorn=uvicorn)
        if log_config:
            run_kwargs["log_config"] = log_config
        uvicorn.run("sandboxgateway.app:app", **run_kwargs)
        return

    if args.cmd == "sync":
        from .service import get_gateway_service

        svc = get_gateway_service()
        result = asyncio.run(svc.scheduler.run_once())
        print(json.dumps(result.to_dict(), ensure_ascii=False, indent=2, sort_keys=True))
        if not result.success:
            raise SystemExit(1)
        return

    if args.cmd == "status":
        from .service import get_gateway_service

        svc = get_gateway_service()
        report = asyncio.run(svc.supervisor.health())
        print(json.dumps(report.to_dict(), ensure_ascii=False, indent=2, sort_keys=True))
        return

    raise SystemExit(2)


if __name__ == "__main__":
    main()
