from __future__ import annotations

import os
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Tuple


_TRUE = {"1", "true", "yes", "on"}

R2_CREDENTIAL_NAMES: Tuple[str, ...] = ("R2_ACCESS_KEY_ID", "R2_SECRET_ACCESS_KEY", "CF_ACCOUNT_ID")

# Secrets/settings forwarded to the backend process (see gateway/env.py).
INTEGRATION_ENV_NAMES: Tuple[str, ...] = (
    "ANTHROPIC_API_KEY",
    "ANTHROPIC_BASE_URL",
    "OPENAI_API_KEY",
    "AI_GATEWAY_API_KEY",
    "AI_GATEWAY_BASE_URL",
    "CLAWDBOT_GATEWAY_TOKEN",
    "TELEGRAM_BOT_TOKEN",
    "TELEGRAM_DM_POLICY",
    "DISCORD_BOT_TOKEN",
    "DISCORD_DM_POLICY",
    "SLACK_BOT_TOKEN",
    "SLACK_APP_TOKEN",
    "CLAWDBOT_BIND_MODE",
)


def _env(name: str, fallback: Optional[str] = None) -> Optional[str]:
    v = os.getenv(name)
    if v is not None and str(v).strip():
        return str(v).strip()
    if fallback:
        v2 = os.getenv(fallback)
        if v2 is not None and str(v2).strip():
            return str(v2).strip()
    return None


def _env_bool(name: str, default: bool = False) -> bool:
    raw = _env(name)
    if raw is None:
        return default
    return raw.lower() in _TRUE


def _env_float(name: str, default: float) -> float:
    raw = _env(name)
    if raw is None:
        return float(default)
    try:
        return float(raw)
    except ValueError:
        raise ValueError(f"{name} must be a number (got {raw!r})")


def _env_int(name: str, default: int) -> int:
    raw = _env(name)
    if raw is None:
        return int(default)
    try:
        return int(raw)
    except ValueError:
        raise ValueError(f"{name} must be an integer (got {raw!r})")


def _env_list(name: str, default: Tuple[str, ...]) -> Tuple[str, ...]:
    raw = _env(name)
    if raw is None:
        return tuple(default)
    return tuple(p.strip() for p in raw.split(",") if p.strip())


@dataclass(frozen=True)
class R2Credentials:
    access_key_id: Optional[str] = None
    secret_access_key: Optional[str] = None
    account_id: Optional[str] = None

    @classmethod
    def from_env(cls) -> "R2Credentials":
        return cls(
            access_key_id=_env("R2_ACCESS_KEY_ID"),
            secret_access_key=_env("R2_SECRET_ACCESS_KEY"),
            account_id=_env("CF_ACCOUNT_ID"),
        )

    def missing(self) -> List[str]:
        values = (self.access_key_id, self.secret_access_key, self.account_id)
        return [name for name, value in zip(R2_CREDENTIAL_NAMES, values) if not value]

    @property
    def configured(self) -> bool:
        return not self.missing()

    @property
    def endpoint(self) -> str:
        return f"https://{self.account_id}.r2.cloudflarestorage.com"


@dataclass(frozen=True)
class GatewayHostConfig:
    """Runtime configuration for the sandbox gateway.

    Every value is read from the environment once per service instance. Nothing here
    describes live state: process and mount status are always re-queried.
    """

    sandbox_id: str = "clawdbot"
    sandbox_sleep_after: str = "never"

    backend_port: int = 18789
    backend_command: str = "/usr/local/bin/start-clawdbot.sh"
    backend_signature: Tuple[str, ...] = ("start-clawdbot.sh", "clawdbot gateway")
    cli_bin: str = "clawdbot"
    startup_timeout_s: float = 180.0
    health_timeout_s: float = 5.0
    restart_settle_s: float = 2.0
    cli_timeout_s: float = 20.0
    cli_poll_interval_s: float = 0.5

    data_dir: str = "/root/.clawdbot"
    critical_file: str = "clawdbot.json"
    mount_path: str = "/data/clawdbot"
    bucket_name: str = "clawdbot-data"
    sync_interval_s: float = 300.0
    sync_timeout_s: float = 30.0
    sync_excludes: Tuple[str, ...] = ("*.lock", "*.log", "*.tmp")
    restore_on_boot: bool = True
    r2: R2Credentials = field(default_factory=R2Credentials)

    dev_mode: bool = False
    debug_routes: bool = False
    gateway_token: Optional[str] = None
    access_team_domain: Optional[str] = None
    access_aud: Optional[str] = None

    integration_env: Dict[str, str] = field(default_factory=dict)

    @classmethod
    def from_env(cls) -> "GatewayHostConfig":
        integration: Dict[str, str] = {}
        for name in INTEGRATION_ENV_NAMES:
            v = _env(name)
            if v is not None:
                integration[name] = v

        return cls(
            sandbox_id=_env("SANDBOXGATEWAY_SANDBOX_ID") or "clawdbot",
            sandbox_sleep_after=(_env("SANDBOX_SLEEP_AFTER") or "never").lower(),
            backend_port=_env_int("SANDBOXGATEWAY_BACKEND_PORT", 18789),
            backend_command=_env("SANDBOXGATEWAY_BACKEND_COMMAND") or "/usr/local/bin/start-clawdbot.sh",
            backend_signature=_env_list("SANDBOXGATEWAY_BACKEND_SIGNATURE", ("start-clawdbot.sh", "clawdbot gateway")),
            cli_bin=_env("SANDBOXGATEWAY_CLI_BIN") or "clawdbot",
            startup_timeout_s=_env_float("SANDBOXGATEWAY_STARTUP_TIMEOUT_S", 180.0),
            health_timeout_s=_env_float("SANDBOXGATEWAY_HEALTH_TIMEOUT_S", 5.0),
            restart_settle_s=_env_float("SANDBOXGATEWAY_RESTART_SETTLE_S", 2.0),
            cli_timeout_s=_env_float("SANDBOXGATEWAY_CLI_TIMEOUT_S", 20.0),
            cli_poll_interval_s=_env_float("SANDBOXGATEWAY_CLI_POLL_INTERVAL_S", 0.5),
            data_dir=_env("SANDBOXGATEWAY_DATA_DIR") or "/root/.clawdbot",
            critical_file=_env("SANDBOXGATEWAY_CRITICAL_FILE") or "clawdbot.json",
            mount_path=_env("SANDBOXGATEWAY_MOUNT_PATH") or "/data/clawdbot",
            bucket_name=_env("SANDBOXGATEWAY_BUCKET_NAME", "R2_BUCKET_NAME") or "clawdbot-data",
            sync_interval_s=_env_float("SANDBOXGATEWAY_SYNC_INTERVAL_S", 300.0),
            sync_timeout_s=_env_float("SANDBOXGATEWAY_SYNC_TIMEOUT_S", 30.0),
            sync_excludes=_env_list("SANDBOXGATEWAY_SYNC_EXCLUDES", ("*.lock", "*.log", "*.tmp")),
            restore_on_boot=_env_bool("SANDBOXGATEWAY_RESTORE_ON_BOOT", True),
            r2=R2Credentials.from_env(),
            dev_mode=_env_bool("DEV_MODE"),
            debug_routes=_env_bool("DEBUG_ROUTES"),
            gateway_token=_env("CLAWDBOT_GATEWAY_TOKEN"),
            access_team_domain=_env("CF_ACCESS_TEAM_DOMAIN"),
            access_aud=_env("CF_ACCESS_AUD"),
            integration_env=integration,
        )

    @property
    def marker_path(self) -> str:
        return f"{self.mount_path.rstrip('/')}/.last-sync"

    @property
    def critical_path(self) -> str:
        return f"{self.data_dir.rstrip('/')}/{self.critical_file}"

    @property
    def keep_alive(self) -> bool:
        return self.sandbox_sleep_after in {"", "never"}
