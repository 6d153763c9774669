from __future__ import annotations

from typing import Dict

from ..config import GatewayHostConfig


_PASSTHROUGH = (
    "OPENAI_API_KEY",
    "TELEGRAM_BOT_TOKEN",
    "TELEGRAM_DM_POLICY",
    "DISCORD_BOT_TOKEN",
    "DISCORD_DM_POLICY",
    "SLACK_BOT_TOKEN",
    "SLACK_APP_TOKEN",
    "CLAWDBOT_BIND_MODE",
)


def build_env_vars(config: GatewayHostConfig) -> Dict[str, str]:
    """Environment for a freshly launched backend process (only values that are set)."""
    src = dict(config.integration_env or {})
    env: Dict[str, str] = {}

    # An AI gateway stands in for the direct provider key/base URL when those are absent.
    anthropic_key = src.get("ANTHROPIC_API_KEY") or src.get("AI_GATEWAY_API_KEY")
    anthropic_base = src.get("ANTHROPIC_BASE_URL") or src.get("AI_GATEWAY_BASE_URL")
    if anthropic_key:
        env["ANTHROPIC_API_KEY"] = anthropic_key
    if anthropic_base:
        env["ANTHROPIC_BASE_URL"] = anthropic_base

    for key in _PASSTHROUGH:
        value = src.get(key)
        if value:
            env[key] = value

    if config.gateway_token:
        env["CLAWDBOT_GATEWAY_TOKEN"] = config.gateway_token
    if config.dev_mode:
        env["CLAWDBOT_DEV_MODE"] = "true"

    env["CLAWDBOT_DATA_DIR"] = config.data_dir
    env["CLAWDBOT_GATEWAY_PORT"] = str(config.backend_port)
    return env


def has_model_credentials(config: GatewayHostConfig) -> bool:
    src = config.integration_env or {}
    return bool(src.get("ANTHROPIC_API_KEY") or src.get("AI_GATEWAY_API_KEY") or src.get("OPENAI_API_KEY"))
