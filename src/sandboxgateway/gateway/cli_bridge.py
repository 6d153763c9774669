"""Bridge between line-oriented CLI helpers and structured results.

Helper commands run as short-lived sandbox processes. The sandbox exposes no
completion notification, so completion is detected by polling the process status.
Output parsing is heuristic on purpose and lives behind `extract_json` and
`is_action_success` so it can be replaced once the CLI has a typed output mode.
"""

from __future__ import annotations

import asyncio
import json
import logging
import re
from dataclasses import dataclass
from typing import Any, Dict, Optional

from ..sandbox.base import Sandbox, SandboxProcess


logger = logging.getLogger(__name__)

DEFAULT_CLI_TIMEOUT_S = 20.0
DEFAULT_POLL_INTERVAL_S = 0.5

_JSON_BLOCK_RE = re.compile(r"\{[\s\S]*\}")


@dataclass(frozen=True)
class CommandResult:
    command: str
    stdout: str
    stderr: str
    exit_code: Optional[int]
    completed: bool

    @property
    def timed_out(self) -> bool:
        return not self.completed


@dataclass(frozen=True)
class JsonExtraction:
    data: Optional[Dict[str, Any]]
    found: bool
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.data is not None


async def wait_for_process(
    proc: SandboxProcess,
    *,
    timeout_s: float = DEFAULT_CLI_TIMEOUT_S,
    poll_interval_s: float = DEFAULT_POLL_INTERVAL_S,
) -> bool:
    """Poll until `proc` leaves the active state. Returns False on timeout.

    A timed-out process is left running; callers work with whatever output was captured.
    """
    loop = asyncio.get_running_loop()
    deadline = loop.time() + max(0.0, float(timeout_s))
    interval = max(0.01, float(poll_interval_s))
    while proc.status.is_active:
        remaining = deadline - loop.time()
        if remaining <= 0:
            return False
        await asyncio.sleep(min(interval, remaining))
    return True


def extract_json(text: str) -> JsonExtraction:
    """Decode the JSON object embedded in mixed log/JSON output.

    Matches greedily from the first `{` to the last `}`.
    """
    match = _JSON_BLOCK_RE.search(text or "")
    if match is None:
        if "{" in (text or ""):
            return JsonExtraction(data=None, found=True, error="Failed to parse CLI output: unterminated JSON object")
        return JsonExtraction(data=None, found=False)
    try:
        obj = json.loads(match.group(0))
    except ValueError as e:
        return JsonExtraction(data=None, found=True, error=f"Failed to parse CLI output: {e}")
    if not isinstance(obj, dict):
        return JsonExtraction(data=None, found=True, error="Failed to parse CLI output: expected a JSON object")
    return JsonExtraction(data=obj, found=True)


def is_action_success(result: CommandResult, *, keyword: str) -> bool:
    """Exit code zero OR a success keyword in stdout.

    The keyword must appear as a whole word and not directly negated ("not approved").
    """
    if result.exit_code == 0:
        return True
    word = re.escape(keyword)
    text = result.stdout or ""
    if not re.search(rf"\b{word}\b", text, flags=re.IGNORECASE):
        return False
    return not re.search(rf"\bnot\s+{word}\b", text, flags=re.IGNORECASE)


class CliBridge:
    def __init__(
        self,
        sandbox: Sandbox,
        *,
        timeout_s: float = DEFAULT_CLI_TIMEOUT_S,
        poll_interval_s: float = DEFAULT_POLL_INTERVAL_S,
    ):
        self._sandbox = sandbox
        self._timeout_s = float(timeout_s)
        self._poll_interval_s = float(poll_interval_s)

    @property
    def sandbox(self) -> Sandbox:
        return self._sandbox

    async def run(self, command: str, *, timeout_s: Optional[float] = None) -> CommandResult:
        timeout = self._timeout_s if timeout_s is None else float(timeout_s)
        proc = await self._sandbox.start_process(command)
        completed = await wait_for_process(proc, timeout_s=timeout, poll_interval_s=self._poll_interval_s)
        if not completed:
            logger.warning("CLI command still running after %.1fs (left running): %s", timeout, command)
        logs = await proc.get_logs()
        return CommandResult(
            command=command,
            stdout=logs.stdout or "",
            stderr=logs.stderr or "",
            exit_code=proc.exit_code,
            completed=completed,
        )
