from __future__ import annotations

import logging
import re
import shlex
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from ..errors import CliParseError
from .cli_bridge import CliBridge, extract_json, is_action_success


logger = logging.getLogger(__name__)

_SAFE_REQUEST_ID_RE = re.compile(r"^[A-Za-z0-9_-]+$")


def is_valid_request_id(request_id: str) -> bool:
    return bool(_SAFE_REQUEST_ID_RE.match(str(request_id or "")))


@dataclass(frozen=True)
class ApprovalResult:
    request_id: str
    success: bool
    stdout: str = ""
    stderr: str = ""
    error: Optional[str] = None

    def to_item(self) -> Dict[str, Any]:
        item: Dict[str, Any] = {"requestId": self.request_id, "success": self.success}
        if self.error:
            item["error"] = self.error
        return item


@dataclass(frozen=True)
class BulkApprovalResult:
    results: List[ApprovalResult] = field(default_factory=list)

    @property
    def approved(self) -> List[str]:
        return [r.request_id for r in self.results if r.success]

    @property
    def failed(self) -> List[ApprovalResult]:
        return [r for r in self.results if not r.success]

    @property
    def message(self) -> str:
        if not self.results:
            return "No pending devices to approve"
        return f"Approved {len(self.approved)} of {len(self.results)} device(s)"

    def to_dict(self) -> Dict[str, Any]:
        if not self.results:
            return {"approved": [], "message": self.message}
        return {
            "approved": self.approved,
            "failed": [r.to_item() for r in self.failed],
            "message": self.message,
        }


class DeviceCli:
    """Device pairing commands of the backend CLI.

    The backend's own store is the only source of truth; nothing is cached here.
    """

    success_keyword = "approved"

    def __init__(self, bridge: CliBridge, *, cli_bin: str, backend_port: int):
        self._bridge = bridge
        self._cli_bin = cli_bin
        self._url = f"ws://localhost:{int(backend_port)}"

    def _command(self, *args: str) -> str:
        parts = [self._cli_bin, "devices", *args, "--url", self._url]
        return " ".join(shlex.quote(p) for p in parts)

    async def list_devices(self) -> Dict[str, Any]:
        result = await self._bridge.run(self._command("list", "--json"))
        extraction = extract_json(result.stdout)
        if extraction.ok:
            return dict(extraction.data or {})

        out: Dict[str, Any] = {"pending": [], "paired": [], "raw": result.stdout, "stderr": result.stderr}
        if extraction.error:
            logger.warning("device list output could not be parsed: %s", extraction.error)
            out["parseError"] = "Failed to parse CLI output"
        return out

    async def list_pending_ids(self) -> List[str]:
        result = await self._bridge.run(self._command("list", "--json"))
        extraction = extract_json(result.stdout)
        if extraction.error:
            raise CliParseError("Failed to parse device list", raw=result.stdout, stderr=result.stderr)
        pending = (extraction.data or {}).get("pending") or []
        ids: List[str] = []
        for item in pending if isinstance(pending, list) else []:
            rid = item.get("requestId") if isinstance(item, dict) else None
            if isinstance(rid, str) and rid:
                ids.append(rid)
        return ids

    async def approve(self, request_id: str) -> ApprovalResult:
        if not is_valid_request_id(request_id):
            raise ValueError(f"Invalid requestId: {request_id!r}")
        result = await self._bridge.run(self._command("approve", request_id))
        return ApprovalResult(
            request_id=request_id,
            success=is_action_success(result, keyword=self.success_keyword),
            stdout=result.stdout,
            stderr=result.stderr,
        )

    async def approve_all(self) -> BulkApprovalResult:
        """Approve every pending request; failures are reported per item, not rolled back."""
        results: List[ApprovalResult] = []
        for request_id in await self.list_pending_ids():
            try:
                results.append(await self.approve(request_id))
            except Exception as e:
                logger.warning("approval of %s failed: %s", request_id, e)
                results.append(ApprovalResult(request_id=request_id, success=False, error=str(e) or type(e).__name__))
        return BulkApprovalResult(results=results)
