"""Backup of the backend's local state to the durable bucket mount.

Steps run strictly in order and each one gates the next:

1. credentials present
2. bucket mounted
3. local source sanity check (never mirror an empty/partial source over a good backup)
4. rsync mirror (delete-reconciling, transient files excluded, no timestamps)
5. marker commit: the marker written after the mirror is re-read and must be a fresh
   ISO-8601 timestamp; the mirror process status alone is not trusted.
"""

from __future__ import annotations

import datetime
import logging
import re
import shlex
from dataclasses import dataclass
from pathlib import PurePosixPath
from typing import Any, Dict, Optional, Sequence

from ..config import R2Credentials
from ..errors import NotConfiguredError, SyncAbortedError
from .cli_bridge import CliBridge
from .storage import StorageMountManager


logger = logging.getLogger(__name__)

MARKER_NAME = ".last-sync"
CHECK_TIMEOUT_S = 5.0

_ISO_DATE_RE = re.compile(r"^\d{4}-\d{2}-\d{2}")


@dataclass(frozen=True)
class SyncResult:
    success: bool
    last_sync: Optional[str] = None
    error: Optional[str] = None
    details: Optional[str] = None

    @property
    def not_configured(self) -> bool:
        return bool(self.error and "not configured" in self.error)

    def to_dict(self) -> Dict[str, Any]:
        out: Dict[str, Any] = {"success": self.success}
        if self.last_sync is not None:
            out["lastSync"] = self.last_sync
        if self.error is not None:
            out["error"] = self.error
        if self.details is not None:
            out["details"] = self.details
        return out


@dataclass(frozen=True)
class RestoreResult:
    restored: bool
    reason: str
    last_sync: Optional[str] = None


def looks_like_iso_timestamp(value: Optional[str]) -> bool:
    return bool(value and _ISO_DATE_RE.match(value))


def _parse_timestamp(value: str) -> Optional[datetime.datetime]:
    try:
        ts = datetime.datetime.fromisoformat(value.strip())
    except ValueError:
        return None
    if ts.tzinfo is None:
        ts = ts.astimezone()
    return ts


def _now_utc() -> datetime.datetime:
    return datetime.datetime.now(datetime.timezone.utc)


def build_mirror_command(
    *,
    source: str,
    destination: str,
    excludes: Sequence[str],
    delete: bool = True,
) -> str:
    parts = ["rsync", "-r", "--no-times"]
    if delete:
        parts.append("--delete")
    for pattern in (*excludes, MARKER_NAME):
        parts.append(f"--exclude={pattern}")
    parts.extend([f"{source.rstrip('/')}/", f"{destination.rstrip('/')}/"])
    return " ".join(shlex.quote(p) for p in parts)


class SyncEngine:
    def __init__(
        self,
        bridge: CliBridge,
        storage: StorageMountManager,
        *,
        data_dir: str,
        critical_file: str,
        excludes: Sequence[str] = ("*.lock", "*.log", "*.tmp"),
        sync_timeout_s: float = 30.0,
    ):
        self._bridge = bridge
        self._storage = storage
        self._data_dir = data_dir.rstrip("/") or "/"
        self._critical_file = critical_file
        self._excludes = tuple(excludes)
        self._sync_timeout_s = float(sync_timeout_s)

    @property
    def marker_path(self) -> str:
        return str(PurePosixPath(self._storage.mount_path) / MARKER_NAME)

    @property
    def critical_path(self) -> str:
        return str(PurePosixPath(self._data_dir) / self._critical_file)

    async def sync(self, credentials: R2Credentials) -> SyncResult:
        missing = credentials.missing()
        if missing:
            return SyncResult(success=False, error="R2 storage is not configured", details=f"Missing: {', '.join(missing)}")

        try:
            mount = await self._storage.mount(credentials)
        except NotConfiguredError as e:
            return SyncResult(success=False, error=str(e), details=e.details)
        except Exception as e:
            logger.exception("mounting durable storage raised")
            return SyncResult(success=False, error="Failed to mount R2 storage", details=str(e) or type(e).__name__)
        if not mount.mounted:
            return SyncResult(success=False, error="Failed to mount R2 storage", details=mount.error)

        try:
            await self._verify_source()
        except SyncAbortedError as e:
            logger.warning("%s (%s)", e, self._data_dir)
            return SyncResult(success=False, error=str(e), details=e.details)
        except Exception as e:
            return SyncResult(success=False, error="Failed to verify source files", details=str(e) or type(e).__name__)

        started = _now_utc().replace(microsecond=0)
        mirror = build_mirror_command(source=self._data_dir, destination=self._storage.mount_path, excludes=self._excludes)
        command = f"{mirror} && date -Iseconds > {shlex.quote(self.marker_path)}"
        try:
            result = await self._bridge.run(command, timeout_s=self._sync_timeout_s)
            last_sync = await self._read_marker(self.marker_path)
        except Exception as e:
            logger.exception("sync to durable storage raised")
            return SyncResult(success=False, error="Sync error", details=str(e) or type(e).__name__)

        if looks_like_iso_timestamp(last_sync):
            written = _parse_timestamp(str(last_sync))
            if written is None or written >= started:
                logger.info("sync to durable storage completed at %s", last_sync)
                return SyncResult(success=True, last_sync=last_sync)
            return SyncResult(
                success=False,
                error="Sync failed",
                details=f"Timestamp file was not updated (last sync {last_sync})",
            )

        return SyncResult(
            success=False,
            error="Sync failed",
            details=result.stderr or result.stdout or "No timestamp file created",
        )

    async def read_last_sync(self, credentials: R2Credentials) -> Optional[str]:
        if not await self._storage.ensure_mounted(credentials):
            return None
        return await self._read_marker(self.marker_path)

    async def restore(self, credentials: R2Credentials) -> RestoreResult:
        """Mirror the durable backup into the local data dir when it is newer (or local is empty)."""
        if not credentials.configured:
            return RestoreResult(restored=False, reason="not_configured")
        if not await self._storage.ensure_mounted(credentials):
            return RestoreResult(restored=False, reason="mount_failed")

        remote = await self._read_marker(self.marker_path)
        if not looks_like_iso_timestamp(remote):
            return RestoreResult(restored=False, reason="no_backup")

        local_marker = str(PurePosixPath(self._data_dir) / MARKER_NAME)
        if await self._critical_file_exists():
            local = await self._read_marker(local_marker)
            remote_ts = _parse_timestamp(str(remote))
            local_ts = _parse_timestamp(local) if looks_like_iso_timestamp(local) else None
            if local_ts is not None and (remote_ts is None or local_ts >= remote_ts):
                return RestoreResult(restored=False, reason="local_up_to_date", last_sync=remote)

        mirror = build_mirror_command(
            source=self._storage.mount_path,
            destination=self._data_dir,
            excludes=self._excludes,
            delete=False,
        )
        command = (
            f"mkdir -p {shlex.quote(self._data_dir)} && {mirror} && "
            f"cp {shlex.quote(self.marker_path)} {shlex.quote(local_marker)}"
        )
        result = await self._bridge.run(command, timeout_s=self._sync_timeout_s)
        if not result.completed:
            # The mirror may still be writing into the data dir.
            logger.warning("restore from durable storage still running after %.1fs", self._sync_timeout_s)
            return RestoreResult(restored=False, reason="restore_timed_out", last_sync=remote)
        if result.exit_code not in (0, None):
            logger.error("restore from durable storage failed: %s", result.stderr or result.stdout)
            return RestoreResult(restored=False, reason="restore_failed", last_sync=remote)
        logger.info("restored local state from durable backup (%s)", remote)
        return RestoreResult(restored=True, reason="restored", last_sync=remote)

    async def _critical_file_exists(self) -> bool:
        result = await self._bridge.run(
            f"test -f {shlex.quote(self.critical_path)} && echo ok",
            timeout_s=CHECK_TIMEOUT_S,
        )
        return "ok" in (result.stdout or "")

    async def _verify_source(self) -> None:
        if not await self._critical_file_exists():
            raise SyncAbortedError(
                f"Sync aborted: source missing {self._critical_file}",
                details=(
                    "The local config directory is missing critical files. "
                    "This could indicate corruption or an incomplete setup."
                ),
            )

    async def _read_marker(self, path: str) -> Optional[str]:
        result = await self._bridge.run(f"cat {shlex.quote(path)} 2>/dev/null || true", timeout_s=CHECK_TIMEOUT_S)
        text = (result.stdout or "").strip()
        return text or None
