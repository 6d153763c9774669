from __future__ import annotations

import logging
import shlex
from dataclasses import dataclass
from typing import Optional

from ..config import R2Credentials
from ..errors import GatewayError, NotConfiguredError
from .cli_bridge import CliBridge


logger = logging.getLogger(__name__)

MOUNT_CHECK_TIMEOUT_S = 5.0


@dataclass(frozen=True)
class MountResult:
    mounted: bool
    attempted: bool = False
    error: Optional[str] = None


def _is_already_in_use(message: str) -> bool:
    return "already in use" in str(message or "").lower()


class StorageMountManager:
    """Attaches the durable bucket at a fixed path.

    Mount state is derived from the live mount table on every call; sandbox restarts can
    detach the bucket without notice.
    """

    def __init__(self, bridge: CliBridge, *, bucket_name: str, mount_path: str):
        self._bridge = bridge
        self._bucket_name = bucket_name
        self._mount_path = mount_path.rstrip("/") or "/"

    @property
    def mount_path(self) -> str:
        return self._mount_path

    async def is_mounted(self) -> bool:
        needle = f"s3fs on {self._mount_path} "
        result = await self._bridge.run(f"mount | grep -F {shlex.quote(needle)}", timeout_s=MOUNT_CHECK_TIMEOUT_S)
        return needle in (result.stdout or "")

    async def mount(self, credentials: R2Credentials) -> MountResult:
        missing = credentials.missing()
        if missing:
            raise NotConfiguredError("R2 storage is not configured", details=f"Missing: {', '.join(missing)}")

        try:
            already = await self.is_mounted()
        except GatewayError as e:
            message = str(e) or type(e).__name__
            logger.error("failed to check mount table for %s: %s", self._mount_path, message)
            return MountResult(mounted=False, error=message)
        if already:
            logger.debug("durable storage already mounted at %s", self._mount_path)
            return MountResult(mounted=True)

        logger.info("mounting bucket %s at %s", self._bucket_name, self._mount_path)
        try:
            await self._bridge.sandbox.mount_bucket(
                self._bucket_name,
                self._mount_path,
                endpoint=credentials.endpoint,
                access_key_id=str(credentials.access_key_id),
                secret_access_key=str(credentials.secret_access_key),
            )
        except Exception as e:
            message = str(e) or type(e).__name__
            # The mount tool and the mount table can disagree; a busy mount point means it is attached.
            if _is_already_in_use(message):
                logger.info("mount point %s already in use; treating as mounted", self._mount_path)
                return MountResult(mounted=True, attempted=True)
            logger.error("failed to mount durable storage at %s: %s", self._mount_path, message)
            return MountResult(mounted=False, attempted=True, error=message)
        return MountResult(mounted=True, attempted=True)

    async def ensure_mounted(self, credentials: R2Credentials) -> bool:
        try:
            return (await self.mount(credentials)).mounted
        except NotConfiguredError:
            logger.info("durable storage not configured; skipping mount")
            return False
