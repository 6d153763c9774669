from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

from .config import GatewayHostConfig
from .gateway.cli_bridge import CliBridge
from .gateway.devices import DeviceCli
from .gateway.probe import ProcessProbe
from .gateway.storage import StorageMountManager
from .gateway.supervisor import GatewaySupervisor
from .gateway.sync import SyncEngine
from .sandbox.base import Sandbox
from .sandbox.local import LocalSandbox
from .scheduler import BackupScheduler
from .security import GatewayAuthPolicy, load_gateway_auth_policy_from_env


@dataclass(frozen=True)
class GatewayService:
    """Composition root: sandbox + supervisor + storage sync + security policy."""

    config: GatewayHostConfig
    sandbox: Sandbox
    bridge: CliBridge
    probe: ProcessProbe
    storage: StorageMountManager
    sync_engine: SyncEngine
    supervisor: GatewaySupervisor
    devices: DeviceCli
    scheduler: BackupScheduler
    auth_policy: GatewayAuthPolicy


_service: Optional[GatewayService] = None


def get_gateway_service() -> GatewayService:
    global _service
    if _service is None:
        _service = create_default_gateway_service()
    return _service


def set_gateway_service(service: Optional[GatewayService]) -> None:
    """Install a prebuilt service (tests, embedding hosts). `None` resets to lazy defaults."""
    global _service
    _service = service


def build_gateway_service(
    *,
    config: GatewayHostConfig,
    sandbox: Sandbox,
    auth_policy: Optional[GatewayAuthPolicy] = None,
) -> GatewayService:
    bridge = CliBridge(sandbox, timeout_s=config.cli_timeout_s, poll_interval_s=config.cli_poll_interval_s)
    probe = ProcessProbe(
        sandbox,
        port=config.backend_port,
        signature=config.backend_signature,
        cli_bin=config.cli_bin,
    )
    storage = StorageMountManager(bridge, bucket_name=config.bucket_name, mount_path=config.mount_path)
    sync_engine = SyncEngine(
        bridge,
        storage,
        data_dir=config.data_dir,
        critical_file=config.critical_file,
        excludes=config.sync_excludes,
        sync_timeout_s=config.sync_timeout_s,
    )
    supervisor = GatewaySupervisor(sandbox, probe, config=config, sync_engine=sync_engine)
    devices = DeviceCli(bridge, cli_bin=config.cli_bin, backend_port=config.backend_port)
    scheduler = BackupScheduler(sync_engine, credentials=config.r2, interval_s=config.sync_interval_s)
    return GatewayService(
        config=config,
        sandbox=sandbox,
        bridge=bridge,
        probe=probe,
        storage=storage,
        sync_engine=sync_engine,
        supervisor=supervisor,
        devices=devices,
        scheduler=scheduler,
        auth_policy=auth_policy if auth_policy is not None else load_gateway_auth_policy_from_env(),
    )


def create_default_gateway_service() -> GatewayService:
    cfg = GatewayHostConfig.from_env()
    return build_gateway_service(config=cfg, sandbox=LocalSandbox())


def start_gateway_background() -> None:
    get_gateway_service().scheduler.start()


async def stop_gateway_background() -> None:
    global _service
    if _service is None:
        return
    try:
        await _service.scheduler.stop()
        await _service.supervisor.aclose()
    finally:
        _service = None
