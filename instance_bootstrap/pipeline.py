import datetime
import os
from typing import Mapping, Optional

from loguru import logger

from .config import (
    CONTROL_PORT,
    PUBLIC_IP_ENV,
    TCP_PORT_ENV,
    TURN_PORT,
    UDP_PORT_ENV,
    BootstrapConfig,
    BootstrapSettings,
)
from .credentials import materialize_identity
from .docker_runtime import ensure_docker
from .environment import classify_environment
from .errors import BootstrapFatalError
from .firewall import configure_firewall
from .network import wait_for_network
from .start_script import run_start_script, write_control_plane_files


def _log_marketplace_env(environ: Mapping[str, str]) -> None:
    logger.info("Vast.ai Environment Variables:")
    for name in (TCP_PORT_ENV, UDP_PORT_ENV, PUBLIC_IP_ENV):
        logger.info(f"  {name}: {environ.get(name) or 'not-set'}")


def provision(
    config: BootstrapConfig,
    settings: BootstrapSettings,
    *,
    wait_network: bool = True,
    configure_fw: bool = True,
    emit_only: bool = False,
    environ: Optional[Mapping[str, str]] = None,
) -> BootstrapConfig:
    """Run every provisioning step in order. Fatal failures raise."""
    environ = os.environ if environ is None else environ
    _log_marketplace_env(environ)

    if wait_network:
        wait_for_network(settings.network_probe_host, settings.network)

    kind = classify_environment()
    ensure_docker(kind, settings)

    config = materialize_identity(config)
    config.require_launch_fields()

    script_path, env_path = write_control_plane_files(config, settings)
    if emit_only:
        logger.info(f"Not running the start script; run it later with: {script_path} {env_path}")
    else:
        child_env = dict(environ)
        child_env.update(config.container_env())
        # failure here is logged by run_start_script and is not fatal for the whole run
        run_start_script(script_path, child_env)

    if configure_fw:
        configure_firewall(
            kind,
            [(CONTROL_PORT, "tcp"), (TURN_PORT, "udp")],
            vm_only=settings.firewall_vm_only,
        )
    return config


def run_bootstrap(
    config: BootstrapConfig,
    settings: BootstrapSettings,
    *,
    wait_network: bool = True,
    configure_fw: bool = True,
    emit_only: bool = False,
    environ: Optional[Mapping[str, str]] = None,
) -> int:
    logger.info(f"=== Tensordock Setup Started at {datetime.datetime.now():%Y-%m-%d %H:%M:%S} ===")
    try:
        provision(
            config,
            settings,
            wait_network=wait_network,
            configure_fw=configure_fw,
            emit_only=emit_only,
            environ=environ,
        )
    except BootstrapFatalError as e:
        logger.critical(f"FATAL ERROR: {e}")
        return 1
    logger.success(f"=== Tensordock Setup Completed at {datetime.datetime.now():%Y-%m-%d %H:%M:%S} ===")
    return 0
