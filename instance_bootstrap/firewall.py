from typing import Iterable, Tuple

from loguru import logger

from utils import shell_cmds

from .environment import EnvironmentKind


def configure_firewall(
    kind: EnvironmentKind,
    ports: Iterable[Tuple[int, str]],
    vm_only: bool = True,
) -> bool:
    """Open ``ports`` (port, protocol) with ufw. Best effort, never raises."""
    if not shell_cmds.command_exists("ufw"):
        logger.info("ufw not available, skipping firewall configuration")
        return False
    if vm_only and kind is not EnvironmentKind.VM:
        logger.info(f"Skipping firewall configuration on {kind.value} host")
        return False

    logger.info("Configuring firewall...")
    ok = True
    commands = [["ufw", "allow", f"{port}/{proto}"] for port, proto in ports]
    commands.append(["ufw", "--force", "enable"])
    for cmd in commands:
        try:
            result = shell_cmds.run(cmd, timeout=60)
        except OSError as e:
            logger.warning(f"{' '.join(cmd)} failed: {e}")
            ok = False
            continue
        if result.returncode != 0:
            logger.warning(f"{' '.join(cmd)} failed (exit {result.returncode}): {result.stderr.strip()}")
            ok = False

    if ok:
        logger.info("Firewall configured")
    else:
        logger.warning("Firewall configured with errors")
    return ok
