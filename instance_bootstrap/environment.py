import shutil
from enum import Enum
from pathlib import Path

from loguru import logger

SYSTEMD_RUNTIME_DIR = "/run/systemd/system"


class EnvironmentKind(str, Enum):
    """Where we are running"""
    VM = "vm"
    CONTAINER = "container"


def classify_environment(
    systemctl: str = "systemctl",
    systemd_dir: str = SYSTEMD_RUNTIME_DIR,
) -> EnvironmentKind:
    """A host counts as a VM only when it has a live service manager.

    The systemctl binary alone is not enough: many container images ship it
    without systemd running as PID 1, in which case the runtime directory is
    absent. Anything we cannot positively identify is treated as a container.
    """
    has_systemctl = shutil.which(systemctl) is not None
    has_runtime_dir = Path(systemd_dir).is_dir()
    kind = EnvironmentKind.VM if has_systemctl and has_runtime_dir else EnvironmentKind.CONTAINER
    logger.info(
        f"Environment: {kind.value} (systemctl={'yes' if has_systemctl else 'no'}, "
        f"{systemd_dir}={'present' if has_runtime_dir else 'absent'})"
    )
    return kind
