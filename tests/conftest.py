import sys
from pathlib import Path

import pytest
from loguru import logger

from instance_bootstrap.config import BootstrapSettings, RetryPolicy


@pytest.fixture
def log_lines():
    lines = []
    handler_id = logger.add(lambda msg: lines.append(msg.record["message"]), level="DEBUG")
    yield lines
    logger.remove(handler_id)


@pytest.fixture
def settings(tmp_path: Path) -> BootstrapSettings:
    # Same shape as production, but every delay is zero and paths live in tmp.
    return BootstrapSettings(
        log_file=str(tmp_path / "setup.log"),
        control_plane_dir=str(tmp_path / "control-plane"),
        docker_socket=str(tmp_path / "docker.sock"),
        dockerd_log=str(tmp_path / "dockerd.log"),
        docker_install_script=str(tmp_path / "get-docker.sh"),
        network=RetryPolicy(max_attempts=3, delay=0),
        daemon_ready=RetryPolicy(max_attempts=4, delay=0),
        installer=RetryPolicy(max_attempts=2, delay=0),
        image_pull=RetryPolicy(max_attempts=3, delay=0),
    )


@pytest.fixture
def restore_logger():
    yield
    logger.remove()
    logger.add(sys.stderr)
