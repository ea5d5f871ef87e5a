import os
import shlex
from pathlib import Path
from typing import Mapping, Tuple

from loguru import logger

from utils import shell_cmds

from .config import (
    CONTROL_PORT,
    FORWARDED_ENV,
    TCP_PORT_ENV,
    TURN_PORT,
    UDP_PORT_ENV,
    BootstrapConfig,
    BootstrapSettings,
)
from .errors import ScriptWriteError


def render_start_script(settings: BootstrapSettings) -> str:
    name = settings.container_name
    sock = settings.docker_socket
    pull = settings.image_pull
    ready = settings.daemon_ready
    env_flags = [f'  -e {var}="${var}" \\' for var in FORWARDED_ENV]

    return "\n".join(
        [
            "#!/bin/bash",
            "set -o pipefail",
            "",
            "# Optional: environment file to load, for re-running by hand.",
            'ENV_FILE="${1:-}"',
            'if [ -n "$ENV_FILE" ]; then',
            '  if [ ! -r "$ENV_FILE" ]; then',
            '    echo "ERROR: cannot read environment file $ENV_FILE"',
            "    exit 1",
            "  fi",
            "  set -a",
            '  . "$ENV_FILE"',
            "  set +a",
            "fi",
            "",
            'if [ -z "${USER_ID:-}" ] || [ -z "${INSTANCE_ID:-}" ] || [ -z "${CONTROL_PLANE_IMAGE:-}" ]; then',
            '  echo "ERROR: Required environment variables are missing!"',
            '  echo "  USER_ID: [${USER_ID:-<empty>}]"',
            '  echo "  INSTANCE_ID: [${INSTANCE_ID:-<empty>}]"',
            '  echo "  CONTROL_PLANE_IMAGE: [${CONTROL_PLANE_IMAGE:-<empty>}]"',
            "  exit 1",
            "fi",
            "",
            'echo "Starting control plane with:"',
            'echo "  USER_ID=$USER_ID"',
            'echo "  INSTANCE_ID=$INSTANCE_ID"',
            'echo "  RESOURCE_TYPE=${RESOURCE_TYPE:-}"',
            'echo "  START_TURN=${START_TURN:-}"',
            "",
            "pull_attempts=0",
            f"max_pull_attempts={pull.max_attempts}",
            "pulled=0",
            'while [ "$pull_attempts" -lt "$max_pull_attempts" ]; do',
            '  if docker pull "$CONTROL_PLANE_IMAGE"; then',
            "    pulled=1",
            "    break",
            "  fi",
            "  pull_attempts=$((pull_attempts + 1))",
            '  if [ "$pull_attempts" -lt "$max_pull_attempts" ]; then',
            f'    echo "Docker pull failed, retrying in {pull.delay:g} seconds..."',
            f"    sleep {pull.delay:g}",
            "  fi",
            "done",
            'if [ "$pulled" -ne 1 ]; then',
            '  echo "WARNING: could not pull $CONTROL_PLANE_IMAGE, trying the local copy"',
            "fi",
            "",
            f"docker rm -f {name} >/dev/null 2>&1 || true",
            "",
            "wait_for_docker_daemon() {",
            f"  local max_attempts={ready.max_attempts}",
            "  local attempt=0",
            '  while [ "$attempt" -lt "$max_attempts" ]; do',
            "    if docker info >/dev/null 2>&1; then",
            '      echo "Docker daemon is running"',
            "      return 0",
            "    fi",
            '    echo "Waiting for Docker daemon... attempt $((attempt + 1))/$max_attempts"',
            "    systemctl start docker 2>/dev/null || service docker start 2>/dev/null || true",
            f"    sleep {ready.delay:g}",
            "    attempt=$((attempt + 1))",
            "  done",
            '  echo "ERROR: Docker daemon did not become ready"',
            "  return 1",
            "}",
            "",
            "wait_for_docker_daemon || exit 1",
            "",
            f"TCP_PORT=${{{TCP_PORT_ENV}:-{CONTROL_PORT}}}",
            f"UDP_PORT=${{{UDP_PORT_ENV}:-{TURN_PORT}}}",
            "",
            "docker run -d \\",
            f"  --name {name} \\",
            "  --restart unless-stopped \\",
            f"  -v {sock}:{sock} \\",
            f'  -p "$TCP_PORT:{CONTROL_PORT}" \\',
            f'  -p "$UDP_PORT:{TURN_PORT}/udp" \\',
            *env_flags,
            '  "$CONTROL_PLANE_IMAGE" || {',
            '    echo "ERROR: Failed to start control plane container"',
            "    exit 1",
            "  }",
            "",
            'echo "Control plane container started successfully"',
            'echo "Using ports: TCP=$TCP_PORT, UDP=$UDP_PORT"',
            "",
        ]
    )


def render_env_file(config: BootstrapConfig) -> str:
    lines = [f"{key}={shlex.quote(value)}" for key, value in config.container_env().items()]
    return "\n".join(lines) + "\n"


def write_control_plane_files(config: BootstrapConfig, settings: BootstrapSettings) -> Tuple[Path, Path]:
    """Write the start script (0755) and its environment file (0600)."""
    directory = Path(settings.control_plane_dir)
    script_path = Path(settings.start_script_path)
    env_path = Path(settings.env_file_path)
    try:
        directory.mkdir(parents=True, exist_ok=True)
    except OSError as e:
        raise ScriptWriteError(f"Failed to create control plane directory {directory}: {e}") from e

    try:
        script_path.write_text(render_start_script(settings))
        script_path.chmod(0o755)
    except OSError as e:
        raise ScriptWriteError(f"Failed to write start script {script_path}: {e}") from e

    try:
        # holds the access token
        fd = os.open(env_path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
        with os.fdopen(fd, "w") as f:
            f.write(render_env_file(config))
        env_path.chmod(0o600)
    except OSError as e:
        raise ScriptWriteError(f"Failed to write environment file {env_path}: {e}") from e

    logger.info(f"Wrote {script_path} and {env_path}")
    return script_path, env_path


def run_start_script(script_path: Path, env: Mapping[str, str]) -> int:
    logger.info(f"Running {script_path}")
    code = shell_cmds.stream(["bash", str(script_path)], env=env, on_line=lambda line: logger.info(f"[start] {line}"))
    if code != 0:
        logger.error(f"ERROR: Control plane start script failed (exit {code})")
    else:
        logger.success("Control plane start script finished")
    return code
