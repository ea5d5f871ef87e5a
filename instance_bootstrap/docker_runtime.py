"""
Docker Runtime Bootstrap

Makes sure a Docker daemon is installed and answering before anything tries
to pull or run an image.

The start strategy depends on where we run:

- VM: the daemon is a systemd service; start it through the service manager.
- Container with the host socket bind-mounted: the host daemon is ours to
  use, at most its socket permissions need fixing.
- Container without a socket: start ``dockerd`` ourselves, detached.

If Docker is present but the start strategy fails, the vendor installer is
run once and the strategy is tried again.

Progress is tracked as an explicit state so every step shows up in the log:

    NOT_INSTALLED -> INSTALLING -> STARTING -> READY
                         ^             |
                         +-------------+-> FAILED
"""

import os
import subprocess
import time
from enum import Enum
from typing import Optional

from loguru import logger

from utils import shell_cmds
from utils.wait_until import WaitUntilTimeoutError, wait_until

from .config import BootstrapSettings
from .environment import EnvironmentKind
from .errors import DockerUnavailableError


class DaemonState(str, Enum):
    NOT_INSTALLED = "not_installed"
    INSTALLING = "installing"
    STARTING = "starting"
    READY = "ready"
    FAILED = "failed"


class DockerdExitedError(Exception):
    def __init__(self, returncode: int):
        super().__init__(f"dockerd exited with code {returncode}")
        self.returncode = returncode


def docker_installed() -> bool:
    return shell_cmds.command_exists("docker") and shell_cmds.succeeds(["docker", "--version"])


def docker_reachable() -> bool:
    return shell_cmds.succeeds(["docker", "info"], timeout=30)


def start_docker_service() -> bool:
    if shell_cmds.succeeds(["systemctl", "start", "docker"]):
        return True
    return shell_cmds.succeeds(["service", "docker", "start"])


class DockerBootstrap:
    def __init__(self, environment: EnvironmentKind, settings: BootstrapSettings):
        self.environment = environment
        self.settings = settings
        self.state = DaemonState.NOT_INSTALLED
        self.dockerd: Optional[subprocess.Popen] = None

    @property
    def dockerd_pid(self) -> Optional[int]:
        return self.dockerd.pid if self.dockerd is not None else None

    def _transition(self, new_state: DaemonState, reason: str) -> None:
        logger.info(f"docker daemon: {self.state.value} -> {new_state.value} ({reason})")
        self.state = new_state

    def _fail(self, reason: str) -> DockerUnavailableError:
        self._transition(DaemonState.FAILED, reason)
        return DockerUnavailableError(reason)

    def ensure_running(self) -> DaemonState:
        """Bring the daemon to READY or raise DockerUnavailableError."""
        installed_here = False
        if docker_installed():
            version = shell_cmds.run(["docker", "--version"]).stdout.strip()
            logger.info(f"Docker is already installed: {version}")
            if docker_reachable():
                self._transition(DaemonState.READY, "daemon already running")
                return self.state
            self._transition(DaemonState.STARTING, "installed but daemon not reachable")
        else:
            self._transition(DaemonState.INSTALLING, "docker binary not found")
            if not self._install():
                raise self._fail("docker installation failed")
            installed_here = True
            self._transition(DaemonState.STARTING, "installed")

        if self._start():
            self._transition(DaemonState.READY, "daemon answered docker info")
            return self.state

        if not installed_here:
            self._transition(DaemonState.INSTALLING, "daemon did not start, running the installer")
            if self._install():
                self._transition(DaemonState.STARTING, "reinstalled")
                if self._start():
                    self._transition(DaemonState.READY, "daemon answered docker info")
                    return self.state

        raise self._fail("Docker daemon did not become ready")

    def _start(self) -> bool:
        if self.environment is EnvironmentKind.VM:
            return self._start_on_vm()
        return self._start_in_container()

    def _install(self) -> bool:
        s = self.settings
        logger.info("Installing Docker...")
        download = shell_cmds.run_with_retries(
            ["curl", "-fsSL", s.docker_install_url, "-o", s.docker_install_script],
            max_retries=s.installer.max_attempts,
            retry_delay=s.installer.delay,
        )
        if download.returncode != 0:
            logger.error(f"ERROR: could not download the Docker installer: {download.stderr.strip()}")
            return False

        for attempt in range(1, s.installer.max_attempts + 1):
            code = shell_cmds.stream(["sh", s.docker_install_script])
            if code == 0 and docker_installed():
                logger.info("Docker installed")
                return True
            logger.error(f"ERROR: Docker installation failed (attempt {attempt}/{s.installer.max_attempts}, exit {code})")
            if attempt < s.installer.max_attempts:
                time.sleep(s.installer.delay)
        return docker_installed()

    def _daemon_answers(self) -> bool:
        if self.dockerd is not None and self.dockerd.poll() is not None:
            raise DockerdExitedError(self.dockerd.returncode)
        return docker_reachable()

    def _wait_ready(self, before_each=None) -> bool:
        policy = self.settings.daemon_ready
        try:
            wait_until(
                self._daemon_answers,
                max_attempts=policy.max_attempts,
                retry_interval=policy.delay,
                description="Docker daemon",
                before_each=before_each,
            )
        except DockerdExitedError as e:
            logger.error(f"ERROR: {e}, see {self.settings.dockerd_log}")
            self.dockerd = None
            return False
        except WaitUntilTimeoutError:
            logger.error("ERROR: Docker daemon did not become ready")
            return False
        logger.info("Docker daemon is running")
        return True

    def _start_on_vm(self) -> bool:
        logger.info("Starting Docker through the service manager")
        if self._wait_ready(before_each=lambda attempt: start_docker_service()):
            return True
        # The service may be up while its socket refuses us.
        if os.path.exists(self.settings.docker_socket) and self._fix_socket_permissions():
            return docker_reachable()
        return False

    def _start_in_container(self) -> bool:
        sock = self.settings.docker_socket
        if self.dockerd is not None and self.dockerd.poll() is None:
            logger.info(f"dockerd (pid {self.dockerd_pid}) is still running")
            return self._wait_ready()

        if os.path.exists(sock):
            logger.info(f"Found Docker socket at {sock}, using the host daemon")
            if not docker_reachable():
                self._fix_socket_permissions()
            return self._wait_ready()

        logger.info(f"No Docker socket at {sock}, starting dockerd directly")
        if not shell_cmds.command_exists("dockerd"):
            logger.error("ERROR: dockerd not found on PATH")
            return False
        if not self._spawn_dockerd():
            return False
        return self._wait_ready()

    def _fix_socket_permissions(self) -> bool:
        sock = self.settings.docker_socket
        if not shell_cmds.is_root():
            logger.warning(f"cannot adjust permissions of {sock}: not running as root")
            return False
        try:
            os.chmod(sock, 0o666)
        except OSError as e:
            logger.warning(f"failed to adjust permissions of {sock}: {e}")
            return False
        logger.info(f"Adjusted permissions of {sock}")
        return True

    def _spawn_dockerd(self) -> bool:
        s = self.settings
        cmd = ["dockerd", "-H", f"unix://{s.docker_socket}", "-H", s.dockerd_tcp_endpoint]
        try:
            self.dockerd = shell_cmds.spawn_detached(cmd, s.dockerd_log)
        except OSError as e:
            logger.error(f"ERROR: failed to start dockerd: {e}")
            return False
        logger.info(f"dockerd started (pid {self.dockerd_pid}), log at {s.dockerd_log}")
        return True


def ensure_docker(environment: EnvironmentKind, settings: BootstrapSettings) -> DockerBootstrap:
    bootstrap = DockerBootstrap(environment, settings)
    bootstrap.ensure_running()
    return bootstrap
