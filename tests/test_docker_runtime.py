import stat
import subprocess
from pathlib import Path

import pytest

from instance_bootstrap import docker_runtime
from instance_bootstrap.docker_runtime import DaemonState, DockerBootstrap
from instance_bootstrap.environment import EnvironmentKind
from instance_bootstrap.errors import DockerUnavailableError
from utils import shell_cmds


class FakeProcess:
    def __init__(self, pid, returncode=None):
        self.pid = pid
        self.returncode = returncode

    def poll(self):
        return self.returncode


class FakeHost:
    """Stands in for the docker CLI, the service manager and dockerd."""

    def __init__(self, monkeypatch, *, installed, reachable, root=True, dockerd_on_path=True, dockerd_exit=None):
        self.installed = list(installed)
        self.reachable = list(reachable)
        self.reachable_calls = 0
        self.service_starts = 0
        self.spawned = []
        self.downloads = []
        self.installer_runs = 0
        self.download_rc = 0
        self.dockerd_on_path = dockerd_on_path
        self.dockerd_exit = dockerd_exit

        monkeypatch.setattr(docker_runtime, "docker_installed", self._installed)
        monkeypatch.setattr(docker_runtime, "docker_reachable", self._reachable)
        monkeypatch.setattr(docker_runtime, "start_docker_service", self._start_service)
        monkeypatch.setattr(shell_cmds, "is_root", lambda: root)
        monkeypatch.setattr(shell_cmds, "command_exists", lambda name: name != "dockerd" or self.dockerd_on_path)
        monkeypatch.setattr(
            shell_cmds,
            "run",
            lambda cmd, **kw: subprocess.CompletedProcess(cmd, 0, stdout="Docker version 27.0.0\n", stderr=""),
        )
        monkeypatch.setattr(shell_cmds, "spawn_detached", self._spawn)
        monkeypatch.setattr(shell_cmds, "run_with_retries", self._download)
        monkeypatch.setattr(shell_cmds, "stream", self._stream)

    @staticmethod
    def _next(values):
        # the last answer repeats forever
        return values.pop(0) if len(values) > 1 else values[0]

    def _installed(self):
        return self._next(self.installed)

    def _reachable(self):
        self.reachable_calls += 1
        return self._next(self.reachable)

    def _start_service(self):
        self.service_starts += 1
        return True

    def _spawn(self, cmd, log_path):
        self.spawned.append((cmd, log_path))
        return FakeProcess(4242, self.dockerd_exit)

    def _download(self, cmd, **kw):
        self.downloads.append(cmd)
        return subprocess.CompletedProcess(cmd, self.download_rc, stdout="", stderr="")

    def _stream(self, cmd, **kw):
        self.installer_runs += 1
        # the vendor installer ships dockerd
        self.dockerd_on_path = True
        return 0


def test_already_running_daemon_is_left_alone(monkeypatch, settings):
    host = FakeHost(monkeypatch, installed=[True], reachable=[True])
    boot = DockerBootstrap(EnvironmentKind.CONTAINER, settings)

    assert boot.ensure_running() is DaemonState.READY
    assert host.spawned == []
    assert host.service_starts == 0
    assert host.downloads == []


def test_container_without_socket_starts_dockerd_and_gives_up(monkeypatch, settings, log_lines):
    host = FakeHost(monkeypatch, installed=[True], reachable=[False])
    boot = DockerBootstrap(EnvironmentKind.CONTAINER, settings)

    with pytest.raises(DockerUnavailableError):
        boot.ensure_running()

    assert boot.state is DaemonState.FAILED
    assert host.spawned == [
        (
            ["dockerd", "-H", f"unix://{settings.docker_socket}", "-H", "tcp://127.0.0.1:2375"],
            settings.dockerd_log,
        )
    ]
    attempts = [line for line in log_lines if line.startswith("Waiting for Docker daemon... attempt")]
    # one bounded loop before the installer fallback and one after it
    assert attempts == [f"Waiting for Docker daemon... attempt {i}/4" for i in range(1, 5)] * 2
    assert host.reachable_calls == 1 + 2 * settings.daemon_ready.max_attempts
    assert host.installer_runs == 1


def test_container_without_socket_becomes_ready(monkeypatch, settings):
    host = FakeHost(monkeypatch, installed=[True], reachable=[False, False, True])
    boot = DockerBootstrap(EnvironmentKind.CONTAINER, settings)

    assert boot.ensure_running() is DaemonState.READY
    assert boot.dockerd_pid == 4242
    assert len(host.spawned) == 1


def test_vm_starts_through_service_manager(monkeypatch, settings):
    host = FakeHost(monkeypatch, installed=[True], reachable=[False, False, True])
    boot = DockerBootstrap(EnvironmentKind.VM, settings)

    assert boot.ensure_running() is DaemonState.READY
    assert host.service_starts == 2
    assert host.spawned == []


def test_vm_fixes_socket_permissions_as_last_resort(monkeypatch, settings):
    sock = Path(settings.docker_socket)
    sock.write_text("")
    sock.chmod(0o600)
    reachable = [False] * (1 + settings.daemon_ready.max_attempts) + [True]
    FakeHost(monkeypatch, installed=[True], reachable=reachable)
    boot = DockerBootstrap(EnvironmentKind.VM, settings)

    assert boot.ensure_running() is DaemonState.READY
    assert stat.S_IMODE(sock.stat().st_mode) == 0o666


def test_bind_mounted_socket_gets_permissions_fixed_as_root(monkeypatch, settings):
    sock = Path(settings.docker_socket)
    sock.write_text("")
    sock.chmod(0o600)
    host = FakeHost(monkeypatch, installed=[True], reachable=[False, False, True])
    boot = DockerBootstrap(EnvironmentKind.CONTAINER, settings)

    assert boot.ensure_running() is DaemonState.READY
    assert stat.S_IMODE(sock.stat().st_mode) == 0o666
    assert host.spawned == []


def test_bind_mounted_socket_left_alone_when_not_root(monkeypatch, settings):
    sock = Path(settings.docker_socket)
    sock.write_text("")
    sock.chmod(0o600)
    FakeHost(monkeypatch, installed=[True], reachable=[False], root=False)
    boot = DockerBootstrap(EnvironmentKind.CONTAINER, settings)

    with pytest.raises(DockerUnavailableError):
        boot.ensure_running()
    assert stat.S_IMODE(sock.stat().st_mode) == 0o600


def test_missing_docker_is_installed_then_started(monkeypatch, settings, log_lines):
    host = FakeHost(monkeypatch, installed=[False, True], reachable=[True])
    boot = DockerBootstrap(EnvironmentKind.CONTAINER, settings)

    assert boot.ensure_running() is DaemonState.READY
    assert host.downloads == [["curl", "-fsSL", "https://get.docker.com", "-o", settings.docker_install_script]]
    assert host.installer_runs == 1
    transitions = [line for line in log_lines if line.startswith("docker daemon:")]
    assert transitions[0].startswith("docker daemon: not_installed -> installing")
    assert transitions[1].startswith("docker daemon: installing -> starting")
    assert transitions[-1].startswith("docker daemon: starting -> ready")


def test_installer_download_failure_is_fatal(monkeypatch, settings):
    host = FakeHost(monkeypatch, installed=[False], reachable=[False])
    host.download_rc = 22
    boot = DockerBootstrap(EnvironmentKind.VM, settings)

    with pytest.raises(DockerUnavailableError):
        boot.ensure_running()
    assert boot.state is DaemonState.FAILED
    assert host.installer_runs == 0


def test_installer_is_retried(monkeypatch, settings):
    host = FakeHost(monkeypatch, installed=[False, False, False, False, False], reachable=[True])
    boot = DockerBootstrap(EnvironmentKind.CONTAINER, settings)

    with pytest.raises(DockerUnavailableError):
        boot.ensure_running()
    assert host.installer_runs == settings.installer.max_attempts


def test_installed_but_broken_daemon_is_reinstalled_then_ready(monkeypatch, settings, log_lines):
    # initial probe plus a full readiness loop fail, the daemon answers after reinstalling
    reachable = [False] * (1 + settings.daemon_ready.max_attempts) + [True]
    host = FakeHost(monkeypatch, installed=[True], reachable=reachable)
    boot = DockerBootstrap(EnvironmentKind.VM, settings)

    assert boot.ensure_running() is DaemonState.READY
    assert host.downloads == [["curl", "-fsSL", "https://get.docker.com", "-o", settings.docker_install_script]]
    assert host.installer_runs == 1
    assert host.service_starts == settings.daemon_ready.max_attempts + 1
    transitions = [line.split(" (")[0] for line in log_lines if line.startswith("docker daemon:")]
    assert transitions == [
        "docker daemon: not_installed -> starting",
        "docker daemon: starting -> installing",
        "docker daemon: installing -> starting",
        "docker daemon: starting -> ready",
    ]


def test_container_without_dockerd_runs_installer(monkeypatch, settings, log_lines):
    host = FakeHost(monkeypatch, installed=[True], reachable=[False, False, True], dockerd_on_path=False)
    boot = DockerBootstrap(EnvironmentKind.CONTAINER, settings)

    assert boot.ensure_running() is DaemonState.READY
    assert "ERROR: dockerd not found on PATH" in log_lines
    assert host.installer_runs == 1
    assert len(host.spawned) == 1
    assert boot.dockerd_pid == 4242


def test_broken_daemon_fails_once_installer_fallback_is_spent(monkeypatch, settings):
    host = FakeHost(monkeypatch, installed=[True], reachable=[False], dockerd_on_path=False)
    host.download_rc = 22
    boot = DockerBootstrap(EnvironmentKind.CONTAINER, settings)

    with pytest.raises(DockerUnavailableError):
        boot.ensure_running()
    assert boot.state is DaemonState.FAILED
    assert len(host.downloads) == 1
    assert host.spawned == []


def test_readiness_wait_stops_when_dockerd_exits(monkeypatch, settings, log_lines):
    host = FakeHost(monkeypatch, installed=[True], reachable=[False], dockerd_exit=1)
    boot = DockerBootstrap(EnvironmentKind.CONTAINER, settings)

    with pytest.raises(DockerUnavailableError):
        boot.ensure_running()
    # only the initial probe: no readiness polls against a dead dockerd
    assert host.reachable_calls == 1
    # spawned again after the installer fallback
    assert len(host.spawned) == 2
    assert not any(line.startswith("Waiting for Docker daemon") for line in log_lines)
    assert any(line.startswith("ERROR: dockerd exited with code 1") for line in log_lines)
