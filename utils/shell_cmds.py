import os
import shutil
import subprocess
import time
from typing import Callable, List, Mapping, Optional

from loguru import logger

# Shell convention for "command not found".
COMMAND_NOT_FOUND = 127


def command_exists(name: str) -> bool:
    return shutil.which(name) is not None


def is_root() -> bool:
    return hasattr(os, "geteuid") and os.geteuid() == 0


def run(
    cmd: List[str],
    *,
    timeout: Optional[float] = None,
    env: Optional[Mapping[str, str]] = None,
    input_data: Optional[str] = None,
) -> subprocess.CompletedProcess:
    """Run a local command and capture its output.

    A missing executable is reported the way a shell would (exit status 127)
    instead of raising, so callers can treat "not installed" and "failed" the
    same way. A timeout is reported with a non-zero status as well.
    """
    try:
        return subprocess.run(
            cmd,
            capture_output=True,
            text=True,
            timeout=timeout,
            env=dict(env) if env is not None else None,
            input=input_data,
        )
    except FileNotFoundError as e:
        return subprocess.CompletedProcess(cmd, COMMAND_NOT_FOUND, stdout="", stderr=str(e))
    except subprocess.TimeoutExpired as e:
        logger.debug(f"{cmd[0]} timed out after {e.timeout} seconds")
        return subprocess.CompletedProcess(cmd, -1, stdout="", stderr=f"timeout after {e.timeout} seconds")


def succeeds(cmd: List[str], *, timeout: Optional[float] = None) -> bool:
    return run(cmd, timeout=timeout).returncode == 0


def run_with_retries(
    cmd: List[str],
    *,
    max_retries: int = 3,
    retry_delay: float = 15,
    timeout: Optional[float] = None,
) -> subprocess.CompletedProcess:
    result = run(cmd, timeout=timeout)
    for attempt in range(1, max_retries):
        if result.returncode == 0:
            break
        logger.debug(f"{cmd[0]} failed (attempt {attempt}/{max_retries}), retrying in {retry_delay}s...  {result.stderr.strip()}")
        time.sleep(retry_delay)
        result = run(cmd, timeout=timeout)
    return result


def stream(
    cmd: List[str],
    *,
    env: Optional[Mapping[str, str]] = None,
    on_line: Optional[Callable[[str], None]] = None,
) -> int:
    """Run a command to completion, handing each output line to ``on_line``.

    stderr is merged into stdout so the caller sees the same interleaving a
    terminal would.
    """
    if on_line is None:
        on_line = logger.info
    try:
        proc = subprocess.Popen(
            cmd,
            stdout=subprocess.PIPE,
            stderr=subprocess.STDOUT,
            text=True,
            env=dict(env) if env is not None else None,
        )
    except FileNotFoundError as e:
        on_line(str(e))
        return COMMAND_NOT_FOUND

    assert proc.stdout is not None
    with proc.stdout:
        for line in proc.stdout:
            on_line(line.rstrip("\n"))
    return proc.wait()


def spawn_detached(cmd: List[str], log_path: str) -> subprocess.Popen:
    """Start a long-lived process in its own session and return its handle.

    The process keeps running after we exit. Callers that outlive it should
    ``poll()`` the handle so an early exit is noticed and reaped.
    """
    os.makedirs(os.path.dirname(log_path) or ".", exist_ok=True)
    with open(log_path, "ab") as log_file:
        return subprocess.Popen(
            cmd,
            stdin=subprocess.DEVNULL,
            stdout=log_file,
            stderr=subprocess.STDOUT,
            start_new_session=True,
        )
