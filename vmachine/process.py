"""Process supervision helpers for machine backends."""

from __future__ import annotations

import errno
import os
import signal
import socket
import time
from pathlib import Path
from typing import Callable, Optional, Union

from vmachine.constants import POLL_INTERVAL, STOP_RETRIES, WAIT_RETRIES
from vmachine.exceptions import ResourceIOError, WaitTimeoutError
from vmachine.utils import log


def is_alive(pid: int) -> bool:
    """Probe ``pid`` with signal 0."""
    if pid <= 0:
        return False
    try:
        os.kill(pid, 0)
    except OSError as exc:
        # EPERM means the process exists but belongs to someone else.
        return exc.errno == errno.EPERM
    return True


def _read_stderr(stderr: Union[str, Path, None]) -> str:
    if stderr is None:
        return ""
    if isinstance(stderr, Path):
        try:
            return stderr.read_text(encoding="utf-8", errors="replace").strip()
        except OSError:
            return ""
    return stderr.strip()


def check_process_status(role: str, pid: int, stderr: Union[str, Path, None] = None) -> None:
    """Raise if the child ``pid`` has exited; return quietly while it runs.

    Never blocks. Only works for children of the current process, which is how
    the backends spawn their hypervisor and helpers.
    """
    try:
        waited, status = os.waitpid(pid, os.WNOHANG)
    except OSError as exc:
        raise ResourceIOError(f"failed to read {role} process status: {exc}") from exc
    if waited == 0:
        return
    if os.WIFEXITED(status):
        code = os.WEXITSTATUS(status)
    elif os.WIFSIGNALED(status):
        code = 128 + os.WTERMSIG(status)
    else:
        code = status
    raise ResourceIOError(
        f"{role} exited unexpectedly with exit code {code}, stderr: {_read_stderr(stderr)}"
    )


def read_pidfile(path: Path) -> Optional[int]:
    try:
        raw = path.read_text(encoding="utf-8").strip()
    except FileNotFoundError:
        return None
    except OSError as exc:
        raise ResourceIOError(f"failed to read pidfile {path}: {exc}") from exc
    if not raw:
        return None
    try:
        return int(raw)
    except ValueError as exc:
        raise ResourceIOError(f"pidfile {path} holds an invalid pid '{raw}'") from exc


def wait_for_pidfile(path: Path, retries: int = WAIT_RETRIES, interval: float = POLL_INTERVAL) -> int:
    for _ in range(retries):
        pid = read_pidfile(path)
        if pid is not None:
            return pid
        time.sleep(interval)
    raise WaitTimeoutError(f"timed out waiting for pidfile {path}")


def wait_for_socket(
    path: Path,
    retries: int = WAIT_RETRIES,
    interval: float = POLL_INTERVAL,
    check_failure: Optional[Callable[[], None]] = None,
) -> None:
    """Poll until ``path`` exists as a socket, asking ``check_failure`` each round."""
    for _ in range(retries):
        if check_failure is not None:
            check_failure()
        if path.exists():
            return
        time.sleep(interval)
    raise WaitTimeoutError(f"timed out waiting for socket {path}")


def terminate(pid: int, role: str, retries: int = STOP_RETRIES, interval: float = POLL_INTERVAL) -> bool:
    """SIGTERM ``pid``, wait, then SIGKILL. Returns True once it is gone."""
    if not is_alive(pid):
        return True
    try:
        os.kill(pid, signal.SIGTERM)
    except ProcessLookupError:
        return True
    for _ in range(retries):
        _reap(pid)
        if not is_alive(pid):
            return True
        time.sleep(interval)
    log("WARN", f"{role} (pid {pid}) ignored SIGTERM; sending SIGKILL")
    try:
        os.kill(pid, signal.SIGKILL)
    except ProcessLookupError:
        return True
    _reap(pid)
    return not is_alive(pid)


def _reap(pid: int) -> None:
    try:
        os.waitpid(pid, os.WNOHANG)
    except ChildProcessError:
        pass


def cleanup_socket(path: Path) -> None:
    """Remove a stale unix socket without touching one that is still served."""
    if not path.exists() or not path.is_socket():
        return

    try:
        with socket.socket(socket.AF_UNIX, socket.SOCK_STREAM) as client:
            client.settimeout(0.2)
            client.connect(str(path))
    except socket.timeout:
        pass
    except OSError as exc:
        if exc.errno not in {errno.ECONNREFUSED, errno.ENOENT}:
            log("WARN", f"Skipping removal of socket {path}: {exc}")
            return
    else:
        log("INFO", f"Detected active socket at {path}; leaving in place")
        return

    try:
        path.unlink()
        log("DEBUG", f"Removed stale socket {path}")
    except FileNotFoundError:
        return
    except OSError as exc:
        log("WARN", f"Failed to remove stale socket {path}: {exc}")
