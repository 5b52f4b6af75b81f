"""Guest ready-channel handling."""

from __future__ import annotations

import socket
import time
from pathlib import Path
from typing import Callable, Optional

from vmachine.constants import POLL_INTERVAL, READY_MESSAGE
from vmachine.exceptions import ResourceIOError, WaitTimeoutError
from vmachine.process import cleanup_socket
from vmachine.utils import log, remove_file


def _read_until_ready(conn: socket.socket, deadline: float, check_failure: Optional[Callable[[], None]]) -> None:
    received = b""
    conn.settimeout(POLL_INTERVAL)
    while time.time() < deadline:
        if check_failure is not None:
            check_failure()
        try:
            chunk = conn.recv(1024)
        except socket.timeout:
            continue
        if not chunk:
            raise ResourceIOError("ready channel closed before the guest signalled readiness")
        received += chunk
        if READY_MESSAGE in received:
            return
    raise WaitTimeoutError("timed out waiting for the guest ready signal")


def wait_ready_client(
    path: Path,
    timeout: float,
    check_failure: Optional[Callable[[], None]] = None,
) -> None:
    """Connect to a ready socket served by the hypervisor and wait for the message."""
    deadline = time.time() + timeout
    while True:
        if check_failure is not None:
            check_failure()
        sock = socket.socket(socket.AF_UNIX, socket.SOCK_STREAM)
        try:
            sock.connect(str(path))
        except OSError as exc:
            sock.close()
            if time.time() >= deadline:
                raise WaitTimeoutError(f"ready socket {path} never accepted a connection: {exc}") from exc
            time.sleep(POLL_INTERVAL)
            continue
        with sock:
            _read_until_ready(sock, deadline, check_failure)
        log("DEBUG", f"Guest signalled readiness on {path}")
        return


class ReadyListener:
    """Unix listener the hypervisor helper connects the guest's vsock to."""

    def __init__(self, path: Path) -> None:
        self.path = path
        self._sock: Optional[socket.socket] = None

    def __enter__(self) -> "ReadyListener":
        self.listen()
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    def listen(self) -> None:
        cleanup_socket(self.path)
        sock = socket.socket(socket.AF_UNIX, socket.SOCK_STREAM)
        try:
            sock.bind(str(self.path))
            sock.listen(1)
        except OSError as exc:
            sock.close()
            raise ResourceIOError(f"cannot listen on ready socket {self.path}: {exc}") from exc
        self._sock = sock

    def wait(self, timeout: float, check_failure: Optional[Callable[[], None]] = None) -> None:
        if self._sock is None:
            raise ResourceIOError("ready listener is not open")
        deadline = time.time() + timeout
        self._sock.settimeout(POLL_INTERVAL)
        while time.time() < deadline:
            if check_failure is not None:
                check_failure()
            try:
                conn, _ = self._sock.accept()
            except socket.timeout:
                continue
            with conn:
                _read_until_ready(conn, deadline, check_failure)
            log("DEBUG", f"Guest signalled readiness on {self.path}")
            return
        raise WaitTimeoutError(f"timed out waiting for the guest on {self.path}")

    def close(self) -> None:
        if self._sock is not None:
            self._sock.close()
            self._sock = None
        remove_file(self.path)
