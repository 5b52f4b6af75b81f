"""Minimal QMP client for talking to a running qemu over its monitor socket."""

from __future__ import annotations

import json
import socket
from pathlib import Path
from typing import Any, Dict, Optional

from vmachine.exceptions import BackendUnavailableError, ResourceIOError


class QMPClient:
    """Line-oriented JSON client; events interleaved with replies are skipped."""

    def __init__(self, path: Path, timeout: float = 5.0) -> None:
        self.path = path
        self.timeout = timeout
        self._sock: Optional[socket.socket] = None
        self._buffer = b""

    def __enter__(self) -> "QMPClient":
        self.connect()
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    def connect(self) -> None:
        sock = socket.socket(socket.AF_UNIX, socket.SOCK_STREAM)
        sock.settimeout(self.timeout)
        try:
            sock.connect(str(self.path))
        except OSError as exc:
            sock.close()
            raise BackendUnavailableError(f"cannot connect to qmp socket {self.path}: {exc}") from exc
        self._sock = sock
        greeting = self._read_message()
        if "QMP" not in greeting:
            self.close()
            raise ResourceIOError(f"unexpected qmp greeting on {self.path}: {greeting}")
        self.execute("qmp_capabilities")

    def close(self) -> None:
        if self._sock is not None:
            self._sock.close()
            self._sock = None
        self._buffer = b""

    def execute(self, command: str, arguments: Optional[Dict[str, Any]] = None) -> Any:
        if self._sock is None:
            raise ResourceIOError("qmp client is not connected")
        payload: Dict[str, Any] = {"execute": command}
        if arguments:
            payload["arguments"] = arguments
        try:
            self._sock.sendall((json.dumps(payload) + "\n").encode())
        except OSError as exc:
            raise ResourceIOError(f"qmp command {command} failed: {exc}") from exc
        while True:
            message = self._read_message()
            if "error" in message:
                error = message["error"]
                raise ResourceIOError(
                    f"qmp command {command} failed: {error.get('class', '')} {error.get('desc', '')}".strip()
                )
            if "return" in message:
                return message["return"]

    def _read_message(self) -> Dict[str, Any]:
        assert self._sock is not None
        while b"\n" not in self._buffer:
            try:
                chunk = self._sock.recv(4096)
            except OSError as exc:
                raise ResourceIOError(f"reading from qmp socket {self.path} failed: {exc}") from exc
            if not chunk:
                raise ResourceIOError(f"qmp socket {self.path} closed unexpectedly")
            self._buffer += chunk
        line, self._buffer = self._buffer.split(b"\n", 1)
        if not line.strip():
            return self._read_message()
        try:
            return json.loads(line)
        except json.JSONDecodeError as exc:
            raise ResourceIOError(f"malformed qmp message: {line[:200]!r}") from exc
