"""Named remote connections to machines, kept in a YAML registry file."""

from __future__ import annotations

import contextlib
import fcntl
import os
import time
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Dict, Iterator, List, Mapping, Optional, Sequence, Tuple

try:
    import yaml  # type: ignore
except ImportError as exc:  # pragma: no cover
    raise SystemExit("PyYAML is required but not installed") from exc

from vmachine.constants import LOCK_TIMEOUT, POLL_INTERVAL
from vmachine.exceptions import ConflictError, ManagerError, NotFoundError, ResourceIOError, WaitTimeoutError
from vmachine.models import ConnectionEntry
from vmachine.utils import ensure_directory, log, write_atomic

LOCALHOST = "localhost"


@dataclass
class Registry:
    default: str = ""
    connections: Dict[str, ConnectionEntry] = field(default_factory=dict)

    def to_dict(self) -> dict:
        return {
            "default": self.default,
            "connections": {
                name: {k: v for k, v in asdict(entry).items() if k != "name"}
                for name, entry in self.connections.items()
            },
        }

    @classmethod
    def from_dict(cls, data: Optional[dict]) -> "Registry":
        data = data or {}
        connections = {}
        for name, raw in (data.get("connections") or {}).items():
            connections[name] = ConnectionEntry(
                name=name,
                uri=raw.get("uri", ""),
                identity=raw.get("identity", ""),
                is_machine=bool(raw.get("is_machine", False)),
            )
        return cls(default=data.get("default") or "", connections=connections)


def make_ssh_url(host: str, path: str, port: Optional[int], user: str) -> str:
    hostname = f"{host}:{port}" if port else host
    return f"ssh://{user}@{hostname}{path}"


def machine_connections(name: str, uid: int, port: int, username: str) -> List[Tuple[str, str]]:
    """Rootless and rootful connection (name, uri) pairs for a machine."""
    rootless = make_ssh_url(LOCALHOST, f"/run/user/{uid}/podman/podman.sock", port, username)
    rootful = make_ssh_url(LOCALHOST, "/run/podman/podman.sock", port, "root")
    return [(name, rootless), (f"{name}-root", rootful)]


class ConnectionRegistry:
    """Policy layer over the registry file; every mutation runs under ``edit()``."""

    def __init__(self, path: Path) -> None:
        self.path = path
        self.lock_path = path.with_name(path.name + ".lock")

    def read(self) -> Registry:
        if not self.path.exists():
            return Registry()
        try:
            data = yaml.safe_load(self.path.read_text(encoding="utf-8"))
        except (OSError, yaml.YAMLError) as exc:
            raise ResourceIOError(f"failed to read connections file {self.path}: {exc}") from exc
        if data is not None and not isinstance(data, dict):
            raise ResourceIOError(f"connections file {self.path} must contain a mapping")
        return Registry.from_dict(data)

    def _write(self, registry: Registry) -> None:
        text = yaml.safe_dump(registry.to_dict(), default_flow_style=False, sort_keys=True)
        write_atomic(self.path, text, mode=0o600)

    @contextlib.contextmanager
    def edit(self) -> Iterator[Registry]:
        """Yield the registry under an exclusive lock; persist only on success."""
        ensure_directory(self.path.parent)
        fd = os.open(str(self.lock_path), os.O_CREAT | os.O_RDWR, 0o600)
        try:
            self._acquire(fd)
            try:
                registry = self.read()
                yield registry
                self._write(registry)
            finally:
                fcntl.flock(fd, fcntl.LOCK_UN)
        finally:
            os.close(fd)

    def _acquire(self, fd: int) -> None:
        deadline = time.monotonic() + LOCK_TIMEOUT
        while True:
            try:
                fcntl.flock(fd, fcntl.LOCK_EX | fcntl.LOCK_NB)
                return
            except BlockingIOError:
                if time.monotonic() >= deadline:
                    raise WaitTimeoutError(f"timed out waiting for the lock on {self.lock_path}") from None
            time.sleep(POLL_INTERVAL)

    def add(self, entries: Sequence[Tuple[str, str]], identity: str, make_default: bool) -> None:
        if not identity:
            raise ManagerError("identity must be defined")
        with self.edit() as registry:
            for name, _ in entries:
                if name in registry.connections:
                    raise ConflictError(f"cannot overwrite connection {name!r}")
            was_empty = not registry.connections
            for index, (name, uri) in enumerate(entries):
                registry.connections[name] = ConnectionEntry(
                    name=name, uri=uri, identity=identity, is_machine=True
                )
                if (was_empty and index == 0) or (make_default and index == 0):
                    registry.default = name

    def remove(self, names: Sequence[str], machines: Optional[Mapping[str, bool]] = None) -> None:
        """Drop ``names``; a removed default moves to the first remaining entry.

        ``machines`` maps machine names to their rootful flag so a newly picked
        machine default lands on the variant the machine prefers.
        """
        with self.edit() as registry:
            missing = [name for name in names if name not in registry.connections]
            if missing:
                raise NotFoundError(f"unable to find connection named {missing[0]!r}")
            for name in names:
                del registry.connections[name]
                if registry.default == name:
                    registry.default = ""
            if not registry.default and registry.connections:
                registry.default = next(iter(sorted(registry.connections)))
                chosen = registry.connections[registry.default]
                if machines and chosen.is_machine and registry.default in machines:
                    _flip_default(registry, machines[registry.default], registry.default, registry.default + "-root")

    def update_default_on_rootfulness_change(self, rootful: bool, name: str, rootful_name: str) -> None:
        with self.edit() as registry:
            _flip_default(registry, rootful, name, rootful_name)

    def update_connection_pair_port(self, name: str, port: int, uid: int, username: str, identity: str) -> None:
        with self.edit() as registry:
            for con_name, uri in machine_connections(name, uid, port, username):
                registry.connections[con_name] = ConnectionEntry(
                    name=con_name, uri=uri, identity=identity, is_machine=True
                )

    def any_default(self, *names: str) -> bool:
        default = self.read().default
        return bool(default) and default in names

    def change_default(self, name: str) -> None:
        with self.edit() as registry:
            if name not in registry.connections:
                raise NotFoundError(f"unable to find connection named {name!r}")
            registry.default = name

    def list(self) -> List[ConnectionEntry]:
        registry = self.read()
        return [registry.connections[name] for name in sorted(registry.connections)]


def _flip_default(registry: Registry, rootful: bool, name: str, rootful_name: str) -> None:
    if rootful and registry.default == name and rootful_name in registry.connections:
        registry.default = rootful_name
        log("DEBUG", f"Default connection switched to {rootful_name}")
    elif not rootful and registry.default == rootful_name and name in registry.connections:
        registry.default = name
        log("DEBUG", f"Default connection switched to {name}")
