"""Data models for vmachine."""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Optional

from vmachine.constants import ZERO_TIME


class Status(str, Enum):
    STOPPED = "stopped"
    STARTING = "starting"
    RUNNING = "running"


class VMType(str, Enum):
    QEMU = "qemu"
    LIBVIRT = "libvirt"
    VFKIT = "vfkit"

    @classmethod
    def parse(cls, raw: str) -> "VMType":
        try:
            return cls(raw.strip().lower())
        except ValueError:
            choices = ", ".join(t.value for t in cls)
            raise ValueError(f"Unsupported provider '{raw}' (choose from: {choices})") from None


def now() -> datetime:
    return datetime.now(timezone.utc)


def format_time(value: Optional[datetime]) -> Optional[str]:
    if value is None:
        return None
    return value.isoformat()


def parse_time(raw: Optional[str]) -> Optional[datetime]:
    """Parse a persisted timestamp; missing and zero values load as None."""
    if not raw or raw == ZERO_TIME:
        return None
    value = datetime.fromisoformat(raw.replace("Z", "+00:00"))
    if value.year <= 1:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value


@dataclass
class ResourceConfig:
    cpus: int
    memory: int  # MiB
    disk_size: int  # GiB


@dataclass
class ImageConfig:
    image_path: str = ""
    image_stream: str = ""
    ignition_path: str = ""


@dataclass
class SSHConfig:
    identity_path: str = ""
    port: int = 22
    remote_username: str = ""
    rootful: bool = False


@dataclass
class Mount:
    source: str
    target: str
    tag: str = ""
    read_only: bool = False

    def __post_init__(self):
        if not self.tag:
            self.tag = "vol" + self.target.replace("/", "-").strip("-")

    @classmethod
    def parse(cls, spec: str) -> "Mount":
        """Parse ``source[:target[:ro]]`` volume notation."""
        parts = spec.split(":", 2)
        source = parts[0]
        target = parts[1] if len(parts) > 1 and parts[1] else source
        read_only = len(parts) > 2 and parts[2] == "ro"
        return cls(source=source, target=target, read_only=read_only)


@dataclass
class VMRecord:
    name: str
    config_path: str
    resources: ResourceConfig
    image: ImageConfig = field(default_factory=ImageConfig)
    ssh: SSHConfig = field(default_factory=SSHConfig)
    mounts: List[Mount] = field(default_factory=list)
    created: Optional[datetime] = None
    last_up: Optional[datetime] = None
    # Set while a start is in progress, cleared once the guest is ready.
    starting: bool = False
    uid: int = 0
    # Provider-owned data (sockets, pidfiles, endpoints).
    backend: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "config_path": self.config_path,
            "resources": asdict(self.resources),
            "image": asdict(self.image),
            "ssh": asdict(self.ssh),
            "mounts": [asdict(m) for m in self.mounts],
            "created": format_time(self.created),
            "last_up": format_time(self.last_up),
            "starting": self.starting,
            "uid": self.uid,
            "backend": dict(self.backend),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "VMRecord":
        return cls(
            name=data.get("name", ""),
            config_path=data.get("config_path", ""),
            resources=ResourceConfig(**data["resources"]),
            image=ImageConfig(**data.get("image", {})),
            ssh=SSHConfig(**data.get("ssh", {})),
            mounts=[Mount(**m) for m in data.get("mounts", [])],
            created=parse_time(data.get("created")),
            last_up=parse_time(data.get("last_up")),
            starting=bool(data.get("starting", False)),
            uid=int(data.get("uid", 0)),
            backend=dict(data.get("backend") or {}),
        )


@dataclass
class ConnectionEntry:
    name: str
    uri: str
    identity: str = ""
    is_machine: bool = True


@dataclass
class ListResponse:
    name: str
    created_at: Optional[datetime]
    last_up: Optional[datetime]
    running: bool
    starting: bool
    stream: str
    vm_type: str
    cpus: int
    memory: int  # bytes
    disk_size: int  # bytes
    port: int
    remote_username: str
    identity_path: str


@dataclass
class InspectInfo:
    config_path: str
    connection_info: Dict[str, str]
    created: Optional[datetime]
    image: ImageConfig
    last_up: Optional[datetime]
    name: str
    resources: ResourceConfig
    ssh_config: SSHConfig
    state: Status
    rootful: bool

    def to_dict(self) -> Dict[str, Any]:
        return {
            "ConfigPath": self.config_path,
            "ConnectionInfo": dict(self.connection_info),
            "Created": format_time(self.created),
            "Image": {
                "IgnitionFile": self.image.ignition_path,
                "ImageStream": self.image.image_stream,
                "ImagePath": self.image.image_path,
            },
            "LastUp": format_time(self.last_up),
            "Name": self.name,
            "Resources": {
                "CPUs": self.resources.cpus,
                "DiskSize": self.resources.disk_size,
                "Memory": self.resources.memory,
            },
            "SSHConfig": {
                "IdentityPath": self.ssh_config.identity_path,
                "Port": self.ssh_config.port,
                "RemoteUsername": self.ssh_config.remote_username,
            },
            "State": self.state.value,
            "Rootful": self.rootful,
        }


@dataclass
class InitOptions:
    name: str
    cpus: int
    memory: int
    disk_size: int
    image_path: str = ""
    ignition_path: str = ""
    username: str = ""
    rootful: bool = False
    is_default: bool = False
    mounts: List[Mount] = field(default_factory=list)
    timezone: str = ""


@dataclass
class SetOptions:
    cpus: Optional[int] = None
    memory: Optional[int] = None
    disk_size: Optional[int] = None
    rootful: Optional[bool] = None


@dataclass
class StartOptions:
    quiet: bool = False


@dataclass
class StopOptions:
    quiet: bool = False


@dataclass
class RemoveOptions:
    force: bool = False
    save_keys: bool = False
    save_ignition: bool = False
    save_image: bool = False


@dataclass
class MachineDirs:
    config_dir: Path
    data_dir: Path
    runtime_dir: Path
