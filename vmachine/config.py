"""Settings loading, environment parsing and directory layout for vmachine."""

from __future__ import annotations

import os
import tempfile
from dataclasses import dataclass, fields
from pathlib import Path
from typing import Any, Dict, Optional

try:
    import yaml  # type: ignore
except ImportError as exc:  # pragma: no cover
    raise SystemExit("PyYAML is required but not installed") from exc

from vmachine.constants import (
    CONNECTIONS_FILE_NAME,
    DEFAULT_CPUS,
    DEFAULT_DISK_SIZE_GB,
    DEFAULT_HELPER_BINARY,
    DEFAULT_HELPER_ENDPOINT,
    DEFAULT_LIBVIRT_URI,
    DEFAULT_MEMORY_MB,
    DEFAULT_NETWORK_HELPER,
    DEFAULT_READY_TIMEOUT,
    DEFAULT_USERNAME,
    SETTINGS_FILE_NAME,
)
from vmachine.exceptions import ManagerError
from vmachine.models import MachineDirs, VMType
from vmachine.utils import ensure_directory, get_env, log, parse_int


@dataclass
class MachineSettings:
    cpus: int = DEFAULT_CPUS
    memory: int = DEFAULT_MEMORY_MB
    disk_size: int = DEFAULT_DISK_SIZE_GB
    image: str = ""
    username: str = DEFAULT_USERNAME
    provider: str = VMType.QEMU.value
    libvirt_uri: str = DEFAULT_LIBVIRT_URI
    helper_binary: str = DEFAULT_HELPER_BINARY
    helper_endpoint: str = DEFAULT_HELPER_ENDPOINT
    network_helper: str = DEFAULT_NETWORK_HELPER
    ready_timeout: int = DEFAULT_READY_TIMEOUT


# Environment overrides: variable -> (field, lower bound, upper bound).
_INT_ENV = {
    "VMACHINE_CPUS": ("cpus", 1, 512),
    "VMACHINE_MEMORY": ("memory", 128, None),
    "VMACHINE_DISK_SIZE": ("disk_size", 1, None),
    "VMACHINE_READY_TIMEOUT": ("ready_timeout", 1, 3600),
}
_STR_ENV = {
    "VMACHINE_IMAGE": "image",
    "VMACHINE_USERNAME": "username",
    "VMACHINE_PROVIDER": "provider",
    "VMACHINE_LIBVIRT_URI": "libvirt_uri",
    "VMACHINE_HELPER_BINARY": "helper_binary",
    "VMACHINE_HELPER_ENDPOINT": "helper_endpoint",
    "VMACHINE_NETWORK_HELPER": "network_helper",
}


def _home_dir(override: str, xdg: str, fallback: Path) -> Path:
    explicit = get_env(override)
    if explicit:
        return Path(explicit)
    base = get_env(xdg)
    if base:
        return Path(base) / "vmachine"
    return fallback


def config_home() -> Path:
    return _home_dir("VMACHINE_CONFIG_HOME", "XDG_CONFIG_HOME", Path.home() / ".config" / "vmachine")


def data_home() -> Path:
    return _home_dir("VMACHINE_DATA_HOME", "XDG_DATA_HOME", Path.home() / ".local" / "share" / "vmachine")


def runtime_dir() -> Path:
    return _home_dir(
        "VMACHINE_RUNTIME_DIR",
        "XDG_RUNTIME_DIR",
        Path(tempfile.gettempdir()) / f"vmachine-{os.getuid()}",
    )


def connections_path() -> Path:
    return config_home() / CONNECTIONS_FILE_NAME


def ssh_key_dir() -> Path:
    return data_home() / "ssh"


def machine_dirs(vm_type: VMType, create: bool = True) -> MachineDirs:
    """Per-backend config, data and runtime directories."""
    dirs = MachineDirs(
        config_dir=config_home() / "machine" / vm_type.value,
        data_dir=data_home() / "machine" / vm_type.value,
        runtime_dir=runtime_dir() / "machine" / vm_type.value,
    )
    if create:
        for path in (dirs.config_dir, dirs.data_dir, dirs.runtime_dir):
            ensure_directory(path)
    return dirs


def _apply(settings: MachineSettings, data: Dict[str, Any], source: str) -> None:
    known = {f.name: f for f in fields(MachineSettings)}
    for key, value in data.items():
        if key not in known:
            raise ManagerError(f"Unknown setting '{key}' in {source}")
        if known[key].type in ("int", int):
            value = parse_int(f"{source}: {key}", value)
        elif value is None:
            value = ""
        else:
            value = str(value)
        setattr(settings, key, value)


def load_settings(path: Optional[Path] = None) -> MachineSettings:
    """Read ``machine.yaml`` (when present) and apply environment overrides."""
    if path is None:
        path = config_home() / SETTINGS_FILE_NAME
    settings = MachineSettings()
    if path.exists():
        try:
            data = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
        except (OSError, yaml.YAMLError) as exc:
            raise ManagerError(f"Failed to read settings file {path}: {exc}") from exc
        if not isinstance(data, dict):
            raise ManagerError(f"Settings file {path} must contain a mapping")
        _apply(settings, data, str(path))
        log("DEBUG", f"Loaded settings from {path}")

    for env_name, (attr, min_val, max_val) in _INT_ENV.items():
        raw = get_env(env_name)
        if raw is not None and raw.strip():
            setattr(settings, attr, parse_int(env_name, raw.strip(), min_val, max_val))
    for env_name, attr in _STR_ENV.items():
        raw = get_env(env_name)
        if raw is not None and raw.strip():
            setattr(settings, attr, raw.strip())

    try:
        VMType.parse(settings.provider)
    except ValueError as exc:
        raise ManagerError(str(exc)) from exc
    return settings
