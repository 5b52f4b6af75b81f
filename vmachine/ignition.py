"""Minimal Ignition v3 payload for first boot."""

from __future__ import annotations

import json
from pathlib import Path
from typing import Any, Dict, List
from urllib.parse import quote

from vmachine.exceptions import ResourceIOError
from vmachine.utils import write_atomic

IGNITION_VERSION = "3.2.0"


def _data_url(text: str) -> str:
    return "data:," + quote(text)


def build_ignition(
    username: str,
    key: str,
    vm_name: str,
    ready_unit: str,
    rootful: bool = False,
    timezone: str = "",
) -> Dict[str, Any]:
    """Users with the machine key, the hostname and the ready notification unit."""
    users: List[Dict[str, Any]] = [
        {
            "name": username,
            "sshAuthorizedKeys": [key],
            "groups": ["wheel", "sudo"],
        }
    ]
    if rootful:
        users.append({"name": "root", "sshAuthorizedKeys": [key]})

    files = [
        {
            "path": "/etc/hostname",
            "mode": 0o644,
            "overwrite": True,
            "contents": {"source": _data_url(vm_name + "\n")},
        }
    ]
    links = []
    if timezone and timezone != "local":
        links.append(
            {
                "path": "/etc/localtime",
                "target": f"../usr/share/zoneinfo/{timezone}",
                "overwrite": True,
            }
        )

    storage: Dict[str, Any] = {"files": files}
    if links:
        storage["links"] = links

    return {
        "ignition": {"version": IGNITION_VERSION},
        "passwd": {"users": users},
        "storage": storage,
        "systemd": {
            "units": [
                {"name": "ready.service", "enabled": True, "contents": ready_unit},
            ]
        },
    }


def write_ignition(path: Path, config: Dict[str, Any]) -> None:
    write_atomic(path, json.dumps(config, indent=2) + "\n")


def copy_user_ignition(source: Path, destination: Path) -> None:
    """Install a caller-provided ignition file verbatim."""
    try:
        data = source.read_bytes()
    except OSError as exc:
        raise ResourceIOError(f"failed to read ignition file {source}: {exc}") from exc
    write_atomic(destination, data)
