"""Global constants for vmachine."""

from __future__ import annotations

import os
import re
from pathlib import Path

TRUTHY = {"1", "true", "yes", "on"}

_LOG_VERBOSE = os.environ.get("VMACHINE_LOG_VERBOSE", "").lower() in TRUTHY

DEFAULT_MACHINE_NAME = "vmachine-default"
MACHINE_NAME_RE = re.compile(r"^[a-zA-Z0-9][a-zA-Z0-9_.-]*$")

CONFIG_SUFFIX = ".json"
IGNITION_SUFFIX = ".ign"
SETTINGS_FILE_NAME = "machine.yaml"
CONNECTIONS_FILE_NAME = "connections.yaml"

DEFAULT_CPUS = 2
DEFAULT_MEMORY_MB = 2048
DEFAULT_DISK_SIZE_GB = 100
DEFAULT_USERNAME = "core"
DEFAULT_LIBVIRT_URI = "qemu:///session"
DEFAULT_HELPER_BINARY = "vfkit"
DEFAULT_HELPER_ENDPOINT = "http://localhost:8081"
DEFAULT_NETWORK_HELPER = "gvproxy"
DEFAULT_READY_TIMEOUT = 90

# Zero timestamp found in configs written by older tools; loads as unset.
ZERO_TIME = "0001-01-01T00:00:00Z"

# Pidfile and socket waits poll on this interval for a bounded number of rounds.
POLL_INTERVAL = 0.25
WAIT_RETRIES = 40
STOP_RETRIES = 120
LOCK_TIMEOUT = 30

MIB = 1024 * 1024
GIB = 1024 * MIB

# Guest side of the ready channel.
READY_PORT_NAME = "org.fedoraproject.port.0"
READY_GUEST_DEVICE = "vport1p1"
READY_CHANNEL_ID = "a{}_ready"
READY_MESSAGE = b"Ready"
READY_VSOCK_PORT = 1025

# The mac address qemu machines present to the user-mode network proxy.
QEMU_GUEST_MAC = "5a:94:ef:e4:0c:ee"
LIBVIRT_GUEST_IP = "10.0.2.15"

IGNITION_FW_CFG_NAME = "opt/com.coreos/config"

QEMU_READY_UNIT = """[Unit]
Requires=dev-virtio\\x2dports-%s.device
After=remove-moby.service sshd.socket sshd.service
After=systemd-user-sessions.service
OnFailure=emergency.target
OnFailureJobMode=isolate
[Service]
Type=oneshot
RemainAfterExit=yes
ExecStart=/bin/sh -c '/usr/bin/echo Ready >/dev/%s'
[Install]
RequiredBy=default.target
"""

VSOCK_READY_UNIT = """[Unit]
Requires=dev-virtio\\x2dports-%s.device
After=remove-moby.service sshd.socket sshd.service
OnFailure=emergency.target
OnFailureJobMode=isolate
[Service]
Type=oneshot
RemainAfterExit=yes
ExecStart=/bin/sh -c '/usr/bin/echo Ready | socat - VSOCK-CONNECT:2:%d'
[Install]
RequiredBy=default.target
"""

QEMU_ARCH_OPTIONS = {
    "x86_64": {
        "binary": "qemu-system-x86_64",
        "machine": "q35",
        "cpu": "host",
        "tcg_fallback": "max",
        "bios": None,
    },
    "aarch64": {
        "binary": "qemu-system-aarch64",
        "machine": "virt,gic-version=max",
        "cpu": "host",
        "tcg_fallback": "max",
        "bios": "QEMU_EFI.fd",
    },
}

ARCH_ALIASES = {
    "amd64": "x86_64",
    "arm64": "aarch64",
}

QEMU_UEFI_DIRS = (
    Path("/usr/share/qemu-efi-aarch64"),
    Path("/usr/share/edk2/aarch64"),
)
