"""QEMU command-line synthesis."""

from __future__ import annotations

import platform
from dataclasses import dataclass, field
from pathlib import Path
from typing import List, Optional

from vmachine.constants import (
    ARCH_ALIASES,
    QEMU_ARCH_OPTIONS,
    QEMU_UEFI_DIRS,
    READY_CHANNEL_ID,
)
from vmachine.exceptions import ManagerError
from vmachine.utils import kvm_available, log


def _on_off(flag: bool) -> str:
    return "on" if flag else "off"


@dataclass
class FirmwareConfigDevice:
    name: str = ""
    file: str = ""
    string: str = ""

    def to_cmdline(self) -> List[str]:
        parts = []
        if self.name:
            parts.append(f"name={self.name}")
        if self.file:
            parts.append(f"file={self.file}")
        if self.string:
            parts.append(f"string={self.string}")
        return ["-fw_cfg", ",".join(parts)]


@dataclass
class Monitor:
    network: str = ""
    address: str = ""


@dataclass
class QmpMonitor:
    monitor: Monitor = field(default_factory=Monitor)
    server: bool = True
    wait: bool = False

    def to_cmdline(self) -> List[str]:
        parts = []
        if self.monitor.network and self.monitor.address:
            parts.append(f"{self.monitor.network}:{self.monitor.address}")
        parts.append(f"server={_on_off(self.server)}")
        parts.append(f"wait={_on_off(self.wait)}")
        return ["-qmp", ",".join(parts)]


@dataclass
class Socket:
    fd: int = -1

    def to_arg(self) -> str:
        value = "socket,id=vlan"
        if self.fd >= 0:
            value += f",fd={self.fd}"
        return value


@dataclass
class VirtioNet:
    net_device: str = ""
    mac: str = ""

    def to_arg(self) -> str:
        value = "virtio-net-pci"
        if self.net_device:
            value += f",netdev={self.net_device}"
        if self.mac:
            value += f",mac={self.mac}"
        return value


@dataclass
class Network:
    socket: Socket = field(default_factory=Socket)
    device: VirtioNet = field(default_factory=VirtioNet)

    def to_cmdline(self) -> List[str]:
        return ["-netdev", self.socket.to_arg(), "-device", self.device.to_arg()]


@dataclass
class CharDev:
    socket_path: str = ""
    wait: bool = False
    id: str = ""

    @property
    def chardev_id(self) -> str:
        return READY_CHANNEL_ID.format(self.id)

    def to_cmdline(self) -> List[str]:
        parts = []
        if self.socket_path:
            parts.append(f"socket,path={self.socket_path}")
        # The ready channel is always served by qemu; the guest connects to it.
        parts.append("server=on")
        parts.append(f"wait={_on_off(self.wait)}")
        parts.append(f"id={self.chardev_id}")
        return ["-chardev", ",".join(parts)]


@dataclass
class VirtSerialPort:
    name: str = ""
    chardev: str = ""

    def to_cmdline(self) -> List[str]:
        value = "virtserialport"
        if self.chardev:
            value += f",chardev={self.chardev}"
        if self.name:
            value += f",name={self.name}"
        return ["-device", value]


@dataclass
class SerialPort:
    pidfile: str = ""
    chardev: CharDev = field(default_factory=CharDev)
    port: VirtSerialPort = field(default_factory=VirtSerialPort)

    def to_cmdline(self) -> List[str]:
        args = ["-device", "virtio-serial"]
        args.extend(self.chardev.to_cmdline())
        args.extend(self.port.to_cmdline())
        args.extend(["-pidfile", self.pidfile])
        return args


@dataclass
class Virtfs:
    path: str = ""
    mount_tag: str = ""
    security_model: str = ""
    read_only: bool = False

    def to_cmdline(self) -> List[str]:
        value = "local"
        if self.path:
            value += f",path={self.path}"
        if self.mount_tag:
            value += f",mount_tag={self.mount_tag}"
        if self.security_model:
            value += f",security_model={self.security_model}"
        if self.read_only:
            value += ",readonly"
        return ["-virtfs", value]


@dataclass
class QemuCmd:
    """Complete qemu invocation (minus the binary) in a fixed argument order."""

    memory: int
    cpus: int
    cpu: str = ""
    bios: str = ""
    bootable_image: str = ""
    display: bool = False
    accelerator: str = ""
    machine: str = ""
    mounts: List[Virtfs] = field(default_factory=list)
    firmware_configs: List[FirmwareConfigDevice] = field(default_factory=list)
    qmp: QmpMonitor = field(default_factory=QmpMonitor)
    network: Network = field(default_factory=Network)
    serial: SerialPort = field(default_factory=SerialPort)

    def to_cmdline(self) -> List[str]:
        args = ["-m", str(self.memory), "-smp", str(self.cpus)]
        for fw_cfg in self.firmware_configs:
            args.extend(fw_cfg.to_cmdline())
        args.extend(self.qmp.to_cmdline())
        args.extend(self.network.to_cmdline())
        args.extend(self.serial.to_cmdline())
        for mount in self.mounts:
            args.extend(mount.to_cmdline())
        args.extend(["-display", "default" if self.display else "none"])
        args.extend(["-accel", self.accelerator])
        args.extend(["-cpu", self.cpu])
        args.extend(["-drive", f"if=virtio,file={self.bootable_image}"])
        if self.bios:
            args.extend(["-bios", self.bios])
        args.extend(["-M", self.machine])
        return args


@dataclass
class ArchOptions:
    binary: str
    accelerator: str
    cpu: str
    machine: str
    bios: str = ""


def host_arch(raw: Optional[str] = None) -> str:
    arch = (raw or platform.machine()).lower()
    return ARCH_ALIASES.get(arch, arch)


def find_uefi_firmware(name: str, search_dirs=QEMU_UEFI_DIRS) -> str:
    for directory in search_dirs:
        candidate = Path(directory) / name
        if candidate.exists():
            return str(candidate)
    searched = ", ".join(str(d) for d in search_dirs)
    raise ManagerError(f"could not locate UEFI firmware {name} (searched: {searched})")


def arch_options(arch: Optional[str] = None, use_kvm: Optional[bool] = None) -> ArchOptions:
    """Accelerator, cpu, machine type and firmware for the host architecture."""
    resolved = host_arch(arch)
    opts = QEMU_ARCH_OPTIONS.get(resolved)
    if opts is None:
        raise ManagerError(f"Unsupported host architecture '{resolved}' for qemu machines")
    if use_kvm is None:
        use_kvm = kvm_available()
    if use_kvm:
        accelerator, cpu = "kvm", opts["cpu"]
    else:
        log("WARN", "/dev/kvm unavailable; falling back to TCG software emulation")
        accelerator, cpu = "tcg", opts["tcg_fallback"]
    bios = find_uefi_firmware(opts["bios"]) if opts["bios"] else ""
    return ArchOptions(
        binary=opts["binary"],
        accelerator=accelerator,
        cpu=cpu,
        machine=opts["machine"],
        bios=bios,
    )
