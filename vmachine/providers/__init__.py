"""Machine backends and backend selection."""

from __future__ import annotations

from typing import Optional

from vmachine.config import MachineSettings
from vmachine.models import VMType
from vmachine.providers.base import Provider


def get_provider(vm_type: VMType, settings: Optional[MachineSettings] = None) -> Provider:
    """Instantiate the backend for ``vm_type``."""
    if vm_type == VMType.QEMU:
        from vmachine.providers.qemu import QemuProvider

        return QemuProvider(settings)
    if vm_type == VMType.LIBVIRT:
        from vmachine.providers.libvirt import LibvirtProvider

        return LibvirtProvider(settings)
    if vm_type == VMType.VFKIT:
        from vmachine.providers.vfkit import VfkitProvider

        return VfkitProvider(settings)
    raise ValueError(f"Unsupported provider '{vm_type}'")


__all__ = ["Provider", "get_provider"]
