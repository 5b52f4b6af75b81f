"""vmachine package."""

__version__ = "0.1.0"

__all__ = [
    "cli",
    "config",
    "connection",
    "constants",
    "exceptions",
    "ignition",
    "models",
    "process",
    "providers",
    "qemu_cmd",
    "qmp",
    "readiness",
    "state",
    "store",
    "utils",
]
