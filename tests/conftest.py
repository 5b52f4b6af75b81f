"""Shared test fixtures: isolated directories, sample records and a fake backend."""

from __future__ import annotations

import os
import shutil
import tempfile
from pathlib import Path
from typing import List

import pytest

from vmachine.config import MachineSettings, machine_dirs
from vmachine.connection import ConnectionRegistry
from vmachine.exceptions import BackendUnavailableError
from vmachine.models import (
    ImageConfig,
    InitOptions,
    ResourceConfig,
    SSHConfig,
    Status,
    VMRecord,
    VMType,
    now,
)
from vmachine.providers.base import Provider


@pytest.fixture(autouse=True)
def isolated_dirs(tmp_path, monkeypatch):
    """Point every vmachine directory at a per-test temporary tree."""
    monkeypatch.setenv("VMACHINE_CONFIG_HOME", str(tmp_path / "config"))
    monkeypatch.setenv("VMACHINE_DATA_HOME", str(tmp_path / "data"))
    monkeypatch.setenv("VMACHINE_RUNTIME_DIR", str(tmp_path / "run"))
    for name in list(os.environ):
        if name.startswith("VMACHINE_") and name not in (
            "VMACHINE_CONFIG_HOME",
            "VMACHINE_DATA_HOME",
            "VMACHINE_RUNTIME_DIR",
            "VMACHINE_LOG_VERBOSE",
        ):
            monkeypatch.delenv(name, raising=False)
    return tmp_path


@pytest.fixture
def short_tmp():
    """A short directory for unix sockets, whose paths are length limited."""
    path = Path(tempfile.mkdtemp(prefix="vm", dir="/tmp"))
    yield path
    shutil.rmtree(path, ignore_errors=True)


@pytest.fixture
def sample_record(tmp_path) -> VMRecord:
    config_dir = tmp_path / "config" / "machine" / "qemu"
    created = now().replace(microsecond=0)
    return VMRecord(
        name="box",
        config_path=str(config_dir / "box.json"),
        resources=ResourceConfig(cpus=2, memory=2048, disk_size=20),
        image=ImageConfig(
            image_path=str(tmp_path / "data" / "box.qcow2"),
            image_stream="custom",
            ignition_path=str(config_dir / "box.ign"),
        ),
        ssh=SSHConfig(identity_path=str(tmp_path / "keys" / "box"), port=40022, remote_username="core"),
        created=created,
        last_up=created,
        uid=1000,
        backend={"qmp_socket": "/run/box/qmp.sock"},
    )


@pytest.fixture
def image_file(tmp_path) -> Path:
    path = tmp_path / "source" / "fcos.qcow2"
    path.parent.mkdir(parents=True)
    path.write_bytes(b"QFI\xfb" + b"\0" * 60)
    return path


class FakeProvider(Provider):
    """In-memory backend: machines 'run' by flipping a flag."""

    vm_type = VMType.QEMU

    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self.running = {}
        self.calls: List[str] = []
        self.start_error = None
        self.resize_error = None
        self.teardown_errors: List[Exception] = []
        self.unavailable = False

    def ready_unit(self, record):
        return "[Unit]\n"

    def _create(self, record, opts):
        self.calls.append(f"create:{record.name}")
        record.backend = {"fake": True}

    def _query_state(self, record):
        if self.unavailable:
            raise BackendUnavailableError("fake backend down")
        return self.running.get(record.name, Status.STOPPED)

    def _start(self, record, opts):
        self.calls.append(f"start:{record.name}")
        if self.start_error is not None:
            raise self.start_error
        self.running[record.name] = Status.RUNNING

    def _stop(self, record, force=False):
        self.calls.append(f"stop:{record.name}:{force}")
        self.running[record.name] = Status.STOPPED

    def _resize_disk(self, record, size_gb):
        self.calls.append(f"resize:{record.name}:{size_gb}")
        if self.resize_error is not None:
            raise self.resize_error

    def _teardown(self, record):
        self.calls.append(f"teardown:{record.name}")
        return list(self.teardown_errors)


@pytest.fixture
def fake_keys(monkeypatch):
    """Replace ssh-keygen with a writer of a fixed key pair."""

    def _create(identity_path):
        identity_path.parent.mkdir(parents=True, exist_ok=True)
        identity_path.write_text("PRIVATE\n")
        identity_path.with_name(identity_path.name + ".pub").write_text("ssh-ed25519 AAAA test\n")
        return "ssh-ed25519 AAAA test"

    monkeypatch.setattr("vmachine.providers.base.create_ssh_keys", _create)
    monkeypatch.setattr("vmachine.providers.base.get_random_port", lambda: 40022)
    monkeypatch.setattr("vmachine.providers.base.port_in_use", lambda port: False)
    return _create


@pytest.fixture
def registry(tmp_path) -> ConnectionRegistry:
    return ConnectionRegistry(tmp_path / "config" / "connections.yaml")


@pytest.fixture
def provider(registry, fake_keys) -> FakeProvider:
    return FakeProvider(MachineSettings(), machine_dirs(VMType.QEMU), registry)


@pytest.fixture
def init_opts(image_file) -> InitOptions:
    return InitOptions(name="box", cpus=2, memory=2048, disk_size=20, image_path=str(image_file))

