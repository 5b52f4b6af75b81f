"""Tests for vmachine.providers.libvirt module."""

from __future__ import annotations

import xml.etree.ElementTree as ET
from unittest.mock import MagicMock, patch

import pytest

from vmachine.config import MachineSettings, machine_dirs
from vmachine.exceptions import BackendUnavailableError, ConflictError, ResourceIOError, WaitTimeoutError
from vmachine.models import InitOptions, Mount, StartOptions, Status, VMType
from vmachine.providers.libvirt import LibvirtProvider, render_domain_xml


class FakeLibvirtError(Exception):
    def get_error_message(self):
        return f"libvirt: {self}"


@pytest.fixture
def fake_libvirt(monkeypatch):
    module = MagicMock()
    module.libvirtError = FakeLibvirtError
    module.VIR_DOMAIN_RUNNING = 1
    module.VIR_DOMAIN_BLOCKED = 2
    module.VIR_DOMAIN_SHUTOFF = 5
    module.VIR_DOMAIN_UNDEFINE_NVRAM = 4
    monkeypatch.setattr("vmachine.providers.libvirt.libvirt", module)
    return module


@pytest.fixture
def conn(fake_libvirt):
    return fake_libvirt.open.return_value


@pytest.fixture
def domain(conn):
    return conn.lookupByName.return_value


@pytest.fixture
def provider(registry):
    return LibvirtProvider(MachineSettings(), machine_dirs(VMType.LIBVIRT), registry)


@pytest.fixture
def record(sample_record, provider):
    sample_record.backend = {
        "uri": "qemu:///session",
        "ready_socket": str(provider.dirs.runtime_dir / "box" / "ready.sock"),
        "mac": "52:54:00:aa:bb:cc",
    }
    return sample_record


class TestDomainXML:
    def test_x86_kvm(self, record):
        root = ET.fromstring(render_domain_xml(record, arch="x86_64", use_kvm=True))
        assert root.get("type") == "kvm"
        assert root.findtext("name") == "box"
        assert root.find("memory").get("unit") == "MiB"
        assert root.findtext("memory") == "2048"
        assert root.findtext("vcpu") == "2"
        assert root.find("os/type").get("machine") == "q35"
        assert root.find("os").get("firmware") is None
        assert root.find("cpu").get("mode") == "host-passthrough"
        entry = root.find("sysinfo/entry")
        assert entry.get("name") == "opt/com.coreos/config"
        assert entry.get("file") == record.image.ignition_path
        assert root.find("memoryBacking") is None
        assert root.find("devices/disk/driver").get("type") == "qcow2"
        assert root.find("devices/interface/mac").get("address") == "52:54:00:aa:bb:cc"
        forward = root.find("devices/interface/portForward/range")
        assert (forward.get("start"), forward.get("to")) == ("40022", "22")
        channel = root.find("devices/channel")
        assert channel.find("source").get("path") == record.backend["ready_socket"]
        assert channel.find("target").get("name") == "org.fedoraproject.port.0"

    def test_tcg_aarch64_with_mounts(self, record):
        record.mounts = [Mount(source="/home/me", target="/home/me", read_only=True)]
        record.image.image_path = "/data/box.raw"
        root = ET.fromstring(render_domain_xml(record, arch="arm64", use_kvm=False))
        assert root.get("type") == "qemu"
        assert root.find("os").get("firmware") == "efi"
        assert root.find("os/type").get("machine") == "virt"
        assert root.find("features/gic").get("version") == "max"
        assert root.findtext("cpu/model") == "max"
        assert root.find("memoryBacking/access").get("mode") == "shared"
        assert root.find("devices/disk/driver").get("type") == "raw"
        fs = root.find("devices/filesystem")
        assert fs.find("target").get("dir") == "volhome-me"
        assert fs.find("readonly") is not None


class TestBackendHooks:
    def test_create_defines_domain(self, provider, sample_record, conn):
        conn.lookupByName.side_effect = FakeLibvirtError("no domain")
        with patch("vmachine.providers.libvirt.kvm_available", return_value=True), patch(
            "vmachine.providers.libvirt.host_arch", return_value="x86_64"
        ):
            provider._create(sample_record, InitOptions(name="box", cpus=2, memory=2048, disk_size=20))
        assert sample_record.backend["uri"] == "qemu:///session"
        assert sample_record.backend["ready_socket"].endswith("box/ready.sock")
        assert "<name>box</name>" in conn.defineXML.call_args[0][0]
        conn.close.assert_called_once()

    def test_create_existing_domain(self, provider, sample_record, conn):
        with pytest.raises(ConflictError, match="already exists"):
            provider._create(sample_record, InitOptions(name="box", cpus=2, memory=2048, disk_size=20))
        conn.defineXML.assert_not_called()

    def test_define_error(self, provider, record, conn):
        conn.defineXML.side_effect = FakeLibvirtError("bad xml")
        with patch("vmachine.providers.libvirt.kvm_available", return_value=True), patch(
            "vmachine.providers.libvirt.host_arch", return_value="x86_64"
        ):
            with pytest.raises(ResourceIOError, match="libvirt: bad xml"):
                provider._update_backend(record)

    def test_connection_failure(self, provider, record, fake_libvirt):
        fake_libvirt.open.side_effect = FakeLibvirtError("no daemon")
        with pytest.raises(BackendUnavailableError, match="cannot connect to libvirt"):
            provider._query_state(record)
        assert provider.state(record) == Status.STOPPED

    def test_bindings_missing(self, provider, record, monkeypatch):
        monkeypatch.setattr("vmachine.providers.libvirt.libvirt", None)
        with pytest.raises(BackendUnavailableError, match="not installed"):
            provider._query_state(record)

    @pytest.mark.parametrize("raw,expected", [(1, Status.RUNNING), (2, Status.RUNNING), (5, Status.STOPPED)])
    def test_query_state(self, provider, record, domain, raw, expected):
        domain.state.return_value = (raw, 0)
        assert provider._query_state(record) == expected

    def test_query_missing_domain(self, provider, record, conn):
        conn.lookupByName.side_effect = FakeLibvirtError("gone")
        assert provider._query_state(record) == Status.STOPPED

    def test_is_valid_vm_name_needs_domain(self, provider, record, conn):
        record.config_path = str(provider.store.path_for("box"))
        provider.store.persist(record)
        assert provider.is_valid_vm_name("box") is True
        conn.lookupByName.side_effect = FakeLibvirtError("gone")
        assert provider.is_valid_vm_name("box") is False


class TestStartStop:
    def test_start_waits_for_ready(self, provider, record, domain):
        with patch("vmachine.providers.libvirt.wait_ready_client") as mock_wait:
            provider._start(record, StartOptions())
        domain.create.assert_called_once()
        assert str(mock_wait.call_args[0][0]) == record.backend["ready_socket"]
        check = mock_wait.call_args[1]["check_failure"]
        domain.isActive.return_value = 0
        with pytest.raises(ResourceIOError, match="stopped before signalling readiness"):
            check()

    def test_start_failure_destroys(self, provider, record, domain):
        domain.isActive.return_value = 1
        with patch(
            "vmachine.providers.libvirt.wait_ready_client", side_effect=WaitTimeoutError("no ready")
        ):
            with pytest.raises(WaitTimeoutError):
                provider._start(record, StartOptions())
        domain.destroy.assert_called_once()

    def test_create_error(self, provider, record, domain):
        domain.create.side_effect = FakeLibvirtError("permission denied")
        with pytest.raises(ResourceIOError, match="Failed to start domain box"):
            provider._start(record, StartOptions())

    def test_graceful_stop(self, provider, record, domain):
        domain.isActive.return_value = 0
        provider._stop(record)
        domain.shutdown.assert_called_once()
        domain.destroy.assert_not_called()

    def test_stop_escalates(self, provider, record, domain):
        domain.isActive.return_value = 1
        with patch("vmachine.providers.libvirt.STOP_RETRIES", 2), patch("vmachine.providers.libvirt.time.sleep"):
            provider._stop(record)
        domain.destroy.assert_called_once()

    def test_shutdown_error(self, provider, record, domain):
        domain.shutdown.side_effect = FakeLibvirtError("busy")
        with pytest.raises(ResourceIOError, match="failed to shut down"):
            provider._stop(record)


class TestTeardown:
    def test_undefines_with_nvram(self, provider, record, domain):
        assert provider._teardown(record) == []
        domain.undefineFlags.assert_called_once_with(4)

    def test_undefine_error_is_returned(self, provider, record, domain):
        domain.undefineFlags.side_effect = FakeLibvirtError("locked")
        [err] = provider._teardown(record)
        assert isinstance(err, ResourceIOError)

    def test_unavailable_is_returned(self, provider, record, fake_libvirt):
        fake_libvirt.open.side_effect = FakeLibvirtError("down")
        [err] = provider._teardown(record)
        assert isinstance(err, BackendUnavailableError)
