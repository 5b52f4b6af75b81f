"""Tests for vmachine.providers.vfkit module."""

from __future__ import annotations

from unittest.mock import MagicMock, patch

import pytest
import requests

from vmachine.config import MachineSettings, machine_dirs
from vmachine.exceptions import BackendUnavailableError, ResourceIOError, WaitTimeoutError
from vmachine.models import InitOptions, Mount, StartOptions, Status, VMType
from vmachine.providers.vfkit import VfkitProvider


@pytest.fixture
def provider(registry):
    return VfkitProvider(MachineSettings(), machine_dirs(VMType.VFKIT), registry)


@pytest.fixture
def record(provider, sample_record):
    sample_record.config_path = str(provider.store.path_for("box"))
    provider._create(sample_record, InitOptions(name="box", cpus=2, memory=2048, disk_size=20))
    return sample_record


def _response(state=None, status_error=None):
    response = MagicMock()
    response.json.return_value = {"state": state}
    if status_error is not None:
        response.raise_for_status.side_effect = status_error
    return response


class TestCreate:
    def test_backend_data(self, provider, record):
        assert record.backend["endpoint"] == "http://localhost:8081"
        assert record.backend["efi_store"] == str(provider.dirs.data_dir / "box-efi-store")
        assert record.backend["pid"] == 0
        assert provider._removal_files(record) == [record.backend["efi_store"], record.backend["serial_log"]]

    def test_guest_port_and_unit(self, provider, record):
        assert provider._assign_port() == 22
        unit = provider.ready_unit(record)
        assert "VSOCK-CONNECT:2:1025" in unit
        assert "dev-virtio\\x2dports-vport1p1.device" in unit

    def test_resize_grows_raw_image(self, provider, record, tmp_path):
        image = tmp_path / "box.raw"
        image.write_bytes(b"\0" * 16)
        record.image.image_path = str(image)
        provider._resize_disk(record, 1)
        assert image.stat().st_size == 1024 ** 3

    def test_resize_missing_image(self, provider, record, tmp_path):
        record.image.image_path = str(tmp_path / "missing.raw")
        with pytest.raises(ResourceIOError, match="resizing image"):
            provider._resize_disk(record, 1)


class TestRest:
    @pytest.mark.parametrize(
        "raw,expected",
        [
            ("VirtualMachineStateRunning", Status.RUNNING),
            ("VirtualMachineStateStarting", Status.STARTING),
            ("VirtualMachineStateStopped", Status.STOPPED),
            ("VirtualMachineStatePaused", Status.STOPPED),
        ],
    )
    def test_state_mapping(self, provider, record, raw, expected):
        record.backend["pid"] = 321
        with patch("vmachine.providers.vfkit.is_alive", return_value=True), patch(
            "vmachine.providers.vfkit.requests.get", return_value=_response(raw)
        ) as mock_get:
            assert provider._query_state(record) == expected
        assert mock_get.call_args[0][0] == "http://localhost:8081/vm/state"

    def test_unreachable_endpoint(self, provider, record):
        record.backend["pid"] = 321
        with patch("vmachine.providers.vfkit.is_alive", return_value=True), patch(
            "vmachine.providers.vfkit.requests.get", side_effect=requests.ConnectionError("refused")
        ):
            with pytest.raises(BackendUnavailableError):
                provider._query_state(record)
            assert provider.state(record) == Status.STOPPED

    def test_http_error(self, provider, record):
        error = requests.HTTPError("500 Server Error")
        record.backend["pid"] = 321
        with patch("vmachine.providers.vfkit.is_alive", return_value=True), patch(
            "vmachine.providers.vfkit.requests.get", return_value=_response(status_error=error)
        ):
            with pytest.raises(ResourceIOError, match="failed to read state"):
                provider._query_state(record)

    def test_post_state(self, provider, record):
        with patch("vmachine.providers.vfkit.requests.post", return_value=_response()) as mock_post:
            provider._post_state(record, "Stop")
        assert mock_post.call_args[1]["json"] == {"state": "Stop"}

    def test_restful_uri(self, provider, record):
        assert provider._restful_uri(record) == "tcp://localhost:8081"


class TestHelperCommand:
    def test_devices(self, provider, record):
        record.mounts = [Mount(source="/Users/me", target="/Users/me")]
        with patch("vmachine.providers.vfkit.find_executable", return_value="/opt/bin/vfkit"):
            cmd = provider.helper_command(record)
        assert cmd[:5] == ["/opt/bin/vfkit", "--cpus", "2", "--memory", "2048"]
        devices = [cmd[i + 1] for i, arg in enumerate(cmd) if arg == "--device"]
        assert f"virtio-blk,path={record.image.image_path}" in devices
        assert f"virtio-vsock,port=1025,socketURL={record.backend['ready_socket']}" in devices
        assert "virtio-fs,sharedDir=/Users/me,mountTag=volUsers-me" in devices
        assert cmd[-4:] == ["--ignition", record.image.ignition_path, "--restful-uri", "tcp://localhost:8081"]


class TestStartStop:
    def test_start_records_pid(self, provider, record):
        listener = MagicMock()
        listener.__enter__.return_value = listener
        with patch("vmachine.providers.vfkit.ReadyListener", return_value=listener), patch.object(
            provider, "helper_command", return_value=["vfkit"]
        ), patch("vmachine.providers.vfkit.subprocess.Popen", return_value=MagicMock(pid=321)):
            provider._start(record, StartOptions())
        assert record.backend["pid"] == 321
        assert listener.wait.call_args[0][0] == provider.settings.ready_timeout

    def test_start_failure_kills_helper(self, provider, record):
        listener = MagicMock()
        listener.__enter__.return_value = listener
        listener.__exit__.return_value = False
        listener.wait.side_effect = WaitTimeoutError("no guest")
        with patch("vmachine.providers.vfkit.ReadyListener", return_value=listener), patch.object(
            provider, "helper_command", return_value=["vfkit"]
        ), patch("vmachine.providers.vfkit.subprocess.Popen", return_value=MagicMock(pid=321)), patch(
            "vmachine.providers.vfkit.terminate"
        ) as mock_terminate:
            with pytest.raises(WaitTimeoutError):
                provider._start(record, StartOptions())
        mock_terminate.assert_called_once_with(321, "vfkit")
        assert record.backend["pid"] == 0

    def test_stop(self, provider, record):
        record.backend["pid"] = 321
        with patch("vmachine.providers.vfkit.requests.post", return_value=_response()) as mock_post, patch(
            "vmachine.providers.vfkit.requests.get", return_value=_response("VirtualMachineStateStopped")
        ), patch("vmachine.providers.vfkit.is_alive", side_effect=[True, False, False]):
            provider._stop(record)
        assert mock_post.call_args[1]["json"] == {"state": "Stop"}
        assert provider.store.load("box").backend["pid"] == 0

    def test_hard_stop(self, provider, record):
        record.backend["pid"] = 321
        with patch("vmachine.providers.vfkit.is_alive", return_value=True), patch(
            "vmachine.providers.vfkit.terminate", return_value=True
        ), patch("vmachine.providers.vfkit.requests.post", return_value=_response()) as mock_post, patch(
            "vmachine.providers.vfkit.requests.get", return_value=_response("VirtualMachineStateRunning")
        ), patch("vmachine.providers.vfkit.STOP_RETRIES", 1), patch("vmachine.providers.vfkit.time.sleep"):
            provider._stop(record)
        states = [c[1]["json"]["state"] for c in mock_post.call_args_list]
        assert states == ["Stop", "HardStop"]

    def test_stop_rejected(self, provider, record):
        record.backend["pid"] = 321
        error = requests.HTTPError("409 Conflict")
        with patch("vmachine.providers.vfkit.is_alive", return_value=True), patch(
            "vmachine.providers.vfkit.requests.post", return_value=_response(status_error=error)
        ):
            with pytest.raises(ResourceIOError, match="rejected Stop"):
                provider._stop(record)

    def test_forced_stop_terminates(self, provider, record):
        record.backend["pid"] = 321
        error = requests.HTTPError("409 Conflict")
        with patch("vmachine.providers.vfkit.requests.post", return_value=_response(status_error=error)), patch(
            "vmachine.providers.vfkit.is_alive", return_value=True
        ), patch("vmachine.providers.vfkit.terminate", return_value=True) as mock_terminate:
            provider._stop(record, force=True)
        mock_terminate.assert_called_once_with(321, "vfkit")


class TestSharedEndpoint:
    def test_only_the_live_helper_reports_running(self, provider, fake_keys, image_file):
        for name in ("a", "b"):
            provider.new_machine(InitOptions(name=name, cpus=1, memory=1024, disk_size=1, image_path=str(image_file)))
        active = provider.load_vm_by_name("a")
        active.backend["pid"] = 321
        provider.store.persist(active)

        running = _response("VirtualMachineStateRunning")
        with patch("vmachine.providers.vfkit.is_alive", side_effect=lambda pid: pid == 321), patch(
            "vmachine.providers.vfkit.requests.get", return_value=running
        ) as mock_get:
            assert {item.name: item.running for item in provider.list()} == {"a": True, "b": False}
            assert provider.check_exclusive_active_vm() == (True, "a")
        assert all(c[0][0].endswith("/vm/state") for c in mock_get.call_args_list)

    def test_stop_of_idle_machine_leaves_endpoint_alone(self, provider, record):
        with patch("vmachine.providers.vfkit.requests.post") as mock_post, patch(
            "vmachine.providers.vfkit.requests.get"
        ) as mock_get:
            provider._stop(record)
        mock_post.assert_not_called()
        mock_get.assert_not_called()
        assert provider.store.load("box").backend["pid"] == 0
