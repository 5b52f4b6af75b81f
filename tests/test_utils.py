"""Tests for vmachine.utils module."""

from __future__ import annotations

import subprocess
from pathlib import Path
from unittest.mock import MagicMock, patch

import pytest
import requests

from vmachine import utils
from vmachine.exceptions import ManagerError, ResourceIOError


class TestLog:
    def test_prints_level(self, capsys):
        utils.log("INFO", "hello")
        out = capsys.readouterr().out
        assert "[INFO]" in out
        assert "hello" in out

    def test_debug_suppressed_unless_verbose(self, capsys, monkeypatch):
        monkeypatch.setattr(utils, "_LOG_VERBOSE", False)
        utils.log("DEBUG", "hidden")
        assert capsys.readouterr().out == ""

    def test_debug_shown_when_verbose(self, capsys, monkeypatch):
        monkeypatch.setattr(utils, "_LOG_VERBOSE", True)
        utils.log("DEBUG", "shown")
        assert "shown" in capsys.readouterr().out


class TestParseInt:
    def test_valid(self):
        assert utils.parse_int("cpus", "3") == 3
        assert utils.parse_int("cpus", 8, max_val=8) == 8

    def test_not_a_number(self):
        with pytest.raises(ManagerError, match="must be an integer"):
            utils.parse_int("cpus", "many")

    def test_bounds(self):
        with pytest.raises(ManagerError, match=">= 128"):
            utils.parse_int("memory", 64, min_val=128)
        with pytest.raises(ManagerError, match="<= 4"):
            utils.parse_int("cpus", 5, max_val=4)


class TestFiles:
    def test_write_atomic_replaces_content(self, tmp_path):
        target = tmp_path / "sub" / "file.json"
        utils.write_atomic(target, "one")
        utils.write_atomic(target, b"two", mode=0o600)
        assert target.read_text() == "two"
        assert (target.stat().st_mode & 0o777) == 0o600
        assert [p.name for p in target.parent.iterdir()] == ["file.json"]

    def test_write_atomic_wraps_replace_failure(self, tmp_path):
        target = tmp_path / "file"
        with patch("vmachine.utils.os.replace", side_effect=OSError("read-only")):
            with pytest.raises(ResourceIOError, match="failed to write"):
                utils.write_atomic(target, "data")
        assert list(tmp_path.iterdir()) == []

    def test_remove_file_ignores_missing(self, tmp_path):
        utils.remove_file(tmp_path / "nope")
        present = tmp_path / "here"
        present.write_text("x")
        utils.remove_file(str(present))
        assert not present.exists()



class TestHost:
    def test_kvm_missing(self):
        with patch("vmachine.utils.Path.exists", return_value=False):
            assert utils.kvm_available() is False

    def test_kvm_not_openable(self):
        with patch("vmachine.utils.Path.exists", return_value=True), patch(
            "vmachine.utils.os.open", side_effect=PermissionError
        ):
            assert utils.kvm_available() is False

    def test_random_port_in_range(self):
        port = utils.get_random_port()
        assert 0 < port < 65536

    def test_find_executable_missing(self):
        with patch("vmachine.utils.shutil.which", return_value=None):
            with pytest.raises(ResourceIOError, match="not found in PATH"):
                utils.find_executable("gvproxy")

    def test_find_executable(self):
        with patch("vmachine.utils.shutil.which", return_value="/usr/bin/gvproxy"):
            assert utils.find_executable("gvproxy") == "/usr/bin/gvproxy"


class TestCommands:
    def test_create_ssh_keys_runs_keygen(self, tmp_path):
        identity = tmp_path / "ssh" / "box"

        def fake_run(cmd, **kwargs):
            identity.write_text("private")
            Path(str(identity) + ".pub").write_text("ssh-ed25519 AAAA box\n")
            return subprocess.CompletedProcess(cmd, 0)

        with patch("vmachine.utils.run", side_effect=fake_run) as mock_run:
            key = utils.create_ssh_keys(identity)
        assert key == "ssh-ed25519 AAAA box"
        cmd = mock_run.call_args[0][0]
        assert cmd[:6] == ["ssh-keygen", "-N", "", "-t", "ed25519", "-q"]
        assert cmd[-1] == str(identity)

    def test_create_ssh_keys_reuses_existing(self, tmp_path):
        identity = tmp_path / "box"
        identity.write_text("private")
        Path(str(identity) + ".pub").write_text("ssh-ed25519 BBBB\n")
        with patch("vmachine.utils.run") as mock_run:
            assert utils.create_ssh_keys(identity) == "ssh-ed25519 BBBB"
        mock_run.assert_not_called()

    def test_create_ssh_keys_failure(self, tmp_path):
        err = subprocess.CalledProcessError(1, ["ssh-keygen"])
        with patch("vmachine.utils.run", side_effect=err):
            with pytest.raises(ResourceIOError, match="failed to generate ssh keys"):
                utils.create_ssh_keys(tmp_path / "box")

    def test_resize_image(self):
        with patch("vmachine.utils.run") as mock_run:
            utils.resize_image("/data/box.qcow2", 30)
        assert mock_run.call_args[0][0] == ["qemu-img", "resize", "/data/box.qcow2", "30G"]

    def test_resize_image_failure(self):
        err = subprocess.CalledProcessError(1, ["qemu-img"], stderr="cannot shrink")
        with patch("vmachine.utils.run", side_effect=err):
            with pytest.raises(ResourceIOError, match="cannot shrink"):
                utils.resize_image("/data/box.qcow2", 10)


class TestDownload:
    def test_streams_to_destination(self, tmp_path):
        response = MagicMock()
        response.headers = {"Content-Length": "6"}
        response.iter_content.return_value = [b"abc", b"", b"def"]
        with patch("vmachine.utils.requests.get", return_value=response) as mock_get:
            utils.download_file("https://example.com/img.qcow2", tmp_path / "img.qcow2")
        assert (tmp_path / "img.qcow2").read_bytes() == b"abcdef"
        assert mock_get.call_args[1]["stream"] is True

    def test_http_error(self, tmp_path):
        with patch("vmachine.utils.requests.get", side_effect=requests.ConnectionError("refused")):
            with pytest.raises(ResourceIOError, match="Failed to download"):
                utils.download_file("https://example.com/img", tmp_path / "img")
        assert not (tmp_path / "img").exists()

    def test_http_status_error(self, tmp_path):
        response = MagicMock()
        response.raise_for_status.side_effect = requests.HTTPError("404 Client Error")
        with patch("vmachine.utils.requests.get", return_value=response):
            with pytest.raises(ResourceIOError, match="HTTP error downloading"):
                utils.download_file("https://example.com/img", tmp_path / "img")

    def test_stream_error_is_wrapped(self, tmp_path):
        def chunks(chunk_size):
            yield b"abc"
            raise requests.exceptions.ChunkedEncodingError("connection broken")

        response = MagicMock()
        response.headers = {}
        response.iter_content.side_effect = chunks
        with patch("vmachine.utils.requests.get", return_value=response):
            with pytest.raises(ResourceIOError, match="connection broken"):
                utils.download_file("https://example.com/img", tmp_path / "img")
        assert list(tmp_path.iterdir()) == []
        response.close.assert_called_once_with()


class TestDeterministicMac:
    def test_stable_and_locally_administered(self):
        mac = utils.deterministic_mac("qemu:box")
        assert mac == utils.deterministic_mac("qemu:box")
        assert mac != utils.deterministic_mac("qemu:other")
        assert mac.startswith("52:54:00:")
        fourth = int(mac.split(":")[3], 16)
        assert fourth & 0x02
        assert not fourth & 0x01
