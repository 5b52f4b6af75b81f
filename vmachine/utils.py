"""Utility functions for vmachine."""

from __future__ import annotations

import hashlib
import os
import shutil
import socket
import subprocess
import tempfile
import time
from pathlib import Path
from typing import List, Optional, Union

import requests

from vmachine.constants import _LOG_VERBOSE, MIB
from vmachine.exceptions import ManagerError, ResourceIOError


def log(level: str, message: str) -> None:
    """Lightweight structured logging with a colour per level."""
    if level == "DEBUG" and not _LOG_VERBOSE:
        return
    colours = {
        "INFO": "\033[0;34m",
        "WARN": "\033[1;33m",
        "ERROR": "\033[0;31m",
        "SUCCESS": "\033[0;32m",
        "DEBUG": "\033[0;90m",
    }
    colour = colours.get(level, "")
    reset = "\033[0m" if colour else ""
    print(f"{colour}[{level}]{reset} {message}", flush=True)


def get_env(name: str, default: Optional[str] = None) -> Optional[str]:
    return os.environ.get(name, default)


def parse_int(name: str, raw: Union[str, int], min_val: int = 1, max_val: Optional[int] = None) -> int:
    try:
        value = int(raw)
    except (TypeError, ValueError):
        raise ManagerError(f"{name} must be an integer (got '{raw}')")
    if value < min_val:
        raise ManagerError(f"{name} must be >= {min_val} (got {value})")
    if max_val is not None and value > max_val:
        raise ManagerError(f"{name} must be <= {max_val} (got {value})")
    return value


def ensure_directory(path: Path) -> None:
    path.mkdir(parents=True, exist_ok=True)


def write_atomic(path: Path, data: Union[str, bytes], mode: int = 0o644) -> None:
    """Replace ``path`` with ``data`` so readers never observe a partial file."""
    ensure_directory(path.parent)
    payload = data.encode("utf-8") if isinstance(data, str) else data
    with tempfile.NamedTemporaryFile(delete=False, dir=path.parent, prefix=f".{path.name}.") as tmp:
        tmp_path = Path(tmp.name)
        try:
            tmp.write(payload)
            tmp.flush()
            os.fsync(tmp.fileno())
        except Exception:
            tmp_path.unlink(missing_ok=True)
            raise
    try:
        os.chmod(tmp_path, mode)
        os.replace(tmp_path, path)
    except OSError as exc:
        tmp_path.unlink(missing_ok=True)
        raise ResourceIOError(f"failed to write {path}: {exc}") from exc


def remove_file(path: Union[str, Path]) -> None:
    """Delete a file, treating an already missing file as success."""
    try:
        Path(path).unlink()
    except FileNotFoundError:
        pass


def kvm_available() -> bool:
    """Return True if /dev/kvm exists and can be opened."""
    kvm_path = Path("/dev/kvm")
    if not kvm_path.exists():
        return False
    try:
        fd = os.open(kvm_path, os.O_RDWR)
    except OSError:
        return False
    else:
        os.close(fd)
        return True


def get_random_port() -> int:
    """Ask the kernel for a free localhost TCP port."""
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
        sock.bind(("127.0.0.1", 0))
        return sock.getsockname()[1]


def port_in_use(port: int) -> bool:
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
        try:
            sock.bind(("127.0.0.1", port))
        except OSError:
            return True
    return False


def find_executable(name: str) -> str:
    path = shutil.which(name)
    if not path:
        raise ResourceIOError(f"required executable '{name}' not found in PATH")
    return path


def run(cmd: List[str], check: bool = True, **kwargs) -> subprocess.CompletedProcess:
    """Run command with logging."""
    log("DEBUG", f"Running: {' '.join(cmd)}")
    result = subprocess.run(cmd, check=check, text=True, **kwargs)
    return result


def create_ssh_keys(identity_path: Path) -> str:
    """Generate an ed25519 key pair and return the public key."""
    ensure_directory(identity_path.parent)
    if not identity_path.exists():
        try:
            run(
                ["ssh-keygen", "-N", "", "-t", "ed25519", "-q", "-f", str(identity_path)],
                capture_output=True,
            )
        except (OSError, subprocess.CalledProcessError) as exc:
            raise ResourceIOError(f"failed to generate ssh keys at {identity_path}: {exc}") from exc
    public = identity_path.with_name(identity_path.name + ".pub")
    try:
        return public.read_text(encoding="utf-8").strip()
    except OSError as exc:
        raise ResourceIOError(f"failed to read public key {public}: {exc}") from exc


def resize_image(image_path: Union[str, Path], size_gb: int) -> None:
    """Grow a disk image to ``size_gb`` GiB with qemu-img."""
    try:
        run(["qemu-img", "resize", str(image_path), f"{size_gb}G"], capture_output=True)
    except (OSError, subprocess.CalledProcessError) as exc:
        stderr = getattr(exc, "stderr", "") or ""
        raise ResourceIOError(f"resizing image {image_path} failed: {exc} {stderr}".strip()) from exc


def download_file(url: str, destination: Path, label: str = "Downloading") -> None:
    """Download a file with a progress line, streaming through a temp file."""
    log("INFO", f"{label}: {url}")
    ensure_directory(destination.parent)
    try:
        response = requests.get(
            url, stream=True, timeout=60, headers={"User-Agent": "vmachine/1.0"}
        )
        response.raise_for_status()
    except requests.HTTPError as exc:
        raise ResourceIOError(f"HTTP error downloading {url}: {exc}") from exc
    except requests.RequestException as exc:
        raise ResourceIOError(f"Failed to download {url}: {exc}") from exc

    total = response.headers.get("Content-Length")
    total_bytes = int(total) if total and total.isdigit() else None
    downloaded = 0
    start_time = time.time()
    with tempfile.NamedTemporaryFile(delete=False, dir=destination.parent) as tmp:
        tmp_path = Path(tmp.name)
        try:
            for chunk in response.iter_content(chunk_size=1024 * 256):
                if not chunk:
                    continue
                tmp.write(chunk)
                downloaded += len(chunk)
                elapsed = time.time() - start_time
                speed = downloaded / elapsed if elapsed > 0 else 0
                downloaded_mb = downloaded / MIB
                if total_bytes:
                    pct = downloaded * 100 / total_bytes
                    print(
                        f"\r  {pct:5.1f}% {downloaded_mb:.1f}/{total_bytes / MIB:.1f} MiB "
                        f"({speed / MIB:.1f} MiB/s)",
                        end="", flush=True,
                    )
                else:
                    print(f"\r  {downloaded_mb:.1f} MiB downloaded ({speed / MIB:.1f} MiB/s)", end="", flush=True)
            print(flush=True)
        except (requests.RequestException, OSError) as exc:
            tmp_path.unlink(missing_ok=True)
            raise ResourceIOError(f"Download of {url} failed after {downloaded / MIB:.1f} MiB: {exc}") from exc
        except BaseException:
            tmp_path.unlink(missing_ok=True)
            raise
        finally:
            response.close()
    tmp_path.replace(destination)
    elapsed = time.time() - start_time
    log("SUCCESS", f"Downloaded {downloaded / MIB:.1f} MiB in {elapsed:.1f}s")


def deterministic_mac(seed: str) -> str:
    digest = hashlib.sha256(seed.encode("utf-8")).digest()
    octets = [0x52, 0x54, 0x00, digest[0], digest[1], digest[2]]
    octets[3] = octets[3] | 0x02  # ensure locally administered bit
    octets[3] = octets[3] & 0xFE  # clear multicast bit
    return ":".join(f"{octet:02x}" for octet in octets)
