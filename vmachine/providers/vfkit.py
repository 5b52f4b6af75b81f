"""Helper-daemon backend: vfkit with a REST control endpoint."""

from __future__ import annotations

import os
import subprocess
import time
from pathlib import Path
from typing import List
from urllib.parse import urlparse

import requests

from vmachine.constants import (
    GIB,
    POLL_INTERVAL,
    READY_GUEST_DEVICE,
    READY_VSOCK_PORT,
    STOP_RETRIES,
    VSOCK_READY_UNIT,
)
from vmachine.exceptions import BackendUnavailableError, ManagerError, ResourceIOError
from vmachine.models import InitOptions, StartOptions, Status, VMRecord, VMType
from vmachine.process import check_process_status, is_alive, terminate
from vmachine.providers.base import Provider
from vmachine.readiness import ReadyListener
from vmachine.utils import deterministic_mac, ensure_directory, find_executable, log, remove_file

REQUEST_TIMEOUT = 5

_STATE_MAP = {
    "VirtualMachineStateRunning": Status.RUNNING,
    "VirtualMachineStateStarting": Status.STARTING,
    "VirtualMachineStateStopped": Status.STOPPED,
}


class VfkitProvider(Provider):
    """One vfkit machine may be active at a time."""

    vm_type = VMType.VFKIT
    exclusive = True
    forwards_ssh_port = False

    def ready_unit(self, record: VMRecord) -> str:
        return VSOCK_READY_UNIT % (READY_GUEST_DEVICE, READY_VSOCK_PORT)

    def _assign_port(self) -> int:
        # The guest is reached on its NAT address rather than a host forward.
        return 22

    def _create(self, record: VMRecord, opts: InitOptions) -> None:
        run_dir = self.dirs.runtime_dir / record.name
        record.backend = {
            "endpoint": self.settings.helper_endpoint.rstrip("/"),
            "ready_socket": str(run_dir / "ready.sock"),
            "efi_store": str(self.dirs.data_dir / f"{record.name}-efi-store"),
            "serial_log": str(self.dirs.data_dir / f"{record.name}.log"),
            "helper_log": str(run_dir / "vfkit.log"),
            "mac": deterministic_mac(f"{self.vm_type.value}:{record.name}"),
            "pid": 0,
        }

    def _resize_disk(self, record: VMRecord, size_gb: int) -> None:
        # vfkit boots raw images, which grow by extending the file.
        path = Path(record.image.image_path)
        target = size_gb * GIB
        try:
            if path.stat().st_size < target:
                os.truncate(path, target)
        except OSError as exc:
            raise ResourceIOError(f"resizing image {path} failed: {exc}") from exc

    def _removal_files(self, record: VMRecord) -> List[str]:
        return [path for path in (record.backend.get("efi_store"), record.backend.get("serial_log")) if path]

    # ------------------------------------------------------------------
    # REST control surface
    # ------------------------------------------------------------------
    def _state_url(self, record: VMRecord) -> str:
        endpoint = record.backend.get("endpoint") or self.settings.helper_endpoint
        return f"{endpoint.rstrip('/')}/vm/state"

    def _restful_uri(self, record: VMRecord) -> str:
        parsed = urlparse(record.backend.get("endpoint") or self.settings.helper_endpoint)
        return f"tcp://{parsed.hostname}:{parsed.port or 80}"

    def _get_state(self, record: VMRecord) -> str:
        try:
            response = requests.get(self._state_url(record), timeout=REQUEST_TIMEOUT)
            response.raise_for_status()
            return response.json().get("state", "")
        except requests.ConnectionError as exc:
            raise BackendUnavailableError(f"vfkit endpoint of {record.name} is unreachable: {exc}") from exc
        except (requests.RequestException, ValueError) as exc:
            raise ResourceIOError(f"failed to read state of {record.name} from vfkit: {exc}") from exc

    def _post_state(self, record: VMRecord, new_state: str) -> None:
        try:
            response = requests.post(
                self._state_url(record), json={"state": new_state}, timeout=REQUEST_TIMEOUT
            )
            response.raise_for_status()
        except requests.ConnectionError as exc:
            raise BackendUnavailableError(f"vfkit endpoint of {record.name} is unreachable: {exc}") from exc
        except requests.RequestException as exc:
            raise ResourceIOError(f"vfkit rejected {new_state} for {record.name}: {exc}") from exc

    def _helper_alive(self, record: VMRecord) -> bool:
        # The endpoint is shared, so it only speaks for the machine whose helper is running.
        pid = int(record.backend.get("pid") or 0)
        return bool(pid) and is_alive(pid)

    def _query_state(self, record: VMRecord) -> Status:
        if not self._helper_alive(record):
            return Status.STOPPED
        raw = self._get_state(record)
        return _STATE_MAP.get(raw, Status.STOPPED)

    # ------------------------------------------------------------------
    # Start / stop
    # ------------------------------------------------------------------
    def helper_command(self, record: VMRecord) -> List[str]:
        cmd = [
            find_executable(self.settings.helper_binary),
            "--cpus", str(record.resources.cpus),
            "--memory", str(record.resources.memory),
            "--bootloader", f"efi,variable-store={record.backend['efi_store']},create",
            "--device", f"virtio-blk,path={record.image.image_path}",
            "--device", "virtio-rng",
            "--device", f"virtio-net,nat,mac={record.backend['mac']}",
            "--device", f"virtio-vsock,port={READY_VSOCK_PORT},socketURL={record.backend['ready_socket']}",
            "--device", f"virtio-serial,logFilePath={record.backend['serial_log']}",
        ]
        for mount in record.mounts:
            cmd.extend(["--device", f"virtio-fs,sharedDir={mount.source},mountTag={mount.tag}"])
        cmd.extend(["--ignition", record.image.ignition_path])
        cmd.extend(["--restful-uri", self._restful_uri(record)])
        return cmd

    def _start(self, record: VMRecord, opts: StartOptions) -> None:
        ready_socket = Path(record.backend["ready_socket"])
        ensure_directory(ready_socket.parent)
        log_path = Path(record.backend["helper_log"])
        cmd = self.helper_command(record)
        with ReadyListener(ready_socket) as listener:
            log("DEBUG", f"Running: {' '.join(cmd)}")
            with open(log_path, "w", encoding="utf-8") as stderr:
                try:
                    proc = subprocess.Popen(
                        cmd,
                        stdin=subprocess.DEVNULL,
                        stdout=subprocess.DEVNULL,
                        stderr=stderr,
                        start_new_session=True,
                    )
                except OSError as exc:
                    raise ResourceIOError(f"failed to launch vfkit for {record.name}: {exc}") from exc
            record.backend["pid"] = proc.pid
            try:
                self.store.persist(record)
                listener.wait(
                    self.settings.ready_timeout,
                    check_failure=lambda: check_process_status("vfkit", proc.pid, log_path),
                )
            except BaseException:
                terminate(proc.pid, "vfkit")
                record.backend["pid"] = 0
                raise

    def _wait_stopped(self, record: VMRecord) -> bool:
        for _ in range(STOP_RETRIES):
            try:
                if self._query_state(record) == Status.STOPPED:
                    return True
            except BackendUnavailableError:
                return True
            time.sleep(POLL_INTERVAL)
        return False

    def _stop(self, record: VMRecord, force: bool = False) -> None:
        if self._helper_alive(record):
            self._request_stop(record, force)
        else:
            log("DEBUG", f"vfkit of {record.name} is not running")

        pid = int(record.backend.get("pid") or 0)
        if pid and is_alive(pid) and not terminate(pid, "vfkit"):
            log("ERROR", f"vfkit (pid {pid}) of {record.name} is still running")
        record.backend["pid"] = 0
        ready_socket = record.backend.get("ready_socket")
        if ready_socket:
            remove_file(ready_socket)
        self.store.persist(record)

    def _request_stop(self, record: VMRecord, force: bool) -> None:
        try:
            self._post_state(record, "Stop")
            if not self._wait_stopped(record):
                log("WARN", f"Machine {record.name} did not stop; requesting a hard stop")
                self._post_state(record, "HardStop")
                self._wait_stopped(record)
        except BackendUnavailableError as exc:
            log("DEBUG", f"vfkit of {record.name} already gone: {exc}")
        except ManagerError:
            if not force:
                raise
            log("WARN", f"Graceful stop of {record.name} failed; terminating vfkit")
