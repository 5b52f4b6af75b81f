"""Process-based backend: qemu driven by a synthesized command line."""

from __future__ import annotations

import shutil
import socket
import subprocess
import time
from pathlib import Path
from typing import List, Optional

from vmachine.constants import (
    IGNITION_FW_CFG_NAME,
    POLL_INTERVAL,
    QEMU_GUEST_MAC,
    QEMU_READY_UNIT,
    READY_CHANNEL_ID,
    READY_GUEST_DEVICE,
    READY_PORT_NAME,
    STOP_RETRIES,
)
from vmachine.exceptions import BackendUnavailableError, ManagerError, ResourceIOError
from vmachine.models import InitOptions, StartOptions, Status, VMRecord, VMType
from vmachine.process import (
    check_process_status,
    cleanup_socket,
    is_alive,
    read_pidfile,
    terminate,
    wait_for_pidfile,
    wait_for_socket,
)
from vmachine.providers.base import Provider
from vmachine.qemu_cmd import (
    CharDev,
    FirmwareConfigDevice,
    Monitor,
    Network,
    QemuCmd,
    QmpMonitor,
    SerialPort,
    Socket,
    VirtioNet,
    VirtSerialPort,
    Virtfs,
    arch_options,
)
from vmachine.qmp import QMPClient
from vmachine.readiness import wait_ready_client
from vmachine.utils import ensure_directory, find_executable, log, remove_file


_RUNTIME_KEYS = ("qmp_socket", "ready_socket", "pidfile", "proxy_pidfile", "proxy_socket", "api_socket")


class QemuProvider(Provider):
    """Several qemu machines may run side by side."""

    vm_type = VMType.QEMU
    exclusive = False

    def ready_unit(self, record: VMRecord) -> str:
        return QEMU_READY_UNIT % (READY_GUEST_DEVICE, READY_GUEST_DEVICE)

    def _machine_runtime_dir(self, record: VMRecord) -> Path:
        return self.dirs.runtime_dir / record.name

    def _create(self, record: VMRecord, opts: InitOptions) -> None:
        run_dir = self._machine_runtime_dir(record)
        record.backend = {
            "qmp_socket": str(run_dir / "qmp.sock"),
            "ready_socket": str(run_dir / "ready.sock"),
            "pidfile": str(run_dir / "vm.pid"),
            "proxy_pidfile": str(run_dir / "gvproxy.pid"),
            "proxy_socket": str(run_dir / "gvproxy.sock"),
            "api_socket": str(run_dir / "podman.sock"),
            "qemu_log": str(run_dir / "qemu.log"),
            "proxy_log": str(run_dir / "gvproxy.log"),
        }

    def _path(self, record: VMRecord, key: str) -> Path:
        value = record.backend.get(key)
        if not value:
            raise ManagerError(f"machine {record.name} has no {key} configured")
        return Path(value)

    # ------------------------------------------------------------------
    # Command line
    # ------------------------------------------------------------------
    def build_command(self, record: VMRecord, net_fd: int, arch: Optional[str] = None,
                      use_kvm: Optional[bool] = None) -> List[str]:
        """Full qemu argv (binary first) for ``record``."""
        options = arch_options(arch, use_kvm)
        cmd = QemuCmd(
            memory=record.resources.memory,
            cpus=record.resources.cpus,
            cpu=options.cpu,
            bios=options.bios,
            bootable_image=record.image.image_path,
            display=False,
            accelerator=options.accelerator,
            machine=options.machine,
            mounts=[
                Virtfs(
                    path=mount.source,
                    mount_tag=mount.tag,
                    security_model="none",
                    read_only=mount.read_only,
                )
                for mount in record.mounts
            ],
            firmware_configs=[
                FirmwareConfigDevice(name=IGNITION_FW_CFG_NAME, file=record.image.ignition_path)
            ],
            qmp=QmpMonitor(
                monitor=Monitor(network="unix", address=record.backend.get("qmp_socket", "")),
                server=True,
                wait=False,
            ),
            network=Network(
                socket=Socket(fd=net_fd),
                device=VirtioNet(net_device="vlan", mac=QEMU_GUEST_MAC),
            ),
            serial=SerialPort(
                pidfile=record.backend.get("pidfile", ""),
                chardev=CharDev(socket_path=record.backend.get("ready_socket", ""), wait=False, id=record.name),
                port=VirtSerialPort(name=READY_PORT_NAME, chardev=READY_CHANNEL_ID.format(record.name)),
            ),
        )
        self._validate_command(record, cmd)
        return [options.binary] + cmd.to_cmdline()

    def _validate_command(self, record: VMRecord, cmd: QemuCmd) -> None:
        # Synthesis emits whatever it is given, so incomplete models are rejected here.
        problems = []
        if not cmd.qmp.monitor.address:
            problems.append("qmp monitor address")
        if not cmd.serial.pidfile:
            problems.append("pidfile")
        if not cmd.serial.chardev.socket_path:
            problems.append("ready socket")
        if cmd.network.socket.fd < 0:
            problems.append("network file descriptor")
        if not cmd.bootable_image:
            problems.append("boot image")
        if problems:
            raise ManagerError(f"cannot build qemu command for {record.name}: missing {', '.join(problems)}")

    def _proxy_command(self, record: VMRecord) -> List[str]:
        if record.ssh.rootful:
            forward_dest, forward_user = "/run/podman/podman.sock", "root"
        else:
            forward_dest = f"/run/user/{record.uid}/podman/podman.sock"
            forward_user = record.ssh.remote_username
        return [
            find_executable(self.settings.network_helper),
            "-listen-qemu", f"unix://{record.backend['proxy_socket']}",
            "-pid-file", record.backend["proxy_pidfile"],
            "-ssh-port", str(record.ssh.port),
            "-forward-sock", record.backend["api_socket"],
            "-forward-dest", forward_dest,
            "-forward-user", forward_user,
            "-forward-identity", record.ssh.identity_path,
        ]

    # ------------------------------------------------------------------
    # State
    # ------------------------------------------------------------------
    def _query_state(self, record: VMRecord) -> Status:
        qmp_socket = Path(record.backend.get("qmp_socket", ""))
        if not record.backend.get("qmp_socket") or not qmp_socket.exists():
            return Status.STOPPED
        try:
            with QMPClient(qmp_socket) as client:
                result = client.execute("query-status")
        except ResourceIOError as exc:
            raise BackendUnavailableError(f"qmp of {record.name} is not answering: {exc}") from exc
        if result.get("status") == "running":
            return Status.RUNNING
        if result.get("status") in ("prelaunch", "inmigrate", "paused"):
            return Status.STARTING
        return Status.STOPPED

    # ------------------------------------------------------------------
    # Start / stop
    # ------------------------------------------------------------------
    def _start_proxy(self, record: VMRecord) -> subprocess.Popen:
        proxy_socket = self._path(record, "proxy_socket")
        cleanup_socket(proxy_socket)
        remove_file(proxy_socket)
        log_path = self._path(record, "proxy_log")
        cmd = self._proxy_command(record)
        log("DEBUG", f"Running: {' '.join(cmd)}")
        with open(log_path, "w", encoding="utf-8") as stderr:
            proc = subprocess.Popen(
                cmd,
                stdin=subprocess.DEVNULL,
                stdout=subprocess.DEVNULL,
                stderr=stderr,
                start_new_session=True,
            )
        wait_for_socket(
            proxy_socket,
            check_failure=lambda: check_process_status("gvproxy", proc.pid, log_path),
        )
        return proc

    def _connect_proxy(self, record: VMRecord) -> socket.socket:
        sock = socket.socket(socket.AF_UNIX, socket.SOCK_STREAM)
        try:
            sock.connect(str(self._path(record, "proxy_socket")))
        except OSError as exc:
            sock.close()
            raise ResourceIOError(f"failed to connect to gvproxy of {record.name}: {exc}") from exc
        return sock

    def _start(self, record: VMRecord, opts: StartOptions) -> None:
        run_dir = self._machine_runtime_dir(record)
        ensure_directory(run_dir)
        for key in ("qmp_socket", "ready_socket"):
            cleanup_socket(self._path(record, key))
            remove_file(self._path(record, key))
        remove_file(self._path(record, "pidfile"))

        proxy = self._start_proxy(record)
        try:
            net_sock = self._connect_proxy(record)
            with net_sock:
                cmd = self.build_command(record, net_sock.fileno())
                log_path = self._path(record, "qemu_log")
                log("DEBUG", f"Running: {' '.join(cmd)}")
                with open(log_path, "w", encoding="utf-8") as stderr:
                    try:
                        proc = subprocess.Popen(
                            cmd,
                            stdin=subprocess.DEVNULL,
                            stdout=subprocess.DEVNULL,
                            stderr=stderr,
                            pass_fds=(net_sock.fileno(),),
                            start_new_session=True,
                        )
                    except OSError as exc:
                        raise ResourceIOError(f"failed to launch qemu for {record.name}: {exc}") from exc

            def check_failure() -> None:
                check_process_status("qemu", proc.pid, log_path)

            try:
                wait_for_socket(self._path(record, "qmp_socket"), check_failure=check_failure)
                pid = wait_for_pidfile(self._path(record, "pidfile"))
                log("DEBUG", f"qemu for {record.name} running as pid {pid}")
                wait_ready_client(
                    self._path(record, "ready_socket"),
                    timeout=self.settings.ready_timeout,
                    check_failure=check_failure,
                )
            except BaseException:
                terminate(proc.pid, "qemu")
                raise
        except BaseException:
            terminate(proxy.pid, "gvproxy")
            self._cleanup_runtime(record)
            raise

    def _stop(self, record: VMRecord, force: bool = False) -> None:
        pid = read_pidfile(self._path(record, "pidfile"))
        try:
            with QMPClient(self._path(record, "qmp_socket")) as client:
                client.execute("system_powerdown")
        except ManagerError as exc:
            if not force:
                raise ResourceIOError(f"failed to request shutdown of {record.name}: {exc}") from exc
            log("WARN", f"Graceful shutdown of {record.name} failed: {exc}")

        if pid is not None:
            for _ in range(STOP_RETRIES):
                if not is_alive(pid):
                    break
                time.sleep(POLL_INTERVAL)
            else:
                log("WARN", f"Machine {record.name} did not power down; terminating qemu")
                terminate(pid, "qemu")

        self._stop_proxy(record)
        self._cleanup_runtime(record)

    def _stop_proxy(self, record: VMRecord) -> None:
        try:
            pid = read_pidfile(self._path(record, "proxy_pidfile"))
        except ResourceIOError as exc:
            log("WARN", f"Could not read gvproxy pidfile of {record.name}: {exc}")
            return
        if pid is not None and not terminate(pid, "gvproxy"):
            log("ERROR", f"gvproxy (pid {pid}) of {record.name} is still running")

    def _cleanup_runtime(self, record: VMRecord) -> None:
        for key in _RUNTIME_KEYS:
            value = record.backend.get(key)
            if not value:
                continue
            try:
                remove_file(value)
            except OSError as exc:
                log("WARN", f"Failed to remove {value}: {exc}")

    def _teardown(self, record: VMRecord) -> List[Exception]:
        run_dir = self._machine_runtime_dir(record)
        if not run_dir.exists():
            return []
        try:
            shutil.rmtree(run_dir)
        except OSError as exc:
            return [ResourceIOError(f"failed to remove runtime directory {run_dir}: {exc}")]
        return []
