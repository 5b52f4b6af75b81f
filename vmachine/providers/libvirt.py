"""Native-API backend: machines defined as libvirt domains."""

from __future__ import annotations

import contextlib
import time
from pathlib import Path
from typing import Iterator, List, Optional
from xml.etree.ElementTree import Element, SubElement, tostring

try:
    import libvirt  # type: ignore
except ImportError:  # pragma: no cover - optional extra
    libvirt = None

from vmachine.constants import (
    IGNITION_FW_CFG_NAME,
    LIBVIRT_GUEST_IP,
    POLL_INTERVAL,
    QEMU_ARCH_OPTIONS,
    QEMU_READY_UNIT,
    READY_GUEST_DEVICE,
    READY_PORT_NAME,
    STOP_RETRIES,
)
from vmachine.exceptions import BackendUnavailableError, ConflictError, ManagerError, ResourceIOError
from vmachine.models import InitOptions, StartOptions, Status, VMRecord, VMType
from vmachine.providers.base import Provider
from vmachine.qemu_cmd import host_arch
from vmachine.readiness import wait_ready_client
from vmachine.utils import deterministic_mac, ensure_directory, kvm_available, log, remove_file


def _element_to_str(root: Element) -> str:
    from xml.dom.minidom import parseString

    raw = tostring(root, encoding="unicode")
    return parseString(raw).documentElement.toprettyxml(indent="  ").strip()


def _error_message(exc: Exception) -> str:
    return exc.get_error_message() if hasattr(exc, "get_error_message") else str(exc)


def render_domain_xml(record: VMRecord, arch: Optional[str] = None, use_kvm: Optional[bool] = None) -> str:
    """Render the libvirt domain definition for ``record``."""
    resolved_arch = host_arch(arch)
    profile = QEMU_ARCH_OPTIONS.get(resolved_arch)
    if profile is None:
        raise ManagerError(f"Unsupported host architecture '{resolved_arch}' for libvirt machines")
    if use_kvm is None:
        use_kvm = kvm_available()

    domain = Element("domain", type="kvm" if use_kvm else "qemu")
    SubElement(domain, "name").text = record.name
    SubElement(domain, "memory", unit="MiB").text = str(record.resources.memory)
    SubElement(domain, "vcpu", placement="static").text = str(record.resources.cpus)

    machine = profile["machine"].split(",", 1)[0]
    os_attrs = {"firmware": "efi"} if profile["bios"] else {}
    os_el = SubElement(domain, "os", **os_attrs)
    SubElement(os_el, "type", arch=resolved_arch, machine=machine).text = "hvm"

    features = SubElement(domain, "features")
    SubElement(features, "acpi")
    if resolved_arch == "aarch64":
        SubElement(features, "gic", version="max")

    if use_kvm:
        SubElement(domain, "cpu", mode="host-passthrough")
    else:
        cpu_el = SubElement(domain, "cpu", mode="custom", match="exact")
        SubElement(cpu_el, "model", fallback="allow").text = profile["tcg_fallback"]

    sysinfo = SubElement(domain, "sysinfo", type="fwcfg")
    SubElement(sysinfo, "entry", name=IGNITION_FW_CFG_NAME, file=record.image.ignition_path)

    if record.mounts:
        backing = SubElement(domain, "memoryBacking")
        SubElement(backing, "source", type="memfd")
        SubElement(backing, "access", mode="shared")

    devices = SubElement(domain, "devices")
    image_format = "qcow2" if record.image.image_path.endswith(".qcow2") else "raw"
    disk = SubElement(devices, "disk", type="file", device="disk")
    SubElement(disk, "driver", name="qemu", type=image_format)
    SubElement(disk, "source", file=record.image.image_path)
    SubElement(disk, "target", dev="vda", bus="virtio")

    iface = SubElement(devices, "interface", type="user")
    SubElement(iface, "mac", address=record.backend.get("mac") or deterministic_mac(record.name))
    SubElement(iface, "backend", type="passt")
    SubElement(iface, "ip", family="ipv4", address=LIBVIRT_GUEST_IP, prefix="24")
    SubElement(iface, "model", type="virtio")
    pf_el = SubElement(iface, "portForward", proto="tcp")
    SubElement(pf_el, "range", start=str(record.ssh.port), to="22")

    channel = SubElement(devices, "channel", type="unix")
    SubElement(channel, "source", mode="bind", path=record.backend.get("ready_socket", ""))
    SubElement(channel, "target", type="virtio", name=READY_PORT_NAME)

    for mount in record.mounts:
        fs = SubElement(devices, "filesystem", type="mount", accessmode="passthrough")
        SubElement(fs, "driver", type="virtiofs")
        SubElement(fs, "source", dir=mount.source)
        SubElement(fs, "target", dir=mount.tag)
        if mount.read_only:
            SubElement(fs, "readonly")

    serial = SubElement(devices, "serial", type="pty")
    SubElement(serial, "target", port="0")
    console = SubElement(devices, "console", type="pty")
    SubElement(console, "target", type="serial", port="0")
    rng = SubElement(devices, "rng", model="virtio")
    SubElement(rng, "backend", model="random").text = "/dev/urandom"

    return _element_to_str(domain)


class LibvirtProvider(Provider):
    """One libvirt machine may be active at a time."""

    vm_type = VMType.LIBVIRT
    exclusive = True

    def ready_unit(self, record: VMRecord) -> str:
        return QEMU_READY_UNIT % (READY_GUEST_DEVICE, READY_GUEST_DEVICE)

    def _uri(self, record: Optional[VMRecord] = None) -> str:
        if record is not None and record.backend.get("uri"):
            return record.backend["uri"]
        return self.settings.libvirt_uri

    @contextlib.contextmanager
    def _connect(self, record: Optional[VMRecord] = None) -> Iterator["libvirt.virConnect"]:
        if libvirt is None:
            raise BackendUnavailableError(
                "libvirt python bindings are not installed (install vmachine[libvirt])"
            )
        uri = self._uri(record)
        try:
            conn = libvirt.open(uri)
        except libvirt.libvirtError as exc:
            raise BackendUnavailableError(f"cannot connect to libvirt at {uri}: {_error_message(exc)}") from exc
        if conn is None:
            raise BackendUnavailableError(f"Failed to open libvirt connection to {uri}")
        try:
            yield conn
        finally:
            conn.close()

    def _lookup(self, conn, name: str):
        try:
            return conn.lookupByName(name)
        except libvirt.libvirtError:
            return None

    def _define(self, conn, record: VMRecord) -> None:
        xml = render_domain_xml(record)
        try:
            domain = conn.defineXML(xml)
        except libvirt.libvirtError as exc:
            raise ResourceIOError(f"failed to define domain {record.name}: {_error_message(exc)}") from exc
        if domain is None:
            raise ResourceIOError(f"Failed to define libvirt domain {record.name}")
        log("DEBUG", f"Defined domain {record.name}")

    def _create(self, record: VMRecord, opts: InitOptions) -> None:
        run_dir = self.dirs.runtime_dir / record.name
        record.backend = {
            "uri": self.settings.libvirt_uri,
            "ready_socket": str(run_dir / "ready.sock"),
            "mac": deterministic_mac(f"{self.vm_type.value}:{record.name}"),
        }
        with self._connect(record) as conn:
            if self._lookup(conn, record.name) is not None:
                raise ConflictError(f"libvirt domain {record.name} already exists")
            self._define(conn, record)

    def _update_backend(self, record: VMRecord) -> None:
        with self._connect(record) as conn:
            self._define(conn, record)

    def is_valid_vm_name(self, name: str) -> bool:
        if not super().is_valid_vm_name(name):
            return False
        try:
            with self._connect() as conn:
                return self._lookup(conn, name) is not None
        except BackendUnavailableError:
            return False

    def _query_state(self, record: VMRecord) -> Status:
        with self._connect(record) as conn:
            domain = self._lookup(conn, record.name)
            if domain is None:
                return Status.STOPPED
            try:
                state, _ = domain.state()
            except libvirt.libvirtError as exc:
                raise BackendUnavailableError(
                    f"failed to query domain {record.name}: {_error_message(exc)}"
                ) from exc
        if state in (libvirt.VIR_DOMAIN_RUNNING, libvirt.VIR_DOMAIN_BLOCKED):
            return Status.RUNNING
        return Status.STOPPED

    def _start(self, record: VMRecord, opts: StartOptions) -> None:
        ready_socket = Path(record.backend.get("ready_socket", ""))
        ensure_directory(ready_socket.parent)
        remove_file(ready_socket)
        with self._connect(record) as conn:
            domain = self._lookup(conn, record.name)
            if domain is None:
                self._define(conn, record)
                domain = self._lookup(conn, record.name)
            try:
                domain.create()
            except libvirt.libvirtError as exc:
                raise ResourceIOError(
                    f"Failed to start domain {record.name}: {_error_message(exc)}"
                ) from exc

            def check_failure() -> None:
                try:
                    active = domain.isActive()
                except libvirt.libvirtError as exc:
                    raise ResourceIOError(f"lost domain {record.name}: {_error_message(exc)}") from exc
                if not active:
                    raise ResourceIOError(f"domain {record.name} stopped before signalling readiness")

            try:
                wait_ready_client(ready_socket, timeout=self.settings.ready_timeout, check_failure=check_failure)
            except BaseException:
                self._destroy(domain, record.name)
                raise

    def _destroy(self, domain, name: str) -> None:
        try:
            if domain.isActive():
                domain.destroy()
        except libvirt.libvirtError as exc:
            log("WARN", f"Could not destroy domain {name}: {_error_message(exc)}")

    def _stop(self, record: VMRecord, force: bool = False) -> None:
        with self._connect(record) as conn:
            domain = self._lookup(conn, record.name)
            if domain is None:
                return
            try:
                domain.shutdown()
            except libvirt.libvirtError as exc:
                if not force:
                    raise ResourceIOError(
                        f"failed to shut down domain {record.name}: {_error_message(exc)}"
                    ) from exc
                log("WARN", f"Graceful shutdown of {record.name} failed: {_error_message(exc)}")
            for _ in range(STOP_RETRIES):
                try:
                    if not domain.isActive():
                        break
                except libvirt.libvirtError:
                    break
                time.sleep(POLL_INTERVAL)
            else:
                log("WARN", f"Domain {record.name} did not power down; destroying it")
                self._destroy(domain, record.name)
        ready_socket = record.backend.get("ready_socket")
        if ready_socket:
            remove_file(ready_socket)

    def _teardown(self, record: VMRecord) -> List[Exception]:
        try:
            with self._connect(record) as conn:
                domain = self._lookup(conn, record.name)
                if domain is None:
                    return []
                try:
                    domain.undefineFlags(libvirt.VIR_DOMAIN_UNDEFINE_NVRAM)
                except libvirt.libvirtError as exc:
                    return [ResourceIOError(f"failed to undefine domain {record.name}: {_error_message(exc)}")]
        except BackendUnavailableError as exc:
            return [exc]
        return []
