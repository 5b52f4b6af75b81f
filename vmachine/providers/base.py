"""Backend-independent machine lifecycle."""

from __future__ import annotations

import abc
import os
import shutil
from pathlib import Path
from typing import Callable, Dict, List, Optional, Tuple
from urllib.parse import urlparse

from vmachine import state as lifecycle
from vmachine.config import MachineSettings, connections_path, machine_dirs, ssh_key_dir
from vmachine.connection import ConnectionRegistry, machine_connections
from vmachine.constants import GIB, IGNITION_SUFFIX, MACHINE_NAME_RE, MIB
from vmachine.exceptions import (
    AggregateError,
    BackendUnavailableError,
    ConflictError,
    ManagerError,
    NotFoundError,
    ResourceIOError,
)
from vmachine.ignition import build_ignition, copy_user_ignition, write_ignition
from vmachine.models import (
    ImageConfig,
    InitOptions,
    InspectInfo,
    ListResponse,
    MachineDirs,
    RemoveOptions,
    ResourceConfig,
    SetOptions,
    SSHConfig,
    StartOptions,
    Status,
    StopOptions,
    VMRecord,
    VMType,
    now,
)
from vmachine.store import ConfigStore
from vmachine.utils import (
    create_ssh_keys,
    download_file,
    ensure_directory,
    get_random_port,
    log,
    parse_int,
    port_in_use,
    remove_file,
    resize_image,
)

RemoveFunc = Callable[[], List[Exception]]


class Provider(abc.ABC):
    """Uniform machine surface; subclasses supply the backend hooks."""

    vm_type: VMType
    # Backends that can only run one machine at a time.
    exclusive: bool = False
    # Backends that publish the guest SSH port on a host port.
    forwards_ssh_port: bool = True

    def __init__(
        self,
        settings: Optional[MachineSettings] = None,
        dirs: Optional[MachineDirs] = None,
        registry: Optional[ConnectionRegistry] = None,
    ) -> None:
        self.settings = settings or MachineSettings()
        self.dirs = dirs or machine_dirs(self.vm_type)
        self.registry = registry or ConnectionRegistry(connections_path())
        self.store = ConfigStore(self.dirs.config_dir)

    # ------------------------------------------------------------------
    # Backend hooks
    # ------------------------------------------------------------------
    @abc.abstractmethod
    def _create(self, record: VMRecord, opts: InitOptions) -> None:
        """Prepare backend state for a new machine (fills ``record.backend``)."""

    @abc.abstractmethod
    def _query_state(self, record: VMRecord) -> Status:
        """Ask the live control surface; may raise BackendUnavailableError."""

    @abc.abstractmethod
    def _start(self, record: VMRecord, opts: StartOptions) -> None:
        """Boot the machine and block until the guest reports ready."""

    @abc.abstractmethod
    def _stop(self, record: VMRecord, force: bool = False) -> None:
        """Shut the machine down and clean up transient runtime files."""

    @abc.abstractmethod
    def ready_unit(self, record: VMRecord) -> str:
        """systemd unit the guest runs to signal readiness."""

    def _resize_disk(self, record: VMRecord, size_gb: int) -> None:
        resize_image(record.image.image_path, size_gb)

    def _update_backend(self, record: VMRecord) -> None:
        """Refresh the backend's definition after a settings change."""

    def _removal_files(self, record: VMRecord) -> List[str]:
        return []

    def _teardown(self, record: VMRecord) -> List[Exception]:
        """Remove backend definitions; failures are returned, not raised."""
        return []

    def _assign_port(self) -> int:
        return get_random_port()

    def _connection_info(self, record: VMRecord) -> Dict[str, str]:
        return {"PodmanSocket": record.backend.get("api_socket", "")}

    # ------------------------------------------------------------------
    # Lookup
    # ------------------------------------------------------------------
    def _validate_name(self, name: str) -> None:
        if not name or not MACHINE_NAME_RE.match(name):
            raise ManagerError(
                f"invalid machine name {name!r}: must match {MACHINE_NAME_RE.pattern}"
            )

    def load_vm_by_name(self, name: str) -> VMRecord:
        self._validate_name(name)
        return self.store.load(name)

    def is_valid_vm_name(self, name: str) -> bool:
        if not name or not MACHINE_NAME_RE.match(name):
            return False
        try:
            self.store.load(name)
        except NotFoundError:
            return False
        return True

    # ------------------------------------------------------------------
    # State
    # ------------------------------------------------------------------
    def state(self, record: VMRecord) -> Status:
        try:
            backend_status = self._query_state(record)
        except BackendUnavailableError as exc:
            log("DEBUG", f"{self.vm_type.value} backend unavailable for {record.name}: {exc}")
            backend_status = Status.STOPPED
        was_starting = record.starting
        status = lifecycle.resolve(backend_status, record)
        changed = was_starting != record.starting
        if status == Status.RUNNING and (record.last_up is None or record.last_up == record.created):
            record.last_up = now()
            changed = True
        if changed:
            self.store.persist(record)
        return status

    def check_exclusive_active_vm(self) -> Tuple[bool, str]:
        for record in self.store.enumerate():
            if self.state(record) in (Status.RUNNING, Status.STARTING):
                return True, record.name
        return False, ""

    # ------------------------------------------------------------------
    # Creation
    # ------------------------------------------------------------------
    def _acquire_image(self, name: str, opts: InitOptions) -> ImageConfig:
        source = opts.image_path or self.settings.image
        if not source:
            raise ManagerError(f"no image given for machine {name}: pass --image or set VMACHINE_IMAGE")
        stream = "custom" if opts.image_path else "default"
        ensure_directory(self.dirs.data_dir)
        parsed = urlparse(source)
        if parsed.scheme in ("http", "https"):
            basename = Path(parsed.path).name or "image"
            destination = self.dirs.data_dir / f"{name}-{basename}"
            download_file(source, destination, label=f"Downloading image for {name}")
        else:
            src_path = Path(source).expanduser()
            if not src_path.is_file():
                raise NotFoundError(f"image {src_path} for machine {name} does not exist")
            destination = self.dirs.data_dir / f"{name}-{src_path.name}"
            log("INFO", f"Copying image {src_path} to {destination}")
            try:
                shutil.copyfile(src_path, destination)
            except OSError as exc:
                raise ResourceIOError(f"failed to copy image {src_path}: {exc}") from exc
        return ImageConfig(
            image_path=str(destination),
            image_stream=stream,
            ignition_path=str(self.dirs.config_dir / f"{name}{IGNITION_SUFFIX}"),
        )

    def new_machine(self, opts: InitOptions) -> VMRecord:
        name = opts.name
        self._validate_name(name)
        if self.store.exists(name):
            raise ConflictError(f"machine {name} already exists")
        resources = ResourceConfig(
            cpus=parse_int("cpus", opts.cpus),
            memory=parse_int("memory", opts.memory, min_val=128),
            disk_size=parse_int("disk size", opts.disk_size),
        )

        image = self._acquire_image(name, opts)
        created = now()
        record = VMRecord(
            name=name,
            config_path=str(self.store.path_for(name)),
            resources=resources,
            image=image,
            ssh=SSHConfig(
                identity_path=str(ssh_key_dir() / name),
                port=self._assign_port(),
                remote_username=opts.username or self.settings.username,
                rootful=opts.rootful,
            ),
            mounts=list(opts.mounts),
            created=created,
            last_up=created,
            uid=os.getuid(),
        )
        connections_added = False
        backend_created = False
        try:
            self._resize_disk(record, resources.disk_size)
            self._create(record, opts)
            backend_created = True
            if opts.ignition_path:
                copy_user_ignition(Path(opts.ignition_path), Path(image.ignition_path))
                log("INFO", "An ignition path was provided. No SSH connection was added")
            else:
                key = create_ssh_keys(Path(record.ssh.identity_path))
                cons = machine_connections(name, record.uid, record.ssh.port, record.ssh.remote_username)
                # The first connection added to an empty registry becomes the default.
                if opts.rootful:
                    cons.reverse()
                self.registry.add(cons, record.ssh.identity_path, opts.is_default)
                connections_added = True
                payload = build_ignition(
                    record.ssh.remote_username,
                    key,
                    name,
                    self.ready_unit(record),
                    rootful=opts.rootful,
                    timezone=opts.timezone,
                )
                write_ignition(Path(image.ignition_path), payload)
            self.store.persist(record)
        except (ManagerError, OSError):
            self._rollback(record, connections_added, backend_created)
            raise
        log("SUCCESS", f"Machine {name} created")
        return record

    def _rollback(self, record: VMRecord, connections_added: bool, backend_created: bool) -> None:
        for path in (record.image.image_path, record.image.ignition_path, record.config_path):
            try:
                remove_file(path)
            except OSError as exc:
                log("WARN", f"Failed to remove {path} after failed init: {exc}")
        if connections_added:
            try:
                self.registry.remove([record.name, f"{record.name}-root"])
            except ManagerError as exc:
                log("WARN", f"Failed to remove connections of {record.name}: {exc}")
        if not backend_created:
            return
        for exc in self._teardown(record):
            log("WARN", f"Cleanup after failed init of {record.name}: {exc}")

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------
    def start(self, name: str, opts: Optional[StartOptions] = None) -> None:
        opts = opts or StartOptions()
        record = self.load_vm_by_name(name)
        lifecycle.ensure_can_start(name, self.state(record))
        if self.exclusive:
            active, active_name = self.check_exclusive_active_vm()
            if active:
                raise ConflictError(
                    f"cannot start {name}: machine {active_name} is already active "
                    f"and {self.vm_type.value} runs one machine at a time"
                )
        if not opts.quiet:
            log("INFO", f"Starting machine {name}")
        self._reassign_ssh_port(record)
        record.starting = True
        self.store.persist(record)
        try:
            self._start(record, opts)
        except BaseException:
            record.starting = False
            try:
                self.store.persist(record)
            except (ManagerError, OSError) as persist_exc:
                log("ERROR", f"Failed to clear starting flag of {name}: {persist_exc}")
            raise
        record.starting = False
        record.last_up = now()
        self.store.persist(record)
        if not opts.quiet:
            log("SUCCESS", f"Machine {name} started")

    def _reassign_ssh_port(self, record: VMRecord) -> None:
        """Move the SSH forward to a free port when the recorded one is taken."""
        if not self.forwards_ssh_port or not port_in_use(record.ssh.port):
            return
        old_port = record.ssh.port
        record.ssh.port = self._assign_port()
        log("WARN", f"SSH port {old_port} of {record.name} is in use; using {record.ssh.port} instead")
        if record.name in self.registry.read().connections:
            self.registry.update_connection_pair_port(
                record.name, record.ssh.port, record.uid, record.ssh.remote_username, record.ssh.identity_path
            )
        self._update_backend(record)
        self.store.persist(record)

    def stop(self, name: str, opts: Optional[StopOptions] = None) -> None:
        opts = opts or StopOptions()
        record = self.load_vm_by_name(name)
        lifecycle.ensure_can_stop(name, self.state(record))
        self._stop(record)
        if record.starting:
            record.starting = False
            self.store.persist(record)
        if not opts.quiet:
            log("SUCCESS", f"Machine {name} stopped")

    def set(self, name: str, opts: SetOptions) -> None:
        """Apply settings to a stopped machine.

        Every failure is collected; the surviving changes are persisted and
        the failures raised together as one AggregateError.
        """
        record = self.load_vm_by_name(name)
        lifecycle.ensure_can_set(name, self.state(record))
        cpus = parse_int("cpus", opts.cpus) if opts.cpus is not None else None
        memory = parse_int("memory", opts.memory, min_val=128) if opts.memory is not None else None
        disk_size = parse_int("disk size", opts.disk_size) if opts.disk_size is not None else None

        errors: List[Exception] = []
        if cpus is not None:
            record.resources.cpus = cpus
        if memory is not None:
            record.resources.memory = memory
        if disk_size is not None:
            current = record.resources.disk_size
            if disk_size < current:
                errors.append(
                    ConflictError(
                        f"new disk size {disk_size}GiB of machine {name} is smaller than "
                        f"existing {current}GiB: cannot shrink disk size"
                    )
                )
            elif disk_size > current:
                try:
                    self._resize_disk(record, disk_size)
                except ManagerError as exc:
                    errors.append(exc)
                else:
                    record.resources.disk_size = disk_size
        if opts.rootful is not None and opts.rootful != record.ssh.rootful:
            record.ssh.rootful = opts.rootful
            try:
                self.registry.update_default_on_rootfulness_change(opts.rootful, name, f"{name}-root")
            except ManagerError as exc:
                errors.append(exc)
        try:
            self._update_backend(record)
        except ManagerError as exc:
            errors.append(exc)
        try:
            self.store.persist(record)
        except (ManagerError, OSError) as exc:
            errors.append(exc)
        if errors:
            raise AggregateError(f"failed to update machine {name}", errors)

    def remove(self, name: str, opts: Optional[RemoveOptions] = None) -> Tuple[str, RemoveFunc]:
        """Return the confirmation message and a callable doing the deletion."""
        opts = opts or RemoveOptions()
        record = self.load_vm_by_name(name)
        if lifecycle.ensure_can_remove(name, self.state(record), opts.force):
            self._stop(record, force=True)

        files: List[str] = []
        if not opts.save_keys and record.ssh.identity_path:
            files.extend([record.ssh.identity_path, record.ssh.identity_path + ".pub"])
        if not opts.save_ignition and record.image.ignition_path:
            files.append(record.image.ignition_path)
        if not opts.save_image and record.image.image_path:
            files.append(record.image.image_path)
        files.extend(self._removal_files(record))
        files.append(record.config_path)

        message = "\nThe following files will be deleted:\n\n"
        message += "".join(f"{path}\n" for path in files)
        message += "\n"
        if self.registry.any_default(name, f"{name}-root"):
            message += f"Machine {name} holds the default connection; the default moves to another connection.\n\n"

        def do_remove() -> List[Exception]:
            failures: List[Exception] = []
            for path in files:
                try:
                    remove_file(path)
                except OSError as exc:
                    log("ERROR", f"Failed to remove {path}: {exc}")
                    failures.append(ResourceIOError(f"failed to remove {path}: {exc}"))
            try:
                existing = self.registry.read().connections
                cons = [con for con in (name, f"{name}-root") if con in existing]
                if cons:
                    self.registry.remove(cons, machines=self._machine_rootfulness(name))
            except ManagerError as exc:
                log("ERROR", f"Failed to remove connections of {name}: {exc}")
                failures.append(exc)
            for exc in self._teardown(record):
                log("ERROR", f"Failed to tear down {name}: {exc}")
                failures.append(exc)
            return failures

        return message, do_remove

    def _machine_rootfulness(self, removed: str) -> Optional[Dict[str, bool]]:
        try:
            records = self.store.enumerate()
        except ManagerError as exc:
            log("WARN", f"Could not list machines while removing {removed}: {exc}")
            return None
        return {r.name: r.ssh.rootful for r in records if r.name != removed}

    # ------------------------------------------------------------------
    # Reporting
    # ------------------------------------------------------------------
    def list(self) -> List[ListResponse]:
        responses = []
        for record in self.store.enumerate():
            status = self.state(record)
            responses.append(
                ListResponse(
                    name=record.name,
                    created_at=record.created,
                    last_up=record.last_up,
                    running=status == Status.RUNNING,
                    starting=status == Status.STARTING,
                    stream=record.image.image_stream,
                    vm_type=self.vm_type.value,
                    cpus=record.resources.cpus,
                    memory=record.resources.memory * MIB,
                    disk_size=record.resources.disk_size * GIB,
                    port=record.ssh.port,
                    remote_username=record.ssh.remote_username,
                    identity_path=record.ssh.identity_path,
                )
            )
        return responses

    def inspect(self, name: str) -> InspectInfo:
        record = self.load_vm_by_name(name)
        status = self.state(record)
        return InspectInfo(
            config_path=record.config_path,
            connection_info=self._connection_info(record),
            created=record.created,
            image=record.image,
            last_up=record.last_up,
            name=record.name,
            resources=record.resources,
            ssh_config=record.ssh,
            state=status,
            rootful=record.ssh.rootful,
        )
