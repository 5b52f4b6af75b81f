"""Lifecycle state gates shared by every provider."""

from __future__ import annotations

from vmachine.exceptions import AlreadyRunningError, WrongStateError
from vmachine.models import Status, VMRecord


def ensure_can_start(name: str, status: Status) -> None:
    if status == Status.RUNNING:
        raise AlreadyRunningError(f"machine {name} is already running")
    if status == Status.STARTING:
        raise AlreadyRunningError(f"machine {name} is currently starting")


def ensure_can_stop(name: str, status: Status) -> None:
    # Stopping a Starting machine cancels the start.
    if status == Status.STOPPED:
        raise WrongStateError(f"machine {name} is not running (state: {status.value})")


def ensure_can_set(name: str, status: Status) -> None:
    if status != Status.STOPPED:
        raise WrongStateError(f"machine {name} must be stopped to change settings (state: {status.value})")


def ensure_can_remove(name: str, status: Status, force: bool) -> bool:
    """Return True when the machine has to be stopped before removal."""
    if status == Status.STOPPED:
        return False
    if not force:
        raise WrongStateError(f"invalid state: {name} is {status.value}")
    return True


def resolve(backend_status: Status, record: VMRecord) -> Status:
    """Merge the live backend status with the persisted ``starting`` flag.

    Returns the effective status and clears a stale flag on ``record`` when the
    backend is no longer up; callers persist the record when it changed.
    """
    if record.starting:
        if backend_status == Status.STOPPED:
            record.starting = False
            return Status.STOPPED
        return Status.STARTING
    return backend_status
