"""Custom exceptions for vmachine."""

from __future__ import annotations

from typing import List, Sequence


class ManagerError(RuntimeError):
    """Raised on unrecoverable configuration or runtime errors."""


class NotFoundError(ManagerError):
    """A named machine or connection does not exist."""


class NoSuchVMError(NotFoundError):
    """The configuration file of a machine is missing."""


class InvalidConfigError(ManagerError):
    """A machine configuration file exists but cannot be parsed."""


class WrongStateError(ManagerError):
    """The operation is not legal in the machine's current state."""


class AlreadyRunningError(ManagerError):
    """Start was requested for a machine that is already up."""


class ConflictError(ManagerError):
    """Name collision, exclusivity violation or an attempted disk shrink."""


class ResourceIOError(ManagerError):
    """Filesystem, socket or process failure."""


class WaitTimeoutError(ResourceIOError):
    """A bounded wait for a pidfile, socket or ready signal expired."""


class BackendUnavailableError(ManagerError):
    """The hypervisor control surface could not be reached."""


class AggregateError(ManagerError):
    """Ordered collection of errors raised together."""

    def __init__(self, message: str, errors: Sequence[BaseException]) -> None:
        self.errors: List[BaseException] = list(errors)
        details = "; ".join(str(err) for err in self.errors)
        super().__init__(f"{message}: {details}" if details else message)
