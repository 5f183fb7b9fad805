"""Installer backend capability interface."""

from typing import Protocol, runtime_checkable

from provision.models import Step


@runtime_checkable
class InstallerBackend(Protocol):
    """Platform-specific capability that inspects and changes the machine.

    ``probe`` reports whether ``step.check`` is already satisfied. ``apply``
    performs ``step.apply`` and raises a ``BackendError`` subclass on failure:
    ``TransientBackendError`` for failures worth retrying, anything else is
    treated as permanent.
    """

    async def probe(self, step: Step) -> bool:
        ...

    async def apply(self, step: Step) -> None:
        ...


__all__ = ["InstallerBackend"]
