"""Installer backends the executor dispatches steps to."""

from typing import Any

from .base import InstallerBackend
from .commands import CommandResult, run_command_async
from .shell import ShellBackend

BACKENDS: dict[str, type] = {
    "shell": ShellBackend,
}


def get_backend(name: str, **kwargs: Any) -> InstallerBackend:
    try:
        backend_cls = BACKENDS[name]
    except KeyError:
        available = ", ".join(sorted(BACKENDS))
        raise ValueError(f"Unknown backend '{name}'. Available: {available}") from None
    return backend_cls(**kwargs)


__all__ = [
    "InstallerBackend",
    "ShellBackend",
    "CommandResult",
    "run_command_async",
    "get_backend",
    "BACKENDS",
]
