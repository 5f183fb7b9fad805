"""Installer backend that runs step references as shell commands."""

import logging
import os
import re
from typing import Iterable, Mapping

from provision.errors import PermanentBackendError, TransientBackendError
from provision.models import Step

from .commands import DEFAULT_SHELL, CommandResult, run_command_async

# curl: couldn't resolve/connect, timeout, SSL connect, send/recv failures.
# wget: exit 4 is a network failure.
DEFAULT_TRANSIENT_EXIT_CODES = frozenset({4, 6, 7, 28, 35, 52, 55, 56})

DEFAULT_TRANSIENT_PATTERNS = (
    r"Could not get lock",
    r"Unable to acquire the dpkg frontend lock",
    r"Temporary failure resolving",
    r"Could not resolve host",
    r"Connection (timed out|reset|refused)",
    r"rate limit",
    r"\b(429|502|503|504)\b",
    r"Another active Homebrew .* process",
)

OUTPUT_LIMIT = 2000

_logging = logging.getLogger(__name__)


class ShellBackend:
    """Probe and apply steps by running their ``check``/``apply`` commands.

    A probe is satisfied when its command exits 0. The environment the
    commands see is explicit: ``env`` is layered over a copy of the current
    process environment only when ``inherit_env`` is true.
    """

    def __init__(
        self,
        env: Mapping[str, str] | None = None,
        shell: str = DEFAULT_SHELL,
        cwd: str | None = None,
        inherit_env: bool = True,
        transient_exit_codes: Iterable[int] = DEFAULT_TRANSIENT_EXIT_CODES,
        transient_patterns: Iterable[str] = DEFAULT_TRANSIENT_PATTERNS,
    ):
        base = dict(os.environ) if inherit_env else {}
        base.update(env or {})
        self.env = base
        self.shell = shell
        self.cwd = cwd
        self.transient_exit_codes = frozenset(transient_exit_codes)
        self._transient_re = [re.compile(p, re.IGNORECASE) for p in transient_patterns]

    async def probe(self, step: Step) -> bool:
        if not step.check:
            return False
        result = await run_command_async(step.check, env=self.env, cwd=self.cwd, shell=self.shell)
        return result.returncode == 0

    async def apply(self, step: Step) -> None:
        result = await run_command_async(step.apply, env=self.env, cwd=self.cwd, shell=self.shell)
        if result.returncode == 0:
            return

        output = result.output[-OUTPUT_LIMIT:]
        message = f"'{step.apply}' exited with code {result.returncode}"
        if output:
            message = f"{message}: {output}"

        if self.is_transient(result):
            raise TransientBackendError(message)
        raise PermanentBackendError(message, returncode=result.returncode, output=output)

    def is_transient(self, result: CommandResult) -> bool:
        if result.returncode in self.transient_exit_codes:
            return True
        output = result.output
        return any(pattern.search(output) for pattern in self._transient_re)


__all__ = [
    "ShellBackend",
    "DEFAULT_TRANSIENT_EXIT_CODES",
    "DEFAULT_TRANSIENT_PATTERNS",
]
