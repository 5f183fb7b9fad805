"""Async command execution utilities."""

import asyncio
import logging
import os
import signal
from dataclasses import dataclass
from typing import Mapping

DEFAULT_SHELL = "/bin/sh"

_logging = logging.getLogger(__name__)


@dataclass(frozen=True)
class CommandResult:
    returncode: int
    stdout: str
    stderr: str

    @property
    def output(self) -> str:
        """Combined output, stderr last, for error messages."""
        return "\n".join(part for part in (self.stdout, self.stderr) if part)


def _kill_group(process: asyncio.subprocess.Process) -> None:
    try:
        os.killpg(process.pid, signal.SIGKILL)
    except ProcessLookupError:
        pass


async def run_command_async(
    command: str,
    env: Mapping[str, str] | None = None,
    cwd: str | None = None,
    shell: str = DEFAULT_SHELL,
) -> CommandResult:
    """Run a shell command and capture its output.

    The command runs in its own session, so a terminal Ctrl-C only reaches
    provision itself. If the awaiting task is cancelled (step timeout) the
    command's whole process group is killed.
    """
    _logging.debug(f"Running command: {command}")
    process = await asyncio.create_subprocess_shell(
        command,
        stdin=asyncio.subprocess.DEVNULL,
        stdout=asyncio.subprocess.PIPE,
        stderr=asyncio.subprocess.PIPE,
        env=dict(env) if env is not None else None,
        cwd=cwd,
        executable=shell,
        start_new_session=True,
    )
    try:
        stdout, stderr = await process.communicate()
    except asyncio.CancelledError:
        if process.returncode is None:
            _kill_group(process)
            _ = await process.wait()
        _logging.warning(f"Command cancelled and killed: {command}")
        raise
    finally:
        transport = getattr(process, "_transport", None)
        if transport:
            transport.close()

    result = CommandResult(
        returncode=process.returncode if process.returncode is not None else 1,
        stdout=stdout.decode(errors="replace").strip(),
        stderr=stderr.decode(errors="replace").strip(),
    )
    if result.stderr:
        _logging.debug(f"stderr: {result.stderr}")
    _logging.debug(f"Return code {result.returncode}: {command}")
    return result


__all__ = ["CommandResult", "run_command_async", "DEFAULT_SHELL"]
