"""Command line interface: ``provision``."""

import asyncio
import logging
import os
import signal
import sys
from pathlib import Path

import click

from provision import __version__
from provision.backends import get_backend
from provision.config import Settings
from provision.errors import (
    ConfigError,
    LockError,
    PlanError,
    RegistryError,
    StateStoreError,
    format_error,
    format_suggestion,
)
from provision.execution import Executor, RetryPolicy
from provision.logging_utils import add_log_file, setup_logging
from provision.manifest import load_manifest
from provision.models import Plan, RunReport, StepResult, StepStatus
from provision.paths import (
    LOCK_FILE_NAME,
    LOG_FILE_NAME,
    STATE_FILE_NAME,
    get_manifest_path,
    get_state_dir,
)
from provision.planning import build_plan, render_plan
from provision.state import RunLock, StateStore

EXIT_OK = 0
EXIT_PLAN_ERROR = 2
EXIT_STATE_ERROR = 3

_logging = logging.getLogger(__name__)


def info(message: str) -> None:
    click.secho(f"==> {message}", fg="cyan", bold=True)


def success(message: str) -> None:
    click.secho(f"✔  {message}", fg="green", bold=True)


def warn(message: str) -> None:
    click.secho(f"!  {message}", fg="yellow", bold=True)


def failure(message: str) -> None:
    click.secho(f"✘  {message}", fg="red", bold=True)


def echo_result(result: StepResult) -> None:
    if result.status == StepStatus.APPLIED:
        success(f"{result.step_id} applied")
    elif result.status == StepStatus.SKIPPED:
        success(f"{result.step_id} already satisfied")
    elif result.status == StepStatus.BLOCKED:
        warn(f"{result.step_id} {result.message}")
    else:
        cause = result.cause.value if result.cause else "error"
        failure(f"{result.step_id} failed ({cause}): {result.message}")


def render_report(report: RunReport) -> str:
    lines = ["", f"Run {report.run_id}"]
    width = max((len(r.step_id) for r in report.results), default=0)
    for result in report.results:
        line = f"  {result.step_id:<{width}}  {result.status.value}"
        if result.attempts > 1:
            line += f" after {result.attempts} attempts"
        lines.append(line)

    counts = ", ".join(
        f"{count} {status.value}" for status, count in report.counts.items() if count
    )
    lines.append("")
    lines.append(f"Summary: {counts or 'nothing to do'}")
    if report.cancelled:
        lines.append("Interrupted: run again to resume where this run stopped.")
    return "\n".join(lines)


def _settings_with_overrides(
    settings: Settings, timeout: float | None, retries: int | None
) -> Settings:
    if timeout is not None:
        settings.step_timeout = timeout
    if retries is not None:
        retry = settings.retry
        settings.retry = RetryPolicy(
            attempts=retries,
            base_delay=retry.base_delay,
            factor=retry.factor,
            max_delay=retry.max_delay,
        )
    return settings


def _backend_env(manifest_env: dict[str, str]) -> dict[str, str]:
    env = {"HOME": str(Path.home())}
    for name, value in manifest_env.items():
        env[name] = os.path.expanduser(value)
    return env


async def run_plan(executor: Executor, plan: Plan) -> RunReport:
    """Execute a plan, turning SIGINT into a cooperative cancel between steps."""
    loop = asyncio.get_running_loop()
    handled = False
    try:
        loop.add_signal_handler(signal.SIGINT, executor.cancel)
        handled = True
    except (NotImplementedError, RuntimeError) as e:
        _logging.debug(f"SIGINT handler not installed: {e}")
    try:
        return await executor.execute(plan)
    finally:
        if handled:
            loop.remove_signal_handler(signal.SIGINT)


def show_status(store: StateStore) -> None:
    state = store.load()
    if not len(state):
        click.echo("No recorded runs.")
        return
    width = max(len(step_id) for step_id in state.records)
    for step_id, record in sorted(state.records.items()):
        line = f"{step_id:<{width}}  {record.status.value:<8}  {record.timestamp}  run {record.run_id}"
        if record.status == StepStatus.FAILED and record.message:
            line += f"\n{'':<{width}}  {record.message}"
        click.echo(line)


@click.command(name="provision")
@click.option(
    "--manifest",
    "-m",
    type=click.Path(dir_okay=False, path_type=Path),
    default=None,
    help="Step manifest (default: $PROVISION_MANIFEST or ~/.config/provision/manifest.json)",
)
@click.option(
    "--state-dir",
    type=click.Path(file_okay=False, path_type=Path),
    default=None,
    help="Directory for run state, lock and log (default: ~/.local/state/provision)",
)
@click.option("--plan-only", is_flag=True, help="Print the execution order without running it")
@click.option("--reset", is_flag=True, help="Clear recorded run state before continuing")
@click.option(
    "--step",
    "targets",
    multiple=True,
    metavar="ID",
    help="Only run this step and its dependencies (repeatable)",
)
@click.option(
    "--timeout",
    type=click.FloatRange(min=0, min_open=True),
    default=None,
    help="Per-step timeout in seconds (default: 600)",
)
@click.option(
    "--retries",
    type=click.IntRange(min=1),
    default=None,
    help="Attempts for transiently failing steps (default: 3)",
)
@click.option(
    "--trust-state",
    is_flag=True,
    help="Skip steps recorded as done without probing them again",
)
@click.option("--status", "status_only", is_flag=True, help="Show recorded step state and exit")
@click.option("--debug", is_flag=True, help="Enable debug output for troubleshooting")
@click.version_option(__version__, prog_name="provision")
def cli(
    manifest: Path | None,
    state_dir: Path | None,
    plan_only: bool,
    reset: bool,
    targets: tuple[str, ...],
    timeout: float | None,
    retries: int | None,
    trust_state: bool,
    status_only: bool,
    debug: bool,
):
    """Provision this machine from a dependency-ordered step manifest.

    Exit codes: 0 all steps applied or already satisfied, 1 a step failed or
    was blocked, 2 the manifest or plan is invalid, 3 run state or lock
    problem, 130 interrupted.
    """
    setup_logging(debug)
    state_dir = state_dir or get_state_dir()
    store = StateStore(state_dir / STATE_FILE_NAME)

    if status_only:
        try:
            show_status(store)
        except StateStoreError as e:
            click.echo(format_error(str(e)), err=True)
            sys.exit(EXIT_STATE_ERROR)
        return

    manifest_path = manifest or get_manifest_path()
    try:
        loaded = load_manifest(manifest_path)
        plan = build_plan(loaded.to_registry(), targets or None)
    except (ConfigError, RegistryError, PlanError) as e:
        click.echo(format_error(str(e)), err=True)
        sys.exit(EXIT_PLAN_ERROR)

    settings = _settings_with_overrides(loaded.settings, timeout, retries)
    store.history_limit = settings.history_limit

    if plan_only and not reset:
        click.echo(render_plan(plan))
        return

    try:
        with RunLock(state_dir / LOCK_FILE_NAME):
            add_log_file(state_dir / LOG_FILE_NAME)
            if reset:
                store.reset()
                info("Cleared recorded run state")

            if plan_only:
                click.echo(render_plan(plan))
                return

            if not plan.steps:
                click.echo("Nothing to provision.")
                return

            executor = Executor(
                get_backend("shell", env=_backend_env(loaded.env)),
                store,
                step_timeout=settings.step_timeout,
                retry=settings.retry,
                trust_state=trust_state,
                on_result=echo_result,
            )
            info(f"Provisioning {len(plan)} step(s) from {manifest_path}")
            report = asyncio.run(run_plan(executor, plan))
    except LockError as e:
        click.echo(
            format_suggestion(str(e), "wait for the other run to finish"), err=True
        )
        sys.exit(EXIT_STATE_ERROR)
    except StateStoreError as e:
        click.echo(format_error(f"{e} (run aborted)"), err=True)
        sys.exit(EXIT_STATE_ERROR)

    click.echo(render_report(report))
    if report.exit_code != EXIT_OK:
        sys.exit(report.exit_code)


if __name__ == "__main__":
    cli()
