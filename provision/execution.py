"""Plan execution with idempotency probes, retries and partial-failure handling."""

import asyncio
import logging
import time
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable

from .backends.base import InstallerBackend
from .errors import BackendError, PermanentBackendError, StepTimeout, TransientBackendError
from .models import FailureCause, Plan, RunReport, RunState, Step, StepResult, StepStatus
from .state import StateStore

DEFAULT_STEP_TIMEOUT = 600.0

_logging = logging.getLogger(__name__)


@dataclass(frozen=True)
class RetryPolicy:
    """Bounded exponential backoff for transient backend failures."""

    attempts: int = 3
    base_delay: float = 1.0
    factor: float = 2.0
    max_delay: float = 30.0

    def __post_init__(self):
        if self.attempts < 1:
            raise ValueError("attempts must be at least 1")
        if self.base_delay < 0 or self.max_delay < 0:
            raise ValueError("delays must not be negative")

    def delay(self, attempt: int) -> float:
        """Delay to wait after the given (1-based) failed attempt."""
        return min(self.base_delay * self.factor ** (attempt - 1), self.max_delay)


@dataclass
class _Progress:
    attempts: int = 0


def new_run_id() -> str:
    stamp = datetime.now(timezone.utc).strftime("%Y%m%dT%H%M%SZ")
    return f"{stamp}-{uuid.uuid4().hex[:6]}"


class Executor:
    """Runs a plan step by step against an installer backend.

    Steps run strictly sequentially. A step whose dependency failed or was
    blocked is marked blocked without touching the backend, and independent
    steps still run. Each result is persisted before the next step starts.
    Cancellation is checked between steps only.
    """

    def __init__(
        self,
        backend: InstallerBackend,
        store: StateStore,
        *,
        step_timeout: float | None = DEFAULT_STEP_TIMEOUT,
        retry: RetryPolicy | None = None,
        trust_state: bool = False,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        on_result: Callable[[StepResult], None] | None = None,
        run_id: str | None = None,
    ):
        self.backend = backend
        self.store = store
        self.step_timeout = step_timeout
        self.retry = retry or RetryPolicy()
        self.trust_state = trust_state
        self.sleep = sleep
        self.on_result = on_result
        self.run_id = run_id or new_run_id()
        self.status: dict[str, StepStatus] = {}
        self._cancelled = False

    def cancel(self) -> None:
        """Request a stop before the next step; a running step completes."""
        if not self._cancelled:
            _logging.warning("Cancellation requested; stopping after the current step")
        self._cancelled = True

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    async def execute(self, plan: Plan, prior_state: RunState | None = None) -> RunReport:
        if prior_state is None:
            prior_state = self.store.load()

        report = RunReport(run_id=self.run_id)
        self.status = {step.id: StepStatus.PENDING for step in plan}
        _logging.info(f"Run {self.run_id}: {len(plan)} step(s), {len(prior_state)} recorded")

        for step in plan:
            if self._cancelled:
                _logging.warning(f"Run {self.run_id} cancelled before {step.id}")
                report.cancelled = True
                break

            self.status[step.id] = StepStatus.RUNNING
            result = await self._run_step(step, prior_state)
            # Must be durable before moving on; StateStoreError aborts the run.
            self.store.record_step(result)
            self.status[step.id] = result.status
            report.results.append(result)
            self._log_result(result)
            if self.on_result is not None:
                self.on_result(result)

        return report

    def _result(self, step: Step, status: StepStatus, **kwargs: Any) -> StepResult:
        return StepResult(step_id=step.id, status=status, run_id=self.run_id, **kwargs)

    async def _run_step(self, step: Step, prior_state: RunState) -> StepResult:
        blockers = [
            dep
            for dep in step.depends_on
            if self.status.get(dep) in (StepStatus.FAILED, StepStatus.BLOCKED)
        ]
        if blockers:
            return self._result(
                step, StepStatus.BLOCKED, message=f"blocked by: {', '.join(blockers)}"
            )

        if self.trust_state and prior_state.succeeded(step.id):
            return self._result(
                step, StepStatus.SKIPPED, message="recorded as done by a previous run"
            )

        progress = _Progress()
        started = time.monotonic()
        try:
            status, message = await asyncio.wait_for(
                self._probe_and_apply(step, prior_state, progress),
                timeout=self.step_timeout,
            )
        except asyncio.TimeoutError:
            error = StepTimeout(step.id, self.step_timeout)
            return self._failed(step, FailureCause.TIMEOUT, str(error), progress, started)
        except TransientBackendError as e:
            return self._failed(step, FailureCause.TRANSIENT, str(e), progress, started)
        except BackendError as e:
            return self._failed(step, FailureCause.PERMANENT, str(e), progress, started)

        return self._result(
            step,
            status,
            attempts=progress.attempts,
            message=message,
            duration=time.monotonic() - started,
        )

    def _failed(
        self, step: Step, cause: FailureCause, message: str, progress: _Progress, started: float
    ) -> StepResult:
        return self._result(
            step,
            StepStatus.FAILED,
            attempts=progress.attempts,
            cause=cause,
            message=message,
            duration=time.monotonic() - started,
        )

    async def _probe_and_apply(
        self, step: Step, prior_state: RunState, progress: _Progress
    ) -> tuple[StepStatus, str]:
        if step.check:
            satisfied = await self._with_retry(self.backend.probe, step, "probe")
            if satisfied:
                return StepStatus.SKIPPED, "already satisfied"
        elif prior_state.succeeded(step.id):
            # Without a probe the recorded outcome is the only idempotency signal.
            return StepStatus.SKIPPED, "recorded as done by a previous run"

        await self._with_retry(self.backend.apply, step, "apply", progress)
        return StepStatus.APPLIED, ""

    async def _with_retry(
        self,
        action: Callable[[Step], Awaitable[Any]],
        step: Step,
        label: str,
        progress: _Progress | None = None,
    ) -> Any:
        attempt = 0
        while True:
            attempt += 1
            if progress is not None:
                progress.attempts = attempt
            _logging.debug(f"{label} {step.id} (attempt {attempt}/{self.retry.attempts})")
            try:
                return await action(step)
            except TransientBackendError as e:
                if attempt >= self.retry.attempts:
                    raise
                delay = self.retry.delay(attempt)
                _logging.warning(
                    f"{label} of {step.id} failed (attempt {attempt}/{self.retry.attempts}): "
                    f"{e}; retrying in {delay:g}s"
                )
                await self.sleep(delay)
            except BackendError:
                raise
            except Exception as e:
                _logging.debug(f"Unexpected {label} error for {step.id}", exc_info=True)
                raise PermanentBackendError(f"{type(e).__name__}: {e}") from e

    def _log_result(self, result: StepResult) -> None:
        if result.status == StepStatus.FAILED:
            cause = result.cause.value if result.cause else "unknown"
            _logging.error(f"{result.step_id}: failed ({cause}): {result.message}")
        elif result.status == StepStatus.BLOCKED:
            _logging.warning(f"{result.step_id}: {result.message}")
        else:
            _logging.info(f"{result.step_id}: {result.status.value}")


__all__ = [
    "Executor",
    "RetryPolicy",
    "DEFAULT_STEP_TIMEOUT",
    "new_run_id",
]
