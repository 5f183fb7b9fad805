"""Tests for the plan executor."""

import asyncio

import pytest

from provision.errors import (
    PermanentBackendError,
    StateStoreError,
    TransientBackendError,
)
from provision.execution import Executor, RetryPolicy
from provision.models import FailureCause, RunState, StepStatus
from provision.planning import build_plan
from provision.registry import StepRegistry
from provision.state import StateStore
from tests.conftest import FakeBackend, make_step

NO_DELAY = RetryPolicy(attempts=3, base_delay=0)


def _plan(*steps):
    return build_plan(StepRegistry(steps))


def _statuses(report):
    return {r.step_id: r.status for r in report.results}


class TestRetryPolicy:
    def test_delays_double_and_cap(self):
        policy = RetryPolicy(attempts=6, base_delay=1.0, factor=2.0, max_delay=5.0)
        assert [policy.delay(n) for n in range(1, 6)] == [1.0, 2.0, 4.0, 5.0, 5.0]

    def test_attempts_must_be_positive(self):
        with pytest.raises(ValueError):
            RetryPolicy(attempts=0)


class TestExecute:
    @pytest.mark.asyncio
    async def test_empty_plan(self, store, backend):
        """An empty plan finishes immediately with exit code 0."""
        report = await Executor(backend, store).execute(_plan())
        assert report.results == []
        assert report.exit_code == 0
        assert backend.calls == []

    @pytest.mark.asyncio
    async def test_applies_unsatisfied_and_skips_satisfied(self, store):
        """Satisfied steps are skipped, the rest applied."""
        backend = FakeBackend(satisfied={"git"})
        plan = _plan(make_step("git"), make_step("zsh", "git"))

        report = await Executor(backend, store, retry=NO_DELAY).execute(plan)

        assert _statuses(report) == {"git": StepStatus.SKIPPED, "zsh": StepStatus.APPLIED}
        assert backend.applied() == ["zsh"]
        assert report.ok
        assert report.exit_code == 0
        assert report.counts[StepStatus.APPLIED] == 1
        assert report.counts[StepStatus.SKIPPED] == 1

    @pytest.mark.asyncio
    async def test_partial_failure_blocks_dependents_only(self, store):
        """A fails, B (needs A) is blocked, independent C still applies."""
        backend = FakeBackend(failures={"A": PermanentBackendError("boom")})
        plan = _plan(make_step("A"), make_step("B", "A"), make_step("C"))

        report = await Executor(backend, store, retry=NO_DELAY).execute(plan)

        assert _statuses(report) == {
            "A": StepStatus.FAILED,
            "B": StepStatus.BLOCKED,
            "C": StepStatus.APPLIED,
        }
        assert report.result_for("A").cause == FailureCause.PERMANENT
        assert "B" not in backend.applied()
        assert ("probe", "B") not in backend.calls
        assert report.exit_code == 1
        assert report.failed_ids == ["A"]
        assert report.blocked_ids == ["B"]

    @pytest.mark.asyncio
    async def test_blocked_propagates_transitively(self, store):
        backend = FakeBackend(failures={"a": PermanentBackendError("boom")})
        plan = _plan(make_step("a"), make_step("b", "a"), make_step("c", "b"))

        report = await Executor(backend, store, retry=NO_DELAY).execute(plan)

        assert report.result_for("c").status == StepStatus.BLOCKED
        assert "b" in report.result_for("c").message

    @pytest.mark.asyncio
    async def test_second_run_is_all_skipped(self, store):
        """Repeated runs converge to a no-op."""
        backend = FakeBackend()
        plan = _plan(make_step("a"), make_step("b", "a"), make_step("c"))

        first = await Executor(backend, store, retry=NO_DELAY).execute(plan)
        second = await Executor(backend, store, retry=NO_DELAY).execute(plan)

        assert all(r.status == StepStatus.APPLIED for r in first.results)
        assert all(r.status == StepStatus.SKIPPED for r in second.results)
        assert backend.applied() == ["a", "b", "c"]

    @pytest.mark.asyncio
    async def test_results_persisted_per_step(self, store, backend):
        """Each result is in the store when the run returns."""
        plan = _plan(make_step("a"), make_step("b"))
        executor = Executor(backend, store, retry=NO_DELAY)

        report = await executor.execute(plan)

        reloaded = StateStore(store.path).load()
        assert reloaded.get("a").status == StepStatus.APPLIED
        assert reloaded.get("b").run_id == report.run_id
        assert executor.status == {"a": StepStatus.APPLIED, "b": StepStatus.APPLIED}

    @pytest.mark.asyncio
    async def test_on_result_called_in_order(self, store, backend):
        seen = []
        plan = _plan(make_step("a"), make_step("b", "a"))
        await Executor(backend, store, on_result=seen.append).execute(plan)
        assert [r.step_id for r in seen] == ["a", "b"]


class TestRetries:
    @pytest.mark.asyncio
    async def test_transient_failure_retried_then_applied(self, store, recording_sleep):
        """Transient errors are retried with exponential backoff."""
        backend = FakeBackend(
            failures={"a": [TransientBackendError("503"), TransientBackendError("503")]}
        )
        retry = RetryPolicy(attempts=3, base_delay=1.0, factor=2.0, max_delay=30.0)
        executor = Executor(backend, store, retry=retry, sleep=recording_sleep)

        report = await executor.execute(_plan(make_step("a")))

        result = report.result_for("a")
        assert result.status == StepStatus.APPLIED
        assert result.attempts == 3
        assert recording_sleep.delays == [1.0, 2.0]

    @pytest.mark.asyncio
    async def test_transient_failure_exhausts_attempts(self, store, recording_sleep):
        backend = FakeBackend(failures={"a": TransientBackendError("rate limit")})
        executor = Executor(backend, store, retry=RetryPolicy(attempts=3), sleep=recording_sleep)

        report = await executor.execute(_plan(make_step("a")))

        result = report.result_for("a")
        assert result.status == StepStatus.FAILED
        assert result.cause == FailureCause.TRANSIENT
        assert result.attempts == 3
        assert backend.applied() == ["a", "a", "a"]
        assert len(recording_sleep.delays) == 2

    @pytest.mark.asyncio
    async def test_permanent_failure_not_retried(self, store, recording_sleep):
        backend = FakeBackend(failures={"a": PermanentBackendError("bad package name")})
        executor = Executor(backend, store, sleep=recording_sleep)

        report = await executor.execute(_plan(make_step("a")))

        assert report.result_for("a").attempts == 1
        assert backend.applied() == ["a"]
        assert recording_sleep.delays == []

    @pytest.mark.asyncio
    async def test_unexpected_exception_is_permanent(self, store):
        """Bugs in a backend fail the step instead of crashing the run."""
        backend = FakeBackend(failures={"a": RuntimeError("kaboom")})
        plan = _plan(make_step("a"), make_step("b"))

        report = await Executor(backend, store, retry=NO_DELAY).execute(plan)

        result = report.result_for("a")
        assert result.status == StepStatus.FAILED
        assert result.cause == FailureCause.PERMANENT
        assert "kaboom" in result.message
        assert report.result_for("b").status == StepStatus.APPLIED


class TestTimeout:
    @pytest.mark.asyncio
    async def test_slow_step_times_out(self, store):
        """A step exceeding the timeout fails with cause timeout; dependents block."""
        backend = FakeBackend(delays={"slow": 5})
        plan = _plan(make_step("slow"), make_step("after", "slow"), make_step("other"))
        executor = Executor(backend, store, step_timeout=0.05, retry=NO_DELAY)

        report = await executor.execute(plan)

        slow = report.result_for("slow")
        assert slow.status == StepStatus.FAILED
        assert slow.cause == FailureCause.TIMEOUT
        assert "timed out" in slow.message
        assert report.result_for("after").status == StepStatus.BLOCKED
        assert report.result_for("other").status == StepStatus.APPLIED


class TestResume:
    @pytest.mark.asyncio
    async def test_resume_after_cancellation(self, store):
        """Interrupted after step k, the next run only applies k+1..n."""
        backend = FakeBackend()
        steps = [make_step(f"s{i}") for i in range(1, 6)]
        plan = _plan(*steps)

        def cancel_after_two(result):
            if result.step_id == "s2":
                executor.cancel()

        executor = Executor(backend, store, retry=NO_DELAY, on_result=cancel_after_two)
        first = await executor.execute(plan)

        assert first.cancelled
        assert [r.step_id for r in first.results] == ["s1", "s2"]
        assert first.exit_code == 130
        assert not first.ok

        resumed = StateStore(store.path)
        assert len(resumed.load()) == 2
        second = await Executor(backend, resumed, retry=NO_DELAY).execute(plan)

        assert _statuses(second) == {
            "s1": StepStatus.SKIPPED,
            "s2": StepStatus.SKIPPED,
            "s3": StepStatus.APPLIED,
            "s4": StepStatus.APPLIED,
            "s5": StepStatus.APPLIED,
        }
        assert backend.applied() == ["s1", "s2", "s3", "s4", "s5"]

    @pytest.mark.asyncio
    async def test_step_without_check_uses_recorded_state(self, store):
        """A step with no probe is skipped once recorded as applied."""
        backend = FakeBackend()
        plan = _plan(make_step("git-config", check=None))

        first = await Executor(backend, store).execute(plan)
        second = await Executor(backend, store).execute(plan)

        assert first.result_for("git-config").status == StepStatus.APPLIED
        assert second.result_for("git-config").status == StepStatus.SKIPPED
        assert backend.applied() == ["git-config"]
        assert backend.probed() == []

    @pytest.mark.asyncio
    async def test_probe_wins_over_recorded_state(self, store):
        """A recorded success is re-applied when the probe reports drift."""
        backend = FakeBackend(converge=False)
        plan = _plan(make_step("a"))

        await Executor(backend, store).execute(plan)
        second = await Executor(backend, store).execute(plan)

        assert second.result_for("a").status == StepStatus.APPLIED
        assert backend.applied() == ["a", "a"]

    @pytest.mark.asyncio
    async def test_trust_state_skips_probe(self, store):
        backend = FakeBackend(converge=False)
        plan = _plan(make_step("a"))

        await Executor(backend, store).execute(plan)
        second = await Executor(backend, store, trust_state=True).execute(plan)

        assert second.result_for("a").status == StepStatus.SKIPPED
        assert backend.probed() == ["a"]

    @pytest.mark.asyncio
    async def test_failed_record_is_not_trusted(self, store):
        backend = FakeBackend(failures={"a": [PermanentBackendError("once")]})
        plan = _plan(make_step("a", check=None))

        first = await Executor(backend, store, trust_state=True).execute(plan)
        second = await Executor(backend, store, trust_state=True).execute(plan)

        assert first.result_for("a").status == StepStatus.FAILED
        assert second.result_for("a").status == StepStatus.APPLIED

    @pytest.mark.asyncio
    async def test_explicit_prior_state(self, store, backend):
        """An explicitly passed RunState is used instead of loading the store."""
        plan = _plan(make_step("a", check=None))
        report = await Executor(backend, store).execute(plan, prior_state=RunState())
        assert report.result_for("a").status == StepStatus.APPLIED


class FailingStore(StateStore):
    def __init__(self, path, fail_on: str):
        super().__init__(path)
        self.fail_on = fail_on

    def record_step(self, result):
        if result.step_id == self.fail_on:
            raise StateStoreError("disk full")
        super().record_step(result)


class TestStateStoreFailure:
    @pytest.mark.asyncio
    async def test_write_failure_aborts_run(self, temp_dir, backend):
        """A state write failure stops the run before the next step."""
        store = FailingStore(temp_dir / "state.json", fail_on="b")
        plan = _plan(make_step("a"), make_step("b"), make_step("c"))

        with pytest.raises(StateStoreError):
            await Executor(backend, store).execute(plan)

        assert backend.applied() == ["a", "b"]
        assert "c" not in StateStore(store.path).load()


class TestCancellation:
    @pytest.mark.asyncio
    async def test_cancel_does_not_interrupt_running_step(self, store):
        """Cancelling mid-step lets that step finish and stops afterwards."""
        backend = FakeBackend(delays={"a": 0.05})
        plan = _plan(make_step("a"), make_step("b"))
        executor = Executor(backend, store)

        task = asyncio.create_task(executor.execute(plan))
        await asyncio.sleep(0.01)
        executor.cancel()
        report = await task

        assert [r.step_id for r in report.results] == ["a"]
        assert report.result_for("a").status == StepStatus.APPLIED
        assert report.cancelled
