"""Pytest fixtures and utilities for provision tests."""

import asyncio
import tempfile
from pathlib import Path
from typing import Generator

import pytest

from provision.logging_utils import reset_logging
from provision.models import Step
from provision.state import StateStore


@pytest.fixture(autouse=True)
def clean_logging() -> Generator[None, None, None]:
    """Drop handlers installed by CLI invocations between tests."""
    yield
    reset_logging()


@pytest.fixture
def temp_dir() -> Generator[Path, None, None]:
    """Create a temporary directory for test files."""
    with tempfile.TemporaryDirectory() as tmpdir:
        yield Path(tmpdir)


@pytest.fixture
def store(temp_dir: Path) -> StateStore:
    return StateStore(temp_dir / "state" / "state.json")


def make_step(step_id: str, *deps: str, check: str | None = "probe", **kwargs) -> Step:
    """Build a step whose check/apply references are just labels for FakeBackend."""
    return Step(
        id=step_id,
        apply=kwargs.pop("apply", f"apply {step_id}"),
        check=f"{check} {step_id}" if check else None,
        depends_on=deps,
        **kwargs,
    )


class FakeBackend:
    """Scripted installer backend.

    ``failures`` maps a step id to either an exception raised on every apply,
    or a list of exceptions raised on successive applies (then success).
    A successful apply marks the step satisfied when ``converge`` is true.
    """

    def __init__(self, satisfied=(), failures=None, converge: bool = True, delays=None):
        self.satisfied = set(satisfied)
        self.failures = dict(failures or {})
        self.converge = converge
        self.delays = dict(delays or {})
        self.calls: list[tuple[str, str]] = []

    async def probe(self, step: Step) -> bool:
        self.calls.append(("probe", step.id))
        return step.id in self.satisfied

    async def apply(self, step: Step) -> None:
        self.calls.append(("apply", step.id))
        if step.id in self.delays:
            await asyncio.sleep(self.delays[step.id])
        planned = self.failures.get(step.id)
        if isinstance(planned, list):
            if planned:
                raise planned.pop(0)
        elif planned is not None:
            raise planned
        if self.converge:
            self.satisfied.add(step.id)

    def applied(self) -> list[str]:
        return [step_id for action, step_id in self.calls if action == "apply"]

    def probed(self) -> list[str]:
        return [step_id for action, step_id in self.calls if action == "probe"]


@pytest.fixture
def backend() -> FakeBackend:
    return FakeBackend()


class RecordingSleep:
    """Stand-in for asyncio.sleep that records requested delays."""

    def __init__(self):
        self.delays: list[float] = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)


@pytest.fixture
def recording_sleep() -> RecordingSleep:
    return RecordingSleep()
