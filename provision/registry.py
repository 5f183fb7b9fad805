"""Step registry: the declarative set of provisioning steps."""

import logging
from typing import Iterable, Iterator

from .errors import DuplicateId, UnknownDependency
from .models import Step

_logging = logging.getLogger(__name__)


class StepRegistry:
    """Holds steps in registration order together with their dependency edges.

    ``register`` requires dependencies to be registered first. ``extend``
    validates a whole batch up front, so a batch may list its steps in any
    order; either all of the batch is registered or none of it.
    """

    def __init__(self, steps: Iterable[Step] | None = None):
        self._steps: dict[str, Step] = {}
        self._positions: dict[str, int] = {}
        self._revision = 0
        if steps is not None:
            self.extend(steps)

    @property
    def revision(self) -> int:
        return self._revision

    def register(self, step: Step) -> None:
        if step.id in self._steps:
            raise DuplicateId(step.id)
        missing = [dep for dep in step.depends_on if dep not in self._steps]
        if missing:
            raise UnknownDependency(step.id, missing)
        self._add(step)

    def extend(self, steps: Iterable[Step]) -> None:
        batch = list(steps)
        known = set(self._steps)

        for step in batch:
            if step.id in known:
                raise DuplicateId(step.id)
            known.add(step.id)

        for step in batch:
            missing = [dep for dep in step.depends_on if dep not in known]
            if missing:
                raise UnknownDependency(step.id, missing)

        for step in batch:
            self._add(step)

    def _add(self, step: Step) -> None:
        self._positions[step.id] = len(self._steps)
        self._steps[step.id] = step
        self._revision += 1
        _logging.debug(f"Registered step {step.id} (depends on: {list(step.depends_on)})")

    def all(self) -> list[Step]:
        return list(self._steps.values())

    def get(self, step_id: str) -> Step | None:
        return self._steps.get(step_id)

    def index(self, step_id: str) -> int:
        """Registration position of a step, used as the plan tie-break."""
        return self._positions[step_id]

    def __contains__(self, step_id: object) -> bool:
        return step_id in self._steps

    def __iter__(self) -> Iterator[Step]:
        return iter(self._steps.values())

    def __len__(self) -> int:
        return len(self._steps)


__all__ = ["StepRegistry"]
