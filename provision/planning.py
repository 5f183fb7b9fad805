"""Execution planning and rendering."""

import heapq
import logging
from typing import Iterable

from .errors import CycleDetected, UnknownStep
from .models import Plan, Step
from .registry import StepRegistry

_logging = logging.getLogger(__name__)

WHITE, GRAY, BLACK = 0, 1, 2


def _closure(registry: StepRegistry, targets: Iterable[str]) -> set[str]:
    """Return the target ids plus every step they transitively depend on."""
    wanted = list(dict.fromkeys(targets))
    unknown = [t for t in wanted if t not in registry]
    if unknown:
        raise UnknownStep(unknown)

    selected: set[str] = set()
    stack = wanted
    while stack:
        step_id = stack.pop()
        if step_id in selected:
            continue
        selected.add(step_id)
        step = registry.get(step_id)
        if step:
            stack.extend(step.depends_on)
    return selected


def _find_cycle(steps: dict[str, Step], order: dict[str, int]) -> list[str]:
    """Locate one concrete cycle among steps that Kahn's pass could not order.

    Iterative three-colour DFS; ``path`` mirrors the stack of GRAY steps.
    """
    color = {step_id: WHITE for step_id in steps}

    for root in sorted(steps, key=order.__getitem__):
        if color[root] != WHITE:
            continue
        color[root] = GRAY
        path = [root]
        stack = [iter(steps[root].depends_on)]
        while stack:
            dep = next(stack[-1], None)
            if dep is None:
                color[path.pop()] = BLACK
                stack.pop()
                continue
            if dep not in steps:
                continue
            if color[dep] == GRAY:
                return path[path.index(dep):]
            if color[dep] == WHITE:
                color[dep] = GRAY
                path.append(dep)
                stack.append(iter(steps[dep].depends_on))
    # Kahn's pass only leaves steps behind when a cycle exists.
    raise AssertionError("unordered steps without a cycle")


def build_plan(registry: StepRegistry, targets: Iterable[str] | None = None) -> Plan:
    """Order registry steps so every step follows all of its dependencies.

    Ties between steps with no ordering constraint are broken by registration
    order, so the same registry always yields the same plan.

    Args:
        registry: Registered steps
        targets: Optional step ids; restricts the plan to these steps and their
            transitive dependencies

    Returns:
        Immutable Plan tagged with the registry revision it was built from

    Raises:
        UnknownStep: If a target id is not registered
        CycleDetected: If the dependency graph contains a cycle
    """
    order = {step.id: registry.index(step.id) for step in registry}
    selected = _closure(registry, targets) if targets is not None else set(order)
    steps = {step.id: step for step in registry.all() if step.id in selected}

    in_degree = {step_id: 0 for step_id in steps}
    dependents: dict[str, list[str]] = {step_id: [] for step_id in steps}
    for step in steps.values():
        for dep in step.depends_on:
            if dep in steps:
                in_degree[step.id] += 1
                dependents[dep].append(step.id)

    ready = [(order[step_id], step_id) for step_id, degree in in_degree.items() if degree == 0]
    heapq.heapify(ready)

    ordered: list[Step] = []
    while ready:
        _, step_id = heapq.heappop(ready)
        ordered.append(steps[step_id])
        for dependent in dependents[step_id]:
            in_degree[dependent] -= 1
            if in_degree[dependent] == 0:
                heapq.heappush(ready, (order[dependent], dependent))

    if len(ordered) != len(steps):
        placed = {step.id for step in ordered}
        remaining = {k: v for k, v in steps.items() if k not in placed}
        cycle = _find_cycle(remaining, order)
        _logging.error(f"Dependency cycle: {cycle}")
        raise CycleDetected(cycle)

    _logging.debug(f"Plan: {[step.id for step in ordered]}")
    return Plan(steps=tuple(ordered), revision=registry.revision)


def render_plan(plan: Plan) -> str:
    if not plan.steps:
        return "Provisioning Plan: nothing to do"

    lines = [f"Provisioning Plan: {len(plan)} step(s)", ""]
    width = len(str(len(plan)))
    for i, step in enumerate(plan.steps, 1):
        lines.append(f"  {i:>{width}}. {step.id} [{step.category.value}]")
        if step.description:
            lines.append(f"      {step.description}")
        if step.depends_on:
            lines.append(f"      after: {', '.join(step.depends_on)}")

    return "\n".join(lines)


__all__ = [
    "build_plan",
    "render_plan",
]
