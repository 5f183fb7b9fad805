"""Data models for the provisioning engine."""

from collections import Counter
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import TYPE_CHECKING, Any, Iterator

if TYPE_CHECKING:
    from .registry import StepRegistry


class StepCategory(Enum):
    PACKAGE = "package"
    SERVICE = "service"
    FILE = "file"
    SHELL_PLUGIN = "shell-plugin"


class StepStatus(Enum):
    PENDING = "pending"
    RUNNING = "running"
    SKIPPED = "skipped"
    APPLIED = "applied"
    FAILED = "failed"
    BLOCKED = "blocked"

    @property
    def terminal(self) -> bool:
        return self not in (StepStatus.PENDING, StepStatus.RUNNING)

    @property
    def succeeded(self) -> bool:
        return self in (StepStatus.SKIPPED, StepStatus.APPLIED)


class FailureCause(Enum):
    TRANSIENT = "transient"
    PERMANENT = "permanent"
    TIMEOUT = "timeout"


def utc_now() -> str:
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


@dataclass(frozen=True)
class Step:
    id: str
    apply: str
    check: str | None = None
    depends_on: tuple[str, ...] = ()
    category: StepCategory = StepCategory.PACKAGE
    description: str = ""
    platforms: tuple[str, ...] = ()

    def __post_init__(self):
        if not self.id or not isinstance(self.id, str):
            raise ValueError("id must be a non-empty string")
        # Accept any iterable of ids but store an ordered, de-duplicated tuple.
        object.__setattr__(self, "depends_on", tuple(dict.fromkeys(self.depends_on)))
        object.__setattr__(self, "platforms", tuple(self.platforms))


@dataclass(frozen=True)
class Plan:
    """Dependency-respecting linear order over steps."""

    steps: tuple[Step, ...] = ()
    revision: int = 0

    @property
    def ids(self) -> list[str]:
        return [step.id for step in self.steps]

    def is_stale(self, registry: "StepRegistry") -> bool:
        return registry.revision != self.revision

    def __iter__(self) -> Iterator[Step]:
        return iter(self.steps)

    def __len__(self) -> int:
        return len(self.steps)


@dataclass(frozen=True)
class StepResult:
    step_id: str
    status: StepStatus
    run_id: str
    timestamp: str = field(default_factory=utc_now)
    attempts: int = 0
    cause: FailureCause | None = None
    message: str = ""
    duration: float = 0.0

    def as_dict(self) -> dict[str, Any]:
        return {
            "step_id": self.step_id,
            "status": self.status.value,
            "run_id": self.run_id,
            "timestamp": self.timestamp,
            "attempts": self.attempts,
            "cause": self.cause.value if self.cause else None,
            "message": self.message,
            "duration": round(self.duration, 3),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "StepResult":
        cause = data.get("cause")
        return cls(
            step_id=str(data["step_id"]),
            status=StepStatus(data["status"]),
            run_id=str(data.get("run_id", "")),
            timestamp=str(data.get("timestamp", "")),
            attempts=int(data.get("attempts", 0)),
            cause=FailureCause(cause) if cause else None,
            message=str(data.get("message") or ""),
            duration=float(data.get("duration", 0.0)),
        )


@dataclass
class RunReport:
    run_id: str
    results: list[StepResult] = field(default_factory=list)
    cancelled: bool = False

    @property
    def counts(self) -> dict[StepStatus, int]:
        counter = Counter(result.status for result in self.results)
        return {status: counter.get(status, 0) for status in StepStatus if status.terminal}

    @property
    def failed_ids(self) -> list[str]:
        return [r.step_id for r in self.results if r.status == StepStatus.FAILED]

    @property
    def blocked_ids(self) -> list[str]:
        return [r.step_id for r in self.results if r.status == StepStatus.BLOCKED]

    @property
    def ok(self) -> bool:
        return not self.cancelled and all(r.status.succeeded for r in self.results)

    @property
    def exit_code(self) -> int:
        if self.failed_ids or self.blocked_ids:
            return 1
        if self.cancelled:
            return 130
        return 0

    def result_for(self, step_id: str) -> StepResult | None:
        return next((r for r in self.results if r.step_id == step_id), None)


@dataclass
class RunState:
    """Last known result per step id, as restored from the state store."""

    records: dict[str, StepResult] = field(default_factory=dict)

    def get(self, step_id: str) -> StepResult | None:
        return self.records.get(step_id)

    def succeeded(self, step_id: str) -> bool:
        record = self.records.get(step_id)
        return record is not None and record.status.succeeded

    def __contains__(self, step_id: object) -> bool:
        return step_id in self.records

    def __len__(self) -> int:
        return len(self.records)


__all__ = [
    "StepCategory",
    "StepStatus",
    "FailureCause",
    "Step",
    "Plan",
    "StepResult",
    "RunReport",
    "RunState",
    "utc_now",
]
