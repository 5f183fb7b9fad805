"""Dependency-ordered, idempotent, resumable workstation provisioning."""

__version__ = "0.1.0"

from provision.errors import (  # noqa: E402
    BackendError,
    CycleDetected,
    DuplicateId,
    PermanentBackendError,
    ProvisionError,
    StateStoreError,
    TransientBackendError,
    UnknownDependency,
)
from provision.execution import Executor, RetryPolicy  # noqa: E402
from provision.models import (  # noqa: E402
    FailureCause,
    Plan,
    RunReport,
    RunState,
    Step,
    StepCategory,
    StepResult,
    StepStatus,
)
from provision.planning import build_plan, render_plan  # noqa: E402
from provision.registry import StepRegistry  # noqa: E402
from provision.state import RunLock, StateStore  # noqa: E402

__all__ = [
    "__version__",
    "ProvisionError",
    "BackendError",
    "TransientBackendError",
    "PermanentBackendError",
    "DuplicateId",
    "UnknownDependency",
    "CycleDetected",
    "StateStoreError",
    "Executor",
    "RetryPolicy",
    "FailureCause",
    "Plan",
    "RunReport",
    "RunState",
    "Step",
    "StepCategory",
    "StepResult",
    "StepStatus",
    "StepRegistry",
    "StateStore",
    "RunLock",
    "build_plan",
    "render_plan",
]
