"""Error types and formatting utilities for consistent error messages.

Error Style Guide:
- User-facing errors use 'Error: ' prefix
- Field errors use structured format: '<entity> field '<field>' <issue>'
- Use present tense: 'must be', 'is required'
- Include actionable hints where helpful

Exception hierarchy:
- RegistryError and PlanError are fatal and raised before anything runs
- BackendError subclasses are local to one step; the executor records them
- StateStoreError is fatal for a run because resumability can no longer be
  guaranteed
"""

from typing import Iterable


class ProvisionError(Exception):
    """Base class for all provision errors."""


class ConfigError(ProvisionError):
    """Raised when config loading or parsing fails.

    Provides detailed error messages including line numbers,
    column positions, and caret indicators for syntax errors.
    """


class ManifestError(ConfigError):
    """Raised when a manifest is structurally invalid."""


class RegistryError(ProvisionError):
    """Raised when a step cannot be registered or looked up."""


class DuplicateId(RegistryError):
    def __init__(self, step_id: str):
        self.step_id = step_id
        super().__init__(f"step '{step_id}' is already registered")


class UnknownDependency(RegistryError):
    def __init__(self, step_id: str, missing: Iterable[str]):
        self.step_id = step_id
        self.missing = tuple(missing)
        names = ", ".join(f"'{m}'" for m in self.missing)
        super().__init__(f"step '{step_id}' depends on unknown step(s): {names}")


class UnknownStep(RegistryError):
    def __init__(self, step_ids: Iterable[str]):
        self.step_ids = tuple(step_ids)
        names = ", ".join(f"'{s}'" for s in self.step_ids)
        super().__init__(f"unknown step(s): {names}")


class PlanError(ProvisionError):
    """Raised when no valid execution order exists."""


class CycleDetected(PlanError):
    def __init__(self, ids: Iterable[str]):
        self.ids = tuple(ids)
        chain = " -> ".join(self.ids + self.ids[:1])
        super().__init__(f"dependency cycle detected: {chain}")


class BackendError(ProvisionError):
    """Raised by an installer backend when a probe or apply fails."""


class TransientBackendError(BackendError):
    """A failure worth retrying (network, rate limiting, lock contention)."""


class PermanentBackendError(BackendError):
    def __init__(self, message: str, returncode: int | None = None, output: str = ""):
        self.returncode = returncode
        self.output = output
        super().__init__(message)


class StepTimeout(BackendError):
    def __init__(self, step_id: str, timeout: float):
        self.step_id = step_id
        self.timeout = timeout
        super().__init__(f"step '{step_id}' timed out after {timeout:g} seconds")


class StateStoreError(ProvisionError):
    """Raised when run state cannot be read or durably written."""


class LockError(ProvisionError):
    """Raised when another run already holds the provisioning lock."""


def format_error(message: str) -> str:
    """Format an error message with consistent prefix.

    Examples:
        >>> format_error("manifest not found")
        'Error: manifest not found'
    """
    return f"Error: {message}"


def format_field_error(entity: str, field: str, issue: str) -> str:
    """Format a field validation error with structured format.

    Examples:
        >>> format_field_error("Step 'git'", "apply", "must be a non-empty string")
        "Step 'git' field 'apply' must be a non-empty string"
    """
    return f"{entity} field '{field}' {issue}"


def format_suggestion(message: str, suggestion: str) -> str:
    """Format an error message with a helpful suggestion.

    Examples:
        >>> format_suggestion("run lock is held", "wait for the other run to finish")
        'Error: run lock is held. Hint: wait for the other run to finish'
    """
    return f"{format_error(message)}. Hint: {suggestion}"


__all__ = [
    "ProvisionError",
    "ConfigError",
    "ManifestError",
    "RegistryError",
    "DuplicateId",
    "UnknownDependency",
    "UnknownStep",
    "PlanError",
    "CycleDetected",
    "BackendError",
    "TransientBackendError",
    "PermanentBackendError",
    "StepTimeout",
    "StateStoreError",
    "LockError",
    "format_error",
    "format_field_error",
    "format_suggestion",
]
