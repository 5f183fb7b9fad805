"""Manifest loading: turns a JSON-ish or YAML step manifest into a registry.

A manifest looks like::

    {
      "settings": {"step_timeout": 600, "retry": {"attempts": 3}},
      "env": {"ZSH_CUSTOM": "~/.oh-my-zsh/custom"},
      "steps": [
        {"id": "git", "check": "command -v git", "apply": "sudo apt install -y git"},
        {"id": "oh-my-zsh", "depends_on": ["git"], "category": "shell-plugin", ...},
      ],
    }

Steps may carry a ``platforms`` list; steps for other platforms are dropped
along with dependency edges that point at them.
"""

import logging
import sys
from dataclasses import dataclass, field, replace
from pathlib import Path

import yaml

from .config import Settings, load_jsonish
from .errors import ConfigError, ManifestError, UnknownDependency, format_field_error
from .models import Step, StepCategory
from .registry import StepRegistry

YAML_SUFFIXES = {".yaml", ".yml"}
STEP_FIELDS = {"id", "apply", "check", "depends_on", "category", "description", "platforms"}

_logging = logging.getLogger(__name__)


@dataclass
class Manifest:
    steps: list[Step]
    settings: Settings = field(default_factory=Settings)
    env: dict[str, str] = field(default_factory=dict)
    excluded: list[str] = field(default_factory=list)

    def to_registry(self) -> StepRegistry:
        return StepRegistry(self.steps)


def current_platform() -> str:
    """Return 'linux', 'darwin', ... for the running interpreter."""
    if sys.platform.startswith("linux"):
        return "linux"
    return sys.platform


def _require_str_field(data: dict, field_name: str, entity: str) -> None:
    if field_name not in data:
        raise ManifestError(f"{entity} missing required field: {field_name}")
    if not isinstance(data[field_name], str) or not data[field_name].strip():
        raise ManifestError(format_field_error(entity, field_name, "must be a non-empty string"))


def _optional_str_field(data: dict, field_name: str, entity: str) -> None:
    value = data.get(field_name)
    if value is not None and not isinstance(value, str):
        raise ManifestError(format_field_error(entity, field_name, "must be a string or null"))


def _validate_string_list(data: dict, field_name: str, entity: str) -> None:
    if data.get(field_name) is None:
        return
    if not isinstance(data[field_name], list):
        raise ManifestError(format_field_error(entity, field_name, "must be an array"))
    for i, item in enumerate(data[field_name]):
        if not isinstance(item, str) or not item.strip():
            raise ManifestError(f"{entity} {field_name}[{i}] must be a non-empty string")


def _parse_category(value: str | None, entity: str) -> StepCategory:
    if value is None:
        return StepCategory.PACKAGE
    try:
        return StepCategory(value.lower())
    except ValueError:
        allowed = ", ".join(sorted(c.value for c in StepCategory))
        raise ManifestError(
            f"{entity} has invalid category: {value}. Must be one of: {allowed}"
        ) from None


def parse_step(data: object, position: int) -> Step:
    """Validate one raw step entry and build a Step.

    Raises:
        ManifestError: If validation fails
    """
    if not isinstance(data, dict):
        raise ManifestError(f"steps[{position}] must be an object, got {type(data).__name__}")

    _require_str_field(data, "id", f"steps[{position}]")
    entity = f"Step '{data['id']}'"
    _require_str_field(data, "apply", entity)
    for name in ("check", "category", "description"):
        _optional_str_field(data, name, entity)
    for name in ("depends_on", "platforms"):
        _validate_string_list(data, name, entity)

    unknown = sorted(set(data) - STEP_FIELDS)
    if unknown:
        _logging.debug(f"{entity}: ignoring unknown field(s) {unknown}")

    check = data.get("check")
    return Step(
        id=data["id"],
        apply=data["apply"],
        check=check if check and check.strip() else None,
        depends_on=tuple(data.get("depends_on") or ()),
        category=_parse_category(data.get("category"), entity),
        description=data.get("description") or "",
        platforms=tuple(p.lower() for p in data.get("platforms") or ()),
    )


def _read_document(path: Path) -> dict:
    if path.suffix.lower() not in YAML_SUFFIXES:
        return load_jsonish(path)

    try:
        with open(path, "r", encoding="utf-8") as f:
            data = yaml.safe_load(f)
    except FileNotFoundError:
        raise ConfigError(f"File not found: {path}")
    except yaml.YAMLError as e:
        raise ConfigError(f"Invalid YAML in {path}: {e}") from e
    except (IOError, OSError) as e:
        raise ConfigError(f"Error reading {path}: {e}") from e

    if not isinstance(data, dict):
        raise ConfigError(f"Document must be a mapping, got {type(data).__name__}")
    return data


def parse_manifest(data: dict, platform: str | None = None) -> Manifest:
    """Validate a raw manifest mapping and filter it for one platform.

    Raises:
        ManifestError: If the structure is invalid
        UnknownDependency: If a step depends on an id the manifest never declares
    """
    platform = platform or current_platform()

    if "steps" not in data:
        raise ManifestError("Manifest missing required field: steps")
    if not isinstance(data["steps"], list):
        raise ManifestError("Manifest field 'steps' must be an array")

    env = data.get("env") or {}
    if not isinstance(env, dict) or not all(
        isinstance(k, str) and isinstance(v, str) for k, v in env.items()
    ):
        raise ManifestError("Manifest field 'env' must map names to strings")

    settings = Settings.from_dict(data.get("settings"))
    parsed = [parse_step(raw, i) for i, raw in enumerate(data["steps"])]

    declared = {step.id for step in parsed}
    kept = [s for s in parsed if not s.platforms or platform in s.platforms]
    # An id may have one variant per platform; it is only excluded when no
    # variant is kept.
    kept_ids = {step.id for step in kept}
    excluded = list(dict.fromkeys(s.id for s in parsed if s.id not in kept_ids))

    steps = []
    for step in kept:
        missing = [dep for dep in step.depends_on if dep not in declared]
        if missing:
            raise UnknownDependency(step.id, missing)
        dropped = [dep for dep in step.depends_on if dep in excluded]
        if dropped:
            _logging.debug(f"{step.id}: dropping dependencies not used on {platform}: {dropped}")
            step = replace(
                step, depends_on=tuple(dep for dep in step.depends_on if dep not in dropped)
            )
        steps.append(step)

    if excluded:
        _logging.info(f"Skipping {len(excluded)} step(s) not for {platform}: {excluded}")

    return Manifest(steps=steps, settings=settings, env=dict(env), excluded=excluded)


def load_manifest(path: Path, platform: str | None = None) -> Manifest:
    """Load a manifest file (JSON-ish, or YAML by suffix)."""
    _logging.debug(f"Loading manifest {path}")
    return parse_manifest(_read_document(path), platform=platform)


__all__ = [
    "Manifest",
    "current_platform",
    "parse_step",
    "parse_manifest",
    "load_manifest",
]
