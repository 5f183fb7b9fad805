"""Settings and tolerant JSON parsing for manifests."""

import json
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from .errors import ConfigError, format_field_error
from .execution import DEFAULT_STEP_TIMEOUT, RetryPolicy
from .state import DEFAULT_HISTORY_LIMIT


def preprocess_jsonish(text: str) -> str:
    """Turn JSON-ish text into strict JSON.

    Strips ``//`` line comments and trailing commas before ``]`` or ``}``.
    Stripped characters become spaces so line/column positions in parse
    errors still point into the original text. String literals (including
    escaped quotes) are left untouched.
    """
    out = list(text)
    n = len(text)
    i = 0
    in_string = False

    while i < n:
        char = text[i]

        if in_string:
            if char == "\\":
                i += 2
                continue
            if char == '"':
                in_string = False
            i += 1
            continue

        if char == '"':
            in_string = True
            i += 1
        elif char == "/" and i + 1 < n and text[i + 1] == "/":
            while i < n and text[i] != "\n":
                out[i] = " "
                i += 1
        elif char == ",":
            j = _skip_blank_and_comments(text, i + 1)
            if j < n and text[j] in "]}":
                out[i] = " "
            i += 1
        else:
            i += 1

    return "".join(out)


def _skip_blank_and_comments(text: str, j: int) -> int:
    n = len(text)
    while j < n:
        if text[j] in " \t\r\n":
            j += 1
        elif text.startswith("//", j):
            while j < n and text[j] != "\n":
                j += 1
        else:
            break
    return j


def _format_syntax_error(original_text: str, error: json.JSONDecodeError) -> str:
    """Format a JSON syntax error with line, caret, and context."""
    lines = original_text.split("\n")
    parts = [f"Syntax error at line {error.lineno}, col {error.colno}: {error.msg}"]
    if 1 <= error.lineno <= len(lines):
        parts.append(lines[error.lineno - 1])
        parts.append(" " * (error.colno - 1) + "^")
    return "\n".join(parts)


def load_jsonish(path_or_text: Path | str) -> dict:
    """Load and parse a JSON-ish document from a file path or raw text.

    Raises:
        ConfigError: If the file cannot be read, contains syntax errors, or
            is not a JSON object.
        TypeError: If path_or_text is neither Path nor str.
    """
    if isinstance(path_or_text, Path):
        try:
            original_text = path_or_text.read_text(encoding="utf-8")
        except FileNotFoundError:
            raise ConfigError(f"File not found: {path_or_text}")
        except PermissionError:
            raise ConfigError(f"Permission denied reading {path_or_text}")
        except UnicodeDecodeError:
            raise ConfigError(f"File is not valid UTF-8: {path_or_text}")
        except (IOError, OSError) as e:
            raise ConfigError(f"Error reading {path_or_text}: {e}")
    elif isinstance(path_or_text, str):
        original_text = path_or_text
    else:
        raise TypeError(f"path_or_text must be Path or str, got {type(path_or_text).__name__}")

    try:
        result = json.loads(preprocess_jsonish(original_text))
    except json.JSONDecodeError as e:
        raise ConfigError(_format_syntax_error(original_text, e)) from e

    if not isinstance(result, dict):
        raise ConfigError(f"Document must be a JSON object, got {type(result).__name__}")

    return result


@dataclass
class Settings:
    """Execution settings, from a manifest ``settings`` block plus CLI overrides."""

    step_timeout: float | None = DEFAULT_STEP_TIMEOUT
    retry: RetryPolicy = field(default_factory=RetryPolicy)
    history_limit: int = DEFAULT_HISTORY_LIMIT

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "Settings":
        """Build settings from a raw mapping, ignoring unknown keys.

        Raises:
            ConfigError: If a known key has the wrong type or range
        """
        data = data or {}
        if not isinstance(data, dict):
            raise ConfigError("settings must be an object")

        settings = cls()
        if data.get("step_timeout") is not None:
            settings.step_timeout = _positive_number(data, "step_timeout", "settings")

        retry_data = data.get("retry")
        if retry_data is not None:
            if not isinstance(retry_data, dict):
                raise ConfigError("settings field 'retry' must be an object")
            defaults = RetryPolicy()
            try:
                settings.retry = RetryPolicy(
                    attempts=int(retry_data.get("attempts", defaults.attempts)),
                    base_delay=float(retry_data.get("base_delay", defaults.base_delay)),
                    factor=float(retry_data.get("factor", defaults.factor)),
                    max_delay=float(retry_data.get("max_delay", defaults.max_delay)),
                )
            except (TypeError, ValueError) as e:
                raise ConfigError(f"settings field 'retry' is invalid: {e}") from e

        if data.get("history_limit") is not None:
            settings.history_limit = int(_positive_number(data, "history_limit", "settings"))

        return settings


def _positive_number(data: dict, key: str, entity: str) -> float:
    value = data[key]
    if isinstance(value, bool) or not isinstance(value, (int, float)) or value <= 0:
        raise ConfigError(format_field_error(entity, key, "must be a positive number"))
    return float(value)


__all__ = [
    "Settings",
    "preprocess_jsonish",
    "load_jsonish",
]
