"""Default file locations for provision."""

import os
from pathlib import Path

MANIFEST_ENV = "PROVISION_MANIFEST"
STATE_DIR_ENV = "PROVISION_STATE_DIR"

STATE_FILE_NAME = "state.json"
LOCK_FILE_NAME = "provision.lock"
LOG_FILE_NAME = "provision.log"


def get_config_dir() -> Path:
    """Return XDG-compliant config directory: ~/.config/provision"""
    base = os.environ.get("XDG_CONFIG_HOME")
    return (Path(base) if base else Path.home() / ".config") / "provision"


def get_manifest_path() -> Path:
    """Return path to the step manifest.

    Priority:
    1. PROVISION_MANIFEST environment variable (if set)
    2. ~/.config/provision/manifest.json
    """
    if MANIFEST_ENV in os.environ:
        return Path(os.environ[MANIFEST_ENV])
    return get_config_dir() / "manifest.json"


def get_state_dir() -> Path:
    """Return directory holding run state, the run lock and the log.

    Priority:
    1. PROVISION_STATE_DIR environment variable (if set)
    2. $XDG_STATE_HOME/provision
    3. ~/.local/state/provision
    """
    if STATE_DIR_ENV in os.environ:
        return Path(os.environ[STATE_DIR_ENV])
    base = os.environ.get("XDG_STATE_HOME")
    return (Path(base) if base else Path.home() / ".local" / "state") / "provision"


def get_packaged_examples_dir() -> Path:
    """Return path to the example manifests shipped with the package."""
    return Path(__file__).parent / "data"
