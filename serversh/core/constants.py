"""
Constants — exit codes, default locations, limits, timeouts.

Values here are shared by the CLI, the engine, and the stores. Anything a
user can change at runtime lives in the configuration document instead;
these are the fallbacks and hard limits.
"""

from __future__ import annotations

from enum import IntEnum
from pathlib import Path

SERVERSH_VERSION = "1.0.0"
STATE_SCHEMA_VERSION = "1.0.0"


class ExitCode(IntEnum):
    """Process exit codes exposed to operators."""

    SUCCESS = 0
    GENERAL_ERROR = 1
    INVALID_ARGS = 2
    MISSING_DEPS = 3
    PERMISSION_DENIED = 4
    CONFIG_ERROR = 5
    MODULE_ERROR = 6
    STATE_ERROR = 7
    LOCK_ERROR = 8


# ── Default locations ───────────────────────────────────────────
DEFAULT_CONFIG_PATH = Path("/etc/serversh/config.yaml")
DEFAULT_STATE_PATH = Path("/var/lib/serversh/state.json")
DEFAULT_MODULES_DIR = Path("/usr/share/serversh/modules")
PROFILES_DIRNAME = "profiles"
HISTORY_FILENAME = "history.ndjson"

# ── Limits ──────────────────────────────────────────────────────
MAX_MODULE_NAME_LENGTH = 64
MAX_CONFIG_FILE_SIZE = 1024 * 1024  # 1 MiB
MAX_STATE_SIZE = 1024 * 1024        # 1 MiB
MAX_STATE_BACKUPS = 5

# ── Defaults ────────────────────────────────────────────────────
DEFAULT_LOG_LEVEL = "info"
DEFAULT_PARALLEL_JOBS = 4
DEFAULT_TIMEOUT = 300
DEFAULT_SSH_PORT = 2222

# ── Timeouts (seconds) ──────────────────────────────────────────
TIMEOUT_MODULE_INSTALL = 1800
TIMEOUT_STATE_OPERATION = 30.0

# Configuration sections that must be present in every document
REQUIRED_CONFIG_SECTIONS = ("serversh", "modules", "system", "security")

# Top-level fields that must be present in every state document
REQUIRED_STATE_FIELDS = ("version", "status", "current_step", "total_steps")
