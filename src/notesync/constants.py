"""Global constants and configuration path definitions for notesync.

This module defines the filesystem layout (adhering to XDG standards where
applicable), timing constants for the background worker, and the fixed git
values the sync engine relies on.
"""

import os
from pathlib import Path

# --- Identity ---
APP_NAME = "notesync"
"""str: The human-readable application name (also the logger name)."""

# --- Paths ---
_XDG_STATE = os.environ.get("XDG_STATE_HOME")
_BASE_STATE = Path(_XDG_STATE) if _XDG_STATE else Path.home() / ".local/state"

STATE_DIR = _BASE_STATE / "notesync"
"""Path: The directory for runtime state data (logs, lock, live status)."""

LOG_FILE = STATE_DIR / "daemon.log"
"""Path: The file path for the daemon process logs."""

SYNC_LOCK_FILE = STATE_DIR / "sync.lock"
"""Path: Advisory lock held by whichever process is running a sync."""

RUNTIME_STATUS_FILE = STATE_DIR / "status.json"
"""Path: The running worker's live status, for other processes to read."""

CONFIG_DIR: Path = Path.home() / ".config/notesync"
"""Path: The directory for user configuration files."""

CONFIG_FILE: Path = CONFIG_DIR / "config.toml"
"""Path: The main configuration file path."""

DEFAULT_NOTES_ROOT: Path = Path.home() / "Documents" / "Notes"
"""Path: The directory holding every logical note folder."""

# --- Scheduling ---
DEBOUNCE_SECONDS = 30
"""int: Quiet period after the last note change before a sync runs."""

DEFAULT_SYNC_INTERVAL = 300
"""int: Periodic sync interval used when settings cannot be read."""

MIN_SYNC_INTERVAL = 60
"""int: Floor applied to the configured periodic interval."""

WORKER_POLL_SECONDS = 1.0
"""float: How long the worker blocks on its queue before checking deadlines."""

DEFAULT_GIT_TIMEOUT = 120
"""int: Seconds before a single git invocation is killed."""

# --- Git / Logic Constants ---
DEFAULT_BRANCH = "main"
REMOTE_NAME = "origin"

GIT_USER_NAME = "notesync"
GIT_USER_EMAIL = "notesync@local.invalid"

DEFAULT_IGNORES = [".DS_Store"]
"""list[str]: Entries guaranteed to be present in the synced folder's .gitignore."""

CONFLICT_COMMIT_MESSAGE = "notesync: resolve conflicts by keeping both versions"

CONFLICT_TIMESTAMP_FORMAT = "%Y%m%d-%H%M%S"

# Lower-cased phrases from git's human-readable output, checked in order.
# Pinned against tests/fixtures/git_messages.toml.
GIT_ERROR_PHRASES = [
    ("couldn't find remote ref", "missing_remote"),
    ("no such ref was fetched", "missing_remote"),
    ("not a git repository", "missing_remote"),
    ("refusing to merge unrelated histories", "unrelated_histories"),
    ("non-fast-forward", "remote_ahead"),
    ("fetch first", "remote_ahead"),
    ("nothing to commit", "nothing_to_commit"),
]
"""list[tuple[str, str]]: Substring to GitErrorKind value table."""
