import logging
import re
import tomllib
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Any

from .constants import (
    APP_NAME,
    CONFIG_FILE,
    DEFAULT_BRANCH,
    DEFAULT_GIT_TIMEOUT,
    DEFAULT_NOTES_ROOT,
    DEFAULT_SYNC_INTERVAL,
    MIN_SYNC_INTERVAL,
)
from .errors import ConfigurationError
from .folders import validate_folder_name

logger = logging.getLogger(APP_NAME)


def parse_size(value: int | str) -> int:
    """Converts human-readable size strings (e.g., '5MB') to bytes."""
    if isinstance(value, int):
        return value
    match = re.match(r"^(\d+(?:\.\d+)?)\s*([kmg]b?)$", str(value).strip().lower())
    if not match:
        raise ValueError(f"Invalid size format '{value}'")
    num, unit = float(match.group(1)), match.group(2)
    multiplier = {
        "k": 1024,
        "kb": 1024,
        "m": 1024**2,
        "mb": 1024**2,
        "g": 1024**3,
        "gb": 1024**3,
    }
    return int(num * multiplier[unit])


def parse_time(value: int | str) -> int:
    """Converts human-readable time strings (e.g., '1hr', '30m') to seconds."""
    if isinstance(value, int):
        return value
    match = re.match(
        r"^(\d+(?:\.\d+)?)\s*(s|sec|m|min|h|hr)s?$", str(value).strip().lower()
    )
    if not match:
        raise ValueError(f"Invalid time format '{value}'")
    num, unit = float(match.group(1)), match.group(2)
    multiplier = {"s": 1, "sec": 1, "m": 60, "min": 60, "h": 3600, "hr": 3600}
    return int(num * multiplier[unit])


def normalized_branch(branch: str | None) -> str:
    """Trims a branch name, falling back to the default branch when blank."""
    trimmed = (branch or "").strip()
    return trimmed or DEFAULT_BRANCH


@dataclass
class CoreConfig:
    """Core application settings.

    Attributes:
        notes_root (Path): Directory containing the logical note folders.
        git_timeout (int): Seconds before a single git call is killed.
    """

    notes_root: Path = DEFAULT_NOTES_ROOT
    git_timeout: int = DEFAULT_GIT_TIMEOUT


@dataclass
class LimitsConfig:
    """Resource limitation settings.

    Attributes:
        max_log_size (int): Max bytes for log files before rotation.
    """

    max_log_size: int = 5 * 1024 * 1024


@dataclass
class SyncConfig:
    """The shared folder and the remote it is synchronized with.

    Attributes:
        enabled (bool): Whether background sync runs at all.
        shared_folder (str): Logical name of the synchronized note folder.
        remote_url (str): URL of the git remote named 'origin'.
        branch (str): Branch that is committed, pulled and pushed.
        sync_interval_seconds (int): Stored periodic interval (see
                                     `effective_interval`).
    """

    enabled: bool = False
    shared_folder: str = ""
    remote_url: str = ""
    branch: str = DEFAULT_BRANCH
    sync_interval_seconds: int = DEFAULT_SYNC_INTERVAL

    @classmethod
    def ad_hoc(
        cls, folder: str, remote_url: str, branch: str | None = None
    ) -> "SyncConfig":
        """Builds a transient, enabled configuration for a one-off manual call."""
        return cls(
            enabled=True,
            shared_folder=folder.strip(),
            remote_url=remote_url.strip(),
            branch=normalized_branch(branch),
        )

    @property
    def effective_interval(self) -> int:
        """The periodic interval in seconds, never below the scheduling floor."""
        return max(self.sync_interval_seconds, MIN_SYNC_INTERVAL)

    def validate(self) -> None:
        """Checks the fields needed to run a sync.

        Raises:
            ConfigurationError: If the folder, remote or branch is unusable.
        """
        if not self.shared_folder.strip():
            raise ConfigurationError("Pick a folder to link before enabling sync")
        if not self.remote_url.strip():
            raise ConfigurationError("Remote URL is required for sync")
        if not self.branch.strip():
            raise ConfigurationError("Branch cannot be empty")
        validate_folder_name(self.shared_folder.strip())

    def is_linked(self, folder: str) -> bool:
        """Returns True if changes to `folder` should schedule a sync."""
        return (
            self.enabled
            and bool(self.remote_url.strip())
            and self.shared_folder.strip() == folder.strip()
        )


@dataclass
class Config:
    """Global configuration aggregator.

    Attributes:
        core (CoreConfig): Core settings.
        limits (LimitsConfig): Resource limits.
        sync (SyncConfig): The synchronized folder settings.
    """

    core: CoreConfig = field(default_factory=CoreConfig)
    limits: LimitsConfig = field(default_factory=LimitsConfig)
    sync: SyncConfig = field(default_factory=SyncConfig)

    @classmethod
    def load(cls, path: Path | None = None) -> "Config":
        """Loads configuration from defaults and the TOML file.

        The file is re-read on every call so saved settings take effect on the
        next sync without restarting the worker.

        Args:
            path (Path | None): Config file to read. Defaults to CONFIG_FILE.

        Returns:
            Config: The merged configuration object.
        """
        instance = cls()
        path = path or CONFIG_FILE
        if path.exists():
            instance._merge_from_file(path)
        return instance

    def _merge_from_file(self, path: Path) -> None:
        """Parses a TOML file and merges it into the current instance."""
        try:
            with open(path, "rb") as f:
                data = tomllib.load(f)

            if "core" in data:
                self.core = self._update_dataclass("core", self.core, data["core"])
            if "limits" in data:
                self.limits = self._update_dataclass(
                    "limits", self.limits, data["limits"]
                )
            if "sync" in data:
                self.sync = self._update_dataclass("sync", self.sync, data["sync"])

        except tomllib.TOMLDecodeError as e:
            logger.error(f"Config syntax error in {path}: {e}")
        except OSError as e:
            logger.warning(f"Failed to load config from {path}: {e}")

    @staticmethod
    def _update_dataclass(section_name: str, instance: Any, updates: dict) -> Any:
        """Updates a dataclass, warning on invalid keys and parsing human-readable formats."""
        valid_keys = instance.__dataclass_fields__.keys()
        filtered_updates = {}

        invalid_keys = set(updates.keys()) - set(valid_keys)
        if invalid_keys:
            logger.warning(
                f"Unknown config keys in [{section_name}]: "
                f"{', '.join(sorted(invalid_keys))}. Ignoring."
            )

        for k, v in updates.items():
            if k not in valid_keys:
                continue

            try:
                if k == "max_log_size":
                    filtered_updates[k] = parse_size(v)
                elif k in ["sync_interval_seconds", "git_timeout"]:
                    filtered_updates[k] = parse_time(v)
                elif k == "notes_root":
                    filtered_updates[k] = Path(str(v)).expanduser()
                elif k == "enabled":
                    if not isinstance(v, bool):
                        raise ValueError(f"Expected true/false, got '{v}'")
                    filtered_updates[k] = v
                else:
                    filtered_updates[k] = str(v)
            except ValueError as e:
                logger.warning(
                    f"Config error in [{section_name}].{k}: {e}. Falling back to default."
                )

        return replace(instance, **filtered_updates)


class SettingsStore:
    """Read-only view of the persisted sync settings.

    Attributes:
        path (Path): The TOML file backing the settings.
    """

    def __init__(self, path: Path | None = None):
        self.path = path or CONFIG_FILE

    def load(self) -> Config:
        """Returns the full configuration."""
        return Config.load(self.path)

    def get(self) -> SyncConfig:
        """Returns a snapshot of the current sync settings."""
        return self.load().sync
