"""Logical note folder validation and resolution."""

import logging
from pathlib import Path

from .constants import APP_NAME, DEFAULT_NOTES_ROOT
from .errors import ConfigurationError

logger = logging.getLogger(APP_NAME)


def validate_folder_name(name: str) -> None:
    """Rejects folder names that could escape the notes root.

    Args:
        name (str): The logical folder name (e.g. 'Inbox').

    Raises:
        ConfigurationError: If the name is empty, hidden, or contains a path
                            separator, '..' or a null byte.
    """
    if ".." in name or "/" in name or "\\" in name or "\0" in name:
        raise ConfigurationError(
            "Invalid name: must not contain '..', '/', '\\', or null bytes"
        )
    if not name.strip():
        raise ConfigurationError("Name cannot be empty")
    if name.strip().startswith("."):
        raise ConfigurationError("Invalid name: hidden folders cannot be used")


class FolderResolver:
    """Maps logical folder names to directories under a notes root.

    Attributes:
        root (Path): The directory containing every note folder.
    """

    def __init__(self, root: Path = DEFAULT_NOTES_ROOT):
        self.root = Path(root).expanduser()

    def path_for(self, name: str) -> Path:
        """Returns the absolute path for a folder without touching the disk."""
        validate_folder_name(name)
        return self.root / name.strip()

    def resolve(self, name: str) -> Path:
        """Validates a folder name and ensures its directory exists.

        Args:
            name (str): The logical folder name.

        Returns:
            Path: The absolute folder path.

        Raises:
            ConfigurationError: If the name fails validation.
            OSError: If the directory cannot be created.
        """
        path = self.path_for(name)
        if not path.exists():
            logger.info(f"Creating note folder {path}")
        path.mkdir(parents=True, exist_ok=True)
        return path
