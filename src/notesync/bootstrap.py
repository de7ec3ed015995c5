"""Repository preparation for the synchronized folder."""

import logging
from pathlib import Path

from .config import SyncConfig, normalized_branch
from .constants import (
    APP_NAME,
    DEFAULT_IGNORES,
    GIT_USER_EMAIL,
    GIT_USER_NAME,
    REMOTE_NAME,
)
from .errors import RepositoryError
from .git_wrapper import GitRepo

logger = logging.getLogger(APP_NAME)


def ensure_ready(
    repo_path: Path, config: SyncConfig, timeout: float | None = None
) -> None:
    """Ensures `repo_path` is a configured repository on the right branch.

    Steps:
    1. Creates the directory and initializes git if needed.
    2. Sets a local commit identity if none is configured.
    3. Merges the baseline entries into .gitignore.
    4. Points 'origin' at the configured remote.
    5. Checks out (or force-creates) the configured branch.

    Args:
        repo_path (Path): The synchronized folder.
        config (SyncConfig): Provides the remote URL and branch.
        timeout (float | None): Per-command git timeout.

    Raises:
        RepositoryError: If any step fails.
    """
    try:
        repo_path.mkdir(parents=True, exist_ok=True)
    except OSError as e:
        raise RepositoryError(f"Failed to create {repo_path}: {e}") from e

    repo = GitRepo(repo_path, timeout=timeout)
    branch = normalized_branch(config.branch)

    if not repo.is_initialized():
        logger.info(f"INIT {repo_path.name}: Creating repository on '{branch}'.")
        if not repo.run(["init", "-b", branch]).ok:
            # Older git releases do not understand `init -b`.
            repo.run_checked(["init"], "initialize git repository")
            repo.run_checked(["checkout", "-B", branch], "create git branch")

    ensure_identity(repo)
    ensure_gitignore(repo_path)
    configure_remote(repo, config.remote_url.strip())
    repo.run_checked(["checkout", "-B", branch], "switch repository branch")


def ensure_identity(repo: GitRepo) -> None:
    """Sets user.name/user.email locally, leaving existing values alone."""
    if repo.config_value("user.name") is None:
        repo.run_checked(["config", "user.name", GIT_USER_NAME], "set git user.name")
    if repo.config_value("user.email") is None:
        repo.run_checked(
            ["config", "user.email", GIT_USER_EMAIL], "set git user.email"
        )


def ensure_gitignore(repo_path: Path) -> bool:
    """Appends missing DEFAULT_IGNORES entries to the folder's .gitignore.

    An existing file that cannot be read or decoded is left as it is.

    Returns:
        bool: True if the file was written.

    Raises:
        RepositoryError: If the file cannot be written.
    """
    gitignore = repo_path / ".gitignore"
    try:
        existing = gitignore.read_text(encoding="utf-8") if gitignore.exists() else ""
    except (OSError, UnicodeDecodeError) as e:
        logger.warning(f"Could not read {gitignore}, leaving it untouched: {e}")
        return False

    lines = existing.splitlines()
    present = {line.strip() for line in lines}
    missing = [entry for entry in DEFAULT_IGNORES if entry not in present]
    if not missing:
        return False

    lines.extend(missing)
    try:
        gitignore.write_text("\n".join(lines) + "\n", encoding="utf-8")
    except OSError as e:
        raise RepositoryError(f"Failed to update .gitignore: {e}") from e
    return True


def configure_remote(repo: GitRepo, remote_url: str) -> None:
    """Adds 'origin', updates its URL, or leaves it untouched if correct."""
    current = repo.remote_url()
    if current == remote_url:
        return
    if current is None:
        repo.run_checked(
            ["remote", "add", REMOTE_NAME, remote_url], "add origin remote"
        )
    else:
        logger.info(f"REMOTE {repo.path.name}: {current} -> {remote_url}")
        repo.run_checked(
            ["remote", "set-url", REMOTE_NAME, remote_url], "update origin remote"
        )
