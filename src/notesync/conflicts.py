"""Pull handling and keep-both-versions conflict resolution.

When a pull leaves files conflicted, the remote ("theirs") version always
wins the canonical path and the local ("ours") version is preserved next to
it under a timestamped duplicate name:

    Inbox/idea.md  ->  Inbox/idea-conflict-20260206-220000.md
"""

import datetime
import logging
from pathlib import Path, PurePosixPath

from .constants import (
    APP_NAME,
    CONFLICT_COMMIT_MESSAGE,
    CONFLICT_TIMESTAMP_FORMAT,
)
from .errors import RepositoryError
from .git_wrapper import GitErrorKind, GitRepo

logger = logging.getLogger(APP_NAME)


def conflict_duplicate_path(relative_path: str, timestamp: str) -> str:
    """Builds the duplicate path for a conflicted file.

    The suffix goes before the last extension, or at the end when the name
    has none. Dotfiles such as '.env' are treated as extension-less.

    Args:
        relative_path (str): Repository-relative path using '/' separators.
        timestamp (str): Formatted with CONFLICT_TIMESTAMP_FORMAT.

    Returns:
        str: The duplicate's repository-relative path, '/'-separated.

    Raises:
        RepositoryError: If the path has no file name component.
    """
    path = PurePosixPath(relative_path.replace("\\", "/"))
    name = path.name
    if not name or name in (".", ".."):
        raise RepositoryError(f"Invalid conflicted file path: {relative_path}")

    stem, dot, extension = name.rpartition(".")
    if dot and stem:
        duplicate_name = f"{stem}-conflict-{timestamp}.{extension}"
    else:
        duplicate_name = f"{name}-conflict-{timestamp}"
    return str(path.with_name(duplicate_name))


def resolve_conflicts(
    repo: GitRepo, conflicted: list[str], timestamp: str | None = None
) -> list[str]:
    """Resolves every conflicted path by keeping both versions, then commits.

    Args:
        repo (GitRepo): The repository mid-merge.
        conflicted (list[str]): Paths reported by `git diff --diff-filter=U`.
        timestamp (str | None): Suffix timestamp. Defaults to now.

    Returns:
        list[str]: The duplicate paths that were written.

    Raises:
        RepositoryError: If a file cannot be written, staged, or committed.
    """
    timestamp = timestamp or datetime.datetime.now().strftime(
        CONFLICT_TIMESTAMP_FORMAT
    )
    duplicates = []

    for relative_path in conflicted:
        content = repo.show_stage(relative_path, 2)
        if content is None:
            content = repo.show_stage(relative_path, 3) or b""

        duplicate = conflict_duplicate_path(relative_path, timestamp)
        target = repo.path / duplicate
        try:
            target.parent.mkdir(parents=True, exist_ok=True)
            target.write_bytes(content)
        except OSError as e:
            raise RepositoryError(f"Failed to write {duplicate}: {e}") from e

        repo.add(duplicate, "stage duplicate conflict file")
        repo.checkout_theirs(relative_path)
        repo.add(relative_path, "stage resolved conflict file")
        logger.warning(f"CONFLICT {relative_path}: local copy kept as {duplicate}")
        duplicates.append(duplicate)

    result = repo.commit(CONFLICT_COMMIT_MESSAGE)
    if not result.ok and result.kind is not GitErrorKind.NOTHING_TO_COMMIT:
        raise RepositoryError(
            f"Failed to finalize conflict resolution: {result.error_message()}"
        )
    return duplicates


def pull_with_resolution(
    repo_path: Path, branch: str, timeout: float | None = None
) -> None:
    """Merges the remote branch into the working tree, resolving conflicts.

    A missing remote branch is not an error: there is nothing to merge yet.
    Unrelated histories are retried once with `--allow-unrelated-histories`.

    Args:
        repo_path (Path): The synchronized folder.
        branch (str): The branch to pull from 'origin'.
        timeout (float | None): Per-command git timeout.

    Raises:
        RepositoryError: If the pull failed for a reason other than content
                         conflicts, or resolution failed.
    """
    repo = GitRepo(repo_path, timeout=timeout)
    result = repo.pull(branch)
    if result.ok:
        return

    kind = result.kind
    if kind is GitErrorKind.MISSING_REMOTE:
        logger.info(f"PULL {repo_path.name}: origin/{branch} not found, skipping.")
        return

    if kind is GitErrorKind.UNRELATED_HISTORIES:
        logger.info(f"PULL {repo_path.name}: Merging unrelated histories.")
        if repo.pull(branch, allow_unrelated=True).ok:
            return

    conflicted = repo.conflicted_files()
    if not conflicted:
        raise RepositoryError(
            f"Failed to pull from origin/{branch}: {result.error_message()}"
        )

    logger.warning(
        f"PULL {repo_path.name}: {len(conflicted)} conflicted file(s), keeping both versions."
    )
    resolve_conflicts(repo, conflicted)
