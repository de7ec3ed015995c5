import contextlib
import datetime
import fcntl
import logging
import threading
from collections.abc import Iterator
from enum import Enum
from pathlib import Path
from typing import Protocol

from .bootstrap import ensure_ready
from .config import SyncConfig, normalized_branch
from .conflicts import pull_with_resolution
from .constants import APP_NAME, DEFAULT_GIT_TIMEOUT, SYNC_LOCK_FILE
from .errors import ConfigurationError, RepositoryError, SyncError
from .folders import FolderResolver
from .git_wrapper import GitErrorKind, GitRepo
from .status import StatusStore, SyncStatus, now_timestamp

logger = logging.getLogger(APP_NAME)


class SyncTrigger(Enum):
    """Why a sync was started. Only used to label the commit."""

    STARTUP = "startup"
    DEBOUNCED_SAVE = "autosave"
    PERIODIC = "periodic"
    MANUAL = "manual"


class NoteIndex(Protocol):
    """Anything that must be rebuilt after files change on disk."""

    def rebuild(self) -> None: ...


class NullNoteIndex:
    """A note index with nothing to rebuild."""

    def rebuild(self) -> None:
        pass


def commit_message(trigger: SyncTrigger, when: datetime.datetime | None = None) -> str:
    """Formats the commit message for a sync (e.g. 'notesync: sync ... (autosave)')."""
    when = when or datetime.datetime.now()
    return f"notesync: sync {when.strftime('%Y-%m-%d %H:%M:%S')} ({trigger.value})"


def commit_local_changes(repo: GitRepo, trigger: SyncTrigger) -> bool:
    """Stages everything and commits if the tree is dirty.

    Returns:
        bool: True if a commit was created.

    Raises:
        RepositoryError: If staging, status, or the commit fails.
    """
    repo.add_all()
    if not repo.status_porcelain():
        return False

    result = repo.commit(commit_message(trigger))
    if result.ok:
        return True
    if result.kind is GitErrorKind.NOTHING_TO_COMMIT:
        return False
    raise RepositoryError(f"Failed to commit note changes: {result.error_message()}")


def push_branch(repo: GitRepo, branch: str) -> None:
    """Pushes the branch, retrying once after a pull if the remote moved ahead.

    Raises:
        RepositoryError: On any other rejection, or if the retry fails too.
    """
    result = repo.push(branch)
    if result.ok:
        return

    if result.kind is GitErrorKind.REMOTE_AHEAD:
        logger.warning(f"PUSH {repo.path.name}: Remote is ahead, pulling and retrying.")
        pull_with_resolution(repo.path, branch, timeout=repo.timeout)
        result = repo.push(branch)
        if result.ok:
            return

    raise RepositoryError(
        f"Failed to push to origin/{branch}: {result.error_message()}"
    )


@contextlib.contextmanager
def sync_lock(path: Path) -> Iterator[None]:
    """Holds an exclusive advisory lock on `path` for the duration of the block.

    The lock is taken with flock(2), so it excludes other processes as well as
    other open handles in this process, and the kernel drops it if the holder
    dies.

    Raises:
        RepositoryError: If the lock file cannot be opened.
    """
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        handle = open(path, "a")
    except OSError as e:
        raise RepositoryError(f"Failed to open sync lock {path}: {e}") from e

    with handle:
        fcntl.flock(handle.fileno(), fcntl.LOCK_EX)
        try:
            yield
        finally:
            fcntl.flock(handle.fileno(), fcntl.LOCK_UN)


class SyncEngine:
    """Runs the bootstrap -> commit -> pull -> push pipeline.

    At most one pipeline runs at a time. A thread lock orders callers within
    the process, and an flock on `lock_file` orders this process against
    others (the daemon and a manual `notesync sync`).

    Attributes:
        status (StatusStore): The live runtime state.
        folders (FolderResolver): Maps logical folder names to directories.
        index (NoteIndex): Rebuilt after every successful sync.
        git_timeout (float | None): Per-command git timeout in seconds.
        lock_file (Path): The inter-process lock. Defaults to SYNC_LOCK_FILE.
    """

    def __init__(
        self,
        folders: FolderResolver | None = None,
        index: NoteIndex | None = None,
        status: StatusStore | None = None,
        git_timeout: float | None = DEFAULT_GIT_TIMEOUT,
        lock_file: Path | None = None,
    ):
        self.folders = folders or FolderResolver()
        self.index = index or NullNoteIndex()
        self.status = status or StatusStore()
        self.git_timeout = git_timeout
        self.lock_file = lock_file or SYNC_LOCK_FILE
        self._lock = threading.Lock()

    def run(self, config: SyncConfig, trigger: SyncTrigger) -> None:
        """Synchronizes the configured folder with its remote.

        Args:
            config (SyncConfig): Folder, remote and branch to use.
            trigger (SyncTrigger): Why the sync was started.

        Raises:
            ConfigurationError: If the configuration is unusable. Nothing is
                                touched on disk or over the network.
            RepositoryError: If any pipeline step failed. The error is also
                             recorded in the runtime status.
        """
        config.validate()
        branch = normalized_branch(config.branch)

        with self._lock:
            self.status.set(syncing=True, last_error=None)
            try:
                with sync_lock(self.lock_file):
                    self._pipeline(config, branch, trigger)
            except (SyncError, OSError) as e:
                message = str(e)
                logger.error(f"SYNC FAILED ({trigger.value}): {message}")
                self.status.set(last_error=message)
                if isinstance(e, SyncError):
                    raise
                raise RepositoryError(message) from e
            else:
                self.status.set(last_sync_at=now_timestamp(), last_error=None)
                logger.info(
                    f"SUCCESS {config.shared_folder.strip()}: Synced ({trigger.value})."
                )
            finally:
                self.status.set(syncing=False)

        self.rebuild_index()

    def _pipeline(self, config: SyncConfig, branch: str, trigger: SyncTrigger) -> None:
        repo_path = self.folders.resolve(config.shared_folder.strip())
        ensure_ready(repo_path, config, timeout=self.git_timeout)

        repo = GitRepo(repo_path, timeout=self.git_timeout)
        if commit_local_changes(repo, trigger):
            logger.info(f"COMMIT {repo_path.name}: Local changes committed.")

        pull_with_resolution(repo_path, branch, timeout=self.git_timeout)
        push_branch(repo, branch)

    def rebuild_index(self) -> None:
        """Rebuilds the note index, recording (not raising) a failure."""
        try:
            self.index.rebuild()
        except Exception as e:
            logger.error(f"Index rebuild failed: {e}")
            self.status.set(
                last_error=f"Sync succeeded but index rebuild failed: {e}"
            )

    def prepare_repository(
        self, folder: str, remote_url: str, branch: str | None = None
    ) -> SyncStatus:
        """Bootstraps the repository without committing, pulling or pushing."""
        config = SyncConfig.ad_hoc(folder, remote_url, branch)
        config.validate()
        with self._lock, sync_lock(self.lock_file):
            repo_path = self.folders.resolve(config.shared_folder)
            ensure_ready(repo_path, config, timeout=self.git_timeout)
        return self.get_sync_status(config)

    def sync_now(
        self, folder: str, remote_url: str, branch: str | None = None
    ) -> SyncStatus:
        """Runs a manual sync, blocking until any in-flight sync has finished."""
        config = SyncConfig.ad_hoc(folder, remote_url, branch)
        self.run(config, SyncTrigger.MANUAL)
        return self.get_sync_status(config)

    def get_sync_status(self, config: SyncConfig | None = None) -> SyncStatus:
        """Combines a configuration with the runtime state without blocking."""
        config = config or SyncConfig()
        runtime = self.status.snapshot()
        folder = config.shared_folder.strip() or None
        remote = config.remote_url.strip() or None

        return SyncStatus(
            enabled=config.enabled,
            linked_folder=folder,
            remote_url=remote,
            branch=normalized_branch(config.branch),
            repo_initialized=self._repo_initialized(folder),
            pending_changes=runtime.pending_changes,
            syncing=runtime.syncing,
            last_sync_at=runtime.last_sync_at,
            last_error=runtime.last_error,
        )

    def _repo_initialized(self, folder: str | None) -> bool:
        if not folder:
            return False
        try:
            path: Path = self.folders.path_for(folder)
        except ConfigurationError:
            return False
        return (path / ".git").exists()
