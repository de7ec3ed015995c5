import logging
import os
import subprocess
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path

from .constants import APP_NAME, GIT_ERROR_PHRASES, REMOTE_NAME
from .errors import RepositoryError

logger = logging.getLogger(APP_NAME)


class GitErrorKind(Enum):
    """Classes of git failures the sync engine reacts to."""

    MISSING_REMOTE = "missing_remote"
    UNRELATED_HISTORIES = "unrelated_histories"
    REMOTE_AHEAD = "remote_ahead"
    NOTHING_TO_COMMIT = "nothing_to_commit"
    UNKNOWN = "unknown"


def classify_git_error(text: str) -> GitErrorKind:
    """Maps git's human-readable output to a `GitErrorKind`.

    Matching is a case-insensitive substring search over GIT_ERROR_PHRASES;
    the first matching phrase wins.

    Args:
        text (str): stderr/stdout of a failed git command.

    Returns:
        GitErrorKind: The classification, UNKNOWN if nothing matched.
    """
    lowered = text.lower()
    for phrase, kind in GIT_ERROR_PHRASES:
        if phrase in lowered:
            return GitErrorKind(kind)
    return GitErrorKind.UNKNOWN


@dataclass(frozen=True)
class GitResult:
    """The outcome of a single git invocation.

    Attributes:
        exit_code (int | None): Process exit code, None if killed or timed out.
        stdout (str): Decoded standard output.
        stderr (str): Decoded standard error.
        raw_stdout (bytes): Standard output exactly as git wrote it.
    """

    exit_code: int | None
    stdout: str
    stderr: str
    raw_stdout: bytes = field(default=b"", repr=False)

    @property
    def ok(self) -> bool:
        return self.exit_code == 0

    def error_message(self) -> str:
        """Returns the most useful failure text: stderr, then stdout."""
        if stderr := self.stderr.strip():
            return stderr
        if stdout := self.stdout.strip():
            return stdout
        return "unknown git error"

    @property
    def kind(self) -> GitErrorKind:
        return classify_git_error(self.error_message())


def _git_env() -> dict[str, str]:
    env = os.environ.copy()
    # Never block on credential prompts or merge message editors.
    env["GIT_TERMINAL_PROMPT"] = "0"
    env["GIT_MERGE_AUTOEDIT"] = "no"
    env.setdefault("GIT_SSH_COMMAND", "ssh -o BatchMode=yes")
    return env


def run_git(
    working_dir: Path, args: list[str], timeout: float | None = None
) -> GitResult:
    """Executes git against a working directory.

    A non-zero exit is reported through the result, never raised.

    Args:
        working_dir (Path): Directory passed to `git -C`.
        args (list[str]): The git subcommand and its arguments.
        timeout (float | None): Seconds before the process is killed.

    Paths in git's output are printed verbatim (`core.quotePath=false`)
    instead of C-quoted, so non-ASCII note names round-trip.

    Returns:
        GitResult: Exit code and lossily decoded output.

    Raises:
        RepositoryError: If the git executable cannot be launched.
    """
    try:
        res = subprocess.run(
            ["git", "-c", "core.quotePath=false", "-C", str(working_dir), *args],
            capture_output=True,
            timeout=timeout,
            env=_git_env(),
        )
    except subprocess.TimeoutExpired:
        message = f"git {args[0] if args else ''} timed out after {timeout} seconds"
        logger.warning(f"TIMEOUT {working_dir.name}: {message}")
        return GitResult(exit_code=None, stdout="", stderr=message)
    except OSError as e:
        raise RepositoryError(f"Git command failed to launch: {e}") from e

    return GitResult(
        exit_code=res.returncode,
        stdout=res.stdout.decode("utf-8", errors="replace"),
        stderr=res.stderr.decode("utf-8", errors="replace"),
        raw_stdout=res.stdout,
    )


class GitRepo:
    """Git commands used by the sync engine, bound to one working directory.

    Unlike a plain `run_git` call, the `*_or_raise` style helpers here turn a
    failed invocation into a `RepositoryError` carrying a short context.

    Attributes:
        path (Path): The working directory.
        timeout (float | None): Per-command timeout in seconds.
    """

    def __init__(self, path: Path, timeout: float | None = None):
        self.path = path
        self.timeout = timeout

    def run(self, args: list[str]) -> GitResult:
        return run_git(self.path, args, timeout=self.timeout)

    def run_checked(self, args: list[str], context: str) -> GitResult:
        """Runs a command and raises if it fails.

        Args:
            args (list[str]): The git arguments.
            context (str): Completes the sentence "Failed to ...".

        Raises:
            RepositoryError: On a non-zero exit.
        """
        result = self.run(args)
        if not result.ok:
            raise RepositoryError(f"Failed to {context}: {result.error_message()}")
        return result

    def is_initialized(self) -> bool:
        return (self.path / ".git").exists()

    def config_value(self, key: str) -> str | None:
        """Returns a config value, or None when unset or blank."""
        result = self.run(["config", "--get", key])
        if result.ok:
            return result.stdout.strip() or None
        return None

    def remote_url(self, name: str = REMOTE_NAME) -> str | None:
        result = self.run(["remote", "get-url", name])
        if result.ok:
            return result.stdout.strip() or None
        return None

    def add_all(self) -> None:
        """Stages all changes, including deletions and untracked files."""
        self.run_checked(["add", "-A"], "stage note changes")

    def add(self, relative_path: str, context: str = "stage file") -> None:
        self.run_checked(["add", "--", relative_path], context)

    def status_porcelain(self) -> list[str]:
        """Returns the lines of `git status --porcelain`."""
        result = self.run(["status", "--porcelain"])
        if not result.ok:
            raise RepositoryError(
                f"Failed to inspect repository status: {result.error_message()}"
            )
        return [line for line in result.stdout.splitlines() if line.strip()]

    def commit(self, message: str) -> GitResult:
        return self.run(["commit", "-m", message])

    def pull(self, branch: str, allow_unrelated: bool = False) -> GitResult:
        cmd = ["pull", "--no-rebase"]
        if allow_unrelated:
            cmd.append("--allow-unrelated-histories")
        cmd.extend([REMOTE_NAME, branch])
        return self.run(cmd)

    def push(self, branch: str) -> GitResult:
        return self.run(["push", "-u", REMOTE_NAME, branch])

    def conflicted_files(self) -> list[str]:
        """Lists paths with unmerged (both-sides-modified) entries.

        Raises:
            RepositoryError: If git cannot produce the list.
        """
        result = self.run(["diff", "--name-only", "-z", "--diff-filter=U"])
        if not result.ok:
            raise RepositoryError(
                f"Failed to list conflicted files: {result.error_message()}"
            )
        return [path for path in result.stdout.split("\0") if path]

    def show_stage(self, relative_path: str, stage: int) -> bytes | None:
        """Reads a blob at a conflict stage (2 = ours, 3 = theirs).

        Returns:
            bytes | None: The blob content, or None if git could not read it.
        """
        result = self.run(["show", f":{stage}:{relative_path}"])
        if result.ok:
            return result.raw_stdout
        logger.debug(
            f"Stage {stage} unreadable for {relative_path}: {result.error_message()}"
        )
        return None

    def checkout_theirs(self, relative_path: str) -> None:
        self.run_checked(
            ["checkout", "--theirs", "--", relative_path],
            "checkout remote conflict version",
        )
