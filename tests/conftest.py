"""Shared fixtures: a scripted stand-in for git, and isolated state files."""

from collections import deque
from collections.abc import Iterator
from pathlib import Path
from unittest.mock import MagicMock

import pytest

from notesync.git_wrapper import GitResult

OK = GitResult(exit_code=0, stdout="", stderr="")


class FakeGit:
    """Replays scripted results for git invocations and records every call.

    Responses are keyed by an argument prefix; the longest matching prefix
    wins. Multiple responses for one prefix are consumed in order, the last
    one repeating. Unscripted commands succeed with empty output.
    """

    def __init__(self) -> None:
        self.calls: list[list[str]] = []
        self.responses: dict[tuple[str, ...], deque[GitResult]] = {}

    def on(
        self,
        *prefix: str,
        exit_code: int | None = 0,
        stdout: str | bytes = "",
        stderr: str = "",
    ) -> "FakeGit":
        raw = stdout if isinstance(stdout, bytes) else stdout.encode()
        self.responses.setdefault(tuple(prefix), deque()).append(
            GitResult(
                exit_code=exit_code,
                stdout=raw.decode("utf-8", errors="replace"),
                stderr=stderr,
                raw_stdout=raw,
            )
        )
        return self

    def __call__(
        self, working_dir: Path, args: list[str], timeout: float | None = None
    ) -> GitResult:
        self.calls.append(list(args))
        best: tuple[str, ...] | None = None
        for prefix in self.responses:
            if tuple(args[: len(prefix)]) == prefix:
                if best is None or len(prefix) > len(best):
                    best = prefix
        if best is None:
            return OK
        queue = self.responses[best]
        return queue.popleft() if len(queue) > 1 else queue[0]

    def commands(self, *prefix: str) -> list[list[str]]:
        """Returns the recorded calls starting with `prefix`."""
        return [c for c in self.calls if tuple(c[: len(prefix)]) == prefix]

    def verbs(self) -> list[str]:
        return [c[0] for c in self.calls]


@pytest.fixture
def fake_git(mocker: MagicMock) -> FakeGit:
    """Routes every `run_git` call through a `FakeGit`."""
    fake = FakeGit()
    mocker.patch("notesync.git_wrapper.run_git", side_effect=fake)
    return fake


@pytest.fixture(autouse=True, scope="session")
def isolated_state(tmp_path_factory: pytest.TempPathFactory) -> Iterator[Path]:
    """Keeps the sync lock and published status out of the real state directory."""
    state = tmp_path_factory.mktemp("state")
    with pytest.MonkeyPatch.context() as mp:
        mp.setattr("notesync.ops.SYNC_LOCK_FILE", state / "sync.lock")
        mp.setattr("notesync.daemon.RUNTIME_STATUS_FILE", state / "status.json")
        mp.setattr("notesync.cli.RUNTIME_STATUS_FILE", state / "status.json")
        yield state
