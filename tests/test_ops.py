"""Tests for the sync orchestrator and its produced commands."""

import datetime
import fcntl
import threading
import time
from pathlib import Path
from unittest.mock import MagicMock

import pytest
from conftest import FakeGit

from notesync import cli, daemon, ops
from notesync.config import Config, SyncConfig
from notesync.errors import ConfigurationError, RepositoryError
from notesync.folders import FolderResolver
from notesync.ops import SyncEngine, SyncTrigger

REMOTE = "https://example.com/team/notes.git"

REJECTED = (
    " ! [rejected]        main -> main (fetch first)\n"
    "error: failed to push some refs to 'https://example.com/team/notes.git'"
)


@pytest.fixture
def index() -> MagicMock:
    return MagicMock()


@pytest.fixture
def engine(tmp_path: Path, index: MagicMock) -> SyncEngine:
    return SyncEngine(folders=FolderResolver(tmp_path), index=index, git_timeout=10)


@pytest.fixture
def config() -> SyncConfig:
    return SyncConfig.ad_hoc("Inbox", REMOTE, "main")


@pytest.fixture
def no_bootstrap(mocker: MagicMock) -> MagicMock:
    """Skips repository bootstrapping so only pipeline commands are recorded."""
    return mocker.patch("notesync.ops.ensure_ready")


@pytest.mark.parametrize(
    ("folder", "remote", "branch"),
    [("", REMOTE, "main"), ("Inbox", "", "main"), ("Inbox", REMOTE, "")],
)
def test_invalid_config_touches_nothing(
    tmp_path: Path,
    mocker: MagicMock,
    engine: SyncEngine,
    folder: str,
    remote: str,
    branch: str,
) -> None:
    """Verifies that a ConfigurationError is raised before any disk or git access."""
    mock_run = mocker.patch("subprocess.run")
    config = SyncConfig(
        enabled=True, shared_folder=folder, remote_url=remote, branch=branch
    )

    with pytest.raises(ConfigurationError):
        engine.run(config, SyncTrigger.MANUAL)

    mock_run.assert_not_called()
    assert list(tmp_path.iterdir()) == []
    assert engine.status.snapshot().syncing is False


def test_pipeline_order(
    tmp_path: Path,
    fake_git: FakeGit,
    no_bootstrap: MagicMock,
    engine: SyncEngine,
    config: SyncConfig,
    index: MagicMock,
) -> None:
    """Verifies bootstrap, then commit, then pull, then push."""
    fake_git.on("status", stdout=" M idea.md\n")

    engine.run(config, SyncTrigger.DEBOUNCED_SAVE)

    no_bootstrap.assert_called_once_with(tmp_path / "Inbox", config, timeout=10)
    assert fake_git.verbs() == ["add", "status", "commit", "pull", "push"]
    message = fake_git.commands("commit")[0][2]
    assert message.startswith("notesync: sync ")
    assert message.endswith(" (autosave)")
    assert fake_git.commands("push") == [["push", "-u", "origin", "main"]]
    index.rebuild.assert_called_once()

    status = engine.status.snapshot()
    assert status.syncing is False
    assert status.last_error is None
    assert status.last_sync_at is not None


def test_clean_tree_skips_commit(
    fake_git: FakeGit, no_bootstrap: MagicMock, engine: SyncEngine, config: SyncConfig
) -> None:
    engine.run(config, SyncTrigger.PERIODIC)
    assert fake_git.verbs() == ["add", "status", "pull", "push"]


def test_nothing_to_commit_is_success(
    fake_git: FakeGit, no_bootstrap: MagicMock, engine: SyncEngine, config: SyncConfig
) -> None:
    fake_git.on("status", stdout="?? new.md\n")
    fake_git.on("commit", exit_code=1, stdout="nothing to commit, working tree clean")

    engine.run(config, SyncTrigger.PERIODIC)

    assert engine.status.snapshot().last_error is None


def test_commit_message_labels() -> None:
    when = datetime.datetime(2026, 2, 6, 10, 15, 30)
    assert ops.commit_message(SyncTrigger.DEBOUNCED_SAVE, when) == (
        "notesync: sync 2026-02-06 10:15:30 (autosave)"
    )
    assert ops.commit_message(SyncTrigger.STARTUP, when).endswith("(startup)")
    assert ops.commit_message(SyncTrigger.PERIODIC, when).endswith("(periodic)")
    assert ops.commit_message(SyncTrigger.MANUAL, when).endswith("(manual)")


def test_push_rejected_retries_once(
    fake_git: FakeGit, no_bootstrap: MagicMock, engine: SyncEngine, config: SyncConfig
) -> None:
    """Verifies exactly one extra pull+push cycle when the remote moved ahead."""
    fake_git.on("push", exit_code=1, stderr=REJECTED)
    fake_git.on("push", exit_code=0)

    engine.run(config, SyncTrigger.PERIODIC)

    assert fake_git.verbs() == ["add", "status", "pull", "push", "pull", "push"]
    assert engine.status.snapshot().last_error is None


def test_push_retry_failure_is_fatal(
    fake_git: FakeGit,
    no_bootstrap: MagicMock,
    engine: SyncEngine,
    config: SyncConfig,
    index: MagicMock,
) -> None:
    """Verifies that a second rejection surfaces with the push prefix."""
    fake_git.on("push", exit_code=1, stderr=REJECTED)

    with pytest.raises(RepositoryError) as exc:
        engine.run(config, SyncTrigger.PERIODIC)

    assert str(exc.value).startswith("Failed to push to origin/main")
    assert fake_git.verbs().count("push") == 2
    assert fake_git.verbs().count("pull") == 2
    index.rebuild.assert_not_called()

    status = engine.status.snapshot()
    assert status.syncing is False
    assert status.last_error == str(exc.value)
    assert status.last_sync_at is None


def test_other_push_failure_is_not_retried(
    fake_git: FakeGit, no_bootstrap: MagicMock, engine: SyncEngine, config: SyncConfig
) -> None:
    fake_git.on("push", exit_code=128, stderr="remote: Permission denied")

    with pytest.raises(RepositoryError, match="Failed to push to origin/main"):
        engine.run(config, SyncTrigger.PERIODIC)

    assert fake_git.verbs().count("push") == 1


def test_failure_aborts_remaining_steps(
    fake_git: FakeGit, no_bootstrap: MagicMock, engine: SyncEngine, config: SyncConfig
) -> None:
    """Verifies that a pull failure prevents the push."""
    fake_git.on("pull", exit_code=1, stderr="fatal: unable to access remote")

    with pytest.raises(RepositoryError, match="Failed to pull from origin/main"):
        engine.run(config, SyncTrigger.PERIODIC)

    assert "push" not in fake_git.verbs()


def test_bootstrap_failure_recorded(
    mocker: MagicMock, engine: SyncEngine, config: SyncConfig
) -> None:
    mocker.patch(
        "notesync.ops.ensure_ready",
        side_effect=RepositoryError("Failed to add origin remote: locked"),
    )

    with pytest.raises(RepositoryError):
        engine.run(config, SyncTrigger.STARTUP)

    assert engine.status.snapshot().last_error == "Failed to add origin remote: locked"


def test_os_error_becomes_repository_error(
    mocker: MagicMock, engine: SyncEngine, config: SyncConfig
) -> None:
    mocker.patch.object(engine.folders, "resolve", side_effect=PermissionError("denied"))

    with pytest.raises(RepositoryError, match="denied"):
        engine.run(config, SyncTrigger.STARTUP)

    assert engine.status.snapshot().syncing is False


def test_syncing_flag_set_during_run(
    mocker: MagicMock, engine: SyncEngine, config: SyncConfig
) -> None:
    """Verifies that `syncing` is visible while the pipeline executes."""
    seen = {}

    def pipeline(*_args: object) -> None:
        seen["syncing"] = engine.status.snapshot().syncing

    mocker.patch.object(engine, "_pipeline", side_effect=pipeline)
    engine.status.set(last_error="old")

    engine.run(config, SyncTrigger.MANUAL)

    assert seen["syncing"] is True
    assert engine.status.snapshot().syncing is False
    assert engine.status.snapshot().last_error is None


def test_index_rebuild_failure_is_recorded(
    mocker: MagicMock, engine: SyncEngine, config: SyncConfig, index: MagicMock
) -> None:
    mocker.patch.object(engine, "_pipeline")
    index.rebuild.side_effect = RuntimeError("index locked")

    engine.run(config, SyncTrigger.MANUAL)

    status = engine.status.snapshot()
    assert status.last_error == "Sync succeeded but index rebuild failed: index locked"
    assert status.last_sync_at is not None


def test_concurrent_runs_never_overlap(
    mocker: MagicMock, engine: SyncEngine, config: SyncConfig
) -> None:
    """Verifies that the engine lock serializes pipelines from any thread."""
    active = 0
    max_active = 0
    guard = threading.Lock()

    def pipeline(*_args: object) -> None:
        nonlocal active, max_active
        with guard:
            active += 1
            max_active = max(max_active, active)
        time.sleep(0.02)
        with guard:
            active -= 1

    mocker.patch.object(engine, "_pipeline", side_effect=pipeline)

    threads = [
        threading.Thread(target=engine.run, args=(config, trigger))
        for trigger in (SyncTrigger.PERIODIC, SyncTrigger.MANUAL) * 3
    ]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert max_active == 1
    assert engine._pipeline.call_count == 6


def test_prepare_repository_only_bootstraps(
    tmp_path: Path, no_bootstrap: MagicMock, fake_git: FakeGit, engine: SyncEngine
) -> None:
    status = engine.prepare_repository(" Inbox ", f" {REMOTE} ")

    no_bootstrap.assert_called_once()
    assert fake_git.calls == []
    assert status.linked_folder == "Inbox"
    assert status.remote_url == REMOTE
    assert status.branch == "main"
    assert status.enabled is True


def test_prepare_repository_validates(engine: SyncEngine) -> None:
    with pytest.raises(ConfigurationError):
        engine.prepare_repository("Inbox", "  ")


def test_sync_now_uses_manual_trigger(
    mocker: MagicMock, engine: SyncEngine
) -> None:
    mock_run = mocker.patch.object(engine, "run")

    status = engine.sync_now("Inbox", REMOTE, "notes")

    config, trigger = mock_run.call_args[0]
    assert trigger is SyncTrigger.MANUAL
    assert config.branch == "notes"
    assert status.branch == "notes"


def test_get_sync_status_reports_repo_state(
    tmp_path: Path, engine: SyncEngine
) -> None:
    """Verifies `repo_initialized` follows the .git directory without creating it."""
    config = SyncConfig(enabled=True, shared_folder="Inbox", remote_url=REMOTE)

    assert engine.get_sync_status(config).repo_initialized is False
    assert not (tmp_path / "Inbox").exists()

    (tmp_path / "Inbox" / ".git").mkdir(parents=True)
    engine.status.set(pending_changes=True)
    status = engine.get_sync_status(config)

    assert status.repo_initialized is True
    assert status.pending_changes is True
    assert status.linked_folder == "Inbox"


def test_get_sync_status_without_config(engine: SyncEngine) -> None:
    status = engine.get_sync_status()
    assert status.enabled is False
    assert status.linked_folder is None
    assert status.remote_url is None
    assert status.branch == "main"
    assert status.repo_initialized is False


def test_separately_built_engines_never_overlap(
    tmp_path: Path, mocker: MagicMock, config: SyncConfig
) -> None:
    """Verifies that the daemon's engine and the CLI's engine exclude each other."""
    conf = Config()
    conf.core.notes_root = tmp_path
    engines = [daemon.build_engine(conf), cli._engine(conf)]
    assert engines[0]._lock is not engines[1]._lock

    active = 0
    max_active = 0
    guard = threading.Lock()

    def pipeline(*_args: object) -> None:
        nonlocal active, max_active
        with guard:
            active += 1
            max_active = max(max_active, active)
        time.sleep(0.05)
        with guard:
            active -= 1

    for engine in engines:
        mocker.patch.object(engine, "_pipeline", side_effect=pipeline)

    threads = [
        threading.Thread(target=engine.run, args=(config, SyncTrigger.MANUAL))
        for engine in engines * 2
    ]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert max_active == 1
    assert sum(e._pipeline.call_count for e in engines) == 4


def test_run_waits_for_lock_held_elsewhere(
    tmp_path: Path, mocker: MagicMock, config: SyncConfig
) -> None:
    """Verifies that a sync blocks while another process holds the sync lock."""
    lock_file = tmp_path / "sync.lock"
    engine = SyncEngine(folders=FolderResolver(tmp_path), lock_file=lock_file)
    started = threading.Event()
    mocker.patch.object(engine, "_pipeline", side_effect=lambda *_: started.set())

    with open(lock_file, "a") as held:
        fcntl.flock(held.fileno(), fcntl.LOCK_EX)
        worker = threading.Thread(target=engine.run, args=(config, SyncTrigger.MANUAL))
        worker.start()
        assert not started.wait(0.2)
        fcntl.flock(held.fileno(), fcntl.LOCK_UN)

    worker.join(timeout=5)
    assert started.is_set()
    assert engine.status.snapshot().syncing is False


def test_unopenable_lock_is_recorded(
    tmp_path: Path, mocker: MagicMock, config: SyncConfig
) -> None:
    blocker = tmp_path / "not-a-dir"
    blocker.write_text("")
    engine = SyncEngine(
        folders=FolderResolver(tmp_path), lock_file=blocker / "sync.lock"
    )
    mock_pipeline = mocker.patch.object(engine, "_pipeline")

    with pytest.raises(RepositoryError, match="Failed to open sync lock"):
        engine.run(config, SyncTrigger.MANUAL)

    mock_pipeline.assert_not_called()
    assert engine.status.snapshot().last_error.startswith("Failed to open sync lock")
