"""Live sync state shared between the worker and its callers.

The state lives in memory. A worker running in its own process can also
publish every change to a small JSON file so that other processes (the CLI)
report what it is doing.
"""

import contextlib
import datetime
import json
import logging
import os
import threading
from collections.abc import Callable
from dataclasses import asdict, dataclass, fields, replace
from pathlib import Path
from typing import Any

from .constants import APP_NAME

logger = logging.getLogger(APP_NAME)


def now_timestamp() -> str:
    """Returns the current local time as an ISO-8601 string with offset."""
    return datetime.datetime.now().astimezone().isoformat(timespec="seconds")


@dataclass(frozen=True)
class RuntimeStatus:
    """The engine's current state. Reset on every process start.

    Attributes:
        pending_changes (bool): A note change is waiting for its debounce window.
        syncing (bool): A sync pipeline is executing.
        last_sync_at (str | None): Timestamp of the last successful sync.
        last_error (str | None): Message of the most recent failure.
    """

    pending_changes: bool = False
    syncing: bool = False
    last_sync_at: str | None = None
    last_error: str | None = None


class StatusStore:
    """Lock-and-copy holder for a `RuntimeStatus`.

    Updaters receive an immutable snapshot and return the replacement. If an
    updater raises, the error is logged and the previous value stays in place,
    so a faulty writer can never make the store unusable.

    Args:
        initial (RuntimeStatus | None): Starting value. Defaults to a fresh status.
        publish_to (Path | None): If set, every value (including the initial
                                  one) is written there as JSON.
    """

    def __init__(
        self,
        initial: RuntimeStatus | None = None,
        publish_to: Path | None = None,
    ) -> None:
        self._lock = threading.Lock()
        self._status = initial or RuntimeStatus()
        self.publish_to = publish_to
        if publish_to is not None:
            self._publish(self._status)

    def update(self, fn: Callable[[RuntimeStatus], RuntimeStatus]) -> RuntimeStatus:
        """Applies `fn` under the lock and returns the resulting status."""
        with self._lock:
            try:
                self._status = fn(self._status)
            except Exception:
                logger.exception("Status update failed; keeping last good value")
            else:
                if self.publish_to is not None:
                    self._publish(self._status)
            return self._status

    def set(self, **changes: Any) -> RuntimeStatus:
        """Shorthand for `update` with a plain field replacement."""
        return self.update(lambda s: replace(s, **changes))

    def snapshot(self) -> RuntimeStatus:
        """Returns the current status."""
        with self._lock:
            return self._status

    def close(self) -> None:
        """Withdraws the published file, if this store wrote one."""
        if self.publish_to is None:
            return
        with self._lock:
            try:
                self.publish_to.unlink(missing_ok=True)
            except OSError as e:
                logger.warning(f"Could not remove {self.publish_to}: {e}")

    def _publish(self, status: RuntimeStatus) -> None:
        state_file = self.publish_to
        tmp_file = state_file.with_suffix(".tmp")
        data = {"pid": os.getpid(), **asdict(status)}

        try:
            state_file.parent.mkdir(parents=True, exist_ok=True)
            with open(tmp_file, "w") as f:
                json.dump(data, f)

            # Readers never see a partially written file
            os.replace(tmp_file, state_file)
        except OSError as e:
            logger.warning(f"Could not publish status to {state_file}: {e}")
            with contextlib.suppress(OSError):
                tmp_file.unlink(missing_ok=True)


def _process_alive(pid: int) -> bool:
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        # Alive, owned by another user.
        return True
    return True


def load_published(path: Path) -> RuntimeStatus | None:
    """Reads the status a running worker published.

    Args:
        path (Path): The file written by a `StatusStore(publish_to=...)`.

    Returns:
        RuntimeStatus | None: The published status, or None unless a readable
                              file from a still-running worker exists.
    """
    try:
        data = json.loads(path.read_text())
    except FileNotFoundError:
        return None
    except (OSError, ValueError, json.JSONDecodeError) as e:
        logger.warning(f"Ignoring unreadable status file {path}: {e}")
        return None

    if not isinstance(data, dict):
        return None
    pid = data.get("pid")
    if not isinstance(pid, int) or not _process_alive(pid):
        return None

    known = {f.name for f in fields(RuntimeStatus)}
    try:
        return RuntimeStatus(**{k: v for k, v in data.items() if k in known})
    except TypeError:
        return None


@dataclass
class SyncStatus:
    """Configuration plus runtime state, as reported to the host application.

    Attributes:
        enabled (bool): Whether background sync is enabled.
        linked_folder (str | None): The synchronized folder, if any.
        remote_url (str | None): The configured remote, if any.
        branch (str): The synchronized branch.
        repo_initialized (bool): Whether the folder already holds a `.git` directory.
        pending_changes (bool): See `RuntimeStatus`.
        syncing (bool): See `RuntimeStatus`.
        last_sync_at (str | None): See `RuntimeStatus`.
        last_error (str | None): See `RuntimeStatus`.
    """

    enabled: bool
    linked_folder: str | None
    remote_url: str | None
    branch: str
    repo_initialized: bool
    pending_changes: bool
    syncing: bool
    last_sync_at: str | None
    last_error: str | None

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)
