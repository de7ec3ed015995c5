import logging
import queue
import signal
import sys
import threading
import time
from collections.abc import Callable
from dataclasses import dataclass
from logging.handlers import RotatingFileHandler
from types import FrameType

from .config import Config, SettingsStore
from .constants import (
    APP_NAME,
    DEBOUNCE_SECONDS,
    DEFAULT_SYNC_INTERVAL,
    LOG_FILE,
    RUNTIME_STATUS_FILE,
    WORKER_POLL_SECONDS,
)
from .errors import ConfigurationError, SyncError
from .folders import FolderResolver
from .ops import SyncEngine, SyncTrigger
from .status import StatusStore
from .system import SystemStrategy, get_system

logger = logging.getLogger(APP_NAME)
logger.setLevel(logging.INFO)


@dataclass(frozen=True)
class NoteChanged:
    """A note in `folder` was saved, updated, deleted or moved."""

    folder: str


@dataclass(frozen=True)
class ForceSync:
    """Sync immediately, labelled with `trigger`."""

    trigger: SyncTrigger = SyncTrigger.STARTUP


_STOP = object()


class SyncWorker:
    """Decides when to sync and runs the engine on a single background thread.

    Note changes are coalesced: each qualifying change pushes the debounce
    deadline DEBOUNCE_SECONDS into the future, so a burst of edits produces a
    single sync. Independently, a periodic sync runs every configured
    interval. Errors from a sync are recorded in the engine's status and never
    stop the thread.

    Attributes:
        engine (SyncEngine): Runs the actual pipeline.
        settings (SettingsStore): Re-read before every sync.
    """

    def __init__(
        self,
        engine: SyncEngine,
        settings: SettingsStore,
        clock: Callable[[], float] = time.monotonic,
        poll_interval: float = WORKER_POLL_SECONDS,
        system: SystemStrategy | None = None,
    ):
        self.engine = engine
        self.settings = settings
        self.clock = clock
        self.poll_interval = poll_interval
        self.system = system or get_system()
        self.queue: queue.Queue = queue.Queue()
        self.debounce_deadline: float | None = None
        self.next_periodic: float | None = None
        self._thread: threading.Thread | None = None
        self._last_notified_error: str | None = None

    # --- Fire-and-forget entry points ---

    def notify_note_changed(self, folder: str) -> None:
        self.queue.put(NoteChanged(folder))

    def notify_force_sync(self, trigger: SyncTrigger = SyncTrigger.STARTUP) -> None:
        self.queue.put(ForceSync(trigger))

    def settings_saved(self) -> None:
        """Called by the host after it persisted new settings."""
        self.notify_force_sync(SyncTrigger.STARTUP)

    # --- Lifecycle ---

    def start(self) -> None:
        """Starts the worker thread and queues the startup sync."""
        if self._thread is not None and self._thread.is_alive():
            return
        self._thread = threading.Thread(
            target=self._loop, name="notesync-worker", daemon=True
        )
        self._thread.start()
        self.notify_force_sync(SyncTrigger.STARTUP)

    def stop(self, timeout: float | None = None) -> None:
        """Asks the worker to exit after its current sync and waits for it."""
        if self._thread is None:
            return
        self.queue.put(_STOP)
        self._thread.join(timeout)
        self._thread = None

    def _loop(self) -> None:
        self.reset_periodic()
        while True:
            try:
                message = self.queue.get(timeout=self.poll_interval)
            except queue.Empty:
                message = None

            if message is _STOP:
                break

            try:
                if message is not None:
                    self.handle(message)
                self.tick()
            except Exception:
                logger.exception("WORKER ERROR: Unexpected failure, continuing.")

        logger.info("Worker stopped.")

    # --- Scheduling ---

    def handle(self, message: NoteChanged | ForceSync) -> None:
        """Applies one inbound message."""
        if isinstance(message, NoteChanged):
            if self._is_linked(message.folder):
                self.debounce_deadline = self.clock() + DEBOUNCE_SECONDS
                self.engine.status.set(pending_changes=True)
        elif isinstance(message, ForceSync):
            self.run_from_settings(message.trigger)
            self.reset_periodic()

    def tick(self) -> None:
        """Runs any sync whose deadline has passed."""
        if self.next_periodic is None:
            self.reset_periodic()

        deadline = self.debounce_deadline
        if deadline is not None and self.clock() >= deadline:
            self.run_from_settings(SyncTrigger.DEBOUNCED_SAVE)
            self.debounce_deadline = None
            self.engine.status.set(pending_changes=False)
            self.reset_periodic()

        if self.next_periodic is not None and self.clock() >= self.next_periodic:
            self.run_from_settings(SyncTrigger.PERIODIC)
            self.reset_periodic()

    def reset_periodic(self) -> None:
        self.next_periodic = self.clock() + self.periodic_interval()

    def periodic_interval(self) -> int:
        """The configured interval (floored), or the default if unreadable."""
        try:
            return self.settings.get().effective_interval
        except Exception as e:
            logger.warning(f"Could not read sync interval: {e}")
            return DEFAULT_SYNC_INTERVAL

    def _is_linked(self, folder: str) -> bool:
        try:
            return self.settings.get().is_linked(folder)
        except Exception as e:
            logger.warning(f"Could not read settings: {e}")
            return False

    # --- Execution ---

    def run_from_settings(self, trigger: SyncTrigger) -> None:
        """Syncs with the saved settings, recording any failure in status."""
        try:
            config = self.settings.get()
        except Exception as e:
            message = f"Failed to load settings: {e}"
            logger.error(message)
            self.engine.status.set(last_error=message)
            return

        if not config.enabled:
            return

        try:
            self.engine.run(config, trigger)
        except ConfigurationError as e:
            self.engine.status.set(last_error=str(e))
            self._notify_failure(str(e))
        except SyncError as e:
            self._notify_failure(str(e))
        else:
            self._last_notified_error = None

    def _notify_failure(self, message: str) -> None:
        # Only notify once per distinct error to avoid spamming every interval.
        if message == self._last_notified_error:
            return
        self._last_notified_error = message
        self.system.notify("Note sync failed", message)


def setup_logging(interactive: bool, max_log_size: int = 5 * 1024 * 1024) -> None:
    """Configures the logging subsystem.

    Args:
        interactive (bool): If True, logs to stdout. If False, logs to stderr
                            and a rotating log file.
        max_log_size (int): Bytes before the log file is rotated.
    """
    if logger.handlers:
        return

    formatter = logging.Formatter(
        "[%(asctime)s] %(levelname)s: %(message)s", "%Y-%m-%d %H:%M:%S"
    )

    stream_handler = logging.StreamHandler(
        sys.stderr if not interactive else sys.stdout
    )
    stream_handler.setFormatter(formatter)
    logger.addHandler(stream_handler)

    if not interactive:
        try:
            LOG_FILE.parent.mkdir(parents=True, exist_ok=True)
            file_handler = RotatingFileHandler(
                LOG_FILE,
                maxBytes=max_log_size,
                backupCount=5,
            )
        except OSError as e:
            logger.warning(f"File logging disabled: {e}")
            return
        file_handler.setFormatter(formatter)
        logger.addHandler(file_handler)


def build_engine(config: Config, status: StatusStore | None = None) -> SyncEngine:
    """Creates the process-wide engine from the loaded configuration."""
    return SyncEngine(
        folders=FolderResolver(config.core.notes_root),
        status=status,
        git_timeout=config.core.git_timeout,
    )


def main(interactive: bool = False) -> None:
    """Runs the background worker until SIGINT or SIGTERM.

    Args:
        interactive (bool, optional): Log to stdout instead of the log file.
                                      Defaults to False.
    """
    store = SettingsStore()
    config = store.load()
    setup_logging(interactive, config.limits.max_log_size)

    # Starting fresh replaces whatever a previous worker left behind.
    status = StatusStore(publish_to=RUNTIME_STATUS_FILE)
    worker = SyncWorker(build_engine(config, status), store)
    stop_event = threading.Event()

    def stop_handler(_signum: int, _frame: FrameType | None) -> None:
        stop_event.set()

    signal.signal(signal.SIGINT, stop_handler)
    signal.signal(signal.SIGTERM, stop_handler)

    logger.info(f"Worker started (folder: {config.sync.shared_folder or '-'}).")
    worker.start()
    while not stop_event.wait(1.0):
        pass
    worker.stop(timeout=30)
    status.close()


if __name__ == "__main__":
    main()
