import argparse
import json
import os
import subprocess
import sys

from rich.console import Console
from rich.table import Table
from rich.text import Text

from . import daemon
from .config import CONFIG_FILE, Config
from .constants import LOG_FILE, RUNTIME_STATUS_FILE
from .errors import ConfigurationError, SyncError
from .ops import SyncEngine
from .status import StatusStore, SyncStatus, load_published

console = Console()
err_console = Console(stderr=True)


def render_status(status: SyncStatus) -> Table:
    """Builds a two-column table describing a `SyncStatus`."""
    table = Table(title="Note Sync Status", show_header=False, expand=False)
    table.add_column("Field", style="bold")
    table.add_column("Value")

    table.add_row(
        "Enabled",
        Text("yes", style="green") if status.enabled else Text("no", style="red"),
    )
    table.add_row("Folder", status.linked_folder or "[dim]not linked[/dim]")
    table.add_row("Remote", status.remote_url or "[dim]not set[/dim]")
    table.add_row("Branch", status.branch)
    table.add_row("Repository", "initialized" if status.repo_initialized else "missing")
    table.add_row("Pending", "yes" if status.pending_changes else "no")
    table.add_row("Syncing", "yes" if status.syncing else "no")
    table.add_row("Last Sync", status.last_sync_at or "Never")
    if status.last_error:
        table.add_row("Last Error", Text(status.last_error, style="bold red"))
    return table


def _engine(config: Config) -> SyncEngine:
    return daemon.build_engine(config)


def prepare(folder: str, remote_url: str, branch: str | None) -> int:
    """Bootstraps the repository for a folder without syncing."""
    engine = _engine(Config.load())
    try:
        with console.status("Preparing repository...", spinner="dots"):
            status = engine.prepare_repository(folder, remote_url, branch)
    except SyncError as e:
        err_console.print(f"[bold red]ERROR:[/bold red] {e}")
        return 1
    console.print(
        f"[bold green]SUCCESS:[/bold green] {status.linked_folder} is ready "
        f"on '{status.branch}'."
    )
    return 0


def sync(folder: str, remote_url: str, branch: str | None) -> int:
    """Runs a manual sync and reports the outcome."""
    engine = _engine(Config.load())
    try:
        with console.status(f"Syncing {folder.strip()}...", spinner="dots"):
            status = engine.sync_now(folder, remote_url, branch)
    except ConfigurationError as e:
        err_console.print(f"[bold red]CONFIG ERROR:[/bold red] {e}")
        return 2
    except SyncError as e:
        err_console.print(f"[bold red]SYNC ERROR:[/bold red] {e}")
        return 1

    console.print(f"[bold green]SUCCESS:[/bold green] Synced at {status.last_sync_at}.")
    if status.last_error:
        console.print(f"[yellow]WARNING:[/yellow] {status.last_error}")
    return 0


def show_status(as_json: bool = False) -> None:
    """Displays the configured folder and the worker's live state."""
    config = Config.load()
    # The worker runs in another process; report what it last published.
    live = StatusStore(initial=load_published(RUNTIME_STATUS_FILE))
    status = daemon.build_engine(config, live).get_sync_status(config.sync)
    if as_json:
        print(json.dumps(status.to_dict(), indent=2))
        return
    console.print(render_status(status))


def open_config() -> None:
    """Opens the configuration file in the user's editor, creating it if needed."""
    if not CONFIG_FILE.exists():
        CONFIG_FILE.parent.mkdir(parents=True, exist_ok=True)
        with open(CONFIG_FILE, "w") as f:
            f.write(
                "# notesync configuration\n\n"
                "[sync]\n"
                "enabled = false\n"
                'shared_folder = ""\n'
                'remote_url = ""\n'
                'branch = "main"\n'
                'sync_interval_seconds = "5m"\n'
            )

    editor = os.environ.get("EDITOR")
    if not editor:
        editor = "open" if sys.platform == "darwin" else "nano"
    console.print(f"Opening [cyan]{CONFIG_FILE}[/cyan]...")
    try:
        subprocess.run([editor, str(CONFIG_FILE)])
    except OSError as e:
        console.print(f"[red]Could not open editor: {e}[/red]")


def tail_log() -> None:
    """Follows the daemon log file in real-time."""
    if not LOG_FILE.exists():
        console.print(f"[red]No log file found yet at {LOG_FILE}.[/red]")
        return

    console.print(f"Tailing [bold cyan]{LOG_FILE}[/bold cyan] (Ctrl+C to stop)...")
    try:
        subprocess.run(["tail", "-n", "1000", "-f", str(LOG_FILE)])
    except KeyboardInterrupt:
        console.print("\nStopped.", style="dim")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="notesync",
        description="Keep a note folder in sync with a git remote.",
    )
    subparsers = parser.add_subparsers(dest="command")

    for name, help_text in (
        ("prepare", "Initialize the folder's repository without syncing"),
        ("sync", "Commit, pull and push the folder now"),
    ):
        sub = subparsers.add_parser(name, help=help_text)
        sub.add_argument("folder", help="Logical note folder (e.g. 'Inbox')")
        sub.add_argument("remote_url", help="Git remote URL")
        sub.add_argument("--branch", "-b", default=None, help="Branch (default: main)")

    status_parser = subparsers.add_parser("status", help="Show sync status")
    status_parser.add_argument(
        "--json", action="store_true", help="Print the status as JSON"
    )
    subparsers.add_parser("daemon", help="Run the background worker in the foreground")
    subparsers.add_parser("log", help="Tail the daemon log file")
    subparsers.add_parser("config", help="Open the configuration file")
    return parser


def main(argv: list[str] | None = None) -> None:
    """Main entry point for the notesync CLI."""
    parser = build_parser()
    args = parser.parse_args(argv)

    if args.command in ("prepare", "sync"):
        daemon.setup_logging(interactive=True)
        handler = prepare if args.command == "prepare" else sync
        code = handler(args.folder, args.remote_url, args.branch)
        if code:
            sys.exit(code)
        return
    elif args.command == "status":
        show_status(as_json=args.json)
        return
    elif args.command == "daemon":
        daemon.main(interactive=True)
        return
    elif args.command == "log":
        tail_log()
        return
    elif args.command == "config":
        open_config()
        return

    parser.print_help()


if __name__ == "__main__":
    main()
