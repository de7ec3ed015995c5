"""notesync: Keep a local note folder synchronized with a git remote.

This package provides the sync engine (repository bootstrap, commit, pull with
keep-both-versions conflict resolution, push), the background worker that
decides when to sync, and a small command-line interface.
"""

from . import (
    bootstrap,
    cli,
    config,
    conflicts,
    constants,
    daemon,
    errors,
    folders,
    git_wrapper,
    ops,
    status,
    system,
)

__all__ = [
    "bootstrap",
    "cli",
    "config",
    "conflicts",
    "constants",
    "daemon",
    "errors",
    "folders",
    "git_wrapper",
    "ops",
    "status",
    "system",
]
