"""Exception hierarchy raised by the sync engine."""


class SyncError(Exception):
    """Base class for every failure surfaced by a sync attempt."""


class ConfigurationError(SyncError):
    """The folder, remote or branch is missing or invalid.

    Raised before any filesystem or git access takes place.
    """


class RepositoryError(SyncError):
    """A git invocation failed in a way the engine could not handle."""
