"""Exception types for external-collaborator failures."""


class PRWatchError(Exception):
    """Base class for prwatch errors."""


class HostingError(PRWatchError):
    """A hosting-service (gh CLI) query failed or returned unusable data."""


class IsolationError(PRWatchError):
    """A clone, fetch or worktree operation failed."""
