"""Exception types for blame attribution, cloning, and delivery."""

from __future__ import annotations

from enum import Enum


class AttributionError(Exception):
    """Base class for errors raised by this package."""


class BlameErrorKind(str, Enum):
    RUN_GIT_BLAME = "BLAME_CALC_ERROR"
    EMPTY_GIT_BLAME = "EMPTY_GIT_BLAME"
    UNKNOWN_LINES = "UNKNOWN_LINES"


class BlameError(AttributionError):
    """A unit-recoverable blame failure for one file or one resource."""

    def __init__(self, kind: BlameErrorKind, message: str):
        super().__init__(message)
        self.kind = kind


class GitCommandError(AttributionError):
    """A git subprocess exited non-zero.

    ``command`` is already redacted and safe to log.
    """

    def __init__(self, command: str, stderr: str, returncode: int | None = None):
        super().__init__(f"Command failed ({command}): {stderr}")
        self.command = command
        self.stderr = stderr
        self.returncode = returncode


class CloneError(AttributionError):
    """Cloning a repository failed; aborts that repository only."""


class BranchNotFoundError(CloneError):
    """The requested branch does not exist on the remote."""


class CloneStringError(AttributionError):
    """The VCS adapter could not produce a clone string; aborts the run."""


class UnsupportedSourceTypeError(AttributionError):
    pass


class RepositoryAbortedError(AttributionError):
    """Too many consecutive unit failures; the repository looks inaccessible."""


class ViolationSourceError(AttributionError):
    """Pending violations for a repository could not be fetched; fails that repository only."""


class DeliveryError(AttributionError):
    """Handing an attribution chunk to the downstream boundary failed."""
