"""Failure taxonomy for the message lifecycle.

Every error carries the HTTP status the routing layer answers with, so no
operation can fail without a well-formed response. Transport failures and
uncorrelated receipts are not errors: they are outcomes recorded on disk.
"""

from __future__ import annotations

from collections.abc import Iterable
from pathlib import Path


class As2Error(RuntimeError):
    """Base class for every failure surfaced by the lifecycle core."""

    status_code: int = 500


class ValidationError(As2Error):
    """A required request header or identifier is missing or unusable."""

    status_code = 404


class ConfigurationError(As2Error):
    """The partnership cannot be resolved or its configuration is malformed."""


class DirectoryError(As2Error):
    """One or more role directories could not be created.

    Directories created before the failure are not rolled back.
    """

    def __init__(self, paths: Iterable[Path]) -> None:
        self.paths = [Path(path) for path in paths]
        joined = " ".join(str(path) for path in self.paths)
        super().__init__(f"Error creating directories: {joined}")


class MoveError(As2Error):
    """A stage transition rename failed."""


class StateCorruptionError(As2Error):
    """A deferred receipt cannot be rebuilt from the RECEIVING state file."""


class ProtocolError(As2Error):
    """The protocol engine could not decode a message or receipt."""


class ConcurrentTransitionError(As2Error):
    """Another operation holds the lock for the same message identifier."""

    status_code = 409


class IllegalTransitionError(As2Error):
    """The requested stage change would move a message backwards."""

    status_code = 409
