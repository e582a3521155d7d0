from __future__ import annotations

import errno
import fcntl
import logging
import os
import re
import tempfile
import time
from collections.abc import Iterable
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator

from .errors import ConcurrentTransitionError, ConfigurationError, DirectoryError, MoveError, ValidationError
from .models import DIRECTION_STAGES, STAGE_LOCATIONS, Direction, Role, Stage

logger = logging.getLogger(__name__)

_UNSAFE_FILENAME_CHARS = re.compile(r"[^-@.a-zA-Z0-9]")
_DIRECTORY_MODE = 0o700
_LOCKS_DIR = ".locks"
_OUTBOUND_DIR = "outbound"
_LOCK_POLL_SECONDS = 0.05


# ---------------------------------------------------------------------------
# Naming helpers
# ---------------------------------------------------------------------------

def sanitize_message_id(message_id: str) -> str:
    """Map a message identifier onto the on-disk filename alphabet.

    Every character outside letters, digits, ``-``, ``@`` and ``.`` becomes
    ``_``. The mapping is one-way and stable.

    Raises:
        ValidationError: If the result is empty or made of dots only.
    """
    safe = _UNSAFE_FILENAME_CHARS.sub("_", message_id)
    if not safe.strip("."):
        raise ValidationError(f"message id {message_id!r} has no usable filename characters")
    return safe


def validate_partnership_name(partnership: str) -> str:
    """Return *partnership* as a normalized relative path.

    Raises:
        ConfigurationError: If the name is empty, absolute, or escapes the root.
    """
    name = partnership.strip().strip("/")
    if not name:
        raise ConfigurationError("partnership name must be non-empty")
    parts = name.split("/")
    if any(part in ("..", ".", "") for part in parts) or "\\" in name:
        raise ConfigurationError(f"partnership name must be a plain relative path, got: {partnership!r}")
    return "/".join(parts)


def create_directories(directories: Iterable[Path], *, context: str = "init") -> list[Path]:
    """Create every missing directory with owner-only permissions.

    Existing directories are left untouched. All directories are attempted
    before reporting, and nothing already created is removed on failure.

    Returns:
        The directories that were created by this call.

    Raises:
        DirectoryError: Listing every directory that could not be created.
    """
    created: list[Path] = []
    errors: list[Path] = []
    for directory in directories:
        if directory.is_dir():
            continue
        try:
            directory.mkdir(mode=_DIRECTORY_MODE, parents=True, exist_ok=True)
        except OSError as exc:
            logger.error("<%s> Error creating directory %s: %s", context, directory, exc)
            errors.append(directory)
            continue
        logger.debug("<%s> Created directory %s", context, directory)
        created.append(directory)
    if errors:
        raise DirectoryError(errors)
    return created


# ---------------------------------------------------------------------------
# File helpers
# ---------------------------------------------------------------------------

def atomic_write(path: Path, content: str | bytes) -> None:
    """Write *content* to *path* atomically.

    Writes to a temporary file in the same directory, then renames
    (``os.replace``) into place so a crash never leaves a partial record.
    """
    data = content.encode("utf-8") if isinstance(content, str) else content
    fd, tmp_path = tempfile.mkstemp(dir=str(path.parent), prefix=f".{path.name}.", suffix=".tmp")
    try:
        with os.fdopen(fd, "wb") as tmp_handle:
            tmp_handle.write(data)
            tmp_handle.flush()
            os.fsync(tmp_handle.fileno())
        os.replace(tmp_path, str(path))
    except BaseException:
        try:
            os.unlink(tmp_path)
        except OSError:
            pass
        raise


# ---------------------------------------------------------------------------
# DirectoryStore
# ---------------------------------------------------------------------------

class DirectoryStore:
    """Role directories per partnership under a single file-store root.

    The location of a message file is its lifecycle stage: a rename between
    role directories is the only way a message changes stage. Transitions for
    one ``(partnership, direction, message id)`` are serialized through an
    ``fcntl`` lock sidecar kept outside the role directories and removed
    again on release.
    """

    def __init__(self, root: Path, *, lock_timeout: float = 0.0) -> None:
        self.root = root
        self.lock_timeout = lock_timeout

    # ------------------------------------------------------------------
    # Addressing
    # ------------------------------------------------------------------

    def partnership_root(self, partnership: str) -> Path:
        return self.root / validate_partnership_name(partnership)

    def role_dir(self, partnership: str, role: Role) -> Path:
        return self.partnership_root(partnership) / role.value

    def locate(self, partnership: str, role: Role, message_id: str, suffix: str = "") -> Path:
        """Return the path for *message_id* in *role*, sanitizing the identifier."""
        return self.role_dir(partnership, role) / f"{sanitize_message_id(message_id)}{suffix}"

    def ensure(self, partnership: str, *roles: Role, message_id: str = "init") -> dict[Role, Path]:
        """Create the partnership root and the given role directories.

        Raises:
            DirectoryError: If any of them could not be created.
        """
        parent = self.partnership_root(partnership)
        directories = {role: parent / role.value for role in roles}
        create_directories([parent, *directories.values()], context=message_id)
        return directories

    # ------------------------------------------------------------------
    # Writes and moves
    # ------------------------------------------------------------------

    def write(self, path: Path, content: str | bytes) -> Path:
        atomic_write(path, content)
        return path

    def commit(self, source: Path, destination: Path, *, supersedes: Iterable[Path] = ()) -> bool:
        """Rename *source* onto *destination*, overwriting silently.

        Any path in *supersedes* other than *destination* is removed first so
        a message never has two terminal files at once.

        Returns:
            True if an existing destination file was overwritten.

        Raises:
            MoveError: If the rename fails.
        """
        for stale in supersedes:
            if stale != destination and stale.is_file():
                logger.warning("Replacing terminal file %s with %s", stale, destination)
                stale.unlink()
        overwrote = destination.is_file()
        try:
            os.replace(source, destination)
        except OSError as exc:
            raise MoveError(f"cannot move {source} to {destination}: {exc}") from exc
        return overwrote

    # ------------------------------------------------------------------
    # Stage inference
    # ------------------------------------------------------------------

    def stage(self, partnership: str, direction: Direction, message_id: str) -> Stage | None:
        """Infer the furthest stage reached by scanning directory and suffix."""
        for stage in DIRECTION_STAGES[direction]:
            role, suffix = STAGE_LOCATIONS[stage]
            if self.locate(partnership, role, message_id, suffix).is_file():
                return stage
        return None

    # ------------------------------------------------------------------
    # Locking
    # ------------------------------------------------------------------

    @contextmanager
    def lock(self, partnership: str, direction: Direction, message_id: str) -> Iterator[None]:
        """Hold the exclusive transition lock for one message identifier.

        Raises:
            ConcurrentTransitionError: If the lock is still held by another
                operation once ``lock_timeout`` has elapsed.
        """
        lock_dir = self.partnership_root(partnership) / _LOCKS_DIR / direction.value
        with self._hold(lock_dir / f"{sanitize_message_id(message_id)}.lock"):
            yield

    @contextmanager
    def outbound(self, partnership: str, message_id: str) -> Iterator[None]:
        """Reserve the outbound POST of one message identifier.

        Independent of the send transition lock, so a receipt for the message
        can still be recorded while the POST is in flight.
        """
        lock_dir = self.partnership_root(partnership) / _LOCKS_DIR / _OUTBOUND_DIR
        with self._hold(lock_dir / f"{sanitize_message_id(message_id)}.lock"):
            yield

    @contextmanager
    def _hold(self, lock_path: Path) -> Iterator[None]:
        # The lock file is removed on release. A waiter that locked a file
        # which was removed meanwhile reopens the path and tries again.
        lock_path.parent.mkdir(mode=_DIRECTORY_MODE, parents=True, exist_ok=True)
        deadline = time.monotonic() + self.lock_timeout
        while True:
            with lock_path.open("a+", encoding="utf-8") as lock_handle:
                self._acquire(lock_handle.fileno(), lock_path, deadline)
                if not _is_current(lock_handle.fileno(), lock_path):
                    continue
                try:
                    yield
                finally:
                    lock_path.unlink(missing_ok=True)
                    fcntl.flock(lock_handle.fileno(), fcntl.LOCK_UN)
                return

    def _acquire(self, fileno: int, lock_path: Path, deadline: float) -> None:
        while True:
            try:
                fcntl.flock(fileno, fcntl.LOCK_EX | fcntl.LOCK_NB)
                return
            except OSError as exc:
                if exc.errno not in (errno.EAGAIN, errno.EACCES):
                    raise
            if time.monotonic() >= deadline:
                raise ConcurrentTransitionError(f"transition already in progress: {lock_path}")
            time.sleep(_LOCK_POLL_SECONDS)


def _is_current(fileno: int, lock_path: Path) -> bool:
    try:
        return os.path.samestat(os.fstat(fileno), os.stat(lock_path))
    except FileNotFoundError:
        return False
