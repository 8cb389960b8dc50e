"""Per-project advisory locks."""

import fcntl
import os
from pathlib import Path
from types import TracebackType

from devhost.errors import InvalidName, ProjectBusy


class ProjectLock:
    """Non-blocking exclusive lock keyed by project name.

    Usage:
        with ProjectLock(config.lock_dir, "blog"):
            ...  # raises ProjectBusy if another invocation holds it
    """

    def __init__(self, lock_dir: Path, name: str) -> None:
        self.lock_dir = lock_dir
        if not name or "/" in name or name.startswith("."):
            raise InvalidName(name)
        self.name = name
        self.path = lock_dir / f"{name}.lock"
        self._fd: int | None = None
        self._discard = False

    def acquire(self) -> None:
        self.lock_dir.mkdir(parents=True, exist_ok=True)
        fd = os.open(self.path, os.O_RDWR | os.O_CREAT, 0o660)
        try:
            fcntl.flock(fd, fcntl.LOCK_EX | fcntl.LOCK_NB)
        except BlockingIOError:
            os.close(fd)
            raise ProjectBusy(self.name)
        self._fd = fd

    def discard(self) -> None:
        """Remove the lock file on release, once the project is gone."""
        self._discard = True

    def release(self) -> None:
        if self._fd is None:
            return
        try:
            if self._discard:
                self.path.unlink(missing_ok=True)
            fcntl.flock(self._fd, fcntl.LOCK_UN)
        finally:
            os.close(self._fd)
            self._fd = None

    @property
    def held(self) -> bool:
        return self._fd is not None

    def __enter__(self) -> "ProjectLock":
        self.acquire()
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        self.release()
