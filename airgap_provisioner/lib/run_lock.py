from __future__ import annotations

import fcntl
import logging
import os
from pathlib import Path
from typing import Optional

from ..errors import RunLockedError

logger = logging.getLogger(__name__)


class RunLock:
    """Exclusive, non-blocking lock so only one run touches a set of scopes.

    Backed by flock(2): the kernel drops it if the process dies, so a crashed
    run never leaves a stale lock behind.
    """

    def __init__(self, path: str) -> None:
        self.path = Path(path)
        self._fd: Optional[int] = None

    def acquire(self) -> "RunLock":
        self.path.parent.mkdir(parents=True, exist_ok=True)
        fd = os.open(str(self.path), os.O_RDWR | os.O_CREAT, 0o644)
        try:
            fcntl.flock(fd, fcntl.LOCK_EX | fcntl.LOCK_NB)
        except BlockingIOError:
            holder = ""
            try:
                holder = os.read(fd, 64).decode("utf-8", errors="replace").strip()
            finally:
                os.close(fd)
            raise RunLockedError(
                f"another provisioning run holds {self.path}" + (f" (pid {holder})" if holder else "")
            ) from None
        os.ftruncate(fd, 0)
        os.write(fd, f"{os.getpid()}\n".encode("utf-8"))
        self._fd = fd
        logger.debug("Acquired run lock %s", self.path)
        return self

    def release(self) -> None:
        if self._fd is None:
            return
        try:
            fcntl.flock(self._fd, fcntl.LOCK_UN)
        finally:
            os.close(self._fd)
            self._fd = None

    def __enter__(self) -> "RunLock":
        return self.acquire()

    def __exit__(self, *exc) -> None:
        self.release()
