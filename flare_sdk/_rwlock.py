import threading
from contextlib import contextmanager

from flare_sdk.utils import logger

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from typing import Iterator
    from typing import Optional


class RWLock:
    """A reader-writer lock.

    Any number of readers or a single writer. The thread holding the write
    lock may take read locks in blocking mode, so callbacks invoked under the
    write lock can still read. `try_read` fails whenever a writer is active,
    including the calling thread.

    If an exception escapes a write section the lock is marked poisoned. The
    next acquisition logs that and carries on with whatever the guarded data
    looks like now; a failed writer never makes the lock unusable.
    """

    def __init__(self) -> None:
        self._cond = threading.Condition(threading.Lock())
        self._readers = 0
        self._writer: "Optional[int]" = None
        self.poisoned = False

    def _recover(self) -> bool:
        # Called with _cond held; the caller logs once it is released.
        if self.poisoned:
            self.poisoned = False
            return True
        return False

    def _log_recovery(self) -> None:
        logger.debug("Recovering lock poisoned by a failed writer")

    def acquire_read(self, blocking: bool = True) -> bool:
        if not self._cond.acquire(blocking):
            return False
        try:
            if self._writer is not None:
                if not blocking:
                    return False
                if self._writer != threading.get_ident():
                    while self._writer is not None:
                        self._cond.wait()
            recovered = self._recover()
            self._readers += 1
        finally:
            self._cond.release()
        if recovered:
            self._log_recovery()
        return True

    def release_read(self) -> None:
        with self._cond:
            self._readers -= 1
            if not self._readers:
                self._cond.notify_all()

    def acquire_write(self) -> None:
        me = threading.get_ident()
        with self._cond:
            if self._writer == me:
                raise RuntimeError("write lock is not reentrant")
            while self._writer is not None or self._readers:
                self._cond.wait()
            recovered = self._recover()
            self._writer = me
        if recovered:
            self._log_recovery()

    def release_write(self) -> None:
        with self._cond:
            self._writer = None
            self._cond.notify_all()

    @contextmanager
    def read(self) -> "Iterator[None]":
        self.acquire_read()
        try:
            yield
        finally:
            self.release_read()

    @contextmanager
    def try_read(self) -> "Iterator[bool]":
        """Yields whether the read lock was acquired without waiting."""
        acquired = self.acquire_read(blocking=False)
        try:
            yield acquired
        finally:
            if acquired:
                self.release_read()

    @contextmanager
    def write(self) -> "Iterator[None]":
        self.acquire_write()
        try:
            yield
        except BaseException:
            self.poisoned = True
            raise
        finally:
            self.release_write()
