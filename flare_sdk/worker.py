import os
import threading

from queue import Queue, Full
from time import sleep, time

from flare_sdk.utils import logger
from flare_sdk.consts import DEFAULT_QUEUE_SIZE

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from typing import Any, Optional, Callable


_TERMINATOR = object()


class BackgroundWorker:
    """Runs submitted callbacks on a daemon thread.

    The queue is bounded. `submit` never blocks: when the queue is full the
    callback is rejected and the caller decides what to do with it.
    """

    def __init__(self, queue_size: int = DEFAULT_QUEUE_SIZE) -> None:
        self._queue: "Queue[Any]" = Queue(queue_size)
        self._lock = threading.Lock()
        self._thread: "Optional[threading.Thread]" = None
        self._thread_for_pid: "Optional[int]" = None

    @property
    def is_alive(self) -> bool:
        if self._thread_for_pid != os.getpid():
            return False
        if not self._thread:
            return False
        return self._thread.is_alive()

    def _ensure_thread(self) -> None:
        if not self.is_alive:
            self.start()

    def start(self) -> None:
        with self._lock:
            if not self.is_alive:
                self._thread = threading.Thread(
                    target=self._target, name="flare-sdk.BackgroundWorker"
                )
                self._thread.daemon = True
                try:
                    self._thread.start()
                    self._thread_for_pid = os.getpid()
                except RuntimeError:
                    # At this point we can no longer start because the interpreter
                    # is already shutting down.  Sadly at this point we can no longer
                    # send out envelopes.
                    self._thread = None

    def kill(self) -> None:
        """
        Kill worker thread. Returns immediately. Not useful for
        waiting on shutdown for envelopes, use `flush` for that.
        """
        logger.debug("background worker got kill request")
        with self._lock:
            if self._thread:
                try:
                    self._queue.put_nowait(_TERMINATOR)
                except Full:
                    logger.debug("background worker queue full, kill failed")

                self._thread = None
                self._thread_for_pid = None

    def flush(
        self, timeout: float, callback: "Optional[Callable[[int, float], Any]]" = None
    ) -> bool:
        """Waits until everything submitted so far has been processed.

        An acknowledgement token is pushed through the queue; the result is
        `True` once the worker reached it and `False` if `timeout` elapsed
        first or the worker is gone with work still queued.
        """
        logger.debug("background worker got flush request")
        with self._lock:
            if not self.is_alive:
                return self._queue.empty()
            if timeout <= 0.0:
                return self._queue.empty()
            rv = self._wait_flush(timeout, callback)
        logger.debug("background worker flushed: %s", rv)
        return rv

    def full(self) -> bool:
        return self._queue.full()

    def _wait_flush(
        self, timeout: float, callback: "Optional[Callable[[int, float], Any]]"
    ) -> bool:
        deadline = time() + timeout
        ack = threading.Event()
        try:
            self._queue.put(ack.set, timeout=timeout)
        except Full:
            logger.error("flush timed out, queue stayed full")
            return False

        initial_timeout = min(0.1, max(deadline - time(), 0.0))
        if ack.wait(initial_timeout):
            return True

        pending = self._queue.qsize()
        logger.debug("%d envelope(s) pending on flush", pending)
        if callback is not None:
            callback(pending, timeout)

        if ack.wait(max(deadline - time(), 0.0)):
            return True

        logger.error("flush timed out, dropped %s envelopes", self._queue.qsize())
        return False

    def submit(self, callback: "Callable[[], Any]") -> bool:
        self._ensure_thread()
        try:
            self._queue.put_nowait(callback)
            return True
        except Full:
            return False

    def _target(self) -> None:
        while True:
            callback = self._queue.get()
            try:
                if callback is _TERMINATOR:
                    break
                try:
                    callback()
                except Exception:
                    logger.error("Failed processing job", exc_info=True)
            finally:
                self._queue.task_done()
            sleep(0)
