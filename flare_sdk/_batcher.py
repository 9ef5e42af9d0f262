import os
import threading
from typing import TYPE_CHECKING, TypeVar, Generic

from flare_sdk.envelope import Envelope
from flare_sdk.utils import datetime_utcnow, format_timestamp, logger

if TYPE_CHECKING:
    from typing import Optional, Callable, List

T = TypeVar("T")


class Batcher(Generic[T]):
    """Collects items and sends them in batches.

    A batch goes out when `MAX_BEFORE_FLUSH` items are buffered (flushed
    inline by the thread adding the last one), when the background flusher
    wakes up every `FLUSH_WAIT_TIME` seconds, on `flush()` and on `kill()`.
    An empty buffer never produces an envelope.
    """

    MAX_BEFORE_FLUSH = 100
    FLUSH_WAIT_TIME = 5.0

    def __init__(
        self,
        capture_func: "Callable[[Envelope], None]",
    ) -> None:
        self._buffer: "List[T]" = []
        self._capture_func = capture_func
        self._running = True
        self._lock = threading.Lock()
        self._wakeup = threading.Condition(self._lock)

        self._flusher: "Optional[threading.Thread]" = None
        self._flusher_pid: "Optional[int]" = None

    def _ensure_thread(self) -> bool:
        """For forking processes we might need to restart this thread.
        This ensures that our process actually has that thread running.
        """
        if not self._running:
            return False

        pid = os.getpid()
        if self._flusher_pid == pid:
            return True

        with self._lock:
            # Recheck to make sure another thread didn't get here and start the
            # the flusher in the meantime
            if self._flusher_pid == pid:
                return True

            self._flusher_pid = pid

            self._flusher = threading.Thread(
                target=self._flush_loop, name="flare-sdk.%s" % type(self).__name__
            )
            self._flusher.daemon = True

            try:
                self._flusher.start()
            except RuntimeError:
                # Unfortunately at this point the interpreter is in a state that no
                # longer allows us to spawn a thread and we have to bail.
                self._running = False
                return False

        return True

    def _flush_loop(self) -> None:
        while True:
            with self._wakeup:
                if not self._running:
                    return
                self._wakeup.wait(self.FLUSH_WAIT_TIME)
                if not self._running:
                    return
            self._flush()

    def add(self, item: "T") -> None:
        if not self._ensure_thread():
            logger.debug("%s is shut down, dropping item", type(self).__name__)
            return None

        items = None
        with self._lock:
            self._buffer.append(item)
            if len(self._buffer) >= self.MAX_BEFORE_FLUSH:
                items = self._take_buffer()

        if items:
            self._send(items)

    def kill(self) -> None:
        """Stops the flusher thread and sends whatever is still buffered."""
        with self._wakeup:
            was_running = self._running
            self._running = False
            self._wakeup.notify_all()

        flusher = self._flusher
        self._flusher = None
        if (
            was_running
            and flusher is not None
            and flusher is not threading.current_thread()
        ):
            flusher.join()

        self._flush()

    def flush(self) -> None:
        self._flush()

    def _take_buffer(self) -> "List[T]":
        # Called with the lock held.
        items = self._buffer
        self._buffer = []
        return items

    def _add_to_envelope(self, envelope: "Envelope", items: "List[T]") -> None:
        raise NotImplementedError()

    def _flush(self) -> "Optional[Envelope]":
        with self._lock:
            items = self._take_buffer()
        return self._send(items)

    def _send(self, items: "List[T]") -> "Optional[Envelope]":
        if not items:
            return None

        envelope = Envelope(headers={"sent_at": format_timestamp(datetime_utcnow())})
        self._add_to_envelope(envelope, items)
        self._capture_func(envelope)
        return envelope
