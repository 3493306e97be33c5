from __future__ import annotations

import logging
import queue
import threading
from typing import Any, Callable

logger = logging.getLogger(__name__)

Job = Callable[[], Any]


class OutboundQueue:
    """
    Bounded one-way queue for fire-and-forget side effects.

    ``send`` never blocks the caller: when the buffer is full the job is
    dropped and a warning is logged. A single daemon worker runs jobs in
    submission order; job failures are logged and never propagated.
    """

    def __init__(self, maxsize: int = 256, name: str = "outbound") -> None:
        self.name = name
        self._queue: queue.Queue[tuple[str, Job] | None] = queue.Queue(maxsize=maxsize)
        self._thread: threading.Thread | None = None
        self._start_guard = threading.Lock()
        self._stopped = False
        self.dropped = 0

    def start(self) -> None:
        with self._start_guard:
            if self._thread and self._thread.is_alive():
                return
            self._stopped = False
            self._thread = threading.Thread(target=self._loop, name=self.name, daemon=True)
            self._thread.start()

    def send(self, label: str, job: Job) -> bool:
        if self._stopped:
            logger.warning("Outbound queue %s stopped; dropping %s", self.name, label)
            self.dropped += 1
            return False
        self.start()
        try:
            self._queue.put_nowait((label, job))
        except queue.Full:
            self.dropped += 1
            logger.warning("Outbound queue %s full; dropping %s", self.name, label)
            return False
        return True

    def drain(self, timeout: float | None = None) -> bool:
        """Wait until every queued job has run. Returns False on timeout."""
        if self._thread is None:
            return True
        if timeout is None:
            self._queue.join()
            return True
        done = threading.Event()

        def _waiter() -> None:
            self._queue.join()
            done.set()

        threading.Thread(target=_waiter, daemon=True).start()
        return done.wait(timeout)

    def stop(self, timeout: float = 2.0) -> None:
        self.drain(timeout)
        self._stopped = True
        if self._thread is None:
            return
        try:
            self._queue.put_nowait(None)
        except queue.Full:
            pass
        self._thread.join(timeout=timeout)
        self._thread = None

    def _loop(self) -> None:
        while True:
            item = self._queue.get()
            try:
                if item is None:
                    return
                label, job = item
                try:
                    job()
                except Exception:
                    logger.exception("Outbound job %s failed", label)
            finally:
                self._queue.task_done()
