"""Non-blocking (queued) sink.

:class:`QueuedSink` buffers snapshots and hands them to a downstream sink on
a background thread, in batches: when *max_batch* snapshots are waiting, every
*flush_interval* seconds, on :meth:`QueuedSink.flush`, and once more on
:meth:`QueuedSink.shutdown`.  Snapshots are immutable, so a buffered one stays
valid however long it waits.
"""

from __future__ import annotations

import atexit
import queue
import threading
import time

from structbaggage.events import EventSnapshot
from structbaggage.sinks import Sink, SinkErrorHandler, report_sink_error

_FLUSH = object()
_STOP = object()


class QueuedSink:
    """Deliver snapshots to *target* from a background thread.

    Parameters
    ----------
    target:
        The downstream sink.
    name:
        Sink name.  Defaults to ``"queued-<target name>"``.
    max_batch:
        Batch size that triggers an early flush.
    flush_interval:
        Seconds between timed flushes.
    on_error:
        Called for each snapshot the target fails to accept.  Defaults to a
        traceback on ``stderr``.
    register_atexit:
        Shut down automatically at interpreter exit.
    """

    def __init__(
        self,
        target: Sink,
        *,
        name: str | None = None,
        max_batch: int = 512,
        flush_interval: float = 1.0,
        on_error: SinkErrorHandler | None = None,
        register_atexit: bool = True,
    ) -> None:
        if max_batch < 1:
            msg = f"max_batch must be >= 1, got {max_batch}"
            raise ValueError(msg)
        if flush_interval <= 0:
            msg = f"flush_interval must be > 0, got {flush_interval}"
            raise ValueError(msg)
        self.target = target
        self.name = name or f"queued-{target.name}"
        self._max_batch = max_batch
        self._flush_interval = flush_interval
        self._on_error = on_error or report_sink_error
        self._queue: queue.Queue[object] = queue.Queue()
        self._shutdown_lock = threading.Lock()
        self._stopped = False
        self._thread = threading.Thread(target=self._run, name=f"structbaggage-{self.name}", daemon=True)
        self._thread.start()
        if register_atexit:
            atexit.register(self.shutdown)

    def deliver(self, snapshot: EventSnapshot) -> None:
        with self._shutdown_lock:
            if self._stopped:
                msg = f"sink {self.name!r} is shut down"
                raise RuntimeError(msg)
            self._queue.put(snapshot)

    def flush(self, timeout: float = 5.0) -> bool:
        """Deliver everything buffered so far.  Returns ``False`` on timeout."""
        done = threading.Event()
        with self._shutdown_lock:
            if self._stopped:
                return not self._thread.is_alive()
            self._queue.put((_FLUSH, done))
        return done.wait(timeout)

    def shutdown(self, timeout: float = 5.0) -> bool:
        """Flush and stop the worker, waiting at most *timeout* seconds.

        Only the first call does anything; later calls report whether the
        worker has finished.  The target is closed once the worker is done;
        if the wait times out it is left open.
        """
        with self._shutdown_lock:
            if self._stopped:
                return not self._thread.is_alive()
            self._stopped = True
            self._queue.put(_STOP)
        atexit.unregister(self.shutdown)
        self._thread.join(timeout)
        if self._thread.is_alive():
            return False
        close = getattr(self.target, "close", None)
        if callable(close):
            close()
        return True

    close = shutdown

    def _run(self) -> None:
        batch: list[EventSnapshot] = []
        deadline = time.monotonic() + self._flush_interval
        while True:
            try:
                item = self._queue.get(timeout=max(deadline - time.monotonic(), 0.0))
            except queue.Empty:
                item = None

            if isinstance(item, EventSnapshot):
                batch.append(item)
                if len(batch) < self._max_batch and time.monotonic() < deadline:
                    continue
            elif item is _STOP:
                self._export(batch)
                return

            self._export(batch)
            batch = []
            deadline = time.monotonic() + self._flush_interval
            if isinstance(item, tuple) and item[0] is _FLUSH:
                item[1].set()

    def _export(self, batch: list[EventSnapshot]) -> None:
        for snapshot in batch:
            try:
                self.target.deliver(snapshot)
            except Exception as exc:
                self._on_error(self.target, snapshot, exc)

    def __repr__(self) -> str:
        return f"<QueuedSink {self.name!r} -> {self.target!r}>"
