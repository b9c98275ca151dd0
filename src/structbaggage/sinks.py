"""Sinks and the sink registry.

A sink is anything with a ``name`` and a ``deliver(snapshot)`` method.
:func:`make_sink` adapts the usual targets (paths, streams, stdlib handlers,
plain callables) the way ``logger.add()`` accepts them in loguru.

:class:`SinkRegistry` keeps sinks in attachment order.  Membership is held in
an immutable tuple that is replaced on every change, so a fan-out in progress
always iterates over one consistent membership.
"""

from __future__ import annotations

import enum
import logging
import sys
import threading
import traceback
from collections.abc import Callable, Iterator
from pathlib import Path
from typing import IO, Any, Protocol, TypeAlias, runtime_checkable

import orjson
import structlog

from structbaggage.events import EventSnapshot
from structbaggage.exceptions import SinkDeliveryError


@runtime_checkable
class Sink(Protocol):
    name: str

    def deliver(self, snapshot: EventSnapshot) -> None: ...


SinkTarget: TypeAlias = "Sink | str | Path | logging.Handler | IO[str] | Callable[[EventSnapshot], None]"
SinkErrorHandler: TypeAlias = Callable[[Sink, EventSnapshot, Exception], None]


class SinkErrorPolicy(str, enum.Enum):
    """What fan-out does with a sink that raises.

    Faults are always isolated: the remaining sinks still receive the
    snapshot.  The policy only decides what happens to the fault itself.
    """

    REPORT = "report"
    SUPPRESS = "suppress"
    RAISE = "raise"


def _orjson_serializer(obj: object, **_kw: object) -> str:
    """Serialize *obj* to a JSON string using orjson."""
    return orjson.dumps(obj, default=str).decode()


def _stream_isatty(stream: Any) -> bool:
    """Check if *stream* is connected to a terminal."""
    try:
        result: bool = stream.isatty()
        return result
    except (AttributeError, ValueError):
        return False


def _format_exception_dict(exception: dict[str, Any]) -> str:
    lines = ["Traceback (most recent call last):"]
    for frame in exception.get("frames", ()):
        lines.append(f'  File "{frame["filename"]}", line {frame["lineno"]}, in {frame["name"]}')
        if frame.get("line"):
            lines.append(f"    {frame['line']}")
    lines.append(f"{exception['type']}: {exception['message']}")
    return "\n".join(lines)


def report_sink_error(sink: Sink, snapshot: EventSnapshot, exc: Exception) -> None:
    """Print the fault to ``stderr``, like :meth:`logging.Handler.handleError`."""
    if not logging.raiseExceptions or sys.stderr is None:
        return
    try:
        sys.stderr.write(f"--- structbaggage: sink {sink.name!r} failed ---\n")
        traceback.print_exception(type(exc), exc, exc.__traceback__, file=sys.stderr)
        sys.stderr.write(f"Message: {snapshot.formatted_message!r}\n")
    except OSError:
        pass


class CallableSink:
    """A sink that delegates to a plain callable."""

    def __init__(self, fn: Callable[[EventSnapshot], None], *, name: str | None = None) -> None:
        self._fn = fn
        self.name = name or getattr(fn, "__qualname__", type(fn).__name__)

    def deliver(self, snapshot: EventSnapshot) -> None:
        self._fn(snapshot)

    def __repr__(self) -> str:
        return f"<CallableSink {self.name!r}>"


class StreamSink:
    """Render snapshots to a text stream, one line each.

    JSON lines via :class:`structlog.processors.JSONRenderer` (serialized with
    orjson) by default; a :class:`structlog.dev.ConsoleRenderer` line when
    *json_lines* is ``False``.
    """

    def __init__(
        self,
        stream: IO[str] | None = None,
        *,
        name: str | None = None,
        json_lines: bool = True,
    ) -> None:
        self._stream = stream if stream is not None else sys.stdout
        self.name = name or getattr(self._stream, "name", None) or "stream"
        self._json_lines = json_lines
        self._lock = threading.Lock()
        self._renderer: structlog.types.Processor = (
            structlog.processors.JSONRenderer(serializer=_orjson_serializer)
            if json_lines
            else structlog.dev.ConsoleRenderer(
                colors=_stream_isatty(self._stream),
                event_key="message",
            )
        )

    def render(self, snapshot: EventSnapshot) -> str:
        data = snapshot.to_dict()
        if not self._json_lines and "exception" in data:
            # ConsoleRenderer expects a pre-rendered exception string.
            data["exception"] = _format_exception_dict(data["exception"])
        rendered = self._renderer(None, snapshot.level.lower(), data)
        return str(rendered)

    def deliver(self, snapshot: EventSnapshot) -> None:
        line = self.render(snapshot)
        with self._lock:
            self._stream.write(line + "\n")
            self._stream.flush()

    def __repr__(self) -> str:
        return f"<{type(self).__name__} {self.name!r}>"


class FileSink(StreamSink):
    """A :class:`StreamSink` writing to a file it opens and owns."""

    def __init__(self, path: str | Path, *, name: str | None = None, json_lines: bool = True) -> None:
        self.path = Path(path)
        super().__init__(
            self.path.open("a", encoding="utf-8"),
            name=name or str(self.path),
            json_lines=json_lines,
        )

    def close(self) -> None:
        with self._lock:
            if not self._stream.closed:
                self._stream.close()


class HandlerSink:
    """Bridge snapshots to a stdlib :class:`logging.Handler`."""

    def __init__(self, handler: logging.Handler, *, name: str | None = None) -> None:
        self.handler = handler
        self.name = name or handler.get_name() or type(handler).__name__

    def deliver(self, snapshot: EventSnapshot) -> None:
        record = snapshot.to_log_record()
        # Handler.handle() only runs filters; the level check is the logger's job.
        if record.levelno >= self.handler.level:
            self.handler.handle(record)

    def close(self) -> None:
        self.handler.close()

    def __repr__(self) -> str:
        return f"<HandlerSink {self.name!r}>"


def make_sink(target: SinkTarget, *, name: str | None = None, json_lines: bool = True) -> Sink:
    """Create a :class:`Sink` from various *target* types."""
    if isinstance(target, logging.Handler):
        return HandlerSink(target, name=name)
    if isinstance(target, (str, Path)):
        return FileSink(target, name=name, json_lines=json_lines)
    if isinstance(target, Sink):
        return target
    if hasattr(target, "write"):
        return StreamSink(target, name=name, json_lines=json_lines)  # type: ignore[arg-type]
    if callable(target):
        return CallableSink(target, name=name)
    msg = f"Unsupported sink type: {type(target)!r}"
    raise TypeError(msg)


class SinkRegistry:
    """Ordered, thread-safe collection of attached sinks."""

    def __init__(self) -> None:
        self._sinks: tuple[Sink, ...] = ()
        self._lock = threading.Lock()

    def __len__(self) -> int:
        return len(self._sinks)

    def __iter__(self) -> Iterator[Sink]:
        return iter(self._sinks)

    def snapshot(self) -> tuple[Sink, ...]:
        """Return the current membership, in attachment order."""
        return self._sinks

    def attach(self, sink: Sink) -> None:
        """Attach *sink* at the end; a sink already attached is left in place."""
        with self._lock:
            if any(s is sink for s in self._sinks):
                return
            self._sinks = (*self._sinks, sink)

    def detach(self, sink: Sink) -> bool:
        """Detach *sink*.  Returns ``False`` if it was not attached."""
        with self._lock:
            remaining = tuple(s for s in self._sinks if s is not sink)
            if len(remaining) == len(self._sinks):
                return False
            self._sinks = remaining
        return True

    def detach_by_name(self, name: str) -> bool:
        """Detach the first sink called *name*."""
        with self._lock:
            for index, sink in enumerate(self._sinks):
                if sink.name == name:
                    self._sinks = self._sinks[:index] + self._sinks[index + 1 :]
                    return True
        return False

    def detach_all(self) -> None:
        """Detach every sink, closing those that can be closed.

        Every sink is closed even if an earlier ``close()`` fails; the first
        failure is re-raised afterwards.
        """
        with self._lock:
            sinks, self._sinks = self._sinks, ()
        first_error: Exception | None = None
        for sink in sinks:
            close = getattr(sink, "close", None)
            if not callable(close):
                continue
            try:
                close()
            except Exception as exc:
                if first_error is None:
                    first_error = exc
        if first_error is not None:
            raise first_error

    def is_attached(self, sink: Sink) -> bool:
        return any(s is sink for s in self._sinks)

    def lookup(self, name: str) -> Sink | None:
        """Return the first sink called *name*, or ``None``."""
        for sink in self._sinks:
            if sink.name == name:
                return sink
        return None

    def for_each(self, visit: Callable[[Sink], None]) -> None:
        """Call *visit* on every sink, in attachment order."""
        for sink in self._sinks:
            visit(sink)


def fan_out(
    sinks: tuple[Sink, ...],
    snapshot: EventSnapshot,
    *,
    policy: SinkErrorPolicy = SinkErrorPolicy.REPORT,
    on_error: SinkErrorHandler | None = None,
) -> int:
    """Deliver *snapshot* to each of *sinks*, in order.

    A failing sink never prevents delivery to the others.  Returns the number
    of sinks that accepted the snapshot.  With :attr:`SinkErrorPolicy.RAISE`
    the first fault is raised as :class:`SinkDeliveryError` once every sink
    has been tried.
    """
    delivered = 0
    first_fault: tuple[Sink, Exception] | None = None
    for sink in sinks:
        try:
            sink.deliver(snapshot)
        except Exception as exc:
            if policy is SinkErrorPolicy.SUPPRESS:
                continue
            if policy is SinkErrorPolicy.RAISE:
                if first_fault is None:
                    first_fault = (sink, exc)
                continue
            (on_error or report_sink_error)(sink, snapshot, exc)
        else:
            delivered += 1

    if first_fault is not None:
        sink, exc = first_fault
        raise SinkDeliveryError(sink.name) from exc
    return delivered
