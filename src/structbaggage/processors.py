"""Baggage propagation processors.

Copies ambient baggage onto telemetry records as ``baggage.<key>``
attributes, so a baggage entry never silently replaces an attribute of the
same logical name:

- :class:`BaggageSpanProcessor` runs when a span starts.
- :class:`BaggageLogProcessor` runs when a log record is emitted, either as
  an ``on_emit`` record processor or as a structlog processor.

Both belong at the front of an ordered chain, ahead of anything that batches
or exports, so that the attributes are in place before the record leaves the
emitting thread.
"""

from __future__ import annotations

import time
from collections.abc import Iterable
from typing import Any, Protocol

from opentelemetry import trace
from opentelemetry.context import Context
from opentelemetry.sdk.trace import ReadableSpan, Span, SpanProcessor

from structbaggage.context import baggage_attributes
from structbaggage.exceptions import UnsupportedHookError


class SupportsSetAttribute(Protocol):
    def set_attribute(self, key: str, value: Any) -> None: ...


class LogRecordProcessor(Protocol):
    def on_emit(self, record: Any, parent_context: Context | None = None) -> None: ...


class BaggageSpanProcessor(SpanProcessor):
    """Write every baggage entry onto a span when it starts.

    The processor has nothing to do when a span ends and declares so through
    :attr:`is_end_required`.  :class:`SpanProcessorChain` honours the flag; a
    pipeline that calls :meth:`on_end` anyway is miswired and gets an
    :class:`~structbaggage.exceptions.UnsupportedHookError`.
    """

    is_start_required = True
    is_end_required = False

    def on_start(self, span: Span, parent_context: Context | None = None) -> None:
        for key, value in baggage_attributes(parent_context).items():
            span.set_attribute(key, value)

    def on_end(self, span: ReadableSpan) -> None:
        raise UnsupportedHookError(self, "on_end")

    def shutdown(self) -> None:
        pass

    def force_flush(self, timeout_millis: int = 30000) -> bool:
        return True


class BaggageLogProcessor:
    """Write every baggage entry onto a log record when it is emitted.

    Works on anything exposing ``set_attribute`` (see :meth:`on_emit`) and,
    through :meth:`__call__`, on a structlog event dict::

        structlog.configure(processors=[..., BaggageLogProcessor(), ...])

    Existing ``baggage.*`` keys are overwritten: the ambient value wins.
    """

    def on_emit(self, record: SupportsSetAttribute, parent_context: Context | None = None) -> None:
        for key, value in baggage_attributes(parent_context).items():
            record.set_attribute(key, value)

    def __call__(
        self,
        _logger: Any,
        _method_name: str,
        event_dict: dict[str, Any],
    ) -> dict[str, Any]:
        event_dict.update(baggage_attributes())
        return event_dict


class SpanProcessorChain(SpanProcessor):
    """Invoke span processors synchronously, in registration order.

    A member is skipped on start (end) when its ``is_start_required``
    (``is_end_required``) attribute is false.  Members without the attribute
    are always invoked.

    Register the chain as the single processor of a
    :class:`~opentelemetry.sdk.trace.TracerProvider`.
    """

    def __init__(self, *processors: SpanProcessor) -> None:
        self._processors: tuple[SpanProcessor, ...] = tuple(processors)

    @property
    def processors(self) -> tuple[SpanProcessor, ...]:
        return self._processors

    def add(self, processor: SpanProcessor) -> SpanProcessorChain:
        """Append *processor* to the end of the chain."""
        # Copy-on-write keeps concurrent on_start/on_end iterations consistent.
        self._processors = (*self._processors, processor)
        return self

    def on_start(self, span: Span, parent_context: Context | None = None) -> None:
        for processor in self._processors:
            if getattr(processor, "is_start_required", True):
                processor.on_start(span, parent_context=parent_context)

    def on_end(self, span: ReadableSpan) -> None:
        for processor in self._processors:
            if getattr(processor, "is_end_required", True):
                processor.on_end(span)

    def shutdown(self) -> None:
        for processor in self._processors:
            processor.shutdown()

    def force_flush(self, timeout_millis: int = 30000) -> bool:
        deadline = time.monotonic() + timeout_millis / 1000
        for processor in self._processors:
            remaining_ms = int((deadline - time.monotonic()) * 1000)
            if remaining_ms <= 0:
                return False
            if not processor.force_flush(remaining_ms):
                return False
        return True


class LogProcessorChain:
    """Ordered chain of ``on_emit`` record processors."""

    def __init__(self, processors: Iterable[LogRecordProcessor] = ()) -> None:
        self._processors: tuple[LogRecordProcessor, ...] = tuple(processors)

    def __len__(self) -> int:
        return len(self._processors)

    def add(self, processor: LogRecordProcessor) -> LogProcessorChain:
        self._processors = (*self._processors, processor)
        return self

    def on_emit(self, record: Any, parent_context: Context | None = None) -> None:
        for processor in self._processors:
            processor.on_emit(record, parent_context)


def add_trace_context(
    _logger: Any,
    _method_name: str,
    event_dict: dict[str, Any],
) -> dict[str, Any]:
    """Add OpenTelemetry trace context fields to the event dict."""
    ctx = trace.get_current_span().get_span_context()
    if ctx.is_valid:
        event_dict["trace_id"] = format(ctx.trace_id, "032x")
        event_dict["span_id"] = format(ctx.span_id, "016x")
        event_dict["trace_flags"] = int(ctx.trace_flags)
    return event_dict
