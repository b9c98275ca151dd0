"""Event augmentation interceptor.

:class:`AugmentingHandler` sits on a stdlib logger (usually the root) in
front of any number of sinks.  For every record it:

1. builds a :class:`~structbaggage.events.LogEvent` and lets record
   processors (e.g. :class:`~structbaggage.processors.BaggageLogProcessor`)
   write attributes onto it;
2. merges the event's structured pairs into its context properties and/or
   positional arguments (:func:`augment_event`);
3. freezes the result into an :class:`~structbaggage.events.EventSnapshot`;
4. delivers the snapshot to every attached sink, in attachment order.

Usage::

    handler = AugmentingHandler(merge_into_context=True, merge_into_arguments=True)
    handler.attach(make_sink(sys.stdout))
    logging.getLogger().addHandler(handler)

    logging.getLogger(__name__).info("hello", extra={"key_values": {"someKey": 93}})
"""

from __future__ import annotations

import logging
import time
from collections.abc import Callable, Iterable, Iterator
from typing import Any

from structbaggage.events import EventSnapshot, KeyValue, LogEvent, LoggerContext
from structbaggage.exceptions import MergeError
from structbaggage.processors import LogProcessorChain, LogRecordProcessor
from structbaggage.sinks import (
    Sink,
    SinkErrorHandler,
    SinkErrorPolicy,
    SinkRegistry,
    fan_out,
)


def _stringify(key: str, value: Any) -> str:
    try:
        return str(value)
    except Exception as exc:
        raise MergeError(key) from exc


def augment_event(
    event: LogEvent,
    *,
    merge_into_context: bool = False,
    merge_into_arguments: bool = False,
) -> EventSnapshot:
    """Merge *event*'s structured pairs and return an immutable snapshot.

    Parameters
    ----------
    event:
        The event to snapshot.  It is not modified.
    merge_into_context:
        Add each structured pair to the context properties as
        ``key -> str(value)``.  Keys already present in the event's own
        context properties keep their original value.
    merge_into_arguments:
        Append a :class:`~structbaggage.events.KeyValue` per structured pair
        to the positional arguments, in pair order.  Values are rendered
        here, not when a sink reads the argument.

    Raises
    ------
    MergeError
        If a structured value cannot be stringified, under either switch.
    """
    caller = event.caller
    original = event.context_properties or {}

    added: dict[str, str] = {}
    if merge_into_context:
        for key, value in event.key_values:
            added[key] = _stringify(key, value)
    merged = dict(original)
    for key, value in added.items():
        merged.setdefault(key, value)

    args = list(event.args)
    if merge_into_arguments:
        args.extend(
            KeyValue(key, value, rendered=_stringify(key, value)) for key, value in event.key_values
        )

    logger_context = (
        event.logger_context.with_properties(merged) if event.logger_context is not None else None
    )
    return EventSnapshot.build(
        event,
        args=tuple(args),
        context_properties=merged,
        logger_context=logger_context,
        caller=caller,
    )


class AugmentingHandler(logging.Handler):
    """A :class:`logging.Handler` that augments records and fans them out to sinks.

    Parameters
    ----------
    merge_into_context:
        See :func:`augment_event`.
    merge_into_arguments:
        See :func:`augment_event`.
    sinks:
        Sinks attached on construction, in order.
    processors:
        Record processors run on each event before augmentation.
    sink_error_policy:
        What to do with a sink fault; other sinks are always still served.
    on_sink_error:
        Side channel for :attr:`SinkErrorPolicy.REPORT`.  Defaults to a
        traceback on ``stderr``.
    context_name:
        Name of the :class:`~structbaggage.events.LoggerContext` attached to
        every event.
    context_properties:
        Properties held by that logger context.
    level:
        Minimum level for this handler.

    A merge fault propagates out of :meth:`append` (and :meth:`emit`) before
    any sink has seen the event.
    """

    def __init__(
        self,
        *,
        merge_into_context: bool = False,
        merge_into_arguments: bool = False,
        sinks: Iterable[Sink] = (),
        processors: Iterable[LogRecordProcessor] = (),
        sink_error_policy: SinkErrorPolicy = SinkErrorPolicy.REPORT,
        on_sink_error: SinkErrorHandler | None = None,
        context_name: str = "default",
        context_properties: dict[str, str] | None = None,
        level: int = logging.NOTSET,
    ) -> None:
        super().__init__(level)
        self.merge_into_context = merge_into_context
        self.merge_into_arguments = merge_into_arguments
        self.sink_error_policy = sink_error_policy
        self.on_sink_error = on_sink_error
        self.processors = LogProcessorChain(processors)
        self.logger_context = LoggerContext(
            name=context_name,
            properties=context_properties or {},
            birth_time=time.time(),
        )
        self._registry = SinkRegistry()
        for sink in sinks:
            self._registry.attach(sink)

    # -- interception -------------------------------------------------------

    def emit(self, record: logging.LogRecord) -> None:
        self.append(LogEvent.from_record(record, logger_context=self.logger_context))

    def append(self, event: LogEvent) -> EventSnapshot:
        """Augment *event* and deliver the snapshot to the attached sinks.

        Sinks attached while this call runs receive the next event, not this
        one.
        """
        sinks = self._registry.snapshot()
        self.processors.on_emit(event)
        snapshot = augment_event(
            event,
            merge_into_context=self.merge_into_context,
            merge_into_arguments=self.merge_into_arguments,
        )
        fan_out(sinks, snapshot, policy=self.sink_error_policy, on_error=self.on_sink_error)
        return snapshot

    # -- sink management ----------------------------------------------------

    @property
    def sinks(self) -> SinkRegistry:
        return self._registry

    def attach(self, sink: Sink) -> None:
        self._registry.attach(sink)

    def detach(self, sink: Sink) -> bool:
        return self._registry.detach(sink)

    def detach_by_name(self, name: str) -> bool:
        return self._registry.detach_by_name(name)

    def detach_all(self) -> None:
        self._registry.detach_all()

    def is_attached(self, sink: Sink) -> bool:
        return self._registry.is_attached(sink)

    def lookup(self, name: str) -> Sink | None:
        return self._registry.lookup(name)

    def for_each(self, visit: Callable[[Sink], None]) -> None:
        self._registry.for_each(visit)

    def __iter__(self) -> Iterator[Sink]:
        return iter(self._registry)

    def close(self) -> None:
        try:
            self.detach_all()
        finally:
            super().close()
