"""structbaggage: baggage propagation and log event augmentation for structlog and OpenTelemetry."""

from structbaggage.augment import AugmentingHandler, augment_event
from structbaggage.config import (
    EnrichmentSettings,
    configure_logging,
    configure_tracing,
    setup_enrichment,
)
from structbaggage.context import BAGGAGE_PREFIX, baggage_attributes, baggage_scope, current_baggage
from structbaggage.events import CallerInfo, EventSnapshot, KeyValue, LogEvent, LoggerContext
from structbaggage.exceptions import (
    MergeError,
    SinkDeliveryError,
    StructBaggageError,
    UnsupportedHookError,
)
from structbaggage.processors import (
    BaggageLogProcessor,
    BaggageSpanProcessor,
    LogProcessorChain,
    SpanProcessorChain,
    add_trace_context,
)
from structbaggage.queued import QueuedSink
from structbaggage.sinks import (
    CallableSink,
    FileSink,
    HandlerSink,
    Sink,
    SinkErrorPolicy,
    SinkRegistry,
    StreamSink,
    make_sink,
)

__version__ = "0.1.0"

__all__ = [
    "AugmentingHandler",
    "BAGGAGE_PREFIX",
    "BaggageLogProcessor",
    "BaggageSpanProcessor",
    "CallableSink",
    "CallerInfo",
    "EnrichmentSettings",
    "EventSnapshot",
    "FileSink",
    "HandlerSink",
    "KeyValue",
    "LogEvent",
    "LogProcessorChain",
    "LoggerContext",
    "MergeError",
    "QueuedSink",
    "Sink",
    "SinkDeliveryError",
    "SinkErrorPolicy",
    "SinkRegistry",
    "SpanProcessorChain",
    "StreamSink",
    "StructBaggageError",
    "UnsupportedHookError",
    "add_trace_context",
    "augment_event",
    "baggage_attributes",
    "baggage_scope",
    "configure_logging",
    "configure_tracing",
    "current_baggage",
    "make_sink",
    "setup_enrichment",
]
