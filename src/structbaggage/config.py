"""Configuration for baggage enrichment and event augmentation.

- :class:`EnrichmentSettings` carries the interceptor switches and can be read
  from keyword arguments, a config-file mapping or the environment.
- :func:`configure_logging` wires structlog and the root logger so that every
  record flows through an :class:`~structbaggage.augment.AugmentingHandler`.
- :func:`configure_tracing` builds a ``TracerProvider`` whose span processor
  chain starts with :class:`~structbaggage.processors.BaggageSpanProcessor`.
"""

from __future__ import annotations

import logging
import os
import sys
from collections.abc import Iterable, Mapping, Sequence
from dataclasses import dataclass
from typing import Any, ClassVar

import structlog
from opentelemetry import trace
from opentelemetry.sdk.resources import SERVICE_NAME, Resource
from opentelemetry.sdk.trace import SpanProcessor, TracerProvider
from opentelemetry.sdk.trace.sampling import Sampler
from structlog.contextvars import merge_contextvars

from structbaggage.augment import AugmentingHandler
from structbaggage.events import to_logging_level
from structbaggage.processors import (
    BaggageLogProcessor,
    BaggageSpanProcessor,
    SpanProcessorChain,
    add_trace_context,
)
from structbaggage.sinks import FileSink, SinkErrorPolicy, SinkTarget, StreamSink, make_sink

ENV_PREFIX = "STRUCTBAGGAGE_"

_TRUE = frozenset({"1", "true", "yes", "on"})
_FALSE = frozenset({"0", "false", "no", "off", ""})


def _parse_bool(name: str, value: Any) -> bool:
    if isinstance(value, bool):
        return value
    lowered = str(value).strip().lower()
    if lowered in _TRUE:
        return True
    if lowered in _FALSE:
        return False
    msg = f"{name}: expected a boolean, got {value!r}"
    raise ValueError(msg)


def _parse_policy(name: str, value: Any) -> SinkErrorPolicy:
    try:
        return SinkErrorPolicy(str(value).strip().lower())
    except ValueError:
        choices = ", ".join(p.value for p in SinkErrorPolicy)
        msg = f"{name}: expected one of {choices}, got {value!r}"
        raise ValueError(msg) from None


@dataclass(frozen=True)
class EnrichmentSettings:
    """Switches of the event augmentation interceptor.

    Parameters
    ----------
    merge_into_context:
        Merge structured pairs into context properties (existing keys win).
    merge_into_arguments:
        Append structured pairs to positional arguments as ``key=value``.
    sink_error_policy:
        What to do with a sink fault once the other sinks are served.
    """

    merge_into_context: bool = False
    merge_into_arguments: bool = False
    sink_error_policy: SinkErrorPolicy = SinkErrorPolicy.REPORT

    _OPTIONS: ClassVar[dict[str, str]] = {
        "mergeStructuredIntoContext": "merge_into_context",
        "merge_structured_into_context": "merge_into_context",
        "merge_into_context": "merge_into_context",
        "mergeStructuredIntoArguments": "merge_into_arguments",
        "merge_structured_into_arguments": "merge_into_arguments",
        "merge_into_arguments": "merge_into_arguments",
        "sinkErrorPolicy": "sink_error_policy",
        "sink_error_policy": "sink_error_policy",
    }

    @classmethod
    def from_mapping(cls, options: Mapping[str, Any]) -> EnrichmentSettings:
        """Read settings from a config-file mapping.

        Accepts ``mergeStructuredIntoContext``, ``mergeStructuredIntoArguments``
        and ``sinkErrorPolicy`` as well as their snake_case forms.
        """
        values: dict[str, Any] = {}
        for key, raw in options.items():
            field_name = cls._OPTIONS.get(key)
            if field_name is None:
                msg = f"Unknown enrichment option: {key!r}"
                raise ValueError(msg)
            if field_name == "sink_error_policy":
                values[field_name] = _parse_policy(key, raw)
            else:
                values[field_name] = _parse_bool(key, raw)
        return cls(**values)

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None) -> EnrichmentSettings:
        """Read settings from ``STRUCTBAGGAGE_*`` environment variables.

        - ``STRUCTBAGGAGE_MERGE_INTO_CONTEXT`` (default: ``"0"``)
        - ``STRUCTBAGGAGE_MERGE_INTO_ARGUMENTS`` (default: ``"0"``)
        - ``STRUCTBAGGAGE_SINK_ERROR_POLICY`` (default: ``"report"``)
        """
        env = os.environ if environ is None else environ
        options: dict[str, Any] = {}
        for field_name in ("merge_into_context", "merge_into_arguments", "sink_error_policy"):
            raw = env.get(ENV_PREFIX + field_name.upper())
            if raw is not None:
                options[field_name] = raw
        return cls.from_mapping(options)


def _build_shared_processors() -> list[structlog.types.Processor]:
    """Build the structlog chain that runs before records reach the root logger."""
    processors: list[structlog.types.Processor] = [
        structlog.stdlib.filter_by_level,
        merge_contextvars,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.processors.CallsiteParameterAdder(
            {
                structlog.processors.CallsiteParameter.PATHNAME,
                structlog.processors.CallsiteParameter.LINENO,
                structlog.processors.CallsiteParameter.FUNC_NAME,
                structlog.processors.CallsiteParameter.THREAD_NAME,
            }
        ),
        BaggageLogProcessor(),
        add_trace_context,
        structlog.processors.StackInfoRenderer(),
        structlog.processors.UnicodeDecoder(),
    ]
    return processors


def configure_logging(
    settings: EnrichmentSettings | None = None,
    *,
    service: str = "app",
    level: str = "INFO",
    sinks: Iterable[SinkTarget] = (),
    stream: Any = None,
    json_logs: bool = True,
    clear_handlers: bool = True,
) -> AugmentingHandler:
    """Configure structlog and route the root logger through an augmenting handler.

    Parameters
    ----------
    settings:
        Interceptor switches.  Defaults to :class:`EnrichmentSettings` ``()``.
    service:
        Name of the logger context attached to every event.
    level:
        Minimum log level (e.g. ``"DEBUG"``, ``"INFO"``).
    sinks:
        Sink targets, see :func:`~structbaggage.sinks.make_sink`.  When empty
        a console sink writing to *stream* is attached.
    stream:
        Output stream of the default console sink.  Defaults to ``sys.stdout``.
    json_logs:
        ``True`` for JSON lines, ``False`` for console rendering.
    clear_handlers:
        If ``True`` (default), remove all existing root logger handlers first.

    Returns
    -------
    AugmentingHandler
        The installed handler, for attaching or detaching sinks later.
    """
    if settings is None:
        settings = EnrichmentSettings()

    structlog.configure(
        processors=[
            *_build_shared_processors(),
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    resolved = [make_sink(target, json_lines=json_logs) for target in sinks]
    if not resolved:
        resolved.append(
            StreamSink(stream if stream is not None else sys.stdout, name="console", json_lines=json_logs)
        )

    handler = AugmentingHandler(
        merge_into_context=settings.merge_into_context,
        merge_into_arguments=settings.merge_into_arguments,
        sinks=resolved,
        processors=[BaggageLogProcessor()],
        sink_error_policy=settings.sink_error_policy,
        context_name=service,
    )

    root = logging.getLogger()
    if clear_handlers:
        root.handlers.clear()
    root.setLevel(to_logging_level(level))
    root.addHandler(handler)
    return handler


def configure_tracing(
    *processors: SpanProcessor,
    service: str = "app",
    sampler: Sampler | None = None,
    set_global: bool = False,
) -> TracerProvider:
    """Build a ``TracerProvider`` that copies baggage onto every span.

    *processors* (typically a ``BatchSpanProcessor`` around an exporter) run
    after :class:`~structbaggage.processors.BaggageSpanProcessor`, in the
    order given.
    """
    provider = TracerProvider(
        resource=Resource.create({SERVICE_NAME: service}),
        sampler=sampler,
    )
    provider.add_span_processor(SpanProcessorChain(BaggageSpanProcessor(), *processors))
    if set_global:
        trace.set_tracer_provider(provider)
    return provider


def setup_enrichment(
    *,
    service: str = "app",
    sinks: Iterable[SinkTarget] = (),
    suppress_loggers: Sequence[str] = (),
) -> AugmentingHandler:
    """Application-level logging setup.

    Reads environment variables:

    - ``LOG_LEVEL`` (default: ``"INFO"``)
    - ``JSON_LOGS`` (``"0"`` = console, default: ``"1"`` = JSON)
    - ``LOG_PATH`` (optional JSON file sink)
    - ``STRUCTBAGGAGE_*`` (see :meth:`EnrichmentSettings.from_env`)

    Parameters
    ----------
    service:
        Name of the logger context attached to every event.
    sinks:
        Sink targets; a console sink is used when empty.
    suppress_loggers:
        Logger names to suppress to WARNING level.
    """
    level = os.environ.get("LOG_LEVEL", "INFO")
    json_logs = os.environ.get("JSON_LOGS", "1") != "0"

    handler = configure_logging(
        EnrichmentSettings.from_env(),
        service=service,
        level=level,
        sinks=sinks,
        json_logs=json_logs,
    )

    for name in suppress_loggers:
        logging.getLogger(name).setLevel(logging.WARNING)

    log_path = os.environ.get("LOG_PATH")
    if log_path:
        handler.attach(FileSink(log_path))

    def _log_exception(
        exc_type: type[BaseException],
        exc_value: BaseException,
        exc_traceback: Any,
    ) -> None:
        if issubclass(exc_type, KeyboardInterrupt):
            sys.__excepthook__(exc_type, exc_value, exc_traceback)
            return
        logging.getLogger().error(
            "Uncaught exception",
            exc_info=(exc_type, exc_value, exc_traceback),
        )

    sys.excepthook = _log_exception
    return handler
