"""Log events and their immutable snapshots.

A :class:`LogEvent` is the mutable unit built from a :class:`logging.LogRecord`
(plain stdlib or one produced by structlog's ``wrap_for_formatter``).  The
interceptor turns it into an :class:`EventSnapshot`, a frozen value object
that sinks may keep, queue or serialize long after the logging call returned.
"""

from __future__ import annotations

import logging
from collections.abc import Mapping
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from types import MappingProxyType
from typing import Any

from opentelemetry import trace
from structlog.contextvars import get_contextvars

from structbaggage.context import BAGGAGE_PREFIX
from structbaggage.exceptions import exception_to_dict

_LEVEL_MAP: dict[str, str] = {
    "trace": "DEBUG",
    "debug": "DEBUG",
    "info": "INFO",
    "success": "INFO",
    "warning": "WARN",
    "warn": "WARN",
    "error": "ERROR",
    "critical": "CRITICAL",
    "fatal": "CRITICAL",
    "exception": "ERROR",
}

# RFC 5424 syslog severity codes (§6.2.1)
_SEVERITY_MAP: dict[str, int] = {
    "DEBUG": 7,
    "INFO": 6,
    "WARN": 4,
    "ERROR": 3,
    "CRITICAL": 2,
}

# Keys of a structlog event dict that describe the record itself rather than
# being structured data supplied by the caller.
_STRUCTLOG_META_KEYS: frozenset[str] = frozenset(
    {
        "event",
        "message",
        "level",
        "logger",
        "timestamp",
        "positional_args",
        "exc_info",
        "stack_info",
        "stack",
        "pathname",
        "lineno",
        "func_name",
        "thread_name",
        "trace_id",
        "span_id",
        "trace_flags",
        "_record",
        "_from_structlog",
    }
)

KEY_VALUES_ATTR = "key_values"
CONTEXT_PROPERTIES_ATTR = "context_properties"


def canonical_level(name: str) -> str:
    """Normalize a level name to ``CRITICAL``, ``ERROR``, ``WARN``, ``INFO`` or ``DEBUG``."""
    lowered = str(name).lower()
    return _LEVEL_MAP.get(lowered, lowered.upper())


def to_logging_level(level: str) -> int:
    """Convert a level name to its :mod:`logging` constant."""
    upper_level = level.upper()
    if upper_level == "WARN":
        return logging.WARNING
    result: int = getattr(logging, upper_level, logging.INFO)
    return result


def _format_message(message: Any, args: tuple[Any, ...]) -> str:
    """Apply ``%``-style *args* to *message* the way :mod:`logging` does.

    Falls back to the raw template when formatting fails.
    """
    msg = str(message)
    if not args:
        return msg
    values: Any = args
    if len(args) == 1 and isinstance(args[0], Mapping) and args[0]:
        values = args[0]
    try:
        return msg % values
    except Exception:
        return msg


def _current_trace_ids() -> tuple[str | None, str | None]:
    ctx = trace.get_current_span().get_span_context()
    if not ctx.is_valid:
        return None, None
    return format(ctx.trace_id, "032x"), format(ctx.span_id, "016x")


def _isoformat(timestamp: float) -> str:
    return datetime.fromtimestamp(timestamp, tz=timezone.utc).isoformat().replace("+00:00", "Z")


@dataclass(frozen=True)
class CallerInfo:
    """Where a log event originated."""

    pathname: str
    lineno: int
    func_name: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {"pathname": self.pathname, "lineno": self.lineno, "func_name": self.func_name}


@dataclass(frozen=True)
class LoggerContext:
    """Descriptor of the logging context an event was produced in.

    *properties* is frozen into a read-only mapping on construction.
    """

    name: str
    properties: Mapping[str, str] = field(default_factory=dict)
    birth_time: float = 0.0

    def __post_init__(self) -> None:
        object.__setattr__(self, "properties", MappingProxyType(dict(self.properties)))

    def with_properties(self, properties: Mapping[str, str]) -> LoggerContext:
        """Return a copy carrying *properties*; name and birth time are kept."""
        return replace(self, properties=properties)

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "birth_time": _isoformat(self.birth_time),
            "properties": dict(self.properties),
        }


@dataclass(frozen=True)
class KeyValue:
    """A structured pair appended to an event's arguments; renders as ``key=value``.

    *rendered* is the value's string form, fixed when the pair is created so
    that later changes to a mutable *value* do not alter the argument.
    """

    key: str
    value: Any
    rendered: str | None = None

    def __post_init__(self) -> None:
        if self.rendered is None:
            object.__setattr__(self, "rendered", str(self.value))

    def __str__(self) -> str:
        return f"{self.key}={self.rendered}"


@dataclass
class LogEvent:
    """A log event on its way through the interceptor.

    *key_values* are the structured pairs supplied with the logging call, in
    call order.  *context_properties* is the ambient string map (structlog
    contextvars); ``None`` when the event has none.  *attributes* holds
    record attributes written by record processors (``baggage.*``).
    """

    message: Any
    level: str = "INFO"
    args: tuple[Any, ...] = ()
    key_values: list[tuple[str, Any]] = field(default_factory=list)
    context_properties: dict[str, str] | None = None
    caller: CallerInfo | None = None
    logger_context: LoggerContext | None = None
    logger_name: str = "root"
    thread_name: str | None = None
    timestamp: float = 0.0
    exc_info: Any = None
    stack_info: str | None = None
    trace_id: str | None = None
    span_id: str | None = None
    attributes: dict[str, Any] = field(default_factory=dict)

    def set_attribute(self, key: str, value: Any) -> None:
        self.attributes[key] = value

    @classmethod
    def from_record(
        cls,
        record: logging.LogRecord,
        *,
        logger_context: LoggerContext | None = None,
    ) -> LogEvent:
        """Build an event from a stdlib record.

        Records whose ``msg`` is a structlog event dict are unpacked; plain
        records take structured pairs from ``extra={"key_values": ...}`` (a
        mapping, or a sequence of pairs when keys repeat) and additional
        context properties from ``extra={"context_properties": {...}}``.
        """
        bound = get_contextvars()
        ambient = {key: str(value) for key, value in bound.items()}
        attributes = {
            key: value for key, value in vars(record).items() if key.startswith(BAGGAGE_PREFIX)
        }
        if isinstance(record.msg, dict):
            return cls._from_event_dict(record, dict(record.msg), bound, attributes, logger_context)

        args: Any = record.args
        if isinstance(args, Mapping):
            # LogRecord unwraps a single mapping argument.
            args = (args,)
        extra_pairs = getattr(record, KEY_VALUES_ATTR, None) or ()
        if isinstance(extra_pairs, Mapping):
            extra_pairs = extra_pairs.items()
        extra_context = getattr(record, CONTEXT_PROPERTIES_ATTR, None) or {}
        context_properties = {**ambient, **{k: str(v) for k, v in extra_context.items()}}
        trace_id, span_id = _current_trace_ids()
        return cls(
            message=record.msg,
            level=canonical_level(record.levelname),
            args=tuple(args or ()),
            key_values=[(key, value) for key, value in extra_pairs],
            context_properties=context_properties or None,
            caller=CallerInfo(record.pathname, record.lineno, record.funcName),
            logger_context=logger_context,
            logger_name=record.name,
            thread_name=record.threadName,
            timestamp=record.created,
            exc_info=record.exc_info,
            stack_info=record.stack_info,
            trace_id=trace_id,
            span_id=span_id,
            attributes=attributes,
        )

    @classmethod
    def _from_event_dict(
        cls,
        record: logging.LogRecord,
        event_dict: dict[str, Any],
        bound: dict[str, Any],
        attributes: dict[str, Any],
        logger_context: LoggerContext | None,
    ) -> LogEvent:
        ambient = {key: str(value) for key, value in bound.items()}
        message = event_dict.get("event", event_dict.get("message", ""))
        pathname = event_dict.get("pathname")
        if pathname is not None:
            caller = CallerInfo(pathname, event_dict.get("lineno", 0), event_dict.get("func_name"))
        else:
            caller = CallerInfo(record.pathname, record.lineno, record.funcName)

        trace_id, span_id = event_dict.get("trace_id"), event_dict.get("span_id")
        if trace_id is None:
            trace_id, span_id = _current_trace_ids()

        args = event_dict.get("positional_args", ())
        if not isinstance(args, tuple):
            args = (args,)

        key_values: list[tuple[str, Any]] = []
        for key, value in event_dict.items():
            if key in _STRUCTLOG_META_KEYS:
                continue
            # merge_contextvars copied this entry; it is not call-site data.
            if key in bound and value is bound[key]:
                continue
            if key.startswith(BAGGAGE_PREFIX):
                attributes[key] = value
            else:
                key_values.append((key, value))

        return cls(
            message=message,
            level=canonical_level(event_dict.get("level", record.levelname)),
            args=args,
            key_values=key_values,
            context_properties=ambient or None,
            caller=caller,
            logger_context=logger_context,
            logger_name=event_dict.get("logger", record.name),
            thread_name=event_dict.get("thread_name", record.threadName),
            timestamp=record.created,
            exc_info=event_dict.get("exc_info") or record.exc_info,
            stack_info=event_dict.get("stack") or record.stack_info,
            trace_id=trace_id,
            span_id=span_id,
            attributes=attributes,
        )


@dataclass(frozen=True)
class EventSnapshot:
    """Immutable copy of a :class:`LogEvent`, resolved at construction time.

    Arguments, context properties and record attributes are copied into
    immutable containers, the message is formatted, and exception info is
    reduced to a plain dictionary so that no frame outlives the logging call.
    """

    message: str
    formatted_message: str
    level: str
    severity: int
    args: tuple[Any, ...]
    key_values: tuple[tuple[str, Any], ...]
    context_properties: Mapping[str, str]
    logger_context: LoggerContext | None
    caller: CallerInfo | None
    logger_name: str
    thread_name: str | None
    timestamp: float
    exception: Mapping[str, Any] | None
    stack_info: str | None
    trace_id: str | None
    span_id: str | None
    attributes: Mapping[str, Any]

    @classmethod
    def build(
        cls,
        event: LogEvent,
        *,
        args: tuple[Any, ...],
        context_properties: Mapping[str, str],
        logger_context: LoggerContext | None,
        caller: CallerInfo | None,
    ) -> EventSnapshot:
        """Snapshot *event*, overriding the fields touched by augmentation.

        Every other field is copied from *event* as is.
        """
        exception = exception_to_dict(event.exc_info)
        return cls(
            message=str(event.message),
            formatted_message=_format_message(event.message, event.args),
            level=event.level,
            severity=_SEVERITY_MAP.get(event.level, 6),
            args=tuple(args),
            key_values=tuple(event.key_values),
            context_properties=MappingProxyType(dict(context_properties)),
            logger_context=logger_context,
            caller=caller,
            logger_name=event.logger_name,
            thread_name=event.thread_name,
            timestamp=event.timestamp,
            exception=MappingProxyType(exception) if exception is not None else None,
            stack_info=event.stack_info,
            trace_id=event.trace_id,
            span_id=event.span_id,
            attributes=MappingProxyType(dict(event.attributes)),
        )

    def to_dict(self) -> dict[str, Any]:
        """Return a JSON-ready dictionary."""
        data: dict[str, Any] = {
            "timestamp": _isoformat(self.timestamp),
            "level": self.level,
            "severity": self.severity,
            "logger": self.logger_name,
            "message": self.formatted_message,
        }
        if self.args:
            data["args"] = [str(arg) for arg in self.args]
        if self.key_values:
            data["key_values"] = dict(self.key_values)
        if self.context_properties:
            data["context"] = dict(self.context_properties)
        data.update(self.attributes)
        if self.caller is not None:
            data["caller"] = self.caller.to_dict()
        if self.logger_context is not None:
            data["logger_context"] = self.logger_context.to_dict()
        if self.thread_name is not None:
            data["thread"] = self.thread_name
        if self.trace_id is not None:
            data["trace_id"] = self.trace_id
            data["span_id"] = self.span_id
        if self.exception is not None:
            data["exception"] = dict(self.exception)
        if self.stack_info:
            data["stack"] = self.stack_info
        return data

    def to_log_record(self) -> logging.LogRecord:
        """Rebuild a :class:`logging.LogRecord` for stdlib handlers.

        The message is pre-formatted; context properties, structured pairs and
        record attributes travel as record attributes.
        """
        levelno = to_logging_level(self.level)
        caller = self.caller or CallerInfo("", 0)
        record = logging.makeLogRecord(
            {
                "name": self.logger_name,
                "msg": self.formatted_message,
                "args": None,
                "levelno": levelno,
                "levelname": logging.getLevelName(levelno),
                "pathname": caller.pathname,
                "lineno": caller.lineno,
                "funcName": caller.func_name,
                "created": self.timestamp,
                "msecs": (self.timestamp - int(self.timestamp)) * 1000,
                "threadName": self.thread_name,
                "stack_info": self.stack_info,
                CONTEXT_PROPERTIES_ATTR: dict(self.context_properties),
                KEY_VALUES_ATTR: dict(self.key_values),
                **self.attributes,
            }
        )
        return record
