"""Error types and exception serialization.

:func:`exception_to_dict` converts ``exc_info`` into a JSON-serializable
dictionary with type, message, module, traceback frames and optional
chained-cause information.  Event snapshots use it so that no traceback (and
therefore no live frame) outlives the logging call.
"""

from __future__ import annotations

import sys
import traceback
from typing import Any


class StructBaggageError(Exception):
    """Base class for errors raised by structbaggage."""


class UnsupportedHookError(StructBaggageError, NotImplementedError):
    """A processor was invoked on a lifecycle hook it declared as not required.

    Always a wiring bug: the processor has been registered somewhere that does
    not honour its ``is_*_required`` flags.
    """

    def __init__(self, processor: object, hook: str) -> None:
        self.processor = processor
        self.hook = hook
        super().__init__(f"{type(processor).__name__} does not implement {hook!r}")


class MergeError(StructBaggageError):
    """A structured value could not be merged into a log event."""

    def __init__(self, key: str) -> None:
        self.key = key
        super().__init__(f"cannot merge structured value for key {key!r}")


class SinkDeliveryError(StructBaggageError):
    """A sink raised while receiving a snapshot."""

    def __init__(self, sink_name: str) -> None:
        self.sink_name = sink_name
        super().__init__(f"sink {sink_name!r} failed to deliver snapshot")


def _normalize_exc_info(exc_info: Any) -> tuple[Any, Any, Any] | None:
    if isinstance(exc_info, BaseException):
        return (type(exc_info), exc_info, exc_info.__traceback__)
    if exc_info is True:
        exc_info = sys.exc_info()
    if not isinstance(exc_info, tuple) or len(exc_info) != 3 or exc_info[0] is None:
        return None
    return exc_info


def exception_to_dict(exc_info: Any, *, max_frames: int = 20) -> dict[str, Any] | None:
    """Convert ``exc_info`` to a structured dictionary.

    *exc_info* may be an exception instance, an ``exc_info`` tuple or
    ``True`` (meaning :func:`sys.exc_info`).  Returns ``None`` when there is
    no exception to describe.
    """
    if not exc_info:
        return None
    normalized = _normalize_exc_info(exc_info)
    if normalized is None:
        return None

    exc_type, exc_value, exc_tb = normalized
    frames = [
        {
            "filename": fs.filename,
            "lineno": fs.lineno,
            "name": fs.name,
            "line": fs.line,
        }
        for fs in traceback.extract_tb(exc_tb)[-max_frames:]
    ]

    result: dict[str, Any] = {
        "type": exc_type.__qualname__,
        "message": str(exc_value),
        "module": exc_type.__module__,
        "frames": frames,
    }

    cause = exc_value.__cause__
    if cause is None and not exc_value.__suppress_context__:
        cause = exc_value.__context__
    if cause is not None:
        result["cause"] = {
            "type": type(cause).__qualname__,
            "message": str(cause),
        }
    return result
