"""Ambient baggage access.

Baggage lives in OpenTelemetry's :class:`~opentelemetry.context.Context`.
Every reader here accepts an explicit *context* so that callers can pass the
context along the call path instead of relying on the global "current" one;
``None`` falls back to :func:`opentelemetry.context.get_current`.

Usage::

    from structbaggage.context import baggage_scope, current_baggage

    with baggage_scope(session_id="42"):
        current_baggage()  # {'session_id': '42'}
"""

from __future__ import annotations

from collections.abc import Iterator, Mapping
from contextlib import contextmanager
from types import MappingProxyType
from typing import Any

from opentelemetry import baggage
from opentelemetry import context as otel_context
from opentelemetry.context import Context

BAGGAGE_PREFIX = "baggage."


def current_baggage(context: Context | None = None) -> Mapping[str, str]:
    """Return a read-only, ordered snapshot of the baggage in *context*."""
    entries = baggage.get_all(context)
    return MappingProxyType({key: str(value) for key, value in entries.items()})


def baggage_attributes(context: Context | None = None) -> dict[str, str]:
    """Return baggage entries as ``baggage.``-prefixed attribute pairs.

    Usable as metric attributes too, but every distinct baggage value then
    becomes a separate time series.
    """
    return {BAGGAGE_PREFIX + key: value for key, value in current_baggage(context).items()}


@contextmanager
def baggage_scope(
    entries: Mapping[str, Any] | None = None,
    /,
    *,
    context: Context | None = None,
    **kwargs: Any,
) -> Iterator[Context]:
    """Make a context carrying extra baggage current for a ``with`` block.

    The previous context is restored on exit, also when the block raises.

    Parameters
    ----------
    entries:
        Baggage entries to add.  Values are stringified.
    context:
        Parent context.  Defaults to the current context.
    **kwargs:
        More entries, applied after *entries*.

    Yields
    ------
    Context
        The attached context, to pass explicitly to processors if needed.
    """
    ctx = context if context is not None else otel_context.get_current()
    for key, value in {**(entries or {}), **kwargs}.items():
        if not key:
            msg = "baggage keys must be non-empty"
            raise ValueError(msg)
        ctx = baggage.set_baggage(key, str(value), ctx)

    token = otel_context.attach(ctx)
    try:
        yield ctx
    finally:
        otel_context.detach(token)
