"""
Correlation contexts for dbflow operations.

Every public flow operation runs inside one correlation context. The
outermost call creates it, nested calls borrow it (explicitly or through the
``ContextVar``), and the owner finishes it exactly once when its scope exits.

Diagnostic events go to an injected ``CorrelationSink``. Sink failures are
logged at DEBUG and never affect operation results.
"""

from __future__ import annotations

import logging
from collections.abc import Iterator
from contextlib import contextmanager
from contextvars import ContextVar
from dataclasses import dataclass, field
from typing import Any, Protocol

logger = logging.getLogger(__name__)

# Active correlation context for the current task
_current_context: ContextVar[CorrelationContext | None] = ContextVar(
    "dbflow_correlation", default=None
)


def current_correlation_id() -> str | None:
    """Return the correlation id of the active context, if any."""
    ctx = _current_context.get()
    return ctx.correlation_id if ctx is not None else None


# =============================================================================
# Sink Protocol
# =============================================================================


class CorrelationSink(Protocol):
    """Receiver for correlated diagnostic events."""

    def start(self) -> str:
        """Open a new correlation and return its id."""
        ...

    def annotate(
        self,
        event_id: str,
        level: int,
        component: str,
        message: str,
        context: dict[str, Any],
    ) -> None: ...

    def mark_used(self, event_id: str) -> None:
        """Record that a nested call borrowed the correlation."""
        ...

    def finish(self, event_id: str) -> None: ...


# =============================================================================
# Context
# =============================================================================


@dataclass
class CorrelationContext:
    """Handle for one logical operation."""

    correlation_id: str
    sink: CorrelationSink
    finished: bool = False
    borrowed: int = field(default=0)

    def annotate(
        self, level: int, message: str, *, component: str = "FLOW", **context: Any
    ) -> None:
        try:
            self.sink.annotate(self.correlation_id, level, component, message, context)
        except Exception as e:
            logger.debug(f"Correlation sink annotate failed: {e}")

    def debug(self, message: str, *, component: str = "FLOW", **context: Any) -> None:
        self.annotate(logging.DEBUG, message, component=component, **context)

    def info(self, message: str, *, component: str = "FLOW", **context: Any) -> None:
        self.annotate(logging.INFO, message, component=component, **context)

    def warning(self, message: str, *, component: str = "FLOW", **context: Any) -> None:
        self.annotate(logging.WARNING, message, component=component, **context)

    def error(self, message: str, *, component: str = "FLOW", **context: Any) -> None:
        self.annotate(logging.ERROR, message, component=component, **context)


# =============================================================================
# Tracer
# =============================================================================


class Tracer:
    """
    Creates and scopes correlation contexts.

    Example:
        with tracer.scope(ctx) as ctx:
            rows = await store.query("user", {"id": 1}, ctx=ctx)
    """

    def __init__(self, sink: CorrelationSink):
        self.sink = sink

    @contextmanager
    def scope(self, ctx: CorrelationContext | None = None) -> Iterator[CorrelationContext]:
        """
        Yield the context to use for one call.

        An explicit ``ctx`` is borrowed as-is. Otherwise the active context
        of the current task is borrowed. Only when neither exists is a new
        context created; it is finished when this scope exits.
        """
        if ctx is not None:
            yield ctx
            return

        active = _current_context.get()
        if active is not None:
            active.borrowed += 1
            try:
                self.sink.mark_used(active.correlation_id)
            except Exception as e:
                logger.debug(f"Correlation sink mark_used failed: {e}")
            yield active
            return

        owned = CorrelationContext(correlation_id=self._start(), sink=self.sink)
        token = _current_context.set(owned)
        try:
            yield owned
        finally:
            _current_context.reset(token)
            self._finish(owned)

    def _start(self) -> str:
        try:
            return self.sink.start()
        except Exception as e:
            logger.debug(f"Correlation sink start failed: {e}")
            return "untraced"

    def _finish(self, ctx: CorrelationContext) -> None:
        if ctx.finished:
            return
        ctx.finished = True
        try:
            self.sink.finish(ctx.correlation_id)
        except Exception as e:
            logger.debug(f"Correlation sink finish failed: {e}")
