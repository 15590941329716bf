"""Tracing and structured logging for catalog operations.

Catalog, commit and transaction entry points are wrapped with ``@traced`` so
each call opens an OpenTelemetry span named after the operation (for example
``strata.catalog.commit``) and tagged with the table or namespace involved.
Log lines carry the ids of the active span once ``configure_logging`` has
installed ``add_trace_context``.

Tracers are cached per instrumentation name. Tests swap in a mock with
``set_tracer`` and clear the cache with ``reset_tracer``. If the global
OpenTelemetry provider cannot hand out a tracer, every later lookup gets a
``NoOpTracer`` so tracing never breaks a commit.

Example:
    >>> @traced(operation_name="strata.catalog.drop_table", attributes_fn=table_attrs)
    ... def drop_table(self, identifier, purge=False): ...

Attributes:
    TRACER_NAME: Instrumentation name used for catalog spans.
    OPERATION_ATTRIBUTE: Span attribute holding the wrapped function's name.
"""

from __future__ import annotations

import functools
import logging
import threading
from collections.abc import MutableMapping
from typing import TYPE_CHECKING, Any, ParamSpec, TypeVar, overload

import structlog
from opentelemetry import trace
from opentelemetry.trace import INVALID_SPAN_ID, INVALID_TRACE_ID, Status, StatusCode

if TYPE_CHECKING:
    from collections.abc import Callable

    from opentelemetry.trace import Tracer

P = ParamSpec("P")
R = TypeVar("R")

EventDict = MutableMapping[str, Any]

TRACER_NAME = "strata-catalog"
OPERATION_ATTRIBUTE = "strata.catalog.operation"

_log = structlog.get_logger(__name__)

# =============================================================================
# Tracer Cache
# =============================================================================

_cache: dict[str, Tracer] = {}
_provider_broken = False
_cache_lock = threading.Lock()


def get_tracer(name: str = TRACER_NAME) -> Tracer:
    """Return the cached tracer for ``name``, creating it on first use.

    Falls back to a ``NoOpTracer`` for this and every later call once the
    provider has failed to create one.
    """
    global _provider_broken

    cached = _cache.get(name)
    if cached is not None:
        return cached
    if _provider_broken:
        return trace.NoOpTracer()

    with _cache_lock:
        cached = _cache.get(name)
        if cached is not None:
            return cached
        if _provider_broken:
            return trace.NoOpTracer()
        try:
            created = trace.get_tracer(name)
        except RecursionError:
            # provider state left inconsistent by an earlier teardown
            _provider_broken = True
            _log.warning("tracer_unavailable", tracer_name=name, reason="recursion")
            return trace.NoOpTracer()
        except Exception as exc:
            _provider_broken = True
            _log.warning("tracer_unavailable", tracer_name=name, reason=str(exc))
            return trace.NoOpTracer()
        _cache[name] = created
        return created


def set_tracer(name: str, tracer: Tracer | None) -> None:
    """Install ``tracer`` under ``name``, or drop the cached one when None.

    Example:
        >>> set_tracer(TRACER_NAME, MagicMock())
    """
    with _cache_lock:
        if tracer is None:
            _cache.pop(name, None)
        else:
            _cache[name] = tracer


def reset_tracer() -> None:
    """Empty the cache and forget any earlier provider failure."""
    global _provider_broken
    with _cache_lock:
        _cache.clear()
        _provider_broken = False


# =============================================================================
# @traced
# =============================================================================


@overload
def traced(
    func: Callable[P, R],
    *,
    operation_name: str | None = ...,
    attributes: dict[str, Any] | None = ...,
    attributes_fn: Callable[..., dict[str, Any]] | None = ...,
) -> Callable[P, R]: ...


@overload
def traced(
    func: None = ...,
    *,
    operation_name: str | None = ...,
    attributes: dict[str, Any] | None = ...,
    attributes_fn: Callable[..., dict[str, Any]] | None = ...,
) -> Callable[[Callable[P, R]], Callable[P, R]]: ...


def traced(
    func: Callable[P, R] | None = None,
    *,
    operation_name: str | None = None,
    attributes: dict[str, Any] | None = None,
    attributes_fn: Callable[..., dict[str, Any]] | None = None,
) -> Callable[P, R] | Callable[[Callable[P, R]], Callable[P, R]]:
    """Run the wrapped function inside a span.

    Works bare (``@traced``) or with options. Exceptions are recorded on the
    span, which is marked ERROR, and then re-raised unchanged.

    Args:
        func: Function being wrapped when the decorator is used bare.
        operation_name: Span name; the function name when omitted.
        attributes: Fixed span attributes.
        attributes_fn: Called with the wrapped function's arguments; returns
            extra span attributes (table identifier, namespace, ...).
    """

    def decorate(fn: Callable[P, R]) -> Callable[P, R]:
        span_name = operation_name or fn.__name__

        @functools.wraps(fn)
        def run(*args: P.args, **kwargs: P.kwargs) -> R:
            with get_tracer().start_as_current_span(span_name) as span:
                span.set_attribute(OPERATION_ATTRIBUTE, fn.__name__)
                for key, value in (attributes or {}).items():
                    span.set_attribute(key, value)
                if attributes_fn is not None:
                    try:
                        extra = attributes_fn(*args, **kwargs)
                    except (AttributeError, KeyError, TypeError, ValueError) as exc:
                        _log.debug("span_attributes_skipped", span_name=span_name, error=str(exc))
                        extra = {}
                    for key, value in extra.items():
                        span.set_attribute(key, value)
                try:
                    return fn(*args, **kwargs)
                except Exception as exc:
                    span.record_exception(exc)
                    span.set_status(Status(StatusCode.ERROR, str(exc)))
                    raise

        return run

    if func is not None:
        return decorate(func)
    return decorate


# =============================================================================
# Logging
# =============================================================================


def add_trace_context(
    logger: Any,  # noqa: ARG001
    method_name: str,  # noqa: ARG001
    event_dict: EventDict,
) -> EventDict:
    """Structlog processor adding ``trace_id`` and ``span_id`` of the active span."""
    context = trace.get_current_span().get_span_context()
    if context.trace_id != INVALID_TRACE_ID and context.span_id != INVALID_SPAN_ID:
        event_dict["trace_id"] = f"{context.trace_id:032x}"
        event_dict["span_id"] = f"{context.span_id:016x}"
    return event_dict


def configure_logging(
    *,
    log_level: str = "INFO",
    json_format: bool = True,
    add_timestamp: bool = True,
) -> None:
    """Route structlog through stdlib logging with catalog-friendly processors.

    Args:
        log_level: Root level name (DEBUG, INFO, WARNING, ERROR, CRITICAL).
        json_format: Render JSON lines; otherwise use the console renderer.
        add_timestamp: Prefix each event with an ISO timestamp.
    """
    processors: list[Any] = []
    if add_timestamp:
        processors.append(structlog.processors.TimeStamper(fmt="iso"))
    processors.extend(
        [
            structlog.stdlib.add_log_level,
            structlog.stdlib.add_logger_name,
            add_trace_context,
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
        ]
    )
    renderer = (
        structlog.processors.JSONRenderer() if json_format else structlog.dev.ConsoleRenderer()
    )
    processors.append(renderer)

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )
    logging.basicConfig(format="%(message)s", level=getattr(logging, log_level.upper()))


__all__ = [
    "OPERATION_ATTRIBUTE",
    "TRACER_NAME",
    "add_trace_context",
    "configure_logging",
    "get_tracer",
    "reset_tracer",
    "set_tracer",
    "traced",
]
