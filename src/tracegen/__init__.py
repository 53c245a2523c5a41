"""A span recorder for generating synthetic trace load."""

from __future__ import annotations

from os import urandom
from threading import Lock
from time import perf_counter_ns, time_ns
from typing import Callable, NotRequired, Protocol, TypedDict

from attrs import Factory, define, field, frozen

__all__ = [
    "Span",
    "SpanContext",
    "SpanHandle",
    "Tracer",
    "Pipeline",
    "TraceId",
    "SpanId",
    "Metadata",
    "TracegenError",
    "ConfigError",
    "PipelineError",
    "DeliveryError",
]


type InstantNS = int  # Nanoseconds since the epoch
type Metadata = dict[str, str | int]
type TraceId = str
type SpanId = str

Span = TypedDict(
    "Span",
    {
        "name": str,
        "start_time_ns": InstantNS,
        "end_time_ns": InstantNS,
        "trace.trace_id": TraceId,
        "trace.span_id": SpanId,
        "trace.parent_id": NotRequired[SpanId],
        "attributes": Metadata,
        "tracer_name": str,
        "tracer_metadata": Metadata,
    },
)


class TracegenError(Exception):
    """Base class for fatal load generator errors."""


class ConfigError(TracegenError):
    """The tracer configuration could not be loaded."""


class PipelineError(TracegenError):
    """The export pipeline could not be constructed."""


class DeliveryError(TracegenError):
    """Recorded spans could not be flushed to the backend."""


class Pipeline(Protocol):
    def on_end(self, span: Span) -> None: ...

    def flush(self, timeout: float | None = None) -> None: ...

    def shutdown(self) -> None: ...


# Wall-clock time is sampled once; everything after that is monotonic.
_epoch_offset = time_ns() - perf_counter_ns()


def now_ns() -> InstantNS:
    return _epoch_offset + perf_counter_ns()


def trace_id_factory() -> TraceId:
    return urandom(16).hex()


def span_id_factory() -> SpanId:
    return urandom(8).hex()


@frozen
class SpanContext:
    trace_id: TraceId
    span_id: SpanId


@define
class SpanHandle:
    """A started span. Call `end` once the simulated work is done."""

    name: str
    context: SpanContext
    parent_id: SpanId | None
    start_time_ns: InstantNS
    attributes: Metadata
    _tracer: Tracer = field(repr=False)
    _ended: bool = field(default=False, init=False)
    _lock: Lock = field(factory=Lock, init=False, repr=False)

    def end(self) -> None:
        """Stamp the end time and hand the span to the pipeline.

        Ending an already ended span does nothing.
        """
        with self._lock:
            if self._ended:
                return
            self._ended = True
        span: Span = {
            "name": self.name,
            "start_time_ns": self.start_time_ns,
            "end_time_ns": now_ns(),
            "trace.trace_id": self.context.trace_id,
            "trace.span_id": self.context.span_id,
            "attributes": self.attributes,
            "tracer_name": self._tracer.name,
            "tracer_metadata": self._tracer.metadata,
        }
        if self.parent_id is not None:
            span["trace.parent_id"] = self.parent_id
        self._tracer.pipeline.on_end(span)


@define
class Tracer:
    """
    Records spans and hands them to an explicitly provided pipeline,
    instead of a process-wide provider.
    """

    pipeline: Pipeline
    service_name: str = "test"
    name: str = "Test"
    metadata: Metadata = Factory(dict)
    _trace_id_factory: Callable[[], TraceId] = trace_id_factory
    _span_id_factory: Callable[[], SpanId] = span_id_factory

    def __attrs_post_init__(self) -> None:
        self.metadata["service.name"] = self.service_name

    def start_span(
        self, parent: SpanContext | None, name: str, /, **kwargs: str | int
    ) -> tuple[SpanContext, SpanHandle]:
        """Start a span as a child of `parent`, or a new trace if there is none.

        Returns:
            The context of the new span, to be used as the parent of
            further spans, and the handle used to end it.
        """
        if parent is None:
            trace_id = self._trace_id_factory()
            parent_id = None
        else:
            trace_id = parent.trace_id
            parent_id = parent.span_id
        ctx = SpanContext(trace_id, self._span_id_factory())
        return ctx, SpanHandle(name, ctx, parent_id, now_ns(), kwargs, self)
