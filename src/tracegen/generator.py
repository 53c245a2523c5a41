"""Concurrent generation of synthetic traces."""

from __future__ import annotations

from concurrent.futures import ThreadPoolExecutor
from datetime import timedelta
from logging import getLogger
from time import sleep
from typing import Callable

from . import DeliveryError, Pipeline, PipelineError, TracegenError, Tracer

__all__ = ["produce_trace", "run"]

log = getLogger(__name__)


def produce_trace(tracer: Tracer, i: int, span_count: int, span_duration: float) -> None:
    """Record one trace: a root span and a linear chain of `span_count` spans.

    Each span is started as a child of the previous one, so the chain is
    `Root -> Test_i_0 -> Test_i_1 -> ...`.
    """
    tail, root_span = tracer.start_span(None, "Root")
    for j in range(span_count):
        log.info("Span %d %d", i, j)
        ctx, span = tracer.start_span(tail, f"Test_{i}_{j}")
        sleep(span_duration)
        span.end()
        tail = ctx
    root_span.end()


def run(
    pipeline_factory: Callable[[], Pipeline],
    parallel_count: int,
    span_count: int,
    span_duration: float | timedelta,
    *,
    flush_timeout: float | None = None,
    tracer_name: str = "Test",
    service_name: str = "test",
) -> None:
    """Generate `parallel_count` traces concurrently and flush them.

    The pipeline is built before any trace is started and flushed only
    after every trace has ended. It is shut down afterwards either way.

    Raises:
        PipelineError: If the pipeline cannot be constructed.
        DeliveryError: If the final flush fails or times out.
    """
    if isinstance(span_duration, timedelta):
        span_duration = span_duration.total_seconds()
    if parallel_count < 0 or span_count < 0 or span_duration < 0:
        raise ValueError("Counts and the span duration must not be negative")

    try:
        pipeline = pipeline_factory()
    except TracegenError:
        raise
    except Exception as exc:
        raise PipelineError(f"Constructing the export pipeline failed: {exc}") from exc

    try:
        tracer = Tracer(pipeline, service_name, tracer_name)
        with ThreadPoolExecutor(
            max_workers=max(parallel_count, 1), thread_name_prefix="trace"
        ) as pool:
            workers = [
                pool.submit(produce_trace, tracer, i, span_count, span_duration)
                for i in range(parallel_count)
            ]
        for worker in workers:
            worker.result()
        log.info("Generated %d traces, flushing", parallel_count)

        try:
            pipeline.flush(flush_timeout)
        except DeliveryError:
            raise
        except Exception as exc:
            raise DeliveryError(f"Flushing spans failed: {exc}") from exc
    except BaseException:
        # The first failure is the one reported.
        try:
            pipeline.shutdown()
        except Exception:
            log.exception("Shutting down the export pipeline failed")
        raise
    pipeline.shutdown()
