import logging
from collections import defaultdict
from datetime import timedelta
from time import perf_counter

import pytest

from tracegen import DeliveryError, PipelineError, Span, generator
from tracegen.generator import run


def _by_trace(spans: list[Span]) -> dict[str, list[Span]]:
    traces: dict[str, list[Span]] = defaultdict(list)
    for span in spans:
        traces[span["trace.trace_id"]].append(span)
    return traces


def test_two_traces_of_three(pipeline) -> None:
    run(lambda: pipeline, 2, 3, 0)

    roots = [s for s in pipeline.spans if s["name"] == "Root"]
    assert len(roots) == 2
    assert all("trace.parent_id" not in r for r in roots)
    assert sorted(s["name"] for s in pipeline.spans if s["name"] != "Root") == [
        "Test_0_0",
        "Test_0_1",
        "Test_0_2",
        "Test_1_0",
        "Test_1_1",
        "Test_1_2",
    ]

    by_name = {s["name"]: s for s in pipeline.spans if s["name"] != "Root"}
    root_0 = next(
        r for r in roots if r["trace.span_id"] == by_name["Test_0_0"]["trace.parent_id"]
    )
    assert by_name["Test_0_1"]["trace.parent_id"] == by_name["Test_0_0"]["trace.span_id"]
    assert by_name["Test_0_2"]["trace.parent_id"] == by_name["Test_0_1"]["trace.span_id"]
    assert {by_name[f"Test_0_{j}"]["trace.trace_id"] for j in range(3)} == {
        root_0["trace.trace_id"]
    }

    assert pipeline.flushes == [None]
    assert pipeline.is_shut_down


@pytest.mark.parametrize(
    ("parallel_count", "span_count"), [(0, 5), (3, 0), (0, 0), (4, 7)]
)
def test_span_counts(pipeline, parallel_count: int, span_count: int) -> None:
    run(lambda: pipeline, parallel_count, span_count, 0)

    roots = [s for s in pipeline.spans if s["name"] == "Root"]
    assert len(roots) == parallel_count
    assert len(pipeline.spans) - len(roots) == parallel_count * span_count
    assert len(_by_trace(pipeline.spans)) == parallel_count
    assert pipeline.flushes == [None]


def test_chain_is_linear(pipeline) -> None:
    """Every span but the first hangs off the previous span, not the root."""
    run(lambda: pipeline, 5, 10, 0)

    for spans in _by_trace(pipeline.spans).values():
        (root,) = [s for s in spans if s["name"] == "Root"]
        i = spans[0]["name"].split("_")[1]
        chain = {s["name"]: s for s in spans}
        parent = root
        for j in range(10):
            span = chain[f"Test_{i}_{j}"]
            assert span["trace.parent_id"] == parent["trace.span_id"]
            assert span["start_time_ns"] >= parent["start_time_ns"]
            parent = span


def test_root_ends_last(pipeline) -> None:
    run(lambda: pipeline, 4, 5, 0.001)

    for spans in _by_trace(pipeline.spans).values():
        (root,) = [s for s in spans if s["name"] == "Root"]
        assert all(root["end_time_ns"] >= s["end_time_ns"] for s in spans)
        # Roots are recorded after all of their children.
        assert spans[-1] is root


def test_spans_do_not_overlap(pipeline) -> None:
    run(lambda: pipeline, 2, 4, 0.001)

    for spans in _by_trace(pipeline.spans).values():
        children = sorted(
            (s for s in spans if s["name"] != "Root"), key=lambda s: s["start_time_ns"]
        )
        for prev, nxt in zip(children, children[1:]):
            assert prev["end_time_ns"] <= nxt["start_time_ns"]


def test_sleeps_are_honored(pipeline) -> None:
    start = perf_counter()
    run(lambda: pipeline, 2, 3, timedelta(milliseconds=20))
    elapsed = perf_counter() - start

    assert elapsed >= 0.06
    for span in pipeline.spans:
        if span["name"] == "Root":
            assert span["end_time_ns"] - span["start_time_ns"] >= 60_000_000
        else:
            assert span["end_time_ns"] - span["start_time_ns"] >= 20_000_000


def test_workers_run_concurrently(pipeline) -> None:
    """Ten traces of 50ms each take far less than 500ms."""
    start = perf_counter()
    run(lambda: pipeline, 10, 1, 0.05)

    assert perf_counter() - start < 0.4


def test_progress_is_logged(pipeline, caplog) -> None:
    caplog.set_level(logging.INFO, logger="tracegen")

    run(lambda: pipeline, 1, 2, 0)

    messages = [r.getMessage() for r in caplog.records]
    assert "Span 0 0" in messages
    assert "Span 0 1" in messages


def test_negative_inputs(pipeline) -> None:
    with pytest.raises(ValueError):
        run(lambda: pipeline, -1, 1, 0)
    with pytest.raises(ValueError):
        run(lambda: pipeline, 1, 1, -0.5)
    assert pipeline.flushes == []


def test_pipeline_construction_fails(monkeypatch) -> None:
    started: list[int] = []
    monkeypatch.setattr(generator, "produce_trace", lambda *args: started.append(1))

    def factory():
        raise RuntimeError("cannot create exporter")

    with pytest.raises(PipelineError) as exc_info:
        run(factory, 3, 3, 0)

    assert isinstance(exc_info.value.__cause__, RuntimeError)
    assert started == []


def test_pipeline_error_passes_through() -> None:
    error = PipelineError("bad endpoint")

    def factory():
        raise error

    with pytest.raises(PipelineError) as exc_info:
        run(factory, 1, 1, 0)

    assert exc_info.value is error


def test_flush_fails(pipeline) -> None:
    pipeline.flush_error = RuntimeError("collector down")

    with pytest.raises(DeliveryError) as exc_info:
        run(lambda: pipeline, 3, 4, 0, flush_timeout=2.5)

    assert exc_info.value.__cause__ is pipeline.flush_error
    # Everything was generated before the flush failed.
    assert len(pipeline.spans) == 3 * 5
    assert pipeline.flushes == [2.5]
    assert pipeline.is_shut_down


def test_worker_failure_is_fatal(pipeline) -> None:
    pipeline.end_error = RuntimeError("recorder failed")

    with pytest.raises(RuntimeError, match="recorder failed"):
        run(lambda: pipeline, 2, 2, 0)

    assert pipeline.flushes == []
    assert pipeline.is_shut_down


def test_flush_error_survives_failed_shutdown(pipeline, caplog) -> None:
    pipeline.flush_error = RuntimeError("collector down")
    pipeline.shutdown_error = DeliveryError("exporter hung")

    with pytest.raises(DeliveryError) as exc_info:
        run(lambda: pipeline, 1, 1, 0)

    assert exc_info.value.__cause__ is pipeline.flush_error
    assert "Shutting down the export pipeline failed" in caplog.text


def test_shutdown_error_after_successful_flush(pipeline) -> None:
    pipeline.shutdown_error = DeliveryError("exporter hung")

    with pytest.raises(DeliveryError, match="exporter hung"):
        run(lambda: pipeline, 1, 1, 0)

    assert pipeline.flushes == [None]
