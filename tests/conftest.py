from threading import Lock

import pytest
from attrs import Factory, define, field

from tracegen import Span


@define
class ListPipeline:
    """Keeps every ended span in memory."""

    spans: list[Span] = Factory(list)
    flushes: list[float | None] = Factory(list)
    end_error: Exception | None = None
    flush_error: Exception | None = None
    shutdown_error: Exception | None = None
    is_shut_down: bool = False
    _lock: Lock = field(factory=Lock)

    def on_end(self, span: Span) -> None:
        if self.end_error is not None:
            raise self.end_error
        with self._lock:
            self.spans.append(span)

    def flush(self, timeout: float | None = None) -> None:
        self.flushes.append(timeout)
        if self.flush_error is not None:
            raise self.flush_error

    def shutdown(self) -> None:
        self.is_shut_down = True
        if self.shutdown_error is not None:
            raise self.shutdown_error


@pytest.fixture
def pipeline() -> ListPipeline:
    return ListPipeline()
