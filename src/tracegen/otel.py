"""Batching span export to an OTel collector over OTLP/HTTP."""

from __future__ import annotations

from asyncio import AbstractEventLoop, CancelledError, Event, Task
from asyncio import Lock as AsyncLock
from asyncio import create_task, new_event_loop, run_coroutine_threadsafe, wait_for
from contextlib import suppress
from logging import getLogger
from threading import Lock, Thread
from typing import Final, NoReturn, NotRequired, Protocol, TypedDict

from aiohttp import ClientSession, ClientTimeout
from attrs import define, field
from orjson import dumps
from yarl import URL

from . import DeliveryError, Metadata, PipelineError
from . import Span as TSpan
from .config import TracerConfig

__all__ = [
    "BatchSpanProcessor",
    "OtlpHttpExporter",
    "SpanExporter",
    "build_pipeline",
    "encode_spans",
]

log = getLogger(__name__)


class StringValue(TypedDict):
    stringValue: str


class IntValue(TypedDict):
    intValue: int


class KVPair(TypedDict):
    key: str
    value: StringValue | IntValue


class Resource(TypedDict):
    attributes: list[KVPair]


class Span(TypedDict):
    traceId: str
    spanId: str
    parentSpanId: NotRequired[str]
    name: str
    startTimeUnixNano: str
    endTimeUnixNano: str
    kind: int
    attributes: list[KVPair]


class InstrumentationScope(TypedDict):
    name: NotRequired[str]
    version: NotRequired[str]
    attributes: NotRequired[list[KVPair]]


class ScopeSpan(TypedDict):
    scope: InstrumentationScope
    spans: list[Span]


class ResourceSpan(TypedDict):
    resource: Resource
    scopeSpans: list[ScopeSpan]


class Payload(TypedDict):
    resourceSpans: list[ResourceSpan]


_KIND_INTERNAL: Final = 1
_TRACES_PATH: Final = "/v1/traces"


def encode_spans(spans: list[TSpan]) -> Payload:
    """Convert recorded spans into an OTLP/JSON payload.

    Spans are grouped by the resource and the scope of the tracer that
    recorded them.
    """
    resources: dict[tuple, tuple[Metadata, dict[str, list[Span]]]] = {}
    for span in spans:
        key = tuple(sorted(span["tracer_metadata"].items()))
        _, scopes = resources.setdefault(key, (span["tracer_metadata"], {}))
        scopes.setdefault(span["tracer_name"], []).append(_encode_span(span))
    return {
        "resourceSpans": [
            {
                "resource": {"attributes": _attributes(metadata)},
                "scopeSpans": [
                    {"scope": {"name": scope}, "spans": scope_spans}
                    for scope, scope_spans in scopes.items()
                ],
            }
            for metadata, scopes in resources.values()
        ]
    }


def _attributes(metadata: Metadata) -> list[KVPair]:
    return [
        {
            "key": k,
            "value": {"stringValue": v} if isinstance(v, str) else {"intValue": v},  # type: ignore
        }
        for k, v in metadata.items()
    ]


def _encode_span(span: TSpan) -> Span:
    res: Span = {
        "traceId": span["trace.trace_id"],
        "spanId": span["trace.span_id"],
        "startTimeUnixNano": str(span["start_time_ns"]),
        "endTimeUnixNano": str(span["end_time_ns"]),
        "kind": _KIND_INTERNAL,
        "name": span["name"],
        "attributes": _attributes(span["attributes"]),
    }
    if "trace.parent_id" in span:
        res["parentSpanId"] = span["trace.parent_id"]
    return res


def traces_url(endpoint: str, tls: bool) -> URL:
    """Build the collector URL from a `host:port` endpoint.

    An endpoint that already has a scheme is used as given, and the
    `/v1/traces` path is added when it has none.
    """
    if not endpoint:
        raise PipelineError("The exporter endpoint is empty")
    if "://" not in endpoint:
        endpoint = f"{'https' if tls else 'http'}://{endpoint}"
    try:
        url = URL(endpoint)
    except ValueError as exc:
        raise PipelineError(f"Invalid exporter endpoint: {endpoint!r}") from exc
    if url.scheme not in ("http", "https") or not url.host:
        raise PipelineError(f"Invalid exporter endpoint: {endpoint!r}")
    if url.path in ("", "/"):
        url = url.with_path(_TRACES_PATH)
    return url


class SpanExporter(Protocol):
    async def start(self) -> None: ...

    async def export(self, spans: list[TSpan]) -> None: ...

    async def close(self) -> None: ...


@define
class OtlpHttpExporter:
    """Sends spans to an OTel receiver via HTTP.

    The OTel collector uses port 4318 by default, and the URL prefix of
    `/v1/traces`.
    """

    endpoint: str
    tls: bool = False
    timeout: float = 10.0
    url: URL = field(init=False)
    _http_client: ClientSession | None = field(default=None, init=False)

    def __attrs_post_init__(self) -> None:
        self.url = traces_url(self.endpoint, self.tls)

    async def start(self) -> None:
        self._http_client = ClientSession(timeout=ClientTimeout(total=self.timeout))

    async def export(self, spans: list[TSpan]) -> None:
        if self._http_client is None:
            raise RuntimeError("The exporter has not been started")
        payload = dumps(encode_spans(spans))
        async with self._http_client.post(
            self.url, data=payload, headers={"content-type": "application/json"}
        ) as resp:
            body = await resp.read()
            resp.raise_for_status()
        log.debug("Exported %d spans: %s", len(spans), body[:200])

    async def close(self) -> None:
        if self._http_client is not None:
            await self._http_client.close()
            self._http_client = None


@define
class BatchSpanProcessor:
    """Buffers ended spans and exports them in batches.

    Exporting happens on an event loop owned by a background thread, so
    spans can be ended from any thread. Export failures in the background
    are reported by the next `flush`.
    """

    exporter: SpanExporter
    max_queue_size: int = 2048
    max_export_batch_size: int = 512
    schedule_delay: float = 5.0  # Seconds
    shutdown_timeout: float = 30.0  # Seconds
    dropped: int = field(default=0, init=False)
    _queue: list[TSpan] = field(factory=list, init=False)
    _lock: Lock = field(factory=Lock, init=False)
    _loop: AbstractEventLoop | None = field(default=None, init=False)
    _thread: Thread | None = field(default=None, init=False)
    _wakeup: Event | None = field(default=None, init=False)
    _export_lock: AsyncLock | None = field(default=None, init=False)
    _export_task: Task[NoReturn] | None = field(default=None, init=False)
    _export_error: Exception | None = field(default=None, init=False)
    _is_shut_down: bool = field(default=False, init=False)

    def start(self) -> None:
        """Start the background export loop and the exporter."""
        self._loop = new_event_loop()
        self._thread = Thread(
            target=self._loop.run_forever, name="tracegen-export", daemon=True
        )
        self._thread.start()
        try:
            run_coroutine_threadsafe(self._start(), self._loop).result()
        except Exception as exc:
            self._stop_loop()
            self._is_shut_down = True
            raise PipelineError("Starting the span exporter failed") from exc

    async def _start(self) -> None:
        self._wakeup = Event()
        self._export_lock = AsyncLock()
        await self.exporter.start()
        self._export_task = create_task(self._export_loop())

    def on_end(self, span: TSpan) -> None:
        with self._lock:
            if self._is_shut_down or len(self._queue) >= self.max_queue_size:
                self.dropped += 1
                return
            self._queue.append(span)
            batch_ready = len(self._queue) >= self.max_export_batch_size
        if batch_ready and self._loop is not None and self._wakeup is not None:
            self._loop.call_soon_threadsafe(self._wakeup.set)

    def flush(self, timeout: float | None = None) -> None:
        """Block until every span accepted so far has been exported.

        Raises:
            DeliveryError: If an export fails, now or earlier in the
                background, or the timeout expires.
        """
        if self._is_shut_down or self._loop is None:
            raise DeliveryError("The span processor is not running")
        fut = run_coroutine_threadsafe(self._export_pending(), self._loop)
        try:
            fut.result(timeout)
        except TimeoutError as exc:
            if fut.done():
                raise DeliveryError("Flushing spans timed out in the exporter") from exc
            fut.cancel()
            raise DeliveryError(
                f"Flushing spans did not finish within {timeout}s"
            ) from exc
        except Exception as exc:
            raise DeliveryError("Flushing spans failed") from exc
        finally:
            if self.dropped:
                log.warning("%d spans were dropped before export", self.dropped)
        with self._lock:
            error, self._export_error = self._export_error, None
        if error is not None:
            raise DeliveryError("Exporting spans in the background failed") from error

    def shutdown(self) -> None:
        """Stop the export loop and close the exporter.

        Spans still queued are not exported; flush first.

        Raises:
            DeliveryError: If the exporter does not close in time.
        """
        with self._lock:
            if self._is_shut_down:
                return
            self._is_shut_down = True
        if self._loop is None:
            return
        fut = run_coroutine_threadsafe(self._close(), self._loop)
        try:
            fut.result(self.shutdown_timeout)
        except TimeoutError as exc:
            fut.cancel()
            raise DeliveryError(
                f"Closing the exporter did not finish within {self.shutdown_timeout}s"
            ) from exc
        finally:
            self._stop_loop()

    async def _close(self) -> None:
        if self._export_task is not None:
            self._export_task.cancel()
            with suppress(CancelledError):
                await self._export_task
        await self.exporter.close()

    def _stop_loop(self) -> None:
        assert self._loop is not None
        self._loop.call_soon_threadsafe(self._loop.stop)
        if self._thread is not None:
            self._thread.join()
        self._loop.close()

    def _take_batch(self) -> list[TSpan]:
        with self._lock:
            batch = self._queue[: self.max_export_batch_size]
            del self._queue[: self.max_export_batch_size]
        return batch

    async def _export_pending(self) -> None:
        assert self._export_lock is not None
        async with self._export_lock:
            while batch := self._take_batch():
                try:
                    await self.exporter.export(batch)
                except BaseException:
                    with self._lock:
                        self.dropped += len(batch)
                    raise

    async def _export_loop(self) -> NoReturn:
        """Continually export queued spans, until cancelled."""
        assert self._wakeup is not None
        while True:
            with suppress(TimeoutError):
                await wait_for(self._wakeup.wait(), self.schedule_delay)
            self._wakeup.clear()
            try:
                await self._export_pending()
            except Exception as exc:
                log.exception("Exporting spans failed, dropping the batch")
                with self._lock:
                    if self._export_error is None:
                        self._export_error = exc


def build_pipeline(config: TracerConfig) -> BatchSpanProcessor:
    """Construct and start the export pipeline described by `config`."""
    exporter = OtlpHttpExporter(config.endpoint, config.tls)
    processor = BatchSpanProcessor(exporter)
    processor.start()
    log.info("Exporting spans to %s", exporter.url)
    return processor
