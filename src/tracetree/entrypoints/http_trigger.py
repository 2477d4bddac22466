"""Trigger a fresh trace with an instrumented HTTP request.

The request is wrapped in a client span exported over OTLP to the APM
server, with the W3C ``traceparent`` header injected so the target
service joins the same trace. The trace id is only returned after the
exporter has been flushed, so the root transaction is on its way to the
backend before polling starts.
"""
from __future__ import annotations

import sys
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeoutError
from typing import Any, Optional, TextIO

import httpx
from opentelemetry import propagate
from opentelemetry.exporter.otlp.proto.grpc.trace_exporter import OTLPSpanExporter
from opentelemetry.sdk.resources import SERVICE_NAME, Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor
from opentelemetry.trace import SpanKind, format_trace_id

from tracetree.config import DEFAULT_APM_SERVER_URL
from tracetree.errors import ErrorCode, TriggerError, warn

SERVICE = "tracetree"
PROGRESS_INTERVAL_SECONDS = 0.05


def build_tracer_provider(apm_server_url: str = DEFAULT_APM_SERVER_URL) -> TracerProvider:
    """TracerProvider exporting OTLP/gRPC to the APM server."""
    provider = TracerProvider(resource=Resource.create({SERVICE_NAME: SERVICE}))
    exporter = OTLPSpanExporter(
        endpoint=apm_server_url,
        insecure=apm_server_url.startswith("http://"),
    )
    provider.add_span_processor(BatchSpanProcessor(exporter))
    return provider


class HttpTrigger:
    """Issues one traced GET and reports the trace id once flushed."""

    def __init__(
        self,
        apm_server_url: str = DEFAULT_APM_SERVER_URL,
        flush_timeout_seconds: float = 10.0,
        provider: Optional[TracerProvider] = None,
        client: Optional[httpx.Client] = None,
        progress_interval_seconds: float = PROGRESS_INTERVAL_SECONDS,
        out: TextIO = sys.stdout,
    ):
        """Initialize the trigger.

        Args:
            apm_server_url: OTLP endpoint of the APM server
            flush_timeout_seconds: Upper bound for the exporter flush
            provider: Preconfigured TracerProvider (built lazily otherwise)
            client: httpx client used for the request
            progress_interval_seconds: How often to report flush progress
            out: Stream for progress lines
        """
        self._apm_server_url = apm_server_url
        self._flush_timeout = flush_timeout_seconds
        self._provider = provider
        self._client = client
        self._progress_interval = progress_interval_seconds
        self._out = out

    def _get_provider(self) -> TracerProvider:
        if self._provider is None:
            self._provider = build_tracer_provider(self._apm_server_url)
        return self._provider

    def _get_client(self) -> httpx.Client:
        if self._client is None:
            self._client = httpx.Client(follow_redirects=True)
        return self._client

    def invoke(self, url: str) -> str:
        """Request ``url`` inside a new trace and return its 32-hex trace id.

        Raises:
            TriggerError: If the request cannot be completed.
        """
        tracer = self._get_provider().get_tracer(SERVICE)
        with tracer.start_as_current_span(f"GET {url}", kind=SpanKind.CLIENT) as span:
            headers: dict[str, str] = {}
            propagate.inject(headers)
            try:
                with self._get_client().stream("GET", url, headers=headers) as resp:
                    for _ in resp.iter_bytes():
                        pass
            except httpx.HTTPError as e:
                raise TriggerError(f"GET {url}: {e}") from e
            span.set_attribute("http.request.method", "GET")
            span.set_attribute("url.full", url)
            span.set_attribute("http.response.status_code", resp.status_code)
            trace_id = format_trace_id(span.get_span_context().trace_id)

        self._wait_for_flush()
        print(f"sent request with trace_id: {trace_id}", file=self._out)
        return trace_id

    def _wait_for_flush(self) -> bool:
        """Flush in a worker thread, printing progress until it is done.

        The worker is always joined before returning. The timeout only
        bounds the flush call itself.
        """
        provider = self._get_provider()
        timeout_millis = int(self._flush_timeout * 1000)
        with ThreadPoolExecutor(max_workers=1, thread_name_prefix="tracetree-flush") as pool:
            future = pool.submit(provider.force_flush, timeout_millis)
            while True:
                try:
                    flushed: Any = future.result(timeout=self._progress_interval)
                    break
                except FutureTimeoutError:
                    print("Waiting for transaction to be flushed...", file=self._out)

        if flushed is False:
            warn(ErrorCode.E105, f"flush did not finish within {self._flush_timeout:g}s")
            return False
        return True

    def close(self) -> None:
        if self._client is not None:
            self._client.close()
            self._client = None
        if self._provider is not None:
            self._provider.shutdown()
            self._provider = None
