"""Observability helpers for tracing, metrics, and logging."""
from __future__ import annotations

import logging
from collections.abc import Iterator
from contextlib import contextmanager
from time import perf_counter

from opentelemetry import trace
from opentelemetry.exporter.otlp.proto.http.trace_exporter import OTLPSpanExporter
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor
from prometheus_client import Counter, Histogram

from .config import AppSettings

logger = logging.getLogger("convqa")
tracer = trace.get_tracer(__name__)

REQUEST_LATENCY = Histogram(
    "convqa_request_latency_ms", "Latency of chain invocations", buckets=(50, 100, 250, 500, 1000, 2000, 5000)
)
STAGE_LATENCY = Histogram(
    "convqa_stage_latency_ms", "Latency of chain stages", labelnames=("stage",), buckets=(10, 50, 100, 250, 500, 1000, 2000)
)
ANSWER_PATH = Counter("convqa_answer_path_total", "Answers by path", labelnames=("path",))
RETRIEVED_DOCUMENTS = Histogram("convqa_retrieved_documents", "Documents kept after thresholding", buckets=(0, 1, 2, 4, 8, 16))


def configure_logging(verbose: bool = False) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s | %(message)s",
    )


def configure_tracing(settings: AppSettings) -> None:
    if not settings.observability.enable_tracing:
        return
    resource = Resource.create({"service.name": "convqa"})
    provider = TracerProvider(resource=resource)
    processor = BatchSpanProcessor(OTLPSpanExporter(endpoint=settings.observability.otlp_endpoint))
    provider.add_span_processor(processor)
    trace.set_tracer_provider(provider)


@contextmanager
def traced_span(name: str) -> Iterator[None]:
    start = perf_counter()
    try:
        with tracer.start_as_current_span(name):
            yield
    finally:
        STAGE_LATENCY.labels(name).observe((perf_counter() - start) * 1000)


class ChainEvents:
    """Receives structured events from the orchestrator. The base class drops them."""

    def condensed(self, question: str, standalone_question: str) -> None:
        pass

    def retrieved(self, question: str, count: int) -> None:
        pass

    def answered(self, path: str, latency_ms: float) -> None:
        pass

    def failed(self, stage: str, error: Exception) -> None:
        pass


class LoggingChainEvents(ChainEvents):
    """Logs chain events and records Prometheus metrics.

    With ``verbose`` events are logged at INFO, otherwise at DEBUG.
    """

    def __init__(self, verbose: bool = False, record_metrics: bool = True, log: logging.Logger = logger) -> None:
        self.level = logging.INFO if verbose else logging.DEBUG
        self.record_metrics = record_metrics
        self.log = log

    def condensed(self, question: str, standalone_question: str) -> None:
        self.log.log(self.level, "condensed question=%r standalone=%r", question, standalone_question)

    def retrieved(self, question: str, count: int) -> None:
        self.log.log(self.level, "retrieved documents=%d question=%r", count, question)
        if self.record_metrics:
            RETRIEVED_DOCUMENTS.observe(count)

    def answered(self, path: str, latency_ms: float) -> None:
        self.log.log(self.level, "answered path=%s latency_ms=%.1f", path, latency_ms)
        if self.record_metrics:
            ANSWER_PATH.labels(path).inc()
            REQUEST_LATENCY.observe(latency_ms)

    def failed(self, stage: str, error: Exception) -> None:
        self.log.warning("chain failed stage=%s error=%s: %s", stage, type(error).__name__, error)
