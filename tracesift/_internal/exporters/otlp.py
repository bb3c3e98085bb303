from __future__ import annotations

import time
from typing import Sequence
from urllib.parse import urljoin

import requests.exceptions
from opentelemetry.exporter.otlp.proto.http import Compression
from opentelemetry.exporter.otlp.proto.http.trace_exporter import OTLPSpanExporter
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import ReadableSpan
from opentelemetry.sdk.trace.export import SpanExporter, SpanExportResult

from ..utils import logger
from .queue import BatchExportOptions, ProcessorExportQueue
from .wrapper import WrapperSpanExporter


class QuietSpanExporter(WrapperSpanExporter):
    """A SpanExporter that catches request exceptions to prevent OTEL from logging a huge traceback.

    An unreachable collector is reported at most once every `LOG_INTERVAL` seconds.
    """

    LOG_INTERVAL = 60

    def __init__(self, exporter: SpanExporter) -> None:
        super().__init__(exporter)
        self.last_log_time = -float('inf')

    def export(self, spans: Sequence[ReadableSpan]) -> SpanExportResult:
        try:
            return super().export(spans)
        except requests.exceptions.RequestException as e:
            if self._should_log():
                logger.warning('Failed to export %s span(s), dropping them: %s', len(spans), e)
            return SpanExportResult.FAILURE

    def _should_log(self) -> bool:
        result = time.monotonic() - self.last_log_time >= self.LOG_INTERVAL
        if result:
            self.last_log_time = time.monotonic()
        return result


def traces_endpoint(endpoint: str) -> str:
    return urljoin(endpoint.rstrip('/') + '/', 'v1/traces')


def create_otlp_export_queue(
    endpoint: str, resource: Resource | None = None, options: BatchExportOptions | None = None
) -> ProcessorExportQueue:
    """Build the production export queue: a `BatchSpanProcessor` feeding an OTLP/HTTP exporter."""
    options = options or BatchExportOptions()
    exporter = OTLPSpanExporter(
        endpoint=traces_endpoint(endpoint),
        compression=Compression.Gzip,
        timeout=options.export_timeout_millis / 1000,
    )
    return ProcessorExportQueue.batching(QuietSpanExporter(exporter), resource, options)
