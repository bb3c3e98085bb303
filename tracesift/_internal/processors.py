from __future__ import annotations

from abc import ABC, abstractmethod

from opentelemetry.trace.status import StatusCode

from ..exceptions import TraceSiftConfigError
from .constants import (
    ATTRIBUTES_DURATION_MS_KEY,
    ATTRIBUTES_ERROR_CAPTURED_KEY,
    ATTRIBUTES_ERROR_CLASS_KEY,
    ATTRIBUTES_ERROR_STATUS_CODE_KEY,
    ATTRIBUTES_PERFORMANCE_CLASS_KEY,
    ATTRIBUTES_SLOW_EXCEEDED_BY_KEY,
    ATTRIBUTES_SLOW_REQUEST_KEY,
    ATTRIBUTES_SLOW_THRESHOLD_KEY,
    ATTRIBUTES_SLOW_WARNING_KEY,
    DEFAULT_SLOW_THRESHOLD_MS,
    DEFAULT_WARNING_THRESHOLD_MS,
    PERFORMANCE_BUCKETS,
    PerformanceClass,
)
from .span import Span, get_status_code
from .utils import logger, running_under_pytest


class TailProcessor(ABC):
    """Enriches a span's attributes once it has ended.

    Tail processors only flag spans, they never decide whether a span is exported.
    """

    @abstractmethod
    def on_end(self, span: Span) -> None: ...

    def force_flush(self, timeout_millis: int = 30000) -> bool:
        return True

    def shutdown(self) -> None:
        pass


def classify_performance(duration_ms: float) -> PerformanceClass:
    for upper_bound, performance_class in PERFORMANCE_BUCKETS:
        if duration_ms <= upper_bound:
            return performance_class
    return 'critical'


class DurationClassifier(TailProcessor):
    """Records the duration of each span, buckets it, and flags slow spans so that they're exported."""

    def __init__(
        self,
        slow_threshold_ms: float = DEFAULT_SLOW_THRESHOLD_MS,
        warning_threshold_ms: float = DEFAULT_WARNING_THRESHOLD_MS,
        quiet: bool | None = None,
    ) -> None:
        if not (0 <= warning_threshold_ms <= slow_threshold_ms):
            raise TraceSiftConfigError(
                'Invalid duration thresholds, must be 0 <= warning_threshold_ms <= slow_threshold_ms, '
                f'got {warning_threshold_ms!r} and {slow_threshold_ms!r}'
            )
        self.slow_threshold_ms = slow_threshold_ms
        self.warning_threshold_ms = warning_threshold_ms
        self.quiet = running_under_pytest() if quiet is None else quiet

    def on_end(self, span: Span) -> None:
        duration_ms = span.duration_ms
        if duration_ms is None:
            return

        attributes = span.attributes
        attributes[ATTRIBUTES_DURATION_MS_KEY] = duration_ms

        if duration_ms > self.slow_threshold_ms:
            exceeded_by_ms = duration_ms - self.slow_threshold_ms
            attributes[ATTRIBUTES_SLOW_REQUEST_KEY] = True
            attributes[ATTRIBUTES_SLOW_THRESHOLD_KEY] = self.slow_threshold_ms
            attributes[ATTRIBUTES_SLOW_EXCEEDED_BY_KEY] = exceeded_by_ms
            if not self.quiet:
                logger.warning(
                    'Slow request %s took %.2fms (threshold: %sms)',
                    span.name,
                    duration_ms,
                    self.slow_threshold_ms,
                    extra={
                        'span_name': span.name,
                        'trace_id': span.trace_id,
                        'duration_ms': duration_ms,
                        'threshold_ms': self.slow_threshold_ms,
                    },
                )
        elif duration_ms > self.warning_threshold_ms:
            attributes[ATTRIBUTES_SLOW_WARNING_KEY] = True

        attributes[ATTRIBUTES_PERFORMANCE_CLASS_KEY] = classify_performance(duration_ms)


SlowRequestProcessor = DurationClassifier


class ErrorCapturingProcessor(TailProcessor):
    """Flags spans that ended with an HTTP error status or an OTEL error status."""

    def on_end(self, span: Span) -> None:
        status_code = get_status_code(span.attributes)
        is_http_error = status_code is not None and status_code >= 400
        if not (is_http_error or span.status is StatusCode.ERROR):
            return

        attributes = span.attributes
        attributes[ATTRIBUTES_ERROR_CAPTURED_KEY] = True
        # Attribute values can't be None, so spans that only have an error status get no code.
        if status_code is not None:
            attributes[ATTRIBUTES_ERROR_STATUS_CODE_KEY] = status_code
            if status_code >= 500:
                attributes[ATTRIBUTES_ERROR_CLASS_KEY] = 'server_error'
            elif status_code >= 400:
                attributes[ATTRIBUTES_ERROR_CLASS_KEY] = 'client_error'
