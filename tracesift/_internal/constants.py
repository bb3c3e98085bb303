from __future__ import annotations

from typing import Literal

TRACESIFT_ATTRIBUTES_NAMESPACE = 'tracesift'
"""Namespace within OTEL attributes used by tracesift."""

ONE_SECOND_IN_NANOSECONDS = 1_000_000_000

MAX_UINT32 = 0xFFFFFFFF
"""Divisor used to normalize the last 8 hex digits of a trace ID into `[0, 1]`."""

TRACE_ID_HASH_HEX_DIGITS = 8

DEFAULT_SAMPLE_RATE = 0.01
"""Rate applied to paths that match no rule."""

DEFAULT_SLOW_THRESHOLD_MS = 2000.0
DEFAULT_WARNING_THRESHOLD_MS = 1000.0

PerformanceClass = Literal['fast', 'normal', 'slow', 'very_slow', 'critical']

PERFORMANCE_BUCKETS: tuple[tuple[float, PerformanceClass], ...] = (
    (100, 'fast'),
    (500, 'normal'),
    (1000, 'slow'),
    (2000, 'very_slow'),
)
"""Inclusive upper bounds in milliseconds. Anything above the last bound is `critical`."""

SamplingMode = Literal['always', 'rules']

# Request attributes set by the HTTP layer.
HTTP_TARGET_KEY = 'http.target'
HTTP_ROUTE_KEY = 'http.route'
HTTP_STATUS_CODE_KEY = 'http.status_code'

# Attributes derived by the head sampler.
ATTRIBUTES_SAMPLING_REASON_KEY = 'sampling.reason'
ATTRIBUTES_SAMPLING_RULE_KEY = 'sampling.rule'
ATTRIBUTES_SAMPLING_RATE_KEY = 'sampling.rate'
ATTRIBUTES_HEAD_DECISION_KEY = f'{TRACESIFT_ATTRIBUTES_NAMESPACE}.head_decision'

# Attributes written by the duration classifier.
ATTRIBUTES_DURATION_MS_KEY = 'duration_ms'
ATTRIBUTES_SLOW_REQUEST_KEY = 'slow_request'
ATTRIBUTES_SLOW_THRESHOLD_KEY = 'slow_request.threshold_ms'
ATTRIBUTES_SLOW_EXCEEDED_BY_KEY = 'slow_request.exceeded_by_ms'
ATTRIBUTES_SLOW_WARNING_KEY = 'slow_request_warning'
ATTRIBUTES_PERFORMANCE_CLASS_KEY = 'performance_class'

# Attributes written by the error capturing processor.
ATTRIBUTES_ERROR_CAPTURED_KEY = 'error_captured'
ATTRIBUTES_ERROR_STATUS_CODE_KEY = 'error_status_code'
ATTRIBUTES_ERROR_CLASS_KEY = 'error_class'

# Batch export settings, passed through to the OTEL BatchSpanProcessor.
DEFAULT_MAX_QUEUE_SIZE = 2048
DEFAULT_MAX_EXPORT_BATCH_SIZE = 512
DEFAULT_SCHEDULE_DELAY_MILLIS = 5000
DEFAULT_EXPORT_TIMEOUT_MILLIS = 30000

DEFAULT_SHUTDOWN_TIMEOUT_MILLIS = 5000

RESOURCE_ATTRIBUTES_DEPLOYMENT_ENVIRONMENT = 'deployment.environment'
