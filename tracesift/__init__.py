"""**tracesift** keeps trace volume low with rule-based head sampling, without ever losing slow or failed requests."""

from __future__ import annotations

from opentelemetry.sdk.trace.sampling import Decision, SamplingResult

from ._internal.config import AdvancedOptions, PipelineConfig, configure, install_signal_handlers
from ._internal.exporters.otlp import QuietSpanExporter, create_otlp_export_queue
from ._internal.exporters.queue import BatchExportOptions, ExportQueue, NoOpExportQueue, ProcessorExportQueue
from ._internal.otel import PipelineSampler, PipelineSpanProcessor, create_tracer_provider
from ._internal.pipeline import PipelineCoordinator, is_export_eligible
from ._internal.processors import (
    DurationClassifier,
    ErrorCapturingProcessor,
    SlowRequestProcessor,
    TailProcessor,
    classify_performance,
)
from ._internal.span import Span, SpanTime
from .exceptions import TraceSiftConfigError
from .sampling import AlwaysSampleSampler, HeadSampler, RuleBasedSampler, RuleTable, SamplingRule, create_sampler
from .version import VERSION

__version__ = VERSION

__all__ = (
    'AdvancedOptions',
    'AlwaysSampleSampler',
    'BatchExportOptions',
    'Decision',
    'DurationClassifier',
    'ErrorCapturingProcessor',
    'ExportQueue',
    'HeadSampler',
    'NoOpExportQueue',
    'PipelineConfig',
    'PipelineCoordinator',
    'PipelineSampler',
    'PipelineSpanProcessor',
    'ProcessorExportQueue',
    'QuietSpanExporter',
    'RuleBasedSampler',
    'RuleTable',
    'SamplingResult',
    'SamplingRule',
    'SlowRequestProcessor',
    'Span',
    'SpanTime',
    'TailProcessor',
    'TraceSiftConfigError',
    'classify_performance',
    'configure',
    'create_otlp_export_queue',
    'create_sampler',
    'create_tracer_provider',
    'install_signal_handlers',
    'is_export_eligible',
    '__version__',
)
