from __future__ import annotations

import atexit
import dataclasses
import signal
import threading
import time
from dataclasses import dataclass, field
from pathlib import Path
from types import FrameType
from typing import Any, Callable, Iterable, Sequence

from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace.id_generator import IdGenerator, RandomIdGenerator
from opentelemetry.semconv.resource import ResourceAttributes

from .config_params import ParamManager
from .constants import (
    DEFAULT_SHUTDOWN_TIMEOUT_MILLIS,
    DEFAULT_SLOW_THRESHOLD_MS,
    DEFAULT_WARNING_THRESHOLD_MS,
    RESOURCE_ATTRIBUTES_DEPLOYMENT_ENVIRONMENT,
    SamplingMode,
)
from .exporters.otlp import create_otlp_export_queue
from .exporters.queue import BatchExportOptions, ExportQueue, NoOpExportQueue
from .pipeline import PipelineCoordinator
from .processors import DurationClassifier, ErrorCapturingProcessor, TailProcessor
from .sampling import DEFAULT_RULES, SamplingRule, create_sampler, sampling_mode_for_environment
from .utils import logger


@dataclass
class AdvancedOptions:
    """Options primarily used for testing."""

    id_generator: IdGenerator = dataclasses.field(default_factory=RandomIdGenerator)
    """Generator for trace and span IDs of spans recorded with `PipelineCoordinator.span`."""

    ns_timestamp_generator: Callable[[], int] = time.time_ns
    """Generator for nanosecond start and end timestamps of spans."""

    export_queue: ExportQueue | None = None
    """Use this queue instead of building an OTLP one from the endpoint, e.g. to export to a `TestExporter`."""

    additional_processors: Sequence[TailProcessor] = ()
    """Tail processors run after the built-in duration and error processors."""


@dataclass
class PipelineConfig:
    """Resolved configuration of the trace pipeline, owned by the application entry point."""

    enabled: bool = False
    endpoint: str | None = None
    service_name: str = 'unknown_service'
    service_version: str = 'unknown'
    environment: str = 'development'
    sampling_mode: SamplingMode = 'always'
    rules: Sequence[SamplingRule] = DEFAULT_RULES
    """The rule table. It is fixed once the pipeline is built."""
    slow_threshold_ms: float = DEFAULT_SLOW_THRESHOLD_MS
    warning_threshold_ms: float = DEFAULT_WARNING_THRESHOLD_MS
    batch: BatchExportOptions = field(default_factory=BatchExportOptions)
    quiet: bool = False
    shutdown_timeout_millis: float = DEFAULT_SHUTDOWN_TIMEOUT_MILLIS
    advanced: AdvancedOptions = field(default_factory=AdvancedOptions)

    @classmethod
    def load(
        cls,
        *,
        enabled: bool | None = None,
        endpoint: str | None = None,
        service_name: str | None = None,
        service_version: str | None = None,
        environment: str | None = None,
        sampling_mode: SamplingMode | None = None,
        rules: Iterable[SamplingRule] | None = None,
        slow_threshold_ms: float | None = None,
        warning_threshold_ms: float | None = None,
        batch: BatchExportOptions | None = None,
        quiet: bool | None = None,
        shutdown_timeout_millis: float | None = None,
        config_dir: Path | None = None,
        advanced: AdvancedOptions | None = None,
    ) -> PipelineConfig:
        """Resolve every setting from arguments, environment variables, `pyproject.toml` and defaults."""
        param_manager = ParamManager.create(config_dir)
        environment = param_manager.load_param('environment', environment)
        return cls(
            enabled=param_manager.load_param('enabled', enabled),
            endpoint=param_manager.load_param('endpoint', endpoint),
            service_name=param_manager.load_param('service_name', service_name),
            service_version=param_manager.load_param('service_version', service_version),
            environment=environment,
            sampling_mode=param_manager.load_param('sampling_mode', sampling_mode)
            or sampling_mode_for_environment(environment),
            rules=DEFAULT_RULES if rules is None else tuple(rules),
            slow_threshold_ms=param_manager.load_param('slow_threshold_ms', slow_threshold_ms),
            warning_threshold_ms=param_manager.load_param('warning_threshold_ms', warning_threshold_ms),
            batch=batch or BatchExportOptions(),
            quiet=param_manager.load_param('quiet', quiet),
            shutdown_timeout_millis=param_manager.load_param('shutdown_timeout_millis', shutdown_timeout_millis),
            advanced=advanced or AdvancedOptions(),
        )

    @property
    def resource(self) -> Resource:
        return Resource.create(
            {
                ResourceAttributes.SERVICE_NAME: self.service_name,
                ResourceAttributes.SERVICE_VERSION: self.service_version,
                RESOURCE_ATTRIBUTES_DEPLOYMENT_ENVIRONMENT: self.environment,
            }
        )

    def build_export_queue(self) -> ExportQueue:
        """The queue that finalized spans are handed to.

        Anything that stops the exporter from being built disables export instead of failing startup.
        """
        if self.advanced.export_queue is not None:
            return self.advanced.export_queue

        if not self.enabled:
            logger.info('Trace export disabled (set TRACESIFT_ENABLED=true to enable)')
            return NoOpExportQueue()

        if not self.endpoint:
            logger.warning('Trace export enabled but no endpoint is set (OTEL_EXPORTER_OTLP_ENDPOINT), disabling it')
            return NoOpExportQueue()

        try:
            export_queue = create_otlp_export_queue(self.endpoint, self.resource, self.batch)
        except Exception as e:
            logger.warning('Failed to initialize trace export, disabling it: %s', e)
            return NoOpExportQueue()

        logger.info('Exporting traces of %s to %s', self.service_name, self.endpoint)
        return export_queue

    def build_coordinator(self) -> PipelineCoordinator:
        sampler = create_sampler(self.sampling_mode, self.rules, label=self.environment)
        processors: list[TailProcessor] = [
            DurationClassifier(self.slow_threshold_ms, self.warning_threshold_ms, quiet=self.quiet),
            ErrorCapturingProcessor(),
            *self.advanced.additional_processors,
        ]
        return PipelineCoordinator(
            sampler,
            processors,
            self.build_export_queue(),
            shutdown_timeout_millis=self.shutdown_timeout_millis,
            id_generator=self.advanced.id_generator,
            ns_timestamp_generator=self.advanced.ns_timestamp_generator,
        )


def configure(
    *,
    enabled: bool | None = None,
    endpoint: str | None = None,
    service_name: str | None = None,
    service_version: str | None = None,
    environment: str | None = None,
    sampling_mode: SamplingMode | None = None,
    rules: Iterable[SamplingRule] | None = None,
    slow_threshold_ms: float | None = None,
    warning_threshold_ms: float | None = None,
    batch: BatchExportOptions | None = None,
    quiet: bool | None = None,
    shutdown_timeout_millis: float | None = None,
    config_dir: Path | None = None,
    advanced: AdvancedOptions | None = None,
    handle_signals: bool = False,
) -> PipelineCoordinator:
    """Build a trace pipeline from arguments, environment variables and `pyproject.toml`.

    The returned coordinator is shut down when the interpreter exits.

    Args:
        enabled: Whether to export spans.
            Defaults to the `TRACESIFT_ENABLED` or `OTEL_ENABLED` environment variable, otherwise `False`.
        endpoint: Base URL of the OTLP/HTTP collector.
            Defaults to the `OTEL_EXPORTER_OTLP_ENDPOINT` environment variable.
        service_name: Name of this service, defaults to the `OTEL_SERVICE_NAME` environment variable.
        service_version: Version of this service, defaults to the `APP_VERSION` environment variable.
        environment: Deployment environment. In `'development'` every span is sampled.
        sampling_mode: `'always'` or `'rules'`, overriding the choice made from `environment`.
        rules: Ordered sampling rules, the first match wins. Defaults to the built-in table.
        slow_threshold_ms: Spans longer than this are flagged as slow and always exported.
        warning_threshold_ms: Spans longer than this get a `slow_request_warning` attribute.
        batch: Settings for batching spans before export.
        quiet: Don't log warnings about slow requests. Defaults to `True` under pytest.
        shutdown_timeout_millis: How long shutting down may take before pending spans are abandoned.
        config_dir: Directory containing a `pyproject.toml` with a `[tool.tracesift]` table.
        advanced: Options primarily used for testing.
        handle_signals: Whether to also shut down the pipeline on `SIGTERM` and `SIGINT`.
    """
    config = PipelineConfig.load(
        enabled=enabled,
        endpoint=endpoint,
        service_name=service_name,
        service_version=service_version,
        environment=environment,
        sampling_mode=sampling_mode,
        rules=rules,
        slow_threshold_ms=slow_threshold_ms,
        warning_threshold_ms=warning_threshold_ms,
        batch=batch,
        quiet=quiet,
        shutdown_timeout_millis=shutdown_timeout_millis,
        config_dir=config_dir,
        advanced=advanced,
    )
    coordinator = config.build_coordinator()
    atexit.register(coordinator.shutdown)
    if handle_signals:
        install_signal_handlers(coordinator)
    return coordinator


def install_signal_handlers(
    coordinator: PipelineCoordinator, signals: Sequence[signal.Signals] = (signal.SIGTERM, signal.SIGINT)
) -> bool:
    """Shut down `coordinator` when any of `signals` arrives, then defer to the previous handler.

    Shutdown only happens once however many signals arrive.
    Returns `False` without doing anything when not called from the main thread, where Python can't set handlers.
    """
    if threading.current_thread() is not threading.main_thread():
        logger.warning('Not installing signal handlers for the trace pipeline outside the main thread')
        return False

    for sig in signals:
        previous = signal.getsignal(sig)
        signal.signal(sig, _shutdown_handler(coordinator, sig, previous))
    return True


def _shutdown_handler(coordinator: PipelineCoordinator, sig: signal.Signals, previous: Any):
    def handler(signum: int, frame: FrameType | None) -> None:
        logger.info('Received %s, shutting down the trace pipeline', sig.name)
        try:
            coordinator.shutdown()
        except Exception:  # pragma: no cover
            logger.exception('Error shutting down the trace pipeline')
        if callable(previous):
            previous(signum, frame)
        elif previous == signal.SIG_DFL:
            signal.signal(sig, signal.SIG_DFL)
            signal.raise_signal(sig)

    return handler
