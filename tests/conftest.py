from __future__ import annotations

from typing import Any

import pytest
from opentelemetry.sdk.trace.export import SimpleSpanProcessor

from tracesift import AdvancedOptions, ProcessorExportQueue
from tracesift.testing import IncrementalIdGenerator, TestExporter, TimeGenerator, capsift  # noqa: F401

ENV_VARS = [
    'TRACESIFT_ENABLED',
    'OTEL_ENABLED',
    'TRACESIFT_ENDPOINT',
    'OTEL_EXPORTER_OTLP_ENDPOINT',
    'TRACESIFT_SERVICE_NAME',
    'OTEL_SERVICE_NAME',
    'TRACESIFT_SERVICE_VERSION',
    'APP_VERSION',
    'TRACESIFT_ENVIRONMENT',
    'TRACESIFT_SAMPLING_MODE',
    'TRACESIFT_SLOW_THRESHOLD_MS',
    'TRACESIFT_WARNING_THRESHOLD_MS',
    'TRACESIFT_QUIET',
    'TRACESIFT_SHUTDOWN_TIMEOUT_MILLIS',
    'TRACESIFT_CONFIG_DIR',
]


@pytest.fixture(autouse=True)
def clean_environment(monkeypatch: pytest.MonkeyPatch, tmp_path: Any) -> None:
    # Ensure that settings in the environment or a pyproject.toml don't interfere
    for env_var in ENV_VARS:
        monkeypatch.delenv(env_var, raising=False)
    monkeypatch.setenv('TRACESIFT_CONFIG_DIR', str(tmp_path))


@pytest.fixture
def id_generator() -> IncrementalIdGenerator:
    return IncrementalIdGenerator()


@pytest.fixture
def time_generator() -> TimeGenerator:
    return TimeGenerator()


@pytest.fixture
def exporter() -> TestExporter:
    return TestExporter()


@pytest.fixture
def config_kwargs(
    exporter: TestExporter,
    id_generator: IncrementalIdGenerator,
    time_generator: TimeGenerator,
) -> dict[str, Any]:
    """
    Use this when you want to `configure()` and also change some of the defaults.
    """
    return dict(
        enabled=True,
        environment='test',
        sampling_mode='rules',
        advanced=AdvancedOptions(
            id_generator=id_generator,
            ns_timestamp_generator=time_generator,
            export_queue=ProcessorExportQueue(SimpleSpanProcessor(exporter)),
        ),
    )
