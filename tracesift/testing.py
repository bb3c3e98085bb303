"""Testing utilities for tracesift."""

from __future__ import annotations

from dataclasses import dataclass

import pytest
from opentelemetry.sdk.trace.export import SimpleSpanProcessor
from opentelemetry.sdk.trace.id_generator import IdGenerator

from ._internal.config import AdvancedOptions, configure
from ._internal.constants import ONE_SECOND_IN_NANOSECONDS
from ._internal.exporters.queue import ProcessorExportQueue
from ._internal.exporters.test import TestExporter
from ._internal.pipeline import PipelineCoordinator

__all__ = [
    'capsift',
    'CaptureSift',
    'IncrementalIdGenerator',
    'TimeGenerator',
    'TestExporter',
]


@dataclass(repr=True)
class IncrementalIdGenerator(IdGenerator):
    """Generate sequentially incrementing span/trace IDs for testing.

    Trace IDs start at 1 and increment by 1 each time.
    Span IDs start at 1 and increment by 1 each time.

    Note that small trace IDs fall below every nonzero sampling rate, so such traces are always sampled.
    """

    trace_id_counter = 0
    span_id_counter = 0

    def reset_trace_span_ids(self) -> None:  # pragma: no cover
        """Resets the trace and span ids."""
        self.trace_id_counter = 0
        self.span_id_counter = 0

    def generate_span_id(self) -> int:
        """Generates a span id."""
        self.span_id_counter += 1
        if self.span_id_counter > 2**64 - 1:  # pragma: no branch
            raise OverflowError('Span ID overflow')  # pragma: no cover
        return self.span_id_counter

    def generate_trace_id(self) -> int:
        """Generates a trace id."""
        self.trace_id_counter += 1
        if self.trace_id_counter > 2**128 - 1:  # pragma: no branch
            raise OverflowError('Trace ID overflow')  # pragma: no cover
        return self.trace_id_counter


class TimeGenerator:
    """Generate incrementing timestamps for testing.

    Timestamps are in nanoseconds, start at `ns_time + step_ns`, and increment by `step_ns` (1 second by default) each time.
    """

    def __init__(self, ns_time: int = 0, step_ns: int = ONE_SECOND_IN_NANOSECONDS):
        self.ns_time = ns_time
        self.step_ns = step_ns

    def __call__(self) -> int:  # noqa: D102
        self.ns_time += self.step_ns
        return self.ns_time

    def __repr__(self) -> str:
        return f'TimeGenerator(ns_time={self.ns_time}, step_ns={self.step_ns})'


@dataclass
class CaptureSift:
    """A dataclass that holds a pipeline and the exporter it exports to.

    This is used as the return type of `capsift` fixture.
    """

    coordinator: PipelineCoordinator
    """The pipeline, using the rule table with incremental IDs and one second per timestamp."""
    exporter: TestExporter
    """The span exporter."""


@pytest.fixture
def capsift() -> CaptureSift:
    """A fixture that returns a CaptureSift instance."""
    exporter = TestExporter()
    coordinator = configure(
        enabled=True,
        environment='test',
        sampling_mode='rules',
        quiet=True,
        advanced=AdvancedOptions(
            id_generator=IncrementalIdGenerator(),
            ns_timestamp_generator=TimeGenerator(),
            export_queue=ProcessorExportQueue(SimpleSpanProcessor(exporter)),
        ),
    )
    return CaptureSift(coordinator=coordinator, exporter=exporter)
