from __future__ import annotations

from tracesift.testing import CaptureSift, IncrementalIdGenerator, TimeGenerator


def test_incremental_id_generator() -> None:
    generator = IncrementalIdGenerator()
    assert [generator.generate_trace_id() for _ in range(3)] == [1, 2, 3]
    assert [generator.generate_span_id() for _ in range(2)] == [1, 2]


def test_time_generator() -> None:
    generator = TimeGenerator()
    assert [generator() for _ in range(3)] == [1_000_000_000, 2_000_000_000, 3_000_000_000]
    assert repr(generator) == 'TimeGenerator(ns_time=3000000000, step_ns=1000000000)'

    fast = TimeGenerator(ns_time=5, step_ns=10)
    assert fast() == 15


def test_capsift(capsift: CaptureSift) -> None:
    with capsift.coordinator.span('GET /api/v1/things', attributes={'http.target': '/api/v1/things'}):
        pass
    [span] = capsift.exporter.exported_spans_as_dict()
    assert span['attributes']['sampling.rule'] == 'api'
    capsift.exporter.clear()
    assert capsift.exporter.exported_spans == []


def test_capsift_drops_health_checks(capsift: CaptureSift) -> None:
    with capsift.coordinator.span('GET /health', attributes={'http.target': '/health'}):
        pass
    assert capsift.exporter.exported_spans == []
