"""
Span Assembler Tests
====================
Tree shape, status mapping, timing repair, developer shift and rejection of
runs that cannot be assembled.
"""
from datetime import timedelta

import pytest

from conftest import REPO, WORKFLOW, at, make_job, make_run
from runtrace.core.errors import AssemblyError, RunInProgressError
from runtrace.models.span import SpanRecord, Trace
from runtrace.models.workflow import WorkflowStep
from runtrace.services.assembler import (
    assemble_trace,
    place_interval,
    validate_trace,
)
from runtrace.services.identifiers import IdentifierDeriver


@pytest.fixture
def deriver():
    return IdentifierDeriver()


# ---------------------------------------------------------------------------
# Tree shape
# ---------------------------------------------------------------------------
def test_run_42_produces_four_spans(deriver):
    trace = assemble_trace(make_run(), [make_job()], deriver)

    assert len(trace) == 4
    root, build, checkout, test = trace.spans
    assert root.is_root and root.status == "OK"
    assert root.attributes["run_id"] == 42
    assert build.name == "build" and build.parent_span_id == root.span_id
    assert checkout.name == "checkout" and checkout.parent_span_id == build.span_id
    assert test.name == "test" and test.parent_span_id == build.span_id
    assert [s.attributes["step_index"] for s in (checkout, test)] == [1, 2]
    assert trace.children_of(root) == [build]


def test_identifiers_follow_deriver(deriver):
    trace = assemble_trace(make_run(), [make_job()], deriver)
    expected = deriver.trace_id(REPO, WORKFLOW, 42)
    assert trace.trace_id == expected
    assert all(s.trace_id == expected for s in trace.spans)
    assert trace.root.span_id == deriver.root_span_id(expected)
    assert trace.spans[1].span_id == deriver.job_span_id(expected, 1001)
    assert trace.spans[3].span_id == deriver.step_span_id(expected, 1001, 2)


def test_assembly_is_deterministic():
    a = assemble_trace(make_run(), [make_job()], IdentifierDeriver())
    b = assemble_trace(make_run(), [make_job()], IdentifierDeriver())
    assert a == b


def test_run_without_jobs_is_a_lone_root(deriver):
    trace = assemble_trace(make_run(), [], deriver)
    assert len(trace) == 1
    assert trace.root.attributes["layer"] == "Run"


def test_steps_ordered_by_index(deriver):
    steps = [
        WorkflowStep(number=2, name="second", started_at=at(1), completed_at=at(2)),
        WorkflowStep(number=1, name="first", started_at=at(0), completed_at=at(1)),
    ]
    trace = assemble_trace(make_run(), [make_job(steps=steps)], deriver)
    assert [s.name for s in trace.spans[2:]] == ["first", "second"]


# ---------------------------------------------------------------------------
# Status
# ---------------------------------------------------------------------------
def test_failed_run_marks_root_and_failed_step(deriver):
    steps = [
        WorkflowStep(number=1, name="checkout", conclusion="success",
                     started_at=at(0), completed_at=at(1)),
        WorkflowStep(number=2, name="test", conclusion="failure",
                     started_at=at(1), completed_at=at(5)),
    ]
    trace = assemble_trace(
        make_run(conclusion="failure"),
        [make_job(conclusion="failure", steps=steps)],
        deriver,
        failure_messages={1001: "error: 3 tests failed"},
    )
    root, job, checkout, test = trace.spans
    assert root.status == "ERROR" and root.status_description == "run concluded failure"
    assert job.status == "ERROR"
    assert checkout.status == "OK"
    assert test.status == "ERROR"
    assert test.attributes["exception.message"] == "error: 3 tests failed"
    assert "exception.message" not in checkout.attributes


def test_skipped_conclusion_is_not_an_error_below_root(deriver):
    steps = [WorkflowStep(number=1, name="deploy", conclusion="skipped",
                          started_at=at(0), completed_at=at(0))]
    trace = assemble_trace(make_run(conclusion="neutral"), [make_job(steps=steps)], deriver)
    assert trace.spans[2].status == "OK"
    assert trace.root.status == "ERROR"


# ---------------------------------------------------------------------------
# Timing
# ---------------------------------------------------------------------------
def test_place_interval_clips_to_parent():
    start, end, clipped, missing = place_interval(at(-1), at(7), (at(0), at(5)), at(0))
    assert (start, end, clipped, missing) == (at(0), at(5), True, False)


def test_place_interval_fills_missing_from_fallback():
    start, end, clipped, missing = place_interval(None, None, (at(0), at(5)), at(2))
    assert (start, end, clipped, missing) == (at(2), at(2), False, True)


def test_place_interval_collapses_inverted_child():
    start, end, _, _ = place_interval(at(3), at(2), (at(0), at(5)), at(0))
    assert start == end == at(3)


def test_job_outside_run_window_is_clipped(deriver):
    job = make_job(start=-2, end=8, steps=[])
    trace = assemble_trace(make_run(), [job], deriver)
    span = trace.spans[1]
    assert (span.start_time, span.end_time) == (at(0), at(5))
    assert span.attributes["timing.clipped"] is True


def test_step_without_timestamps_is_kept_at_previous_end(deriver):
    steps = [
        WorkflowStep(number=1, name="checkout", started_at=at(0), completed_at=at(1)),
        WorkflowStep(number=2, name="cache", conclusion="skipped"),
        WorkflowStep(number=3, name="test", started_at=at(1), completed_at=at(5)),
    ]
    trace = assemble_trace(make_run(), [make_job(steps=steps)], deriver)
    cache = trace.spans[3]
    assert cache.name == "cache"
    assert cache.start_time == cache.end_time == at(1)
    assert cache.attributes["timing.missing"] is True
    assert [s.attributes["step_index"] for s in trace.spans[2:]] == [1, 2, 3]


def test_children_stay_within_parents(deriver):
    steps = [
        WorkflowStep(number=1, name="early", started_at=at(-3), completed_at=at(0.5)),
        WorkflowStep(number=2, name="late", started_at=at(4), completed_at=at(9)),
    ]
    trace = assemble_trace(make_run(), [make_job(start=0, end=5, steps=steps)], deriver)
    by_id = {s.span_id: s for s in trace.spans}
    for span in trace.spans[1:]:
        parent = by_id[span.parent_span_id]
        assert parent.start_time <= span.start_time <= span.end_time <= parent.end_time


# ---------------------------------------------------------------------------
# Rejections
# ---------------------------------------------------------------------------
def test_in_progress_run_rejected(deriver):
    with pytest.raises(RunInProgressError):
        assemble_trace(make_run(status="in_progress"), [], deriver)


def test_run_ending_before_start_rejected(deriver):
    with pytest.raises(AssemblyError) as exc_info:
        assemble_trace(make_run(start=5, end=0), [], deriver)
    assert not isinstance(exc_info.value, RunInProgressError)
    assert exc_info.value.run_id == 42


def test_run_without_start_rejected(deriver):
    with pytest.raises(AssemblyError):
        assemble_trace(make_run(start=None), [], deriver)


def test_duplicate_step_index_rejected(deriver):
    steps = [
        WorkflowStep(number=1, name="a", started_at=at(0), completed_at=at(1)),
        WorkflowStep(number=1, name="b", started_at=at(1), completed_at=at(2)),
    ]
    with pytest.raises(AssemblyError):
        assemble_trace(make_run(), [make_job(steps=steps)], deriver)


def test_duplicate_job_rejected(deriver):
    with pytest.raises(AssemblyError):
        assemble_trace(make_run(), [make_job(), make_job()], deriver)


# ---------------------------------------------------------------------------
# Developer mode
# ---------------------------------------------------------------------------
def test_devel_shift_preserves_durations(deriver):
    now = at(60 * 24 * 30)
    normal = assemble_trace(make_run(), [make_job()], deriver)
    shifted = assemble_trace(make_run(), [make_job()], deriver, devel=True, now=now)

    assert shifted.root.start_time == now - timedelta(minutes=10)
    assert shifted.root.attributes["debug.devel"] is True
    for before, after in zip(normal.spans, shifted.spans):
        assert before.duration_seconds == after.duration_seconds
        assert (after.start_time - shifted.root.start_time) == (
            before.start_time - normal.root.start_time
        )


# ---------------------------------------------------------------------------
# Validation
# ---------------------------------------------------------------------------
def test_validate_trace_rejects_orphan():
    root = SpanRecord(trace_id=1, span_id=1, name="run", start_time=at(0), end_time=at(5),
                      attributes={"run_id": 7})
    orphan = SpanRecord(trace_id=1, span_id=2, parent_span_id=99, name="job",
                        start_time=at(1), end_time=at(2))
    with pytest.raises(AssemblyError):
        validate_trace(Trace(trace_id=1, spans=[root, orphan]))


def test_validate_trace_rejects_escaping_child():
    root = SpanRecord(trace_id=1, span_id=1, name="run", start_time=at(0), end_time=at(5))
    child = SpanRecord(trace_id=1, span_id=2, parent_span_id=1, name="job",
                       start_time=at(1), end_time=at(6))
    with pytest.raises(AssemblyError):
        validate_trace(Trace(trace_id=1, spans=[root, child]))


def test_root_carries_display_title(deriver):
    trace = assemble_trace(make_run(display_title="Bump httpx"), [], deriver)
    assert trace.root.attributes["display_title"] == "Bump httpx"

    untitled = assemble_trace(make_run(), [], deriver)
    assert "display_title" not in untitled.root.attributes
