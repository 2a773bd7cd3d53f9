"""
Span Assembler
==============
Pure function turning one completed WorkflowRun plus its jobs/steps into a
Trace: one root span for the run, a child per job, a grandchild per step.

BOUNDARY RULES:
    - Assembler NEVER performs I/O; everything it needs is passed in.
    - Assembler NEVER touches the ledger or the exporter.
    - Same inputs (normal mode) → same Trace, identifiers included.

Timing policy:
    - A run without an end time is in progress and is rejected
      (RunInProgressError); a run whose own window is missing a start or is
      inverted is beyond repair (AssemblyError).
    - Jobs and steps are CLIPPED into their parent's window rather than
      rejected; clipping is flagged with ``timing.clipped``.
    - A job or step missing a timestamp is still emitted, as a zero-duration
      span at the nearest known boundary (its own other timestamp, else the
      previous sibling step's end, else the parent's start), flagged with
      ``timing.missing``. Steps are never dropped, so step indexes stay
      contiguous for consumers.
    - An inverted child interval collapses to zero duration at its start.

Developer mode:
    After assembly the whole tree is shifted so the root starts at
    ``now - DEVEL_LOOKBACK``. Offsets and durations are preserved exactly.
"""
import logging
from datetime import datetime, timezone
from typing import Dict, List, Optional, Sequence, Tuple

from runtrace.core.constants import (
    ATTR_ACTOR,
    ATTR_CLIPPED,
    ATTR_CONCLUSION,
    ATTR_DEVEL,
    ATTR_DISPLAY_TITLE,
    ATTR_EVENT,
    ATTR_EXCEPTION_MESSAGE,
    ATTR_HEAD_BRANCH,
    ATTR_HTML_URL,
    ATTR_JOB_ID,
    ATTR_LAYER,
    ATTR_MISSING,
    ATTR_OWNER,
    ATTR_REPOSITORY,
    ATTR_RUN_ATTEMPT,
    ATTR_RUN_ID,
    ATTR_RUN_NUMBER,
    ATTR_STATUS,
    ATTR_STEP_INDEX,
    ATTR_WORKFLOW,
    CONCLUSION_SUCCESS,
    CONCLUSION_UNKNOWN,
    DEVEL_LOOKBACK,
    FAILED_CONCLUSIONS,
    LAYER_JOB,
    LAYER_RUN,
    LAYER_STEP,
)
from runtrace.core.errors import AssemblyError, RunInProgressError
from runtrace.models.span import SpanRecord, Trace
from runtrace.models.workflow import WorkflowJob, WorkflowRun
from runtrace.services.identifiers import IdentifierDeriver

logger = logging.getLogger(__name__)

Window = Tuple[datetime, datetime]


# ---------------------------------------------------------------------------
# Timing helpers
# ---------------------------------------------------------------------------
def place_interval(
    start: Optional[datetime],
    end: Optional[datetime],
    parent: Window,
    fallback: datetime,
) -> Tuple[datetime, datetime, bool, bool]:
    """
    Fit a possibly partial interval inside its parent's window.

    Parameters
    ----------
    start, end : datetime | None
        Provider timestamps for the child.
    parent : (datetime, datetime)
        The parent span's window; assumed non-inverted.
    fallback : datetime
        Boundary used when both timestamps are missing.

    Returns
    -------
    tuple
        ``(start, end, clipped, missing)``
    """
    missing = start is None or end is None
    if start is None and end is None:
        start = end = fallback
    elif start is None:
        start = end
    elif end is None:
        end = start

    lo, hi = parent
    placed_start = min(max(start, lo), hi)
    placed_end = min(max(end, lo), hi)
    if placed_end < placed_start:
        placed_end = placed_start

    clipped = (placed_start, placed_end) != (start, end)
    return placed_start, placed_end, clipped, missing


def _status_for(conclusion: Optional[str], label: str) -> Tuple[str, str]:
    if conclusion in FAILED_CONCLUSIONS:
        return "ERROR", f"{label} {conclusion}"
    return "OK", ""


def _clean(attributes: Dict[str, object]) -> Dict[str, object]:
    """Drop None values; OpenTelemetry attributes cannot hold them."""
    return {k: v for k, v in attributes.items() if v is not None}


# ---------------------------------------------------------------------------
# Assembly
# ---------------------------------------------------------------------------
def _root_span(run: WorkflowRun, trace_id: int, span_id: int) -> SpanRecord:
    conclusion = run.conclusion or CONCLUSION_UNKNOWN
    if conclusion == CONCLUSION_SUCCESS:
        status, description = "OK", ""
    else:
        status, description = "ERROR", f"run concluded {conclusion}"

    return SpanRecord(
        trace_id=trace_id,
        span_id=span_id,
        parent_span_id=None,
        name=run.name or run.workflow,
        start_time=run.started_at,
        end_time=run.completed_at,
        status=status,
        status_description=description,
        attributes=_clean({
            ATTR_LAYER: LAYER_RUN,
            ATTR_OWNER: run.owner,
            ATTR_REPOSITORY: run.repository,
            ATTR_WORKFLOW: run.workflow,
            ATTR_RUN_ID: run.run_id,
            ATTR_RUN_NUMBER: run.run_number,
            ATTR_RUN_ATTEMPT: run.run_attempt,
            ATTR_DISPLAY_TITLE: run.display_title or None,
            ATTR_CONCLUSION: conclusion,
            ATTR_STATUS: run.status,
            ATTR_HTML_URL: run.html_url or None,
            ATTR_HEAD_BRANCH: run.head_branch,
            ATTR_EVENT: run.event or None,
            ATTR_ACTOR: run.actor or None,
        }),
    )


def _job_spans(
    run: WorkflowRun,
    job: WorkflowJob,
    root: SpanRecord,
    deriver: IdentifierDeriver,
    failure_message: Optional[str],
) -> List[SpanRecord]:
    trace_id = root.trace_id
    root_window = (root.start_time, root.end_time)
    job_start, job_end, clipped, missing = place_interval(
        job.started_at, job.completed_at, root_window, fallback=root.start_time
    )
    if clipped:
        logger.debug("Run %s job %s clipped into run window", run.run_id, job.job_id)

    status, description = _status_for(job.conclusion, "job")
    job_span = SpanRecord(
        trace_id=trace_id,
        span_id=deriver.job_span_id(trace_id, job.job_id),
        parent_span_id=root.span_id,
        name=job.name,
        start_time=job_start,
        end_time=job_end,
        status=status,
        status_description=description,
        attributes=_clean({
            ATTR_LAYER: LAYER_JOB,
            ATTR_REPOSITORY: run.repository,
            ATTR_WORKFLOW: run.workflow,
            ATTR_RUN_ID: run.run_id,
            ATTR_JOB_ID: job.job_id,
            ATTR_CONCLUSION: job.conclusion or CONCLUSION_UNKNOWN,
            ATTR_STATUS: job.status,
            ATTR_HTML_URL: job.html_url or None,
            ATTR_HEAD_BRANCH: job.head_branch,
            ATTR_CLIPPED: clipped,
            ATTR_MISSING: missing,
        }),
    )

    spans = [job_span]
    job_window = (job_start, job_end)
    cursor = job_start
    seen = set()

    for step in sorted(job.steps, key=lambda s: s.number):
        if step.number in seen:
            raise AssemblyError(
                run.run_id, f"job {job.job_id} repeats step index {step.number}"
            )
        seen.add(step.number)

        step_start, step_end, clipped, missing = place_interval(
            step.started_at, step.completed_at, job_window, fallback=cursor
        )
        cursor = step_end

        status, description = _status_for(step.conclusion, "step")
        attributes = {
            ATTR_LAYER: LAYER_STEP,
            ATTR_REPOSITORY: run.repository,
            ATTR_WORKFLOW: run.workflow,
            ATTR_RUN_ID: run.run_id,
            ATTR_JOB_ID: job.job_id,
            ATTR_STEP_INDEX: step.number,
            ATTR_CONCLUSION: step.conclusion or CONCLUSION_UNKNOWN,
            ATTR_STATUS: step.status,
            ATTR_CLIPPED: clipped,
            ATTR_MISSING: missing,
        }
        if status == "ERROR" and failure_message:
            attributes[ATTR_EXCEPTION_MESSAGE] = failure_message

        spans.append(SpanRecord(
            trace_id=trace_id,
            span_id=deriver.step_span_id(trace_id, job.job_id, step.number),
            parent_span_id=job_span.span_id,
            name=step.name,
            start_time=step_start,
            end_time=step_end,
            status=status,
            status_description=description,
            attributes=_clean(attributes),
        ))

    return spans


def shift_trace(spans: Sequence[SpanRecord], now: datetime) -> List[SpanRecord]:
    """Move every span by the delta that puts the root at ``now - DEVEL_LOOKBACK``."""
    delta = (now - DEVEL_LOOKBACK) - spans[0].start_time
    return [
        s.model_copy(update={
            "start_time": s.start_time + delta,
            "end_time": s.end_time + delta,
        })
        for s in spans
    ]


def validate_trace(trace: Trace) -> None:
    """
    Check the structural invariants of an assembled trace.

    Raises
    ------
    AssemblyError
        On a non-root first span, unknown parent, duplicate span id,
        inverted interval, or a child escaping its parent's window.
    """
    run_id = trace.root.attributes.get(ATTR_RUN_ID, 0)
    if not trace.root.is_root:
        raise AssemblyError(run_id, "first span is not the root")

    by_id: Dict[int, SpanRecord] = {}
    for span in trace.spans:
        if span.span_id in by_id:
            raise AssemblyError(run_id, f"duplicate span id {span.span_id_hex}")
        if span.trace_id != trace.trace_id:
            raise AssemblyError(run_id, f"span {span.span_id_hex} has a foreign trace id")
        if span.end_time < span.start_time:
            raise AssemblyError(run_id, f"span {span.name!r} ends before it starts")
        if not span.is_root:
            parent = by_id.get(span.parent_span_id)
            if parent is None:
                raise AssemblyError(run_id, f"span {span.name!r} precedes or lacks its parent")
            if span.start_time < parent.start_time or span.end_time > parent.end_time:
                raise AssemblyError(run_id, f"span {span.name!r} escapes its parent")
        elif span is not trace.root:
            raise AssemblyError(run_id, "more than one root span")
        by_id[span.span_id] = span


def assemble_trace(
    run: WorkflowRun,
    jobs: Sequence[WorkflowJob],
    deriver: IdentifierDeriver,
    *,
    devel: bool = False,
    now: Optional[datetime] = None,
    failure_messages: Optional[Dict[int, str]] = None,
) -> Trace:
    """
    Build the span tree for one run.

    Parameters
    ----------
    run : WorkflowRun
        The run; must be completed.
    jobs : sequence of WorkflowJob
        Jobs in provider order; each job's steps are ordered by index here.
    deriver : IdentifierDeriver
        Source of trace/span identifiers.
    devel : bool
        Shift the trace to ``now - 10 minutes`` after assembly.
    now : datetime | None
        Reference time for the developer shift (defaults to current UTC).
    failure_messages : dict[int, str] | None
        job_id → error line from the job log, attached to failed steps.

    Returns
    -------
    Trace
        Root first, then each job followed by its steps.

    Raises
    ------
    RunInProgressError
        The run has no end time yet.
    AssemblyError
        The run's timestamps or hierarchy are beyond repair.
    """
    if run.completed_at is None:
        raise RunInProgressError(run.run_id)
    if run.started_at is None:
        raise AssemblyError(run.run_id, "run has no start time")
    if run.completed_at < run.started_at:
        raise AssemblyError(run.run_id, "run ends before it starts")

    trace_id = deriver.trace_id(run.repository, run.workflow, run.run_id)
    root = _root_span(run, trace_id, deriver.root_span_id(trace_id))
    if devel:
        root = root.model_copy(update={"attributes": {**root.attributes, ATTR_DEVEL: True}})

    spans: List[SpanRecord] = [root]
    seen_jobs = set()
    messages = failure_messages or {}
    for job in jobs:
        if job.job_id in seen_jobs:
            raise AssemblyError(run.run_id, f"job {job.job_id} listed twice")
        seen_jobs.add(job.job_id)
        spans.extend(_job_spans(run, job, root, deriver, messages.get(job.job_id)))

    if devel:
        spans = shift_trace(spans, now or datetime.now(timezone.utc))

    trace = Trace(trace_id=trace_id, spans=spans)
    validate_trace(trace)
    logger.debug("Assembled run %s into %d spans (trace %s)", run.run_id, len(spans), trace.trace_id_hex)
    return trace
