"""
Output Formatter
================
Human-readable strings for what the query command prints.

DETERMINISM CONTRACT:
  - This module NEVER reads environment variables or the clock.
  - Given the same inputs, it ALWAYS returns the exact same string.

Trace summary layout (one block per trace):

    #42 CI (success) trace 5f0c…
    build
        checkout: success, 0:01:00
        test: success, 0:04:00

Outcome line layout:

    acme/widgets check.yaml run 42 → exported (trace 5f0c…, 4 spans)
"""
from datetime import timedelta
from typing import List

from runtrace.core.constants import (
    ATTR_CONCLUSION,
    ATTR_LAYER,
    ATTR_MISSING,
    ATTR_RUN_NUMBER,
    LAYER_JOB,
    LAYER_STEP,
)
from runtrace.models.outcome import Outcome, RunOutcome
from runtrace.models.span import SpanRecord, Trace

# U+2192 RIGHTWARDS ARROW
ARROW = "→"

STEP_INDENT = "    "


def format_duration(span: SpanRecord) -> str:
    """Render a span's duration as H:MM:SS (sub-second precision dropped)."""
    seconds = int((span.end_time - span.start_time).total_seconds())
    return str(timedelta(seconds=seconds))


def format_step(span: SpanRecord) -> str:
    conclusion = span.attributes.get(ATTR_CONCLUSION, "unknown")
    line = f"{STEP_INDENT}{span.name}: {conclusion}, {format_duration(span)}"
    if span.attributes.get(ATTR_MISSING):
        line += " (no timing)"
    return line


def format_trace(trace: Trace) -> str:
    """
    Render a trace as its run header, then each job and its steps.

    Parameters
    ----------
    trace : Trace
        An assembled trace (root first, each job followed by its steps).

    Returns
    -------
    str
        Multi-line summary without a trailing newline.
    """
    root = trace.root
    number = root.attributes.get(ATTR_RUN_NUMBER)
    header = f"#{number} " if number else ""
    lines: List[str] = [
        f"{header}{root.name} ({root.attributes.get(ATTR_CONCLUSION, 'unknown')}) "
        f"trace {trace.trace_id_hex}"
    ]
    for span in trace.spans[1:]:
        layer = span.attributes.get(ATTR_LAYER)
        if layer == LAYER_JOB:
            lines.append(span.name)
        elif layer == LAYER_STEP:
            lines.append(format_step(span))
    return "\n".join(lines)


def format_outcome(outcome: RunOutcome) -> str:
    """One line per run: key, arrow, outcome and the most useful detail."""
    prefix = f"{outcome.repository} {outcome.workflow} run {outcome.run_id} {ARROW} {outcome.outcome.value}"
    if outcome.outcome == Outcome.EXPORTED:
        return f"{prefix} (trace {outcome.trace_id}, {outcome.span_count} spans)"
    if outcome.detail:
        return f"{prefix} ({outcome.detail})"
    return prefix
