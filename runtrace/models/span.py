"""
Span Models
===========
Pydantic models for the assembled output: a Trace is an ordered list of
SpanRecords (root first) sharing one 128-bit trace id.

Identifiers are held as integers, the form OpenTelemetry's SpanContext uses;
``*_hex`` properties give the zero-padded lowercase hex seen in backends.
"""
from datetime import datetime
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict

SpanStatus = Literal["OK", "ERROR"]


class SpanRecord(BaseModel):
    model_config = ConfigDict(frozen=True)

    trace_id: int
    span_id: int
    parent_span_id: Optional[int] = None
    name: str
    start_time: datetime
    end_time: datetime
    status: SpanStatus = "OK"
    status_description: str = ""
    attributes: Dict[str, Any] = {}

    @property
    def trace_id_hex(self) -> str:
        return format(self.trace_id, "032x")

    @property
    def span_id_hex(self) -> str:
        return format(self.span_id, "016x")

    @property
    def is_root(self) -> bool:
        return self.parent_span_id is None

    @property
    def duration_seconds(self) -> float:
        return (self.end_time - self.start_time).total_seconds()


class Trace(BaseModel):
    model_config = ConfigDict(frozen=True)

    trace_id: int
    spans: List[SpanRecord]

    @property
    def trace_id_hex(self) -> str:
        return format(self.trace_id, "032x")

    @property
    def root(self) -> SpanRecord:
        return self.spans[0]

    def children_of(self, span: SpanRecord) -> List[SpanRecord]:
        """Direct children of ``span`` in emission order."""
        return [s for s in self.spans if s.parent_span_id == span.span_id]

    def __len__(self) -> int:
        return len(self.spans)
