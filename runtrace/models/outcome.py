"""
Pipeline Outcome Models
=======================
Pydantic models describing what one pipeline invocation did to each run.

Stages (per run):
    FETCHING → FILTERING → ASSEMBLING → EXPORTING → RECORDING → DONE
    FAILED is reachable from any stage; ``failed_at`` then records the stage
    (FETCHING, ASSEMBLING or EXPORTING) where the run went wrong.

Outcomes:
    exported       — trace exported (and recorded, outside developer mode)
    already_sent   — ledger says the run was exported before; skipped
    claimed        — another invocation is exporting this run right now
    deferred       — run still in progress; reconsidered next time
    assembly_failed — timestamps beyond repair; skipped
    export_failed  — backend unreachable/rejected; left unmarked for retry
    fetch_failed   — GitHub call failed for this run; left unmarked
"""
from datetime import datetime
from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, Field

from runtrace.models.span import Trace


class PipelineStage(str, Enum):
    FETCHING = "fetching"
    FILTERING = "filtering"
    ASSEMBLING = "assembling"
    EXPORTING = "exporting"
    RECORDING = "recording"
    DONE = "done"
    FAILED = "failed"


class Outcome(str, Enum):
    EXPORTED = "exported"
    ALREADY_SENT = "already_sent"
    CLAIMED = "claimed"
    DEFERRED = "deferred"
    ASSEMBLY_FAILED = "assembly_failed"
    EXPORT_FAILED = "export_failed"
    FETCH_FAILED = "fetch_failed"


class RunOutcome(BaseModel):
    repository: str
    workflow: str
    run_id: int
    outcome: Outcome
    stage: PipelineStage
    trace_id: Optional[str] = None
    span_count: int = 0
    failed_at: Optional[PipelineStage] = None
    detail: str = ""
    # Kept for printing summaries; never serialised into reports
    trace: Optional[Trace] = Field(default=None, exclude=True)

    @property
    def failed(self) -> bool:
        return self.stage == PipelineStage.FAILED


class PipelineReport(BaseModel):
    repository: str
    workflow: str
    devel: bool = False
    started_at: datetime
    finished_at: Optional[datetime] = None
    outcomes: List[RunOutcome] = Field(default_factory=list)

    def count(self, outcome: Outcome) -> int:
        return sum(1 for o in self.outcomes if o.outcome == outcome)

    @property
    def exported(self) -> List[RunOutcome]:
        return [o for o in self.outcomes if o.outcome == Outcome.EXPORTED]
