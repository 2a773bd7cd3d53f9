"""
Shared fixtures: workflow builders and a throwaway ledger.
"""
from datetime import datetime, timedelta, timezone

import pytest

from runtrace.models.workflow import WorkflowJob, WorkflowRun, WorkflowStep
from runtrace.services.ledger import Ledger

REPO = "acme/widgets"
WORKFLOW = "check.yaml"
T0 = datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)


def at(minutes: float) -> datetime:
    return T0 + timedelta(minutes=minutes)


def make_run(run_id=42, start=0, end=5, conclusion="success", status="completed", **extra):
    return WorkflowRun(
        repository=REPO,
        workflow=WORKFLOW,
        run_id=run_id,
        run_number=run_id,
        name="CI",
        status=status,
        conclusion=conclusion if status == "completed" else None,
        started_at=at(start) if start is not None else None,
        completed_at=at(end) if (end is not None and status == "completed") else None,
        **extra,
    )


def make_job(job_id=1001, run_id=42, start=0, end=5, conclusion="success", steps=None, name="build"):
    if steps is None:
        steps = [
            WorkflowStep(number=1, name="checkout", conclusion="success",
                         started_at=at(start), completed_at=at(start + 1)),
            WorkflowStep(number=2, name="test", conclusion="success",
                         started_at=at(start + 1), completed_at=at(end)),
        ]
    return WorkflowJob(
        job_id=job_id,
        run_id=run_id,
        name=name,
        conclusion=conclusion,
        started_at=at(start) if start is not None else None,
        completed_at=at(end) if end is not None else None,
        steps=tuple(steps),
    )


@pytest.fixture
def ledger(tmp_path):
    store = Ledger(str(tmp_path / "ledger.db"))
    store.initialize()
    return store
