"""
Workflow Model Tests
====================
Parsing of GitHub payloads into the Run → Job → Step models.
"""
from datetime import datetime, timedelta, timezone

import pytest

from runtrace.models.workflow import WorkflowJob, WorkflowRun, WorkflowStep, workflow_from_path


@pytest.mark.parametrize("path, expected", [
    (".github/workflows/check.yaml", "check.yaml"),
    (".github/workflows/check.yaml@refs/heads/main", "check.yaml"),
    ("check.yaml", "check.yaml"),
    ("", ""),
])
def test_workflow_from_path(path, expected):
    assert workflow_from_path(path) == expected


def test_run_end_time_only_when_completed():
    payload = {
        "id": 7,
        "status": "in_progress",
        "created_at": "2024-05-01T12:00:00Z",
        "updated_at": "2024-05-01T12:03:00Z",
        "path": ".github/workflows/check.yaml",
    }
    run = WorkflowRun.from_api(payload, repository="acme/widgets")
    assert run.in_progress
    assert run.completed_at is None
    assert run.workflow == "check.yaml"

    done = WorkflowRun.from_api({**payload, "status": "completed", "conclusion": "success"},
                                repository="acme/widgets")
    assert done.completed_at == datetime(2024, 5, 1, 12, 3, tzinfo=timezone.utc)


def test_run_repository_from_payload():
    run = WorkflowRun.from_api({"id": 1, "repository": {"full_name": "acme/widgets"}},
                               workflow="check.yaml")
    assert run.repository == "acme/widgets"
    assert run.owner == "acme"


def test_run_without_repository_rejected():
    with pytest.raises(ValueError):
        WorkflowRun.from_api({"id": 1})


def test_timestamps_normalised_to_utc():
    plus_two = timezone(timedelta(hours=2))
    step = WorkflowStep(number=1, name="s", started_at=datetime(2024, 5, 1, 14, 0, tzinfo=plus_two))
    assert step.started_at == datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)
    assert step.started_at.utcoffset() == timedelta(0)

    naive = WorkflowStep(number=1, name="s", started_at=datetime(2024, 5, 1, 12, 0))
    assert naive.started_at.tzinfo is not None


def test_job_from_api_and_failed_flag():
    job = WorkflowJob.from_api({
        "id": 1001,
        "run_id": 42,
        "name": "build",
        "conclusion": "success",
        "steps": [{"number": 1, "name": "test", "conclusion": "failure"}],
    })
    assert job.steps[0].name == "test"
    assert job.failed


def test_run_workflow_comes_from_path_over_argument():
    payload = {"id": 42, "path": ".github/workflows/check.yaml@refs/heads/main"}
    run = WorkflowRun.from_api(payload, repository="acme/widgets", workflow="123456")
    assert run.workflow == "check.yaml"

    no_path = WorkflowRun.from_api({"id": 42}, repository="acme/widgets", workflow="123456")
    assert no_path.workflow == "123456"
