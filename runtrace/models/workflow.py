"""
Workflow Models
===============
Immutable pydantic models for the GitHub Actions hierarchy: Run → Jobs → Steps.

These are read-only inputs fetched fresh on every pipeline invocation. They
carry no behaviour beyond small derived properties, so the span assembler can
be tested without any network access.

Timestamps:
    All datetimes are timezone-aware UTC. Naive values are assumed to be UTC.
    A run's ``completed_at`` is only set once its status is "completed";
    until then the run is in progress and not eligible for export.
"""
from datetime import datetime, timezone
from typing import Any, Dict, Optional, Tuple

from pydantic import BaseModel, ConfigDict, field_validator


def _as_utc(value: Optional[datetime]) -> Optional[datetime]:
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def workflow_from_path(path: str) -> str:
    """
    Reduce a workflow path to the workflow file name.

    ``.github/workflows/check.yaml@refs/heads/main`` → ``check.yaml``
    """
    name = path.split("@", 1)[0].rstrip("/")
    return name.rsplit("/", 1)[-1]


class WorkflowStep(BaseModel):
    model_config = ConfigDict(frozen=True)

    number: int
    name: str
    status: str = "completed"
    conclusion: Optional[str] = None
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None

    @field_validator("started_at", "completed_at")
    @classmethod
    def normalise_timestamps(cls, value: Optional[datetime]) -> Optional[datetime]:
        return _as_utc(value)

    @classmethod
    def from_api(cls, payload: Dict[str, Any]) -> "WorkflowStep":
        return cls(
            number=payload["number"],
            name=payload.get("name") or f"step {payload['number']}",
            status=payload.get("status") or "completed",
            conclusion=payload.get("conclusion"),
            started_at=payload.get("started_at"),
            completed_at=payload.get("completed_at"),
        )


class WorkflowJob(BaseModel):
    model_config = ConfigDict(frozen=True)

    job_id: int
    run_id: int
    name: str
    status: str = "completed"
    conclusion: Optional[str] = None
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    html_url: str = ""
    head_branch: Optional[str] = None
    steps: Tuple[WorkflowStep, ...] = ()

    @field_validator("started_at", "completed_at")
    @classmethod
    def normalise_timestamps(cls, value: Optional[datetime]) -> Optional[datetime]:
        return _as_utc(value)

    @classmethod
    def from_api(cls, payload: Dict[str, Any]) -> "WorkflowJob":
        return cls(
            job_id=payload["id"],
            run_id=payload["run_id"],
            name=payload.get("name") or f"job {payload['id']}",
            status=payload.get("status") or "completed",
            conclusion=payload.get("conclusion"),
            started_at=payload.get("started_at"),
            completed_at=payload.get("completed_at"),
            html_url=payload.get("html_url") or "",
            head_branch=payload.get("head_branch"),
            steps=tuple(WorkflowStep.from_api(s) for s in payload.get("steps") or []),
        )

    @property
    def failed(self) -> bool:
        return self.conclusion == "failure" or any(
            s.conclusion == "failure" for s in self.steps
        )


class WorkflowRun(BaseModel):
    model_config = ConfigDict(frozen=True)

    repository: str             # owner/repo
    workflow: str               # workflow file name, e.g. check.yaml
    run_id: int
    run_number: int = 0
    run_attempt: int = 1
    name: str = ""
    display_title: str = ""
    event: str = ""
    head_branch: Optional[str] = None
    actor: str = ""
    html_url: str = ""
    status: str = "completed"
    conclusion: Optional[str] = None
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None

    @field_validator("started_at", "completed_at")
    @classmethod
    def normalise_timestamps(cls, value: Optional[datetime]) -> Optional[datetime]:
        return _as_utc(value)

    @property
    def owner(self) -> str:
        return self.repository.split("/", 1)[0]

    @property
    def in_progress(self) -> bool:
        return self.completed_at is None

    @classmethod
    def from_api(
        cls,
        payload: Dict[str, Any],
        repository: Optional[str] = None,
        workflow: Optional[str] = None,
    ) -> "WorkflowRun":
        """
        Build a run from a GitHub ``workflow_run`` object.

        The REST listing and the webhook payload share this shape. The end
        time is GitHub's ``updated_at``, but only once ``status`` is
        "completed".

        The workflow is always the file name from ``path``, so a run polled
        by numeric workflow id and the same run named by a webhook share one
        ledger key. ``workflow`` is only used when the payload has no path.
        """
        repo = repository or (payload.get("repository") or {}).get("full_name")
        if not repo:
            raise ValueError("workflow run payload carries no repository")

        status = payload.get("status") or "unknown"
        return cls(
            repository=repo,
            workflow=workflow_from_path(payload.get("path") or "") or workflow or "",
            run_id=payload["id"],
            run_number=payload.get("run_number") or 0,
            run_attempt=payload.get("run_attempt") or 1,
            name=payload.get("name") or "",
            display_title=payload.get("display_title") or "",
            event=payload.get("event") or "",
            head_branch=payload.get("head_branch"),
            actor=(payload.get("actor") or {}).get("login", ""),
            html_url=payload.get("html_url") or "",
            status=status,
            conclusion=payload.get("conclusion"),
            started_at=payload.get("run_started_at") or payload.get("created_at"),
            completed_at=payload.get("updated_at") if status == "completed" else None,
        )
