"""
POST /
Receives GitHub webhook deliveries for workflow runs and jobs and exports the
referenced run through the pipeline.

Events:
    workflow_run  (action "completed") → export that run
    workflow_job  (action "completed") → export the job's run; deferred while
                                         the run itself is still going
    ping                               → "pong"
    anything else / other actions      → acknowledged, ignored

The response is sent after the pipeline finished with the run, and a 2xx is
only returned once the outcome is settled:

    200  exported, already sent, or unrepairable (logged, redelivery won't help)
    202  deferred (run in progress; a later event or poll picks it up)
    401  X-Hub-Signature-256 mismatch (when a secret is configured)
    409  another invocation is exporting the run right now
    422  malformed payload
    503  ledger unavailable, GitHub unreachable, or export failed

Duplicate deliveries are absorbed by the ledger.
"""
import hashlib
import hmac
import logging
from typing import Optional

from fastapi import APIRouter, Depends, Header, HTTPException, Request
from fastapi.responses import JSONResponse, PlainTextResponse
from pydantic import BaseModel, ValidationError

from runtrace.agents.pipeline import Pipeline, build_pipeline
from runtrace.core.config import WEBHOOK_SECRET
from runtrace.core.errors import InvalidIdentifierError, LedgerIOError
from runtrace.models.outcome import Outcome
from runtrace.models.workflow import workflow_from_path

logger = logging.getLogger(__name__)

router = APIRouter(tags=["Webhook"])

HANDLED_EVENTS = ("workflow_run", "workflow_job")

_STATUS_BY_OUTCOME = {
    Outcome.EXPORTED: 200,
    Outcome.ALREADY_SENT: 200,
    Outcome.ASSEMBLY_FAILED: 200,
    Outcome.DEFERRED: 202,
    Outcome.CLAIMED: 409,
    Outcome.EXPORT_FAILED: 503,
    Outcome.FETCH_FAILED: 503,
}


# ---------------------------------------------------------------------------
# Payload schemas (only the fields we read; GitHub sends many more)
# ---------------------------------------------------------------------------
class WebhookRepository(BaseModel):
    full_name: str


class WebhookWorkflowRun(BaseModel):
    id: int
    path: str = ""
    status: str = ""
    conclusion: Optional[str] = None
    display_title: str = ""
    head_branch: Optional[str] = None
    event: str = ""


class WebhookWorkflowJob(BaseModel):
    id: int
    run_id: int
    name: str = ""
    status: str = ""
    conclusion: Optional[str] = None


class WebhookEvent(BaseModel):
    action: str
    repository: WebhookRepository
    workflow_run: Optional[WebhookWorkflowRun] = None
    workflow_job: Optional[WebhookWorkflowJob] = None


# ---------------------------------------------------------------------------
# Dependencies
# ---------------------------------------------------------------------------
def get_pipeline(request: Request) -> Pipeline:
    """The app's pipeline, built from configuration on first use."""
    pipeline = getattr(request.app.state, "pipeline", None)
    if pipeline is None:
        pipeline = build_pipeline()
        request.app.state.pipeline = pipeline
    return pipeline


def verify_signature(body: bytes, signature: Optional[str], secret: Optional[str]) -> None:
    """
    Check GitHub's ``X-Hub-Signature-256`` header; a no-op without a secret.

    Raises
    ------
    HTTPException
        401 when the header is missing or does not match.
    """
    if not secret:
        return
    expected = "sha256=" + hmac.new(secret.encode("utf-8"), body, hashlib.sha256).hexdigest()
    if not signature or not hmac.compare_digest(expected, signature):
        logger.warning("Rejected webhook delivery with bad signature")
        raise HTTPException(status_code=401, detail="Invalid signature")


# ---------------------------------------------------------------------------
# Endpoints
# ---------------------------------------------------------------------------
@router.get("/", response_class=PlainTextResponse)
async def hello() -> str:
    return "runtrace webhook receiver"


@router.post("/")
async def receive_event(
    request: Request,
    x_github_event: str = Header(default=""),
    x_github_delivery: str = Header(default=""),
    x_hub_signature_256: Optional[str] = Header(default=None),
    pipeline: Pipeline = Depends(get_pipeline),
):
    body = await request.body()
    verify_signature(body, x_hub_signature_256, WEBHOOK_SECRET)

    if x_github_event == "ping":
        return {"status": "pong"}
    if x_github_event not in HANDLED_EVENTS:
        logger.info("Ignoring %s event (delivery %s)", x_github_event or "unnamed", x_github_delivery)
        return {"status": "ignored", "event": x_github_event}

    try:
        event = WebhookEvent.model_validate_json(body)
    except ValidationError as e:
        logger.warning("Malformed %s payload (delivery %s)", x_github_event, x_github_delivery)
        raise HTTPException(
            status_code=422,
            detail=[f"{'.'.join(str(p) for p in err['loc'])}: {err['msg']}" for err in e.errors()],
        )

    title = ""
    if x_github_event == "workflow_run" and event.workflow_run is not None:
        run_id = event.workflow_run.id
        title = event.workflow_run.display_title
        workflow: Optional[str] = workflow_from_path(event.workflow_run.path) or None
    elif x_github_event == "workflow_job" and event.workflow_job is not None:
        run_id = event.workflow_job.run_id
        workflow = None
    else:
        raise HTTPException(status_code=422, detail=f"{x_github_event} payload lacks its object")

    logger.info(
        "%s %s: %s run %s %r (delivery %s)",
        x_github_event, event.action, event.repository.full_name, run_id, title,
        x_github_delivery,
    )
    if event.action != "completed":
        return {"status": "ignored", "action": event.action}

    try:
        outcome = await pipeline.run_single(event.repository.full_name, run_id, workflow)
    except LedgerIOError as e:
        logger.error("Ledger unavailable; rejecting delivery %s: %s", x_github_delivery, e)
        raise HTTPException(status_code=503, detail="Ledger unavailable")
    except InvalidIdentifierError as e:
        raise HTTPException(status_code=422, detail=str(e))

    return JSONResponse(
        status_code=_STATUS_BY_OUTCOME[outcome.outcome],
        content=outcome.model_dump(mode="json"),
    )
