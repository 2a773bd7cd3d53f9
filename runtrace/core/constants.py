"""
Constants
Centralised storage for span attribute keys, conclusion sets and fixed defaults.
"""
from datetime import timedelta

SERVICE_NAME = "github-actions"
VERSION = "0.3.0"
USER_AGENT = f"runtrace/{VERSION}"
GITHUB_API_VERSION = "2022-11-28"

DEFAULT_POLL_COUNT = 10
DEFAULT_WEBHOOK_PORT = 34484
DEFAULT_CLAIM_LEASE_SECONDS = 600

# Developer mode moves the root span to now minus this window.
DEVEL_LOOKBACK = timedelta(minutes=10)

# ---------------------------------------------------------------------------
# Layers (one per level of the Run -> Job -> Step hierarchy)
# ---------------------------------------------------------------------------
LAYER_RUN = "Run"
LAYER_JOB = "Job"
LAYER_STEP = "Step"

# ---------------------------------------------------------------------------
# Conclusions
# ---------------------------------------------------------------------------
CONCLUSION_SUCCESS = "success"
CONCLUSION_UNKNOWN = "unknown"

# Job/step conclusions that mark a span as ERROR. The root span is stricter:
# anything other than "success" is an error there.
FAILED_CONCLUSIONS = frozenset({
    "failure",
    "timed_out",
    "cancelled",
    "action_required",
    "startup_failure",
})

# ---------------------------------------------------------------------------
# Span attribute keys
# ---------------------------------------------------------------------------
ATTR_LAYER = "layer"
ATTR_REPOSITORY = "repository"
ATTR_OWNER = "owner"
ATTR_WORKFLOW = "workflow"
ATTR_RUN_ID = "run_id"
ATTR_RUN_NUMBER = "run_number"
ATTR_RUN_ATTEMPT = "run_attempt"
ATTR_DISPLAY_TITLE = "display_title"
ATTR_JOB_ID = "job_id"
ATTR_STEP_INDEX = "step_index"
ATTR_CONCLUSION = "conclusion"
ATTR_STATUS = "status"
ATTR_HTML_URL = "html_url"
ATTR_HEAD_BRANCH = "head_branch"
ATTR_EVENT = "event"
ATTR_ACTOR = "actor"
ATTR_CLIPPED = "timing.clipped"
ATTR_MISSING = "timing.missing"
ATTR_DEVEL = "debug.devel"
ATTR_EXCEPTION_MESSAGE = "exception.message"
