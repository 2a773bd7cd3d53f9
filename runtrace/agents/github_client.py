"""
GitHub Client
=============
Reads workflow runs, jobs and job logs from the GitHub Actions REST API.

BOUNDARY RULES:
    - Client ONLY reads; it never writes to GitHub.
    - Client NEVER retries in a loop; a failed call raises UpstreamFetchError
      and the run is reconsidered on the next invocation.
    - Every request is bounded by the configured timeout; a timeout is a
      fetch failure like any other.

Endpoints used:
    GET /repos/{owner}/{repo}/actions/workflows/{workflow}/runs  (most recent first)
    GET /repos/{owner}/{repo}/actions/runs/{run_id}
    GET /repos/{owner}/{repo}/actions/runs/{run_id}/jobs         (paginated)
    GET /repos/{owner}/{repo}/actions/jobs/{job_id}/logs         (302 → log text)
"""
import logging
import re
from typing import Any, Dict, List, Optional

import httpx

from runtrace.core.constants import GITHUB_API_VERSION, USER_AGENT
from runtrace.core.errors import InvalidIdentifierError, UpstreamFetchError
from runtrace.models.workflow import WorkflowJob, WorkflowRun

logger = logging.getLogger(__name__)

_REPOSITORY_RE = re.compile(r"^[\w.\-]+/[\w.\-]+$")

# GitHub caps per_page at 100
_MAX_PAGE_SIZE = 100


def split_repository(repository: str) -> str:
    """
    Validate an ``owner/repo`` string.

    Raises
    ------
    InvalidIdentifierError
        If the value is not of the form "owner/repo".
    """
    value = (repository or "").strip().strip("/")
    if not _REPOSITORY_RE.match(value):
        raise InvalidIdentifierError(
            f'Repository must be specified in the form "owner/repo", got {repository!r}'
        )
    return value


def first_error_line(log_text: str) -> str:
    """
    Return the first log line mentioning ``error:``, timestamp prefix removed.

    GitHub prefixes each log line with an ISO timestamp and a space.
    """
    for line in log_text.splitlines():
        _, sep, message = line.partition(" ")
        if not sep:
            message = line
        if "error:" in message.lower():
            return message.strip()
    return ""


class GitHubClient:
    """
    Async reader for GitHub Actions history.

    One client may be shared by concurrent pipeline invocations; the
    underlying httpx.AsyncClient is created lazily and closed by ``aclose``.
    """

    def __init__(
        self,
        github_token: str = "",
        base_url: str = "https://api.github.com",
        timeout_seconds: float = 20.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.timeout_seconds = timeout_seconds
        self.headers = {
            "Accept": "application/vnd.github+json",
            "User-Agent": USER_AGENT,
            "X-GitHub-Api-Version": GITHUB_API_VERSION,
        }
        if github_token:
            self.headers["Authorization"] = f"Bearer {github_token}"
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None

    def _http(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(
                base_url=self.base_url,
                headers=self.headers,
                timeout=self.timeout_seconds,
                follow_redirects=True,
                transport=self._transport,
            )
        return self._client

    async def aclose(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    async def __aenter__(self) -> "GitHubClient":
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.aclose()

    # ------------------------------------------------------------------
    # Transport
    # ------------------------------------------------------------------
    async def _get(self, url: str, params: Optional[Dict[str, Any]] = None) -> httpx.Response:
        logger.debug("GET %s %s", url, params or "")
        try:
            response = await self._http().get(url, params=params)
            response.raise_for_status()
            return response
        except httpx.HTTPStatusError as http_err:
            status_code = http_err.response.status_code
            logger.warning("GitHub API returned HTTP %d for %s", status_code, url)
            raise UpstreamFetchError(
                f"GitHub API returned HTTP {status_code} for {url}", status_code=status_code
            ) from http_err
        except httpx.TimeoutException as e:
            raise UpstreamFetchError(
                f"GitHub API timed out after {self.timeout_seconds}s for {url}"
            ) from e
        except httpx.HTTPError as e:
            raise UpstreamFetchError(f"GitHub API unreachable for {url}: {e}") from e

    async def _get_json(self, url: str, params: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        response = await self._get(url, params)
        try:
            body = response.json()
        except ValueError as e:
            raise UpstreamFetchError(f"GitHub API sent undecodable JSON for {url}") from e
        if not isinstance(body, dict):
            raise UpstreamFetchError(f"GitHub API sent unexpected JSON for {url}")
        return body

    # ------------------------------------------------------------------
    # Runs
    # ------------------------------------------------------------------
    async def list_workflow_runs(
        self, repository: str, workflow: str, count: int = 10
    ) -> List[WorkflowRun]:
        """
        List the most recent runs of a workflow, newest first.

        Parameters
        ----------
        repository : str
            "owner/repo".
        workflow : str
            Workflow file name (e.g. "check.yaml") or numeric workflow id.
            Either way the returned runs carry the file name from their
            ``path``.
        count : int
            How many runs to return (1-100).
        """
        repository = split_repository(repository)
        if not workflow:
            raise InvalidIdentifierError("workflow must not be empty")
        count = max(1, min(count, _MAX_PAGE_SIZE))
        logger.info("List Runs for Workflow %s in %s", workflow, repository)

        body = await self._get_json(
            f"/repos/{repository}/actions/workflows/{workflow}/runs",
            params={"per_page": count, "page": 1},
        )
        items = body.get("workflow_runs")
        if not isinstance(items, list):
            raise UpstreamFetchError("workflow_runs missing from GitHub response")

        try:
            return [
                WorkflowRun.from_api(item, repository=repository, workflow=workflow)
                for item in items[:count]
            ]
        except (KeyError, ValueError) as e:
            raise UpstreamFetchError(f"malformed workflow run in GitHub response: {e}") from e

    async def get_run(
        self, repository: str, run_id: int, workflow: Optional[str] = None
    ) -> WorkflowRun:
        """Fetch a single run by id; the workflow defaults to its file name."""
        repository = split_repository(repository)
        logger.info("Get Run %s in %s", run_id, repository)
        body = await self._get_json(f"/repos/{repository}/actions/runs/{run_id}")
        try:
            return WorkflowRun.from_api(body, repository=repository, workflow=workflow)
        except (KeyError, ValueError) as e:
            raise UpstreamFetchError(f"malformed workflow run {run_id}: {e}") from e

    # ------------------------------------------------------------------
    # Jobs and logs
    # ------------------------------------------------------------------
    async def list_run_jobs(self, repository: str, run_id: int) -> List[WorkflowJob]:
        """Fetch every job (with steps) of a run, following pagination."""
        repository = split_repository(repository)
        logger.info("List Jobs in Run %s", run_id)

        jobs: List[WorkflowJob] = []
        page = 1
        while True:
            body = await self._get_json(
                f"/repos/{repository}/actions/runs/{run_id}/jobs",
                params={"per_page": _MAX_PAGE_SIZE, "page": page},
            )
            items = body.get("jobs")
            if not isinstance(items, list):
                raise UpstreamFetchError(f"jobs missing from GitHub response for run {run_id}")
            try:
                jobs.extend(WorkflowJob.from_api(item) for item in items)
            except (KeyError, ValueError) as e:
                raise UpstreamFetchError(f"malformed job in run {run_id}: {e}") from e

            total = body.get("total_count", len(jobs))
            if not items or len(jobs) >= total:
                return jobs
            page += 1

    async def fetch_failure_message(self, repository: str, job_id: int) -> str:
        """
        Return the first ``error:`` line of a job's log, or "" if none.

        The logs endpoint answers with a redirect to the log blob; the client
        follows it.
        """
        repository = split_repository(repository)
        logger.info("Retrieve logs for job %s", job_id)
        response = await self._get(f"/repos/{repository}/actions/jobs/{job_id}/logs")
        return first_error_line(response.text)
