"""
GitHub Client Tests
===================
All HTTP traffic goes through httpx.MockTransport; no network access.
"""
import asyncio

import httpx
import pytest

from runtrace.agents.github_client import GitHubClient, first_error_line, split_repository
from runtrace.core.errors import InvalidIdentifierError, UpstreamFetchError


def _run_payload(run_id, status="completed", conclusion="success"):
    return {
        "id": run_id,
        "run_number": run_id,
        "name": "CI",
        "path": ".github/workflows/check.yaml",
        "status": status,
        "conclusion": conclusion,
        "event": "push",
        "head_branch": "main",
        "actor": {"login": "octocat"},
        "html_url": f"https://github.com/acme/widgets/actions/runs/{run_id}",
        "created_at": "2024-05-01T12:00:00Z",
        "run_started_at": "2024-05-01T12:00:05Z",
        "updated_at": "2024-05-01T12:05:00Z",
    }


def _job_payload(job_id, run_id=42):
    return {
        "id": job_id,
        "run_id": run_id,
        "name": f"job-{job_id}",
        "status": "completed",
        "conclusion": "success",
        "started_at": "2024-05-01T12:00:10Z",
        "completed_at": "2024-05-01T12:04:00Z",
        "steps": [
            {"number": 1, "name": "checkout", "status": "completed", "conclusion": "success",
             "started_at": "2024-05-01T12:00:10Z", "completed_at": "2024-05-01T12:00:20Z"},
        ],
    }


def _client(handler, **kwargs):
    return GitHubClient(github_token="fake", transport=httpx.MockTransport(handler), **kwargs)


def test_list_workflow_runs_parses_runs():
    seen = {}

    def handler(request):
        seen["path"] = request.url.path
        seen["params"] = dict(request.url.params)
        seen["auth"] = request.headers.get("Authorization")
        return httpx.Response(200, json={
            "total_count": 2,
            "workflow_runs": [_run_payload(43, status="in_progress", conclusion=None), _run_payload(42)],
        })

    async def run_test():
        async with _client(handler) as client:
            return await client.list_workflow_runs("acme/widgets", "check.yaml", count=2)

    runs = asyncio.run(run_test())

    assert seen["path"] == "/repos/acme/widgets/actions/workflows/check.yaml/runs"
    assert seen["params"] == {"per_page": "2", "page": "1"}
    assert seen["auth"] == "Bearer fake"
    assert [r.run_id for r in runs] == [43, 42]
    assert runs[0].in_progress and not runs[1].in_progress
    assert runs[1].workflow == "check.yaml"
    assert runs[1].actor == "octocat"
    assert runs[1].started_at.isoformat() == "2024-05-01T12:00:05+00:00"


def test_list_workflow_runs_missing_key_is_fetch_error():
    def handler(request):
        return httpx.Response(200, json={"message": "odd"})

    async def run_test():
        async with _client(handler) as client:
            await client.list_workflow_runs("acme/widgets", "check.yaml")

    with pytest.raises(UpstreamFetchError):
        asyncio.run(run_test())


def test_http_error_maps_to_fetch_error():
    def handler(request):
        return httpx.Response(404, json={"message": "Not Found"})

    async def run_test():
        async with _client(handler) as client:
            await client.get_run("acme/widgets", 42)

    with pytest.raises(UpstreamFetchError) as exc_info:
        asyncio.run(run_test())
    assert exc_info.value.status_code == 404


def test_timeout_maps_to_fetch_error():
    def handler(request):
        raise httpx.ReadTimeout("slow", request=request)

    async def run_test():
        async with _client(handler) as client:
            await client.get_run("acme/widgets", 42)

    with pytest.raises(UpstreamFetchError):
        asyncio.run(run_test())


def test_get_run_derives_workflow_from_path():
    def handler(request):
        assert request.url.path == "/repos/acme/widgets/actions/runs/42"
        return httpx.Response(200, json=_run_payload(42))

    async def run_test():
        async with _client(handler) as client:
            return await client.get_run("acme/widgets", 42)

    run = asyncio.run(run_test())
    assert run.workflow == "check.yaml"
    assert run.repository == "acme/widgets"


def test_list_run_jobs_follows_pagination():
    pages = {
        "1": {"total_count": 101, "jobs": [_job_payload(i) for i in range(1, 101)]},
        "2": {"total_count": 101, "jobs": [_job_payload(101)]},
    }

    def handler(request):
        return httpx.Response(200, json=pages[request.url.params["page"]])

    async def run_test():
        async with _client(handler) as client:
            return await client.list_run_jobs("acme/widgets", 42)

    jobs = asyncio.run(run_test())
    assert len(jobs) == 101
    assert jobs[0].steps[0].name == "checkout"


def test_fetch_failure_message_follows_redirect():
    def handler(request):
        if request.url.path.endswith("/logs"):
            return httpx.Response(302, headers={"Location": "https://logs.example.com/blob"})
        return httpx.Response(200, text=(
            "2024-05-01T12:00:00.0000000Z Run tests\n"
            "2024-05-01T12:00:01.0000000Z ##[error]Error: assertion failed\n"
        ))

    async def run_test():
        async with _client(handler) as client:
            return await client.fetch_failure_message("acme/widgets", 1001)

    assert asyncio.run(run_test()) == "##[error]Error: assertion failed"


def test_first_error_line_without_match():
    assert first_error_line("2024 all good\n2024 done") == ""


@pytest.mark.parametrize("value", ["", "widgets", "acme/widgets/extra", "acme widgets/x"])
def test_split_repository_rejects_bad_names(value):
    with pytest.raises(InvalidIdentifierError):
        split_repository(value)


def test_split_repository_accepts_owner_repo():
    assert split_repository("acme/widgets.py") == "acme/widgets.py"
