"""
Pipeline
========
Drives one invocation: Fetch → Filter → Assemble → Export → Record, for
either a poll (most recent N runs of a workflow) or a single run named by a
webhook event.

Per-run stages:
    FETCHING → FILTERING → ASSEMBLING → EXPORTING → RECORDING → DONE
    FAILED is reachable from any stage; ``failed_at`` names the stage that
    failed.

Delivery guarantees:
    - The ledger is consulted before assembly; already-sent runs are skipped.
    - The ledger is written only after the exporter confirmed the trace, so a
      failed or timed-out export leaves the run eligible for the next
      invocation (at-least-once toward the backend).
    - A claim is taken before fetching jobs, so a poll and a webhook racing
      on the same run export it once.
    - Ledger calls run in a worker thread, so waiting on another process's
      SQLite write lock never stalls the event loop (and the webhook server).

Fault tolerance:
    - A run that fails to fetch, assemble or export is reported and skipped;
      the rest of the batch continues.
    - LedgerIOError is fatal: the invocation stops before any further export.
    - A failure to list the workflow's runs aborts the poll (nothing to do).

Developer mode:
    Trace ids get fresh randomness per invocation, traces are shifted to
    "now - 10 minutes", and the ledger is neither read nor written, so the
    same runs can be replayed as often as needed.
"""
import asyncio
import logging
import uuid
from datetime import datetime, timezone
from typing import Dict, List, Optional

from runtrace.agents.exporter import TraceExporter
from runtrace.agents.github_client import GitHubClient
from runtrace.core.constants import DEFAULT_CLAIM_LEASE_SECONDS, DEFAULT_POLL_COUNT
from runtrace.core.errors import (
    AssemblyError,
    ExportError,
    RunInProgressError,
    UpstreamFetchError,
)
from runtrace.models.outcome import Outcome, PipelineReport, PipelineStage, RunOutcome
from runtrace.models.workflow import WorkflowJob, WorkflowRun
from runtrace.services.assembler import assemble_trace
from runtrace.services.identifiers import IdentifierDeriver
from runtrace.services.ledger import Ledger

logger = logging.getLogger(__name__)


def _outcome(
    run: WorkflowRun,
    outcome: Outcome,
    stage: PipelineStage,
    detail: str = "",
    **extra,
) -> RunOutcome:
    return RunOutcome(
        repository=run.repository,
        workflow=run.workflow,
        run_id=run.run_id,
        outcome=outcome,
        stage=stage,
        detail=detail,
        **extra,
    )


def _failed(
    run: WorkflowRun, outcome: Outcome, stage: PipelineStage, detail: str, **extra
) -> RunOutcome:
    """A FAILED outcome remembering the stage it failed in."""
    return _outcome(run, outcome, PipelineStage.FAILED, detail, failed_at=stage, **extra)


class Pipeline:
    """
    Exports workflow runs as traces, once each.

    Invocations share no mutable state beyond the ledger, so ``run_poll`` and
    ``run_single`` may run concurrently on one instance.
    """

    def __init__(
        self,
        client: GitHubClient,
        exporter: TraceExporter,
        ledger: Ledger,
        devel: bool = False,
        lease_seconds: float = DEFAULT_CLAIM_LEASE_SECONDS,
        fetch_failure_logs: bool = True,
    ) -> None:
        self.client = client
        self.exporter = exporter
        self.ledger = ledger
        self.devel = devel
        self.lease_seconds = lease_seconds
        self.fetch_failure_logs = fetch_failure_logs

    # ------------------------------------------------------------------
    # Entry points
    # ------------------------------------------------------------------
    async def run_poll(
        self, repository: str, workflow: str, count: int = DEFAULT_POLL_COUNT
    ) -> PipelineReport:
        """
        Process the ``count`` most recent runs of a workflow, oldest first.

        Raises
        ------
        LedgerIOError
            The ledger is unavailable; nothing was exported.
        UpstreamFetchError
            The run listing itself could not be fetched.
        """
        report = PipelineReport(
            repository=repository,
            workflow=workflow,
            devel=self.devel,
            started_at=datetime.now(timezone.utc),
        )
        await self._check_ledger()
        deriver = IdentifierDeriver(devel=self.devel)

        runs = await self.client.list_workflow_runs(repository, workflow, count)
        logger.info("Poll %s %s: %d candidate runs", repository, workflow, len(runs))

        # GitHub lists newest first
        for run in sorted(runs, key=lambda r: r.run_id):
            report.outcomes.append(await self._process(run, deriver))

        report.finished_at = datetime.now(timezone.utc)
        logger.info(
            "Poll %s %s finished: %d exported, %d already sent, %d deferred, %d failed",
            repository,
            workflow,
            report.count(Outcome.EXPORTED),
            report.count(Outcome.ALREADY_SENT),
            report.count(Outcome.DEFERRED),
            sum(1 for o in report.outcomes if o.failed),
        )
        return report

    async def run_single(
        self, repository: str, run_id: int, workflow: Optional[str] = None
    ) -> RunOutcome:
        """
        Process exactly one run, fetched fresh by id (webhook path).

        Raises
        ------
        LedgerIOError
            The ledger is unavailable; nothing was exported.
        """
        await self._check_ledger()
        deriver = IdentifierDeriver(devel=self.devel)
        try:
            run = await self.client.get_run(repository, run_id, workflow)
        except UpstreamFetchError as e:
            logger.warning("Run %s in %s could not be fetched: %s", run_id, repository, e)
            return RunOutcome(
                repository=repository,
                workflow=workflow or "",
                run_id=run_id,
                outcome=Outcome.FETCH_FAILED,
                stage=PipelineStage.FAILED,
                failed_at=PipelineStage.FETCHING,
                detail=str(e),
            )
        return await self._process(run, deriver)

    # ------------------------------------------------------------------
    # Per-run processing
    # ------------------------------------------------------------------
    async def _ledger(self, operation, *args, **kwargs):
        return await asyncio.to_thread(operation, *args, **kwargs)

    async def _check_ledger(self) -> None:
        if not self.devel:
            await self._ledger(self.ledger.initialize)

    async def _process(self, run: WorkflowRun, deriver: IdentifierDeriver) -> RunOutcome:
        key = (run.repository, run.workflow, run.run_id)
        stage = PipelineStage.FILTERING

        if run.in_progress:
            logger.info("Run %s is %s; deferring", run.run_id, run.status)
            return _outcome(run, Outcome.DEFERRED, stage, f"status {run.status}")

        token: Optional[str] = None
        if not self.devel:
            if await self._ledger(self.ledger.is_sent, *key):
                logger.info("Run %s already sent; skipping", run.run_id)
                return _outcome(run, Outcome.ALREADY_SENT, stage)
            token = uuid.uuid4().hex
            claimed = await self._ledger(
                self.ledger.try_claim, *key, token=token, lease_seconds=self.lease_seconds
            )
            if not claimed:
                if await self._ledger(self.ledger.is_sent, *key):
                    return _outcome(run, Outcome.ALREADY_SENT, stage)
                logger.info("Run %s is being exported elsewhere; skipping", run.run_id)
                return _outcome(run, Outcome.CLAIMED, stage)

        recorded = False
        try:
            stage = PipelineStage.FETCHING
            try:
                jobs = await self.client.list_run_jobs(run.repository, run.run_id)
                messages = await self._failure_messages(run, jobs)
            except UpstreamFetchError as e:
                logger.warning("Run %s: fetching jobs failed: %s", run.run_id, e)
                return _failed(run, Outcome.FETCH_FAILED, stage, str(e))

            stage = PipelineStage.ASSEMBLING
            try:
                trace = assemble_trace(
                    run, jobs, deriver, devel=self.devel, failure_messages=messages
                )
            except RunInProgressError as e:
                return _outcome(run, Outcome.DEFERRED, stage, e.reason)
            except AssemblyError as e:
                logger.error("Run %s skipped: %s", run.run_id, e.reason)
                return _failed(run, Outcome.ASSEMBLY_FAILED, stage, e.reason)

            stage = PipelineStage.EXPORTING
            try:
                await self.exporter.export(trace)
            except ExportError as e:
                logger.error("Run %s left unmarked for retry: %s", run.run_id, e)
                return _failed(
                    run, Outcome.EXPORT_FAILED, stage, str(e),
                    trace_id=trace.trace_id_hex, span_count=len(trace),
                )

            stage = PipelineStage.RECORDING
            if not self.devel:
                await self._ledger(self.ledger.mark_sent, *key, trace_id=trace.trace_id_hex)
                recorded = True

            logger.info(
                "Run %s exported as trace %s (%d spans)", run.run_id, trace.trace_id_hex, len(trace)
            )
            return _outcome(
                run, Outcome.EXPORTED, PipelineStage.DONE,
                trace_id=trace.trace_id_hex, span_count=len(trace), trace=trace,
            )
        except Exception:
            logger.error("Run %s aborted while %s", run.run_id, stage.value)
            raise
        finally:
            if token is not None and not recorded:
                await self._ledger(self.ledger.release, *key, token=token)


    async def _failure_messages(
        self, run: WorkflowRun, jobs: List[WorkflowJob]
    ) -> Dict[int, str]:
        """First ``error:`` line of each failed job's log; lookups are best-effort."""
        messages: Dict[int, str] = {}
        if not self.fetch_failure_logs:
            return messages
        for job in jobs:
            if not job.failed:
                continue
            try:
                message = await self.client.fetch_failure_message(run.repository, job.job_id)
            except UpstreamFetchError as e:
                logger.warning("Run %s job %s: log unavailable: %s", run.run_id, job.job_id, e)
                continue
            if message:
                messages[job.job_id] = message
        return messages


def build_pipeline(devel: Optional[bool] = None) -> Pipeline:
    """Wire a Pipeline from environment configuration."""
    from runtrace.agents.exporter import build_span_exporter
    from runtrace.core import config

    devel = config.DEVEL_MODE if devel is None else devel
    client = GitHubClient(
        github_token=config.GITHUB_TOKEN or "",
        base_url=config.GITHUB_API_URL,
        timeout_seconds=config.FETCH_TIMEOUT_SECONDS,
    )
    exporter = TraceExporter(
        build_span_exporter(config.EXPORTER, config.OTLP_PROTOCOL, config.EXPORT_TIMEOUT_SECONDS),
        timeout_seconds=config.EXPORT_TIMEOUT_SECONDS,
    )
    if devel:
        logger.warning("Developer mode: trace ids are randomised and the ledger is not used")
    return Pipeline(
        client=client,
        exporter=exporter,
        ledger=Ledger(config.LEDGER_PATH),
        devel=devel,
        lease_seconds=config.CLAIM_LEASE_SECONDS,
    )
