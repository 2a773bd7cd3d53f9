"""Command line interface: a one-off ``query`` pass and the webhook ``listen``er."""
import asyncio
import logging
from typing import Optional

import typer

from runtrace.agents.pipeline import Pipeline, build_pipeline
from runtrace.core import config
from runtrace.core.constants import VERSION
from runtrace.core.errors import InvalidIdentifierError, LedgerIOError, UpstreamFetchError
from runtrace.core.output_formatter import format_outcome, format_trace
from runtrace.models.outcome import PipelineReport
from runtrace.services.report_writer import ReportWriter
from runtrace.utils.logging_config import setup_logging

app = typer.Typer(
    help="Retrieve workflow runs from GitHub Actions and send them to OpenTelemetry as traces.",
    no_args_is_help=True,
    add_completion=False,
)

logger = logging.getLogger(__name__)


def _version_callback(value: bool) -> None:
    if value:
        typer.echo(f"runtrace v{VERSION}")
        raise typer.Exit()


@app.callback()
def main_callback(
    version: bool = typer.Option(
        False, "--version", callback=_version_callback, is_eager=True, help="Print version"
    ),
) -> None:
    """runtrace: GitHub Actions history as OpenTelemetry traces."""


def _require_token() -> None:
    if not config.GITHUB_TOKEN:
        typer.echo("GITHUB_TOKEN environment variable not set", err=True)
        raise typer.Exit(code=2)


async def _query(pipeline: Pipeline, repository: str, workflow: str, count: int) -> PipelineReport:
    try:
        return await pipeline.run_poll(repository, workflow, count)
    finally:
        await pipeline.client.aclose()
        pipeline.exporter.shutdown()


@app.command("query")
def query(
    repository: str = typer.Argument(
        ..., help='GitHub organization and repository, in the form "owner/repo"'
    ),
    workflow: str = typer.Argument(
        ..., help='Workflow to present as traces, typically a filename such as "check.yaml"'
    ),
    count: int = typer.Option(config.POLL_COUNT, "--count", "-n", min=1, max=100,
                              help="How many recent runs to consider"),
    devel: bool = typer.Option(config.DEVEL_MODE, "--devel", help="Enable development mode"),
    output: Optional[str] = typer.Option(None, "--output", "-o", help="Write a JSON report here"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Debug logging"),
) -> None:
    """Run one poll pass over the most recent runs of a workflow."""
    setup_logging(level=logging.DEBUG if verbose else logging.INFO, log_dir=config.LOG_DIR)
    _require_token()

    pipeline = build_pipeline(devel=devel)
    try:
        report = asyncio.run(_query(pipeline, repository, workflow, count))
    except InvalidIdentifierError as e:
        typer.echo(str(e), err=True)
        raise typer.Exit(code=2)
    except LedgerIOError as e:
        typer.echo(f"Ledger unavailable: {e}", err=True)
        raise typer.Exit(code=3)
    except UpstreamFetchError as e:
        typer.echo(f"Could not list runs: {e}", err=True)
        raise typer.Exit(code=4)

    for outcome in report.outcomes:
        if outcome.trace is not None:
            typer.echo(format_trace(outcome.trace))
        typer.echo(format_outcome(outcome))

    if output and not ReportWriter.write_report(report, output):
        raise typer.Exit(code=1)
    if any(o.failed for o in report.outcomes):
        raise typer.Exit(code=1)


@app.command("listen")
def listen(
    port: int = typer.Option(config.WEBHOOK_PORT, "--port", "-p", help="Port to listen on"),
    host: str = typer.Option(config.WEBHOOK_HOST, "--host", help="Address to bind"),
    devel: bool = typer.Option(config.DEVEL_MODE, "--devel", help="Enable development mode"),
) -> None:
    """Start the webhook receiver."""
    import uvicorn

    from main import app as web_app

    _require_token()
    web_app.state.pipeline = build_pipeline(devel=devel)
    logger.info("Listening on %s:%d", host, port)
    uvicorn.run(web_app, host=host, port=port, log_config=None)


def main() -> None:
    app()


if __name__ == "__main__":
    main()
