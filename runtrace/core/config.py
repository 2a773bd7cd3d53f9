"""
Configuration
=============
Loads environment variables from .env file using python-dotenv.

Environment Variables:
    GITHUB_TOKEN              — Required for reading workflow runs, jobs and logs
    GITHUB_API_URL            — API root (default: https://api.github.com)
    RUNTRACE_LEDGER_PATH      — SQLite ledger file (default: ~/.runtrace/ledger.db)
    RUNTRACE_DEVEL            — Enable developer mode (default: false)
    RUNTRACE_POLL_COUNT       — Runs fetched per query pass (default: 10)
    RUNTRACE_WEBHOOK_HOST     — Listener bind address (default: 127.0.0.1)
    RUNTRACE_WEBHOOK_PORT     — Listener port (default: 34484)
    RUNTRACE_WEBHOOK_SECRET   — Optional secret for X-Hub-Signature-256 checks
    RUNTRACE_FETCH_TIMEOUT    — Seconds allowed per GitHub API call (default: 20)
    RUNTRACE_EXPORT_TIMEOUT   — Seconds allowed per trace export (default: 30)
    RUNTRACE_CLAIM_LEASE      — Seconds an in-flight claim is honoured (default: 600)
    RUNTRACE_EXPORTER         — "otlp" or "console" (default: otlp)
    RUNTRACE_LOG_DIR          — Directory for the daily log file (default: logs)

The OpenTelemetry exporter additionally honours the standard
OTEL_EXPORTER_OTLP_* variables (endpoint, headers, protocol).

Developer Mode:
    RUNTRACE_DEVEL (or --devel on the command line) mixes fresh randomness
    into trace identifiers and moves every trace to "now minus ten minutes".
    Nothing is written to the ledger while it is on.
"""
import os
from dotenv import load_dotenv

from runtrace.core.constants import (
    DEFAULT_CLAIM_LEASE_SECONDS,
    DEFAULT_POLL_COUNT,
    DEFAULT_WEBHOOK_PORT,
)

load_dotenv()


def _flag(name: str, default: str = "false") -> bool:
    return os.getenv(name, default).strip().lower() in ("1", "true", "yes", "on")


GITHUB_TOKEN = os.getenv("GITHUB_TOKEN")
GITHUB_API_URL = os.getenv("GITHUB_API_URL", "https://api.github.com").rstrip("/")

LEDGER_PATH = os.path.expanduser(
    os.getenv("RUNTRACE_LEDGER_PATH", os.path.join("~", ".runtrace", "ledger.db"))
)

DEVEL_MODE = _flag("RUNTRACE_DEVEL")

POLL_COUNT = int(os.getenv("RUNTRACE_POLL_COUNT", DEFAULT_POLL_COUNT))

WEBHOOK_HOST = os.getenv("RUNTRACE_WEBHOOK_HOST", "127.0.0.1")
WEBHOOK_PORT = int(os.getenv("RUNTRACE_WEBHOOK_PORT", DEFAULT_WEBHOOK_PORT))
WEBHOOK_SECRET = os.getenv("RUNTRACE_WEBHOOK_SECRET")

# Timeouts in seconds; a hung upstream call counts as a failure
FETCH_TIMEOUT_SECONDS = float(os.getenv("RUNTRACE_FETCH_TIMEOUT", 20))
EXPORT_TIMEOUT_SECONDS = float(os.getenv("RUNTRACE_EXPORT_TIMEOUT", 30))

CLAIM_LEASE_SECONDS = int(os.getenv("RUNTRACE_CLAIM_LEASE", DEFAULT_CLAIM_LEASE_SECONDS))

EXPORTER = os.getenv("RUNTRACE_EXPORTER", "otlp").lower()
OTLP_PROTOCOL = os.getenv("OTEL_EXPORTER_OTLP_PROTOCOL", "grpc").lower()

LOG_DIR = os.getenv("RUNTRACE_LOG_DIR", "logs")
