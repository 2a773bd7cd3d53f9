"""
Errors
======
Exception hierarchy shared by the pipeline, its collaborators and the API.

    RuntraceError
    ├── InvalidIdentifierError   (also a ValueError; caller contract violation)
    ├── UpstreamFetchError       (GitHub unreachable / bad response)
    ├── AssemblyError            (timestamps beyond repair)
    │   └── RunInProgressError   (run has no end time yet; deferred)
    ├── ExportError              (telemetry backend unreachable / rejected)
    └── LedgerIOError            (durable store unavailable; fatal)
"""
from typing import Optional


class RuntraceError(Exception):
    """Base class for all errors raised by runtrace."""


class InvalidIdentifierError(RuntraceError, ValueError):
    """Identifying fields were empty or malformed."""


class UpstreamFetchError(RuntraceError):
    """The provider API could not be reached or returned something unusable."""

    def __init__(self, message: str, status_code: Optional[int] = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class AssemblyError(RuntraceError):
    """A run could not be turned into a valid span tree."""

    def __init__(self, run_id: int, reason: str) -> None:
        super().__init__(f"run {run_id}: {reason}")
        self.run_id = run_id
        self.reason = reason


class RunInProgressError(AssemblyError):
    """The run has not reached a terminal state."""

    def __init__(self, run_id: int) -> None:
        super().__init__(run_id, "run is still in progress")


class ExportError(RuntraceError):
    """The telemetry exporter did not accept a trace."""


class LedgerIOError(RuntraceError):
    """The ledger store could not be read or written."""
