"""
Ledger
======
Durable record of which workflow runs have already been exported, keyed by
(repository, workflow, run_id). Backed by a local SQLite file so it survives
restarts and can be shared by a poll process and a webhook process.

Tables:
    sent_runs — one row per exported run (the LedgerRecord)
    claims    — short-lived leases held while a run is being exported

Atomicity:
    Every write runs inside ``BEGIN IMMEDIATE``, which takes SQLite's
    reserved lock up front. Check-then-write sequences are therefore
    serialised per database across threads and processes:

    - ``mark_sent`` is first-writer-wins: the first caller inserts and gets
      True, every later caller for the same key gets False (no error).
    - ``try_claim`` hands a run to exactly one exporter at a time. A claim
      older than its lease is treated as abandoned (crashed holder) and can
      be taken over, so delivery stays at-least-once.

Durability:
    WAL journal with ``synchronous=FULL``; ``mark_sent`` has been fsynced by
    the time it returns.

Errors:
    Any sqlite3 or filesystem failure is raised as LedgerIOError. Callers
    treat that as fatal for the invocation.
"""
import logging
import os
import sqlite3
import time
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Iterator, List, Optional

from runtrace.core.errors import LedgerIOError
from runtrace.models.ledger_record import LedgerRecord

logger = logging.getLogger(__name__)

_SCHEMA = (
    """
    CREATE TABLE IF NOT EXISTS sent_runs (
        repository TEXT NOT NULL,
        workflow TEXT NOT NULL,
        run_id INTEGER NOT NULL,
        sent_at TEXT NOT NULL,
        trace_id TEXT,
        PRIMARY KEY (repository, workflow, run_id)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS claims (
        repository TEXT NOT NULL,
        workflow TEXT NOT NULL,
        run_id INTEGER NOT NULL,
        token TEXT NOT NULL,
        claimed_at REAL NOT NULL,
        PRIMARY KEY (repository, workflow, run_id)
    )
    """,
)

_KEY = "repository = ? AND workflow = ? AND run_id = ?"


class Ledger:
    """
    SQLite-backed set of already-sent runs.

    Usage:
        ledger = Ledger("~/.runtrace/ledger.db")
        ledger.initialize()
        if ledger.try_claim("acme/widgets", "check.yaml", 42, token):
            ... export ...
            ledger.mark_sent("acme/widgets", "check.yaml", 42)
    """

    def __init__(self, path: str, busy_timeout: float = 30.0) -> None:
        self.path = os.path.expanduser(path)
        self.busy_timeout = busy_timeout
        self._initialized = False

    # ------------------------------------------------------------------
    # Connection handling
    # ------------------------------------------------------------------
    @contextmanager
    def _connect(self) -> Iterator[sqlite3.Connection]:
        conn = None
        try:
            # isolation_level=None: transactions are opened explicitly below
            conn = sqlite3.connect(self.path, timeout=self.busy_timeout, isolation_level=None)
            conn.execute("PRAGMA synchronous=FULL")
            yield conn
        except sqlite3.Error as e:
            raise LedgerIOError(f"ledger {self.path}: {e}") from e
        finally:
            if conn is not None:
                conn.close()

    @contextmanager
    def _transaction(self) -> Iterator[sqlite3.Connection]:
        self.initialize()
        with self._connect() as conn:
            conn.execute("BEGIN IMMEDIATE")
            try:
                yield conn
            except BaseException:
                conn.execute("ROLLBACK")
                raise
            conn.execute("COMMIT")

    def initialize(self) -> None:
        """
        Create the database file and schema if needed.

        Safe to call repeatedly; also serves as the pipeline's health check.

        Raises
        ------
        LedgerIOError
            If the directory or database cannot be created or opened.
        """
        if self._initialized:
            return
        directory = os.path.dirname(self.path)
        try:
            if directory:
                os.makedirs(directory, exist_ok=True)
        except OSError as e:
            raise LedgerIOError(f"cannot create ledger directory {directory}: {e}") from e

        with self._connect() as conn:
            conn.execute("PRAGMA journal_mode=WAL")
            for statement in _SCHEMA:
                conn.execute(statement)
        self._initialized = True
        logger.debug("Ledger ready at %s", self.path)

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------
    def is_sent(self, repository: str, workflow: str, run_id: int) -> bool:
        self.initialize()
        with self._connect() as conn:
            row = conn.execute(
                f"SELECT 1 FROM sent_runs WHERE {_KEY}", (repository, workflow, run_id)
            ).fetchone()
        return row is not None

    def get_record(self, repository: str, workflow: str, run_id: int) -> Optional[LedgerRecord]:
        self.initialize()
        with self._connect() as conn:
            row = conn.execute(
                f"SELECT repository, workflow, run_id, sent_at, trace_id FROM sent_runs WHERE {_KEY}",
                (repository, workflow, run_id),
            ).fetchone()
        return _to_record(row) if row else None

    def records(
        self, repository: Optional[str] = None, workflow: Optional[str] = None
    ) -> List[LedgerRecord]:
        """All records, optionally narrowed to one repository/workflow, oldest run first."""
        self.initialize()
        query = "SELECT repository, workflow, run_id, sent_at, trace_id FROM sent_runs"
        clauses, params = [], []
        if repository is not None:
            clauses.append("repository = ?")
            params.append(repository)
        if workflow is not None:
            clauses.append("workflow = ?")
            params.append(workflow)
        if clauses:
            query += " WHERE " + " AND ".join(clauses)
        query += " ORDER BY repository, workflow, run_id"

        with self._connect() as conn:
            rows = conn.execute(query, params).fetchall()
        return [_to_record(r) for r in rows]

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------
    def mark_sent(
        self,
        repository: str,
        workflow: str,
        run_id: int,
        sent_at: Optional[datetime] = None,
        trace_id: Optional[str] = None,
    ) -> bool:
        """
        Record that a run's trace was exported.

        Returns
        -------
        bool
            True if this call created the record, False if it already existed.
        """
        stamp = (sent_at or datetime.now(timezone.utc)).isoformat()
        key = (repository, workflow, run_id)
        with self._transaction() as conn:
            cursor = conn.execute(
                "INSERT OR IGNORE INTO sent_runs (repository, workflow, run_id, sent_at, trace_id) "
                "VALUES (?, ?, ?, ?, ?)",
                (*key, stamp, trace_id),
            )
            inserted = cursor.rowcount == 1
            conn.execute(f"DELETE FROM claims WHERE {_KEY}", key)

        if inserted:
            logger.info("Ledger: marked %s/%s run %s as sent", repository, workflow, run_id)
        else:
            logger.info("Ledger: %s/%s run %s was already marked", repository, workflow, run_id)
        return inserted

    def try_claim(
        self,
        repository: str,
        workflow: str,
        run_id: int,
        token: str,
        lease_seconds: float,
        now: Optional[float] = None,
    ) -> bool:
        """
        Atomically take the right to export a run.

        Fails if the run is already sent, or if another token holds a claim
        younger than ``lease_seconds``. Re-claiming with the same token
        refreshes the lease.
        """
        current = time.time() if now is None else now
        key = (repository, workflow, run_id)
        with self._transaction() as conn:
            if conn.execute(f"SELECT 1 FROM sent_runs WHERE {_KEY}", key).fetchone():
                return False
            held = conn.execute(
                f"SELECT token, claimed_at FROM claims WHERE {_KEY}", key
            ).fetchone()
            if held and held[0] != token and current - held[1] < lease_seconds:
                return False
            if held and held[0] != token:
                logger.warning(
                    "Ledger: taking over stale claim on %s/%s run %s", repository, workflow, run_id
                )
            conn.execute(
                "INSERT OR REPLACE INTO claims (repository, workflow, run_id, token, claimed_at) "
                "VALUES (?, ?, ?, ?, ?)",
                (*key, token, current),
            )
        return True

    def release(self, repository: str, workflow: str, run_id: int, token: str) -> None:
        """Drop a claim held by ``token`` (no-op if someone else holds it)."""
        with self._transaction() as conn:
            conn.execute(
                f"DELETE FROM claims WHERE {_KEY} AND token = ?",
                (repository, workflow, run_id, token),
            )


def _to_record(row) -> LedgerRecord:
    return LedgerRecord(
        repository=row[0],
        workflow=row[1],
        run_id=row[2],
        sent_at=datetime.fromisoformat(row[3]),
        trace_id=row[4],
    )
