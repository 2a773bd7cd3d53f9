"""
Ledger Record Model
Pydantic model for one "already sent" entry in the ledger.
"""
from datetime import datetime
from typing import Optional

from pydantic import BaseModel


class LedgerRecord(BaseModel):
    repository: str
    workflow: str
    run_id: int
    sent_at: datetime
    trace_id: Optional[str] = None   # hex, for looking the trace up in the backend
