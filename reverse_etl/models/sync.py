"""Run and record models."""

from datetime import datetime
from typing import Optional, Dict, Any, List, Iterator
from pydantic import BaseModel, Field
from enum import Enum

from .config import SyncConfig


class RunStatus(str, Enum):
    """Sync run status."""
    PENDING = "pending"
    STARTED = "started"
    QUERYING = "querying"
    QUEUED = "queued"
    IN_PROGRESS = "in_progress"
    SUCCESS = "success"
    PARTIAL_SUCCESS = "partial_success"
    FAILED = "failed"
    CANCELED = "canceled"


PROGRESSABLE_STATUSES = {
    RunStatus.STARTED,
    RunStatus.QUERYING,
    RunStatus.QUEUED,
    RunStatus.IN_PROGRESS,
}


class RecordStatus(str, Enum):
    """Delivery status of one record."""
    PENDING = "pending"
    SUCCESS = "success"
    FAILED = "failed"


class RecordAction(str, Enum):
    """Action the source diff assigned to a record."""
    CREATE = "create"
    UPDATE = "update"


class Record(BaseModel):
    """One source row queued for delivery."""
    id: str
    record: Dict[str, Any] = Field(default_factory=dict)
    action: RecordAction = RecordAction.CREATE
    status: RecordStatus = RecordStatus.PENDING
    logs: Optional[Dict[str, Any]] = None

    def mark(self, status: RecordStatus, logs: Optional[Dict[str, Any]] = None) -> None:
        """Set the final status of this attempt."""
        if self.status != RecordStatus.PENDING:
            raise ValueError(f"Record {self.id} already finished with status {self.status.value}")
        if status == RecordStatus.PENDING:
            raise ValueError("A record attempt cannot finish as pending")
        self.status = status
        if logs is not None:
            self.logs = logs


class Run(BaseModel):
    """One execution of a sync."""
    id: str
    sync_id: str
    sync: SyncConfig
    status: RunStatus = RunStatus.QUEUED
    test: bool = False
    records: List[Record] = Field(default_factory=list)

    # Timing
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None

    error_message: Optional[str] = None

    def may_progress(self) -> bool:
        return self.status in PROGRESSABLE_STATUSES

    def progress(self) -> None:
        if not self.may_progress():
            raise ValueError(f"Run {self.id} cannot progress from {self.status.value}")
        self.status = RunStatus.IN_PROGRESS
        self.started_at = self.started_at or datetime.utcnow()

    def fail(self, reason: Optional[str] = None) -> None:
        self.status = RunStatus.FAILED
        self.error_message = reason
        self.finished_at = datetime.utcnow()

    def pending_records(self) -> List[Record]:
        return [r for r in self.records if r.status == RecordStatus.PENDING]

    def iter_pending_pages(self, page_size: int) -> Iterator[List[Record]]:
        """Split the records pending right now into pages."""
        pending = self.pending_records()
        size = max(1, page_size)
        for start in range(0, len(pending), size):
            yield pending[start:start + size]

    def summary(self) -> Dict[str, int]:
        counts = {"total": len(self.records), "success": 0, "failed": 0, "pending": 0}
        for record in self.records:
            counts[record.status.value] += 1
        return counts

    def rollup(self) -> RunStatus:
        """Set the aggregate status from record statuses after a completed write."""
        counts = self.summary()
        if counts["failed"] == 0:
            self.status = RunStatus.SUCCESS
        elif counts["success"] == 0:
            self.status = RunStatus.FAILED
        else:
            self.status = RunStatus.PARTIAL_SUCCESS
        self.finished_at = datetime.utcnow()
        return self.status


class HeartbeatResponse(BaseModel):
    """Answer from the hosting workflow to a heartbeat."""
    cancel_requested: bool = False
