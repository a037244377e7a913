"""Connector result messages."""

from typing import Optional, Dict, Any, List
from pydantic import BaseModel, Field
from enum import Enum


class LogLevel(str, Enum):
    INFO = "info"
    ERROR = "error"


class LogMessage(BaseModel):
    """Per-record outcome of a destination call."""
    name: str
    level: LogLevel
    message: Dict[str, Any] = Field(default_factory=dict)


class TrackingReport(BaseModel):
    """Aggregate result of one write call."""
    success: int = 0
    failed: int = 0
    logs: List[LogMessage] = Field(default_factory=list)

    def merge(self, other: "TrackingReport") -> "TrackingReport":
        self.success += other.success
        self.failed += other.failed
        self.logs.extend(other.logs)
        return self

    def log_for(self, index: int) -> Optional[Dict[str, Any]]:
        """Log of the record at ``index``, falling back to the first log."""
        if not self.logs:
            return None
        log = self.logs[index] if index < len(self.logs) else self.logs[0]
        return log.message or None


class ControlMessage(BaseModel):
    """Structural failure reported by a connector instead of a tracking report."""
    type: str = "full_refresh"
    status: str = "failed"
    meta: Dict[str, Any] = Field(default_factory=dict)
