"""Data models for the reverse ETL loader."""

from .config import (
    DestinationConfig,
    DestinationSyncMode,
    MappingRule,
    MappingType,
    PathSegment,
    StreamConfig,
    SyncConfig,
    UniqueIdentifierConfig,
    parse_destination_path,
)
from .report import ControlMessage, LogLevel, LogMessage, TrackingReport
from .lookup import LookupIndex
from .sync import HeartbeatResponse, Record, RecordAction, RecordStatus, Run, RunStatus

__all__ = [
    "DestinationConfig",
    "DestinationSyncMode",
    "MappingRule",
    "MappingType",
    "PathSegment",
    "StreamConfig",
    "SyncConfig",
    "UniqueIdentifierConfig",
    "parse_destination_path",
    "ControlMessage",
    "LogLevel",
    "LogMessage",
    "TrackingReport",
    "LookupIndex",
    "HeartbeatResponse",
    "Record",
    "RecordAction",
    "RecordStatus",
    "Run",
    "RunStatus",
]
