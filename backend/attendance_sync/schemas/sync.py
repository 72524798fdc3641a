"""
Pydantic schemas for sync operations
"""

from pydantic import BaseModel, ConfigDict, Field
from datetime import date, datetime
from typing import List, Dict, Any, Optional
from enum import Enum

from attendance_sync.models.sync_metadata import SyncStatus


class SyncState(str, Enum):
    """Orchestrator state machine"""
    INITIALIZING = "initializing"
    RUNNING = "running"
    COMPLETED = "completed"
    ABORTED = "aborted"


class SyncCounters(BaseModel):
    """Cumulative counters of a sync operation"""
    records_seen: int = 0
    records_succeeded: int = 0
    records_failed: int = 0
    batches_completed: int = 0
    batches_failed: int = 0


class CheckpointData(BaseModel):
    """Resume cursor persisted by the checkpoint store"""
    operation_id: str
    last_completed_batch: int = Field(default=0, ge=0)
    counters: SyncCounters = Field(default_factory=SyncCounters)
    saved_at: Optional[datetime] = None


class SyncOptions(BaseModel):
    """Per-run options; unset values fall back to settings"""
    start_date: Optional[date] = None
    end_date: Optional[date] = None
    batch_size: Optional[int] = None
    chunk_days: Optional[int] = None
    checkpoint_every: Optional[int] = None
    school_codes: Optional[List[str]] = None
    resume_from: Optional[str] = None

    def with_defaults(self, settings) -> "SyncOptions":
        """Return a copy with every unset value taken from settings."""
        return self.model_copy(update={
            "start_date": self.start_date or settings.SYNC_START_DATE,
            "end_date": self.end_date or settings.SYNC_END_DATE,
            "batch_size": self.batch_size if self.batch_size is not None else settings.SYNC_BATCH_SIZE,
            "chunk_days": self.chunk_days if self.chunk_days is not None else settings.SYNC_CHUNK_DAYS,
            "checkpoint_every": (
                self.checkpoint_every if self.checkpoint_every is not None
                else settings.SYNC_CHECKPOINT_EVERY
            ),
            "school_codes": self.school_codes or None,
        })


class SyncSummary(BaseModel):
    """User-visible result of a sync run"""
    operation_id: str
    status: SyncStatus
    state: SyncState
    resumed_from: Optional[str] = None
    start_date: Optional[date] = None
    end_date: Optional[date] = None
    started_at: datetime
    finished_at: Optional[datetime] = None
    elapsed_seconds: float = 0.0
    counters: SyncCounters = Field(default_factory=SyncCounters)
    error_breakdown: Dict[str, int] = Field(default_factory=dict)
    error_types: Dict[str, int] = Field(default_factory=dict)
    errors: List[Dict[str, Any]] = Field(default_factory=list)
    fatal_error: Optional[Dict[str, Any]] = None
    resume_checkpoint: Optional[CheckpointData] = None

    @property
    def succeeded(self) -> bool:
        return self.status == SyncStatus.COMPLETED


class SyncStartRequest(BaseModel):
    """Request to start a sync operation in the background"""
    start_date: Optional[date] = None
    end_date: Optional[date] = None
    batch_size: Optional[int] = Field(default=None, ge=1)
    chunk_days: Optional[int] = Field(default=None, ge=1)
    checkpoint_every: Optional[int] = Field(default=None, ge=1)
    school_codes: Optional[List[str]] = None
    resume_from: Optional[str] = None

    model_config = ConfigDict(json_schema_extra={
        "example": {
            "start_date": "2024-08-15",
            "end_date": "2025-06-12",
            "batch_size": 500,
            "chunk_days": 30,
            "school_codes": ["001"],
        }
    })

    def to_options(self) -> SyncOptions:
        return SyncOptions(**self.model_dump())


class SyncOperationResponse(BaseModel):
    """A persisted sync operation"""
    operation_id: str
    status: SyncStatus
    resumed_from: Optional[str] = None
    start_date: date
    end_date: date
    batch_size: int
    chunk_days: int
    school_codes: Optional[List[str]] = None
    records_seen: int = 0
    records_succeeded: int = 0
    records_failed: int = 0
    batches_completed: int = 0
    batches_failed: int = 0
    last_completed_batch: int = 0
    error_message: Optional[str] = None
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None

    model_config = ConfigDict(from_attributes=True)


class SyncOperationDetail(SyncOperationResponse):
    """A persisted sync operation with its checkpoint and error summary"""
    checkpoint: Optional[CheckpointData] = None
    error_summary: Optional[Dict[str, Any]] = None
