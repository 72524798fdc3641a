"""
SQLAlchemy models for sync operation tracking and resume checkpoints.
"""

from sqlalchemy import (
    Column, Integer, String, Date, DateTime, Text, JSON, Enum as SQLEnum
)
from sqlalchemy.sql import func
import enum

from attendance_sync.core.database import Base


class SyncStatus(str, enum.Enum):
    """Durable status of a sync operation."""
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self is not SyncStatus.RUNNING


class SyncOperation(Base):
    """Model for tracking one end-to-end sync run."""

    __tablename__ = "sync_operations"

    id = Column(Integer, primary_key=True, index=True)

    # Operation details
    operation_id = Column(String(64), unique=True, index=True, nullable=False)
    status = Column(SQLEnum(SyncStatus), nullable=False, default=SyncStatus.RUNNING)
    resumed_from = Column(String(64), nullable=True)

    # Run parameters (reused verbatim on resume)
    start_date = Column(Date, nullable=False)
    end_date = Column(Date, nullable=False)
    batch_size = Column(Integer, nullable=False)
    chunk_days = Column(Integer, nullable=False)
    checkpoint_every = Column(Integer, nullable=False)
    school_codes = Column(JSON, nullable=True)  # None means all active schools

    # Record counts
    records_seen = Column(Integer, default=0)
    records_succeeded = Column(Integer, default=0)
    records_failed = Column(Integer, default=0)
    batches_completed = Column(Integer, default=0)
    batches_failed = Column(Integer, default=0)
    last_completed_batch = Column(Integer, default=0)

    # Error handling
    error_message = Column(Text, nullable=True)
    error_summary = Column(JSON, nullable=True)

    # Timing
    started_at = Column(DateTime(timezone=True), nullable=True)
    completed_at = Column(DateTime(timezone=True), nullable=True)

    # Timestamps
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), onupdate=func.now())


class SyncCheckpoint(Base):
    """Last successfully completed batch of an operation, one row per operation id."""

    __tablename__ = "sync_checkpoints"

    operation_id = Column(String(64), primary_key=True)
    last_completed_batch = Column(Integer, nullable=False, default=0)
    counters = Column(JSON, nullable=False)
    saved_at = Column(DateTime(timezone=True), nullable=False)

    def __repr__(self) -> str:
        return f"<SyncCheckpoint {self.operation_id}: batch {self.last_completed_batch}>"
