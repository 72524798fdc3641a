"""
Attendance Synchronization Engine

Resumable, chunked and rate-limited sync of a school year of attendance
records from the Aeries SIS into the local store.

Components:
- Date range chunking
- Record transformation with period status normalization
- Idempotent batch upserts keyed by student and date
- Resume checkpoints and the sync operation ledger
- The orchestrator driving schools, chunks, pages and batches
"""

from .date_chunks import plan_date_chunks
from .transformer import AttendanceRecordData, RecordTransformer, SchoolRef
from .directory import LocalDirectory, StudentMap
from .upsert_sink import BatchUpsertSink, BatchWriteResult, RecordWriteFailure
from .checkpoint_store import CheckpointStore, SyncOperationRepository
from .orchestrator import SyncOrchestrator, SyncPlan

__all__ = [
    'plan_date_chunks',
    'AttendanceRecordData',
    'RecordTransformer',
    'SchoolRef',
    'LocalDirectory',
    'StudentMap',
    'BatchUpsertSink',
    'BatchWriteResult',
    'RecordWriteFailure',
    'CheckpointStore',
    'SyncOperationRepository',
    'SyncOrchestrator',
    'SyncPlan',
]
