"""
Idempotent batch writer for synchronized attendance records.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Dict, List, Optional, Sequence, Tuple

from sqlalchemy import func
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.exc import DataError, DBAPIError, IntegrityError, StatementError
from sqlalchemy.ext.asyncio import async_sessionmaker

from attendance_sync.integrations.sis.error_handler import InvalidConfigurationError
from attendance_sync.models.attendance import AttendanceRecord
from attendance_sync.services.sync.transformer import AttendanceRecordData


logger = logging.getLogger(__name__)

CONFLICT_COLUMNS = ("student_id", "attendance_date")
# Rows per INSERT statement, keeps SQLite under its bound-parameter limit
ROWS_PER_STATEMENT = 100


@dataclass
class RecordWriteFailure:
    record_key: str
    error: BaseException


@dataclass
class BatchWriteResult:
    succeeded: int = 0
    failures: List[RecordWriteFailure] = field(default_factory=list)

    @property
    def failed(self) -> int:
        return len(self.failures)


def is_record_level_error(error: BaseException) -> bool:
    """True for failures caused by the row itself rather than the database connection."""
    if isinstance(error, (IntegrityError, DataError)):
        return True
    # Parameter binding problems are raised as a bare StatementError
    return isinstance(error, StatementError) and not isinstance(error, DBAPIError)


def _insert_for(dialect_name: str):
    if dialect_name == "sqlite":
        return sqlite.insert
    if dialect_name == "postgresql":
        return postgresql.insert
    raise InvalidConfigurationError(
        f"Unsupported database dialect for upserts: {dialect_name}",
        details={'dialect': dialect_name}
    )


class BatchUpsertSink:
    """
    Upserts attendance rows keyed by (student_id, attendance_date).

    A batch is first written in one transaction. If that fails on a row-level
    problem each record is retried in its own transaction so one bad row
    cannot sink the rest. Connection-level failures propagate to the caller.
    """

    def __init__(self, session_factory: async_sessionmaker, dialect_name: Optional[str] = None):
        self.session_factory = session_factory
        if dialect_name is None:
            bind = session_factory.kw.get("bind")
            dialect_name = bind.dialect.name if bind is not None else "sqlite"
        self._insert = _insert_for(dialect_name)

    def _statement(self, rows: List[Dict]):
        stmt = self._insert(AttendanceRecord).values(rows)
        update_columns = {
            key: stmt.excluded[key] for key in rows[0].keys() if key not in CONFLICT_COLUMNS
        }
        update_columns["updated_at"] = func.now()
        return stmt.on_conflict_do_update(index_elements=list(CONFLICT_COLUMNS), set_=update_columns)

    async def write_batch(
        self,
        records: Sequence[AttendanceRecordData],
        sync_operation_id: Optional[str] = None
    ) -> BatchWriteResult:
        """
        Write a batch of transformed records.

        Args:
            records: Transformed records; a later record with the same key replaces an earlier one
            sync_operation_id: Operation stamped on every written row

        Returns:
            Number of records written and the per-record failures
        """
        if not records:
            return BatchWriteResult()

        synced_at = datetime.now(timezone.utc)
        unique: Dict[Tuple, AttendanceRecordData] = {}
        occurrences: Dict[Tuple, int] = {}
        for record in records:
            unique[record.key] = record
            occurrences[record.key] = occurrences.get(record.key, 0) + 1

        if len(unique) < len(records):
            logger.debug(f"Collapsed {len(records) - len(unique)} duplicate records within batch")

        rows = [record.to_row(sync_operation_id, synced_at) for record in unique.values()]

        try:
            async with self.session_factory() as session:
                async with session.begin():
                    for offset in range(0, len(rows), ROWS_PER_STATEMENT):
                        await session.execute(self._statement(rows[offset:offset + ROWS_PER_STATEMENT]))
            return BatchWriteResult(succeeded=len(records))
        except StatementError as e:
            if not is_record_level_error(e):
                raise
            logger.warning(f"Bulk upsert of {len(rows)} records failed, writing one by one: {e}")

        result = BatchWriteResult()
        for record, row in zip(unique.values(), rows):
            count = occurrences[record.key]
            try:
                async with self.session_factory() as session:
                    async with session.begin():
                        await session.execute(self._statement([row]))
                result.succeeded += count
            except StatementError as e:
                if not is_record_level_error(e):
                    raise
                key = f"{record.aeries_student_id}:{record.attendance_date.isoformat()}"
                logger.warning(f"Failed to upsert attendance record {key}: {e}")
                result.failures.extend(RecordWriteFailure(record_key=key, error=e) for _ in range(count))
        return result
