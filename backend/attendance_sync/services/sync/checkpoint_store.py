"""
Durable sync state: resume checkpoints and the sync operation ledger.
"""

import asyncio
import logging
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from sqlalchemy import select
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.ext.asyncio import async_sessionmaker

from attendance_sync.integrations.sis.error_handler import InvalidConfigurationError
from attendance_sync.models.sync_metadata import SyncCheckpoint, SyncOperation, SyncStatus
from attendance_sync.schemas.sync import CheckpointData, SyncCounters, SyncOptions


logger = logging.getLogger(__name__)


def _dialect_name(session_factory: async_sessionmaker) -> str:
    bind = session_factory.kw.get("bind")
    return bind.dialect.name if bind is not None else "sqlite"


class CheckpointStore:
    """
    Save and load resume checkpoints, one row per operation id.

    Saves overwrite the previous checkpoint of the same operation and are
    serialized through a lock; callers pass an immutable snapshot.
    """

    def __init__(self, session_factory: async_sessionmaker):
        self.session_factory = session_factory
        dialect = _dialect_name(session_factory)
        if dialect == "sqlite":
            self._insert = sqlite.insert
        elif dialect == "postgresql":
            self._insert = postgresql.insert
        else:
            raise InvalidConfigurationError(f"Unsupported database dialect for checkpoints: {dialect}")
        self._lock = asyncio.Lock()

    async def save(self, checkpoint: CheckpointData) -> CheckpointData:
        """Persist a checkpoint, replacing any previous one for the operation."""
        saved = checkpoint.model_copy(update={'saved_at': checkpoint.saved_at or datetime.now(timezone.utc)})
        values = {
            'operation_id': saved.operation_id,
            'last_completed_batch': saved.last_completed_batch,
            'counters': saved.counters.model_dump(),
            'saved_at': saved.saved_at,
        }
        stmt = self._insert(SyncCheckpoint).values(**values)
        stmt = stmt.on_conflict_do_update(
            index_elements=['operation_id'],
            set_={
                'last_completed_batch': stmt.excluded.last_completed_batch,
                'counters': stmt.excluded.counters,
                'saved_at': stmt.excluded.saved_at,
            }
        )

        async with self._lock:
            async with self.session_factory() as session:
                async with session.begin():
                    await session.execute(stmt)

        logger.debug(
            f"Checkpoint saved for {saved.operation_id} at batch {saved.last_completed_batch}"
        )
        return saved

    async def load(self, operation_id: str) -> Optional[CheckpointData]:
        """Get the checkpoint of an operation, or None if it never saved one."""
        async with self.session_factory() as session:
            row = await session.get(SyncCheckpoint, operation_id)
            if row is None:
                return None
            return CheckpointData(
                operation_id=row.operation_id,
                last_completed_batch=row.last_completed_batch,
                counters=SyncCounters(**(row.counters or {})),
                saved_at=row.saved_at,
            )


class SyncOperationRepository:
    """Persistence of the sync_operations ledger."""

    def __init__(self, session_factory: async_sessionmaker):
        self.session_factory = session_factory

    async def create(
        self,
        operation_id: str,
        options: SyncOptions,
        counters: Optional[SyncCounters] = None,
        last_completed_batch: int = 0,
        resumed_from: Optional[str] = None,
        started_at: Optional[datetime] = None
    ) -> SyncOperation:
        counters = counters or SyncCounters()
        operation = SyncOperation(
            operation_id=operation_id,
            status=SyncStatus.RUNNING,
            resumed_from=resumed_from,
            start_date=options.start_date,
            end_date=options.end_date,
            batch_size=options.batch_size,
            chunk_days=options.chunk_days,
            checkpoint_every=options.checkpoint_every,
            school_codes=list(options.school_codes) if options.school_codes else None,
            last_completed_batch=last_completed_batch,
            started_at=started_at or datetime.now(timezone.utc),
            **counters.model_dump()
        )
        async with self.session_factory() as session:
            async with session.begin():
                session.add(operation)
        logger.info(f"Created sync operation {operation_id}")
        return operation

    async def update_progress(
        self,
        operation_id: str,
        counters: SyncCounters,
        last_completed_batch: int
    ) -> None:
        await self._update(operation_id, last_completed_batch=last_completed_batch, **counters.model_dump())

    async def finalize(
        self,
        operation_id: str,
        status: SyncStatus,
        counters: SyncCounters,
        last_completed_batch: int,
        error_message: Optional[str] = None,
        error_summary: Optional[Dict[str, Any]] = None,
        completed_at: Optional[datetime] = None
    ) -> None:
        await self._update(
            operation_id,
            status=status,
            last_completed_batch=last_completed_batch,
            error_message=error_message,
            error_summary=error_summary,
            completed_at=completed_at or datetime.now(timezone.utc),
            **counters.model_dump()
        )
        logger.info(f"Sync operation {operation_id} finished with status {status.value}")

    async def _update(self, operation_id: str, **values) -> None:
        async with self.session_factory() as session:
            async with session.begin():
                result = await session.execute(
                    select(SyncOperation).where(SyncOperation.operation_id == operation_id)
                )
                operation = result.scalar_one_or_none()
                if operation is None:
                    raise LookupError(f"Sync operation {operation_id} not found")
                for key, value in values.items():
                    setattr(operation, key, value)

    async def get(self, operation_id: str) -> Optional[SyncOperation]:
        async with self.session_factory() as session:
            result = await session.execute(
                select(SyncOperation).where(SyncOperation.operation_id == operation_id)
            )
            return result.scalar_one_or_none()

    async def list_recent(self, limit: int = 20, status: Optional[SyncStatus] = None) -> List[SyncOperation]:
        """Get sync operations, most recent first."""
        async with self.session_factory() as session:
            query = select(SyncOperation).order_by(SyncOperation.started_at.desc(), SyncOperation.id.desc())
            if status is not None:
                query = query.where(SyncOperation.status == status)
            result = await session.execute(query.limit(limit))
            return list(result.scalars().all())

    @staticmethod
    def to_options(operation: SyncOperation) -> SyncOptions:
        """Run parameters stored on an operation."""
        return SyncOptions(
            start_date=operation.start_date,
            end_date=operation.end_date,
            batch_size=operation.batch_size,
            chunk_days=operation.chunk_days,
            checkpoint_every=operation.checkpoint_every,
            school_codes=operation.school_codes or None,
        )
