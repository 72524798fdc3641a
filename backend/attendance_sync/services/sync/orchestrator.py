"""
Resumable school-year attendance sync.

The orchestrator walks schools -> date chunks -> pages -> batches. Batches
get a global, monotonically increasing index that doubles as the resume
cursor: on resume every batch at or below the checkpoint's index is fetched
again (to keep the numbering aligned) but neither transformed nor written.

A (school, chunk) abandoned after exhausting its retries shifts the index of
every later batch. From the first abandoned unit on, checkpoints keep the
cursor and counters of that moment so a resume replays everything after it.
"""

import asyncio
import logging
import time
import uuid
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, List, Optional, Sequence

from attendance_sync.core.config import settings as default_settings
from attendance_sync.core.sis_config import BaseSISProvider, DateChunk
from attendance_sync.integrations.sis.error_handler import (
    ClassifiedSyncError, ErrorClassifier, ErrorCollector, FatalSyncError,
    InvalidConfigurationError, SyncErrorKind, utcnow
)
from attendance_sync.integrations.sis.retry import RetryPolicy
from attendance_sync.models.sync_metadata import SyncStatus
from attendance_sync.schemas.sync import (
    CheckpointData, SyncCounters, SyncOptions, SyncState, SyncSummary
)
from attendance_sync.services.sync.checkpoint_store import CheckpointStore, SyncOperationRepository
from attendance_sync.services.sync.date_chunks import plan_date_chunks
from attendance_sync.services.sync.directory import LocalDirectory, StudentMap
from attendance_sync.services.sync.transformer import RecordTransformer, SchoolRef, record_key
from attendance_sync.services.sync.upsert_sink import BatchUpsertSink


logger = logging.getLogger(__name__)

# Errors kept verbatim in the persisted error summary
MAX_PERSISTED_ERRORS = 100

_TRANSITIONS = {
    SyncState.INITIALIZING: {SyncState.RUNNING, SyncState.ABORTED},
    SyncState.RUNNING: {SyncState.COMPLETED, SyncState.ABORTED},
    SyncState.COMPLETED: set(),
    SyncState.ABORTED: set(),
}


@dataclass
class SyncPlan:
    """Everything resolved during INITIALIZING."""
    operation_id: str
    options: SyncOptions
    chunks: List[DateChunk]
    schools: List[SchoolRef]
    resumed_from: Optional[str] = None
    checkpoint: Optional[CheckpointData] = None

    @property
    def resume_cursor(self) -> int:
        return self.checkpoint.last_completed_batch if self.checkpoint else 0

    @property
    def initial_counters(self) -> SyncCounters:
        if self.checkpoint is None:
            return SyncCounters()
        return self.checkpoint.counters.model_copy()


class _Abort(Exception):
    """Internal signal ending the RUNNING loop."""

    def __init__(self, status: SyncStatus, reason: Optional[str] = None):
        super().__init__(reason or status.value)
        self.status = status
        self.reason = reason


@dataclass
class _BatchOutcome:
    seen: int = 0
    succeeded: int = 0
    failed: int = 0
    write_failed: bool = False


class SyncOrchestrator:
    """
    Top-level driver of one sync operation.

    States: INITIALIZING -> RUNNING -> COMPLETED | ABORTED. A FATAL error
    aborts with status FAILED, cancellation aborts with status CANCELLED.
    An instance runs exactly one operation.
    """

    def __init__(
        self,
        source: BaseSISProvider,
        directory: LocalDirectory,
        sink: BatchUpsertSink,
        checkpoints: CheckpointStore,
        operations: SyncOperationRepository,
        transformer: Optional[RecordTransformer] = None,
        retry_policy: Optional[RetryPolicy] = None,
        classifier: Optional[ErrorClassifier] = None,
        settings=None,
        operation_id: Optional[str] = None,
        cancel_event: Optional[asyncio.Event] = None
    ):
        self.source = source
        self.directory = directory
        self.sink = sink
        self.checkpoints = checkpoints
        self.operations = operations
        self.transformer = transformer or RecordTransformer()
        self.classifier = classifier or ErrorClassifier()
        self.retry = retry_policy or RetryPolicy(classifier=self.classifier)
        self.settings = settings or default_settings
        self.operation_id = operation_id or uuid.uuid4().hex
        self.cancel_event = cancel_event or asyncio.Event()

        self.state = SyncState.INITIALIZING
        self.errors = ErrorCollector()
        self.counters = SyncCounters()
        self.last_completed_batch = 0
        self._batch_index = 0
        self._pinned: Optional[CheckpointData] = None
        self._plan: Optional[SyncPlan] = None
        self._started = False

    # State handling

    def _transition(self, new_state: SyncState) -> None:
        if new_state not in _TRANSITIONS[self.state]:
            raise RuntimeError(f"Invalid sync state transition {self.state.value} -> {new_state.value}")
        logger.info(f"Sync {self.operation_id}: {self.state.value} -> {new_state.value}")
        self.state = new_state

    def cancel(self) -> None:
        """Request cancellation; the in-flight batch is finished first."""
        if not self.cancel_event.is_set():
            logger.info(f"Cancellation requested for sync {self.operation_id}")
            self.cancel_event.set()

    @property
    def cancelled(self) -> bool:
        return self.cancel_event.is_set()

    @property
    def plan(self) -> Optional[SyncPlan]:
        return self._plan

    # INITIALIZING

    async def prepare(self, options: Optional[SyncOptions] = None) -> SyncPlan:
        """
        Resolve options, the resume checkpoint, the chunk plan and target schools.

        Makes no remote calls.

        Raises:
            ConfigurationError: On an invalid range, sizes, school filter or resume id
        """
        if self._plan is not None:
            return self._plan

        options = options or SyncOptions()
        resumed_from = options.resume_from
        checkpoint = None

        if resumed_from:
            previous = await self.operations.get(resumed_from)
            if previous is None:
                raise InvalidConfigurationError(
                    f"Cannot resume unknown sync operation {resumed_from}",
                    details={'resume_from': resumed_from}
                )
            options = self._merge_resumed_options(options, previous)
            checkpoint = await self.checkpoints.load(resumed_from)
            if checkpoint is None:
                logger.warning(f"No checkpoint stored for {resumed_from}; resuming from batch 0")
            else:
                logger.info(
                    f"Resuming {resumed_from} after batch {checkpoint.last_completed_batch}"
                )

        options = options.with_defaults(self.settings)
        for name in ('batch_size', 'checkpoint_every'):
            value = getattr(options, name)
            if value is None or value <= 0:
                raise InvalidConfigurationError(
                    f"{name} must be a positive integer, got {value!r}", details={name: value}
                )

        chunks = plan_date_chunks(options.start_date, options.end_date, options.chunk_days)
        schools = await self.directory.resolve_schools(options.school_codes)

        self._plan = SyncPlan(
            operation_id=self.operation_id,
            options=options,
            chunks=chunks,
            schools=schools,
            resumed_from=resumed_from,
            checkpoint=checkpoint,
        )
        logger.info(
            f"Sync {self.operation_id} planned: {len(schools)} schools x {len(chunks)} chunks "
            f"({options.start_date} .. {options.end_date}, batch size {options.batch_size})"
        )
        return self._plan

    @staticmethod
    def _merge_resumed_options(options: SyncOptions, previous) -> SyncOptions:
        stored = SyncOperationRepository.to_options(previous)
        for name in ('start_date', 'end_date', 'batch_size', 'chunk_days', 'school_codes'):
            requested = getattr(options, name)
            original = getattr(stored, name)
            if requested is not None and requested != original:
                logger.warning(
                    f"Ignoring {name}={requested!r} on resume; "
                    f"operation {previous.operation_id} used {original!r}"
                )
        return stored.model_copy(update={
            'checkpoint_every': options.checkpoint_every or stored.checkpoint_every,
            'resume_from': options.resume_from,
        })

    # Entry point

    async def run(self, options: Optional[SyncOptions] = None) -> SyncSummary:
        """
        Run the operation to a terminal state.

        Configuration errors are raised before anything is persisted. Every
        other failure is reported in the returned summary.
        """
        if self._started:
            raise RuntimeError("A SyncOrchestrator instance runs a single operation")
        self._started = True

        plan = await self.prepare(options)
        started_at = utcnow()
        started = time.monotonic()

        self.counters = plan.initial_counters
        self.last_completed_batch = plan.resume_cursor
        await self.operations.create(
            plan.operation_id,
            plan.options,
            counters=self.counters,
            last_completed_batch=self.last_completed_batch,
            resumed_from=plan.resumed_from,
            started_at=started_at,
        )
        if plan.checkpoint is not None:
            await self._save_checkpoint(plan)

        status = SyncStatus.COMPLETED
        reason = None
        try:
            async with self.source:
                await self._preflight()
                self._transition(SyncState.RUNNING)
                await self._run_schools(plan)
        except _Abort as abort:
            status = abort.status
            reason = abort.reason
        except asyncio.CancelledError:
            self.cancel()
            await self._finish(plan, SyncStatus.CANCELLED, started_at, started)
            raise
        except Exception as e:
            logger.exception(f"Sync {self.operation_id} failed unexpectedly")
            self.errors.record(e, SyncErrorKind.FATAL, "sync")
            status = SyncStatus.FAILED

        return await self._finish(plan, status, started_at, started, reason)

    async def _preflight(self) -> None:
        try:
            healthy = await self.retry.execute(self.source.health_check, stage="health_check",
                                               description=f"{self.source.name} health check")
        except ClassifiedSyncError as e:
            self.errors.record(e, e.kind, "health_check")
            if e.kind is SyncErrorKind.FATAL:
                raise _Abort(SyncStatus.FAILED)
            logger.warning(f"Health check failed ({e}); continuing")
            return
        if not healthy:
            logger.warning(f"{self.source.name} health check reported unhealthy; continuing")

    # RUNNING

    async def _run_schools(self, plan: SyncPlan) -> None:
        for school in plan.schools:
            self._check_cancelled()
            try:
                students = await self.retry.execute(
                    lambda school=school: self.directory.load_student_map(school),
                    stage="directory",
                    description=f"student directory {school.school_code}"
                )
            except ClassifiedSyncError as e:
                self._handle_unit_error(e, "directory", school_code=school.school_code)
                self._abandon_unit(plan, f"school {school.school_code}")
                logger.error(f"Skipping school {school.school_code}: student directory unavailable")
                continue

            for chunk in plan.chunks:
                self._check_cancelled()
                await self._run_chunk(plan, school, chunk, students)

    async def _run_chunk(
        self,
        plan: SyncPlan,
        school: SchoolRef,
        chunk: DateChunk,
        students: StudentMap
    ) -> None:
        batch_size = plan.options.batch_size
        buffer: List[Dict[str, Any]] = []
        pages = self.source.iter_pages(school.aeries_school_code, chunk, executor=self.retry)

        try:
            while True:
                self._check_cancelled()
                try:
                    page = await pages.__anext__()
                except StopAsyncIteration:
                    break
                except ClassifiedSyncError as e:
                    self._handle_unit_error(e, "fetch", school_code=school.school_code, chunk=str(chunk))
                    self._abandon_unit(plan, f"school {school.school_code} {chunk}")
                    logger.error(
                        f"Abandoning remaining pages of school {school.school_code} {chunk}"
                    )
                    break

                buffer.extend(page.records)
                while len(buffer) >= batch_size:
                    batch, buffer = buffer[:batch_size], buffer[batch_size:]
                    await self._run_batch(plan, school, chunk, students, batch)
                    self._check_cancelled()
        finally:
            await pages.aclose()

        if buffer:
            await self._run_batch(plan, school, chunk, students, buffer)

    def _check_cancelled(self) -> None:
        if self.cancelled:
            raise _Abort(SyncStatus.CANCELLED)

    def _abandon_unit(self, plan: SyncPlan, unit: str) -> None:
        """
        Pin the resume cursor before the first abandoned unit.

        Abandoning inside the range a resumed run is skipping would shift the
        remaining skipped indices onto unwritten batches, so the run stops and
        keeps the checkpoint it resumed from.
        """
        if self._batch_index < plan.resume_cursor:
            raise _Abort(
                SyncStatus.FAILED,
                f"Could not re-walk {unit} before resume cursor {plan.resume_cursor}; "
                f"resume again once the remote API recovers"
            )
        if self._pinned is None:
            self._pinned = self._snapshot(plan)
            logger.warning(
                f"Abandoned {unit}; resume checkpoints stay at batch {self._pinned.last_completed_batch}"
            )

    def _handle_unit_error(self, error: ClassifiedSyncError, stage: str, **context) -> None:
        """Record a failed unit of work; FATAL errors end the run."""
        self.errors.record(error, error.kind, stage, **context)
        if error.kind is SyncErrorKind.FATAL:
            raise _Abort(SyncStatus.FAILED)

    async def _run_batch(
        self,
        plan: SyncPlan,
        school: SchoolRef,
        chunk: DateChunk,
        students: StudentMap,
        records: Sequence[Dict[str, Any]]
    ) -> None:
        self._batch_index += 1
        index = self._batch_index
        if index <= plan.resume_cursor:
            logger.debug(f"Skipping batch {index}: completed before resume")
            return

        context = {'school_code': school.school_code, 'chunk': str(chunk), 'batch_index': index}
        outcome = _BatchOutcome(seen=len(records))

        transformed = []
        for raw in records:
            try:
                transformed.append(self.transformer.transform(raw, school, students))
            except Exception as e:
                kind = self.classifier.classify(e)
                key = record_key(raw) if isinstance(raw, dict) else None
                if kind is SyncErrorKind.FATAL:
                    self._handle_unit_error(FatalSyncError(e, stage="transform"), "transform",
                                            record_key=key, **context)
                self.errors.record(e, kind, "transform", record_key=key, **context)
                outcome.failed += 1

        if transformed:
            try:
                result = await self.retry.execute(
                    lambda: self.sink.write_batch(transformed, plan.operation_id),
                    stage="write",
                    description=f"batch {index} ({school.school_code} {chunk})"
                )
            except ClassifiedSyncError as e:
                self._handle_unit_error(e, "write", **context)
                outcome.failed += len(transformed)
                outcome.write_failed = True
            else:
                outcome.succeeded += result.succeeded
                outcome.failed += result.failed
                for failure in result.failures:
                    self.errors.record(failure.error, SyncErrorKind.RECOVERABLE, "write",
                                       record_key=failure.record_key, **context)

        self._complete_batch(index, outcome)
        if index % plan.options.checkpoint_every == 0:
            await self._save_checkpoint(plan)

    def _complete_batch(self, index: int, outcome: _BatchOutcome) -> None:
        self.counters.records_seen += outcome.seen
        self.counters.records_succeeded += outcome.succeeded
        self.counters.records_failed += outcome.failed
        if outcome.write_failed:
            self.counters.batches_failed += 1
        else:
            self.counters.batches_completed += 1
        self.last_completed_batch = index
        logger.info(
            f"Batch {index} done: {outcome.succeeded} written, {outcome.failed} failed "
            f"(total {self.counters.records_succeeded}/{self.counters.records_seen})"
        )

    def _snapshot(self, plan: SyncPlan) -> CheckpointData:
        return CheckpointData(
            operation_id=plan.operation_id,
            last_completed_batch=self.last_completed_batch,
            counters=self.counters.model_copy(),
        )

    async def _save_checkpoint(self, plan: SyncPlan) -> Optional[CheckpointData]:
        snapshot = self._pinned or self._snapshot(plan)

        async def persist():
            saved = await self.checkpoints.save(snapshot)
            await self.operations.update_progress(
                plan.operation_id, snapshot.counters, snapshot.last_completed_batch
            )
            return saved

        try:
            return await self.retry.execute(persist, stage="checkpoint",
                                            description=f"checkpoint at batch {snapshot.last_completed_batch}")
        except ClassifiedSyncError as e:
            self.errors.record(e, e.kind, "checkpoint", batch_index=snapshot.last_completed_batch)
            logger.error(f"Checkpoint at batch {snapshot.last_completed_batch} not saved: {e}")
            return None

    # Terminal states

    async def _finish(
        self,
        plan: SyncPlan,
        status: SyncStatus,
        started_at: datetime,
        started: float,
        reason: Optional[str] = None
    ) -> SyncSummary:
        self._transition(SyncState.COMPLETED if status is SyncStatus.COMPLETED else SyncState.ABORTED)

        checkpoint = await self._save_checkpoint(plan) or self._pinned or self._snapshot(plan)
        finished_at = utcnow()

        fatal = self.errors.fatal.to_dict() if self.errors.fatal else None
        error_summary = {
            'by_kind': self.errors.breakdown_by_kind(),
            'by_type': self.errors.breakdown_by_type(),
            'fatal': fatal,
            'errors': [e.to_dict() for e in self.errors.errors[:MAX_PERSISTED_ERRORS]],
        }
        error_message = None
        if status is SyncStatus.FAILED:
            error_message = fatal['message'] if fatal else (reason or "Sync failed")
        elif status is SyncStatus.CANCELLED:
            error_message = "Cancelled"

        try:
            await self.operations.finalize(
                plan.operation_id,
                status,
                self.counters,
                checkpoint.last_completed_batch,
                error_message=error_message,
                error_summary=error_summary,
                completed_at=finished_at,
            )
        except Exception as e:
            logger.error(f"Could not record final status of sync {plan.operation_id}: {e}")

        summary = SyncSummary(
            operation_id=plan.operation_id,
            status=status,
            state=self.state,
            resumed_from=plan.resumed_from,
            start_date=plan.options.start_date,
            end_date=plan.options.end_date,
            started_at=started_at,
            finished_at=finished_at,
            elapsed_seconds=round(time.monotonic() - started, 3),
            counters=self.counters.model_copy(),
            error_breakdown=error_summary['by_kind'],
            error_types=error_summary['by_type'],
            errors=[e.to_dict() for e in self.errors.errors],
            fatal_error=fatal,
            resume_checkpoint=checkpoint if status is not SyncStatus.COMPLETED or self._pinned else None,
        )
        logger.info(
            f"Sync {plan.operation_id} {status.value}: {self.counters.records_succeeded} succeeded, "
            f"{self.counters.records_failed} failed of {self.counters.records_seen} seen "
            f"in {summary.elapsed_seconds:.1f}s"
        )
        return summary
