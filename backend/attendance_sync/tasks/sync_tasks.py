"""
Foreground and background execution of sync operations.

Builds orchestrators from settings, tracks running operations so they can
be cancelled, and wires process signals to cancellation.
"""

import asyncio
import logging
import signal
from contextlib import contextmanager
from typing import Callable, Dict, Iterator, List, Optional, Tuple

from sqlalchemy.ext.asyncio import async_sessionmaker

from attendance_sync.core.config import settings as default_settings
from attendance_sync.core.database import AsyncSessionLocal
from attendance_sync.core.sis_config import BaseSISProvider, SISProviderConfig
from attendance_sync.gateway.throttler import RequestThrottler
from attendance_sync.integrations.sis.providers.aeries import AeriesProvider
from attendance_sync.integrations.sis.retry import RetryConfig, RetryPolicy
from attendance_sync.models.sync_metadata import SyncOperation, SyncStatus
from attendance_sync.schemas.sync import CheckpointData, SyncOptions, SyncSummary
from attendance_sync.services.sync import (
    BatchUpsertSink, CheckpointStore, LocalDirectory, SyncOperationRepository,
    SyncOrchestrator, SyncPlan
)


logger = logging.getLogger(__name__)


class SyncInProgressError(RuntimeError):
    """Another sync operation is already running in this manager."""

    def __init__(self, running_operation_id: str):
        super().__init__(f"Sync operation {running_operation_id} already in progress")
        self.running_operation_id = running_operation_id


@contextmanager
def cancel_on_signals(callback: Callable[[], None],
                      signals=(signal.SIGINT, signal.SIGTERM)) -> Iterator[None]:
    """Call ``callback`` when the process receives one of ``signals``."""
    loop = asyncio.get_running_loop()
    installed = []
    for sig in signals:
        try:
            loop.add_signal_handler(sig, callback)
            installed.append(sig)
        except (NotImplementedError, RuntimeError):
            # Not supported on this platform or outside the main thread
            logger.debug(f"Signal handler for {sig!r} not installed")
    try:
        yield
    finally:
        for sig in installed:
            loop.remove_signal_handler(sig)


class SyncTaskManager:
    """
    Manages sync operations run in the foreground or as background tasks.

    One operation runs at a time, and every Aeries provider it builds shares
    a single request throttler.
    """

    def __init__(
        self,
        session_factory: Optional[async_sessionmaker] = None,
        settings=None,
        provider_factory: Optional[Callable[[], BaseSISProvider]] = None
    ):
        self.session_factory = session_factory or AsyncSessionLocal
        self.settings = settings or default_settings
        self.provider_factory = provider_factory or self._default_provider
        self.operations = SyncOperationRepository(self.session_factory)
        self.checkpoints = CheckpointStore(self.session_factory)
        self._running_tasks: Dict[str, asyncio.Task] = {}
        self._orchestrators: Dict[str, SyncOrchestrator] = {}
        self._shutdown_event = asyncio.Event()
        self._throttler: Optional[RequestThrottler] = None

    def _default_provider(self) -> BaseSISProvider:
        config = SISProviderConfig.from_settings(self.settings)
        if self._throttler is None:
            self._throttler = RequestThrottler.from_settings(self.settings)
        return AeriesProvider(config, throttler=self._throttler)

    def _claim(self, orchestrator: SyncOrchestrator) -> None:
        if self._orchestrators:
            raise SyncInProgressError(next(iter(self._orchestrators)))
        self._orchestrators[orchestrator.operation_id] = orchestrator

    def build_orchestrator(self, operation_id: Optional[str] = None) -> SyncOrchestrator:
        """
        Assemble an orchestrator from settings.

        Raises:
            ConfigurationError: If the provider settings are invalid
        """
        return SyncOrchestrator(
            source=self.provider_factory(),
            directory=LocalDirectory(self.session_factory),
            sink=BatchUpsertSink(self.session_factory),
            checkpoints=self.checkpoints,
            operations=self.operations,
            retry_policy=RetryPolicy(RetryConfig.from_settings(self.settings)),
            settings=self.settings,
            operation_id=operation_id,
        )

    async def run_sync(self, options: Optional[SyncOptions] = None,
                       handle_signals: bool = False) -> SyncSummary:
        """
        Run a sync operation to completion in the current task.

        Args:
            options: Run options; unset values come from settings
            handle_signals: Cancel the operation on SIGINT/SIGTERM

        Raises:
            ConfigurationError: Before anything runs, if the configuration is invalid
            SyncInProgressError: If another operation is running
        """
        orchestrator = self.build_orchestrator()
        await orchestrator.prepare(options)
        self._claim(orchestrator)
        try:
            if handle_signals:
                with cancel_on_signals(orchestrator.cancel):
                    return await orchestrator.run()
            return await orchestrator.run()
        finally:
            self._orchestrators.pop(orchestrator.operation_id, None)

    async def start_sync(self, options: Optional[SyncOptions] = None) -> SyncPlan:
        """
        Validate a sync operation and run it as a background task.

        Returns:
            The resolved plan; its operation id identifies the background run

        Raises:
            ConfigurationError: If the configuration is invalid
            SyncInProgressError: If another operation is running
        """
        if self._shutdown_event.is_set():
            raise RuntimeError("Sync task manager is shutting down")

        orchestrator = self.build_orchestrator()
        plan = await orchestrator.prepare(options)
        operation_id = orchestrator.operation_id

        self._claim(orchestrator)
        task = asyncio.create_task(self._run_background(orchestrator), name=f"sync_{operation_id}")
        self._running_tasks[operation_id] = task
        logger.info(f"Started background sync {operation_id}")
        return plan

    async def _run_background(self, orchestrator: SyncOrchestrator) -> Optional[SyncSummary]:
        operation_id = orchestrator.operation_id
        try:
            return await orchestrator.run()
        except asyncio.CancelledError:
            logger.info(f"Background sync {operation_id} cancelled")
            raise
        except Exception as e:
            logger.error(f"Background sync {operation_id} failed: {e}")
            return None
        finally:
            self._orchestrators.pop(operation_id, None)
            self._running_tasks.pop(operation_id, None)

    def is_running(self, operation_id: str) -> bool:
        return operation_id in self._orchestrators

    def running_operations(self) -> List[str]:
        return list(self._orchestrators)

    def cancel(self, operation_id: str) -> bool:
        """Request cancellation of a running operation. Returns False if it is not running."""
        orchestrator = self._orchestrators.get(operation_id)
        if orchestrator is None:
            return False
        orchestrator.cancel()
        return True

    async def wait(self, operation_id: str) -> Optional[SyncSummary]:
        """Wait for a background operation to finish."""
        task = self._running_tasks.get(operation_id)
        if task is None:
            return None
        return await task

    async def history(self, limit: int = 20, status: Optional[SyncStatus] = None) -> List[SyncOperation]:
        return await self.operations.list_recent(limit=limit, status=status)

    async def get_operation(self, operation_id: str) -> Tuple[Optional[SyncOperation], Optional[CheckpointData]]:
        operation = await self.operations.get(operation_id)
        if operation is None:
            return None, None
        return operation, await self.checkpoints.load(operation_id)

    async def stop(self, timeout: float = 30.0) -> None:
        """Cancel running operations cooperatively and wait for them to checkpoint."""
        logger.info("Stopping sync task manager")
        self._shutdown_event.set()

        for orchestrator in list(self._orchestrators.values()):
            orchestrator.cancel()

        tasks = [task for task in self._running_tasks.values() if not task.done()]
        if tasks:
            _, pending = await asyncio.wait(tasks, timeout=timeout)
            for task in pending:
                logger.warning(f"Cancelling task: {task.get_name()}")
                task.cancel()
            if pending:
                await asyncio.gather(*pending, return_exceptions=True)

        self._running_tasks.clear()
        logger.info("Sync task manager stopped")


_task_manager: Optional[SyncTaskManager] = None


def get_sync_task_manager() -> SyncTaskManager:
    """Process-wide task manager used by the HTTP API."""
    global _task_manager
    if _task_manager is None:
        _task_manager = SyncTaskManager()
    return _task_manager
