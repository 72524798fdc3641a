"""
FastAPI router for attendance sync operations.
"""

from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query, status

from attendance_sync.integrations.sis.error_handler import ConfigurationError
from attendance_sync.models.sync_metadata import SyncStatus
from attendance_sync.schemas.sync import (
    SyncOperationDetail, SyncOperationResponse, SyncStartRequest
)
from attendance_sync.tasks.sync_tasks import SyncInProgressError, SyncTaskManager, get_sync_task_manager

router = APIRouter()


@router.post("/operations", response_model=SyncOperationResponse, status_code=status.HTTP_202_ACCEPTED)
async def start_sync(
    request: SyncStartRequest,
    manager: SyncTaskManager = Depends(get_sync_task_manager)
):
    """Start a sync operation in the background."""
    try:
        plan = await manager.start_sync(request.to_options())
    except ConfigurationError as e:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=e.to_dict()
        )
    except SyncInProgressError as e:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail=str(e)
        )

    options = plan.options
    return SyncOperationResponse(
        operation_id=plan.operation_id,
        status=SyncStatus.RUNNING,
        resumed_from=plan.resumed_from,
        start_date=options.start_date,
        end_date=options.end_date,
        batch_size=options.batch_size,
        chunk_days=options.chunk_days,
        school_codes=options.school_codes,
        last_completed_batch=plan.resume_cursor,
        **plan.initial_counters.model_dump()
    )


@router.get("/operations", response_model=List[SyncOperationResponse])
async def list_operations(
    limit: int = Query(default=20, ge=1, le=200),
    status_filter: Optional[SyncStatus] = Query(default=None, alias="status"),
    manager: SyncTaskManager = Depends(get_sync_task_manager)
):
    """List sync operations, most recent first."""
    operations = await manager.history(limit=limit, status=status_filter)
    return [SyncOperationResponse.model_validate(operation) for operation in operations]


@router.get("/operations/{operation_id}", response_model=SyncOperationDetail)
async def get_operation(
    operation_id: str,
    manager: SyncTaskManager = Depends(get_sync_task_manager)
):
    """Get one sync operation with its resume checkpoint."""
    operation, checkpoint = await manager.get_operation(operation_id)
    if operation is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Sync operation {operation_id} not found"
        )

    detail = SyncOperationDetail.model_validate(operation)
    detail.checkpoint = checkpoint
    return detail


@router.post("/operations/{operation_id}/cancel", status_code=status.HTTP_202_ACCEPTED)
async def cancel_operation(
    operation_id: str,
    manager: SyncTaskManager = Depends(get_sync_task_manager)
):
    """Request cancellation of a running sync operation."""
    if not manager.cancel(operation_id):
        operation, _ = await manager.get_operation(operation_id)
        if operation is None:
            raise HTTPException(
                status_code=status.HTTP_404_NOT_FOUND,
                detail=f"Sync operation {operation_id} not found"
            )
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail=f"Sync operation {operation_id} is not running (status: {operation.status.value})"
        )

    return {"operation_id": operation_id, "cancel_requested": True}
