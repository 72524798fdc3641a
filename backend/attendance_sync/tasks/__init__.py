"""
Background task management for sync operations.
"""

from .sync_tasks import (
    SyncTaskManager,
    cancel_on_signals,
    get_sync_task_manager
)

__all__ = [
    'SyncTaskManager',
    'cancel_on_signals',
    'get_sync_task_manager'
]
