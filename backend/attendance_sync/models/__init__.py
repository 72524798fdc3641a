from .student import School, Student
from .attendance import AttendanceRecord, PeriodStatus, PERIOD_COUNT, ABSENCE_STATUSES
from .sync_metadata import SyncOperation, SyncCheckpoint, SyncStatus

__all__ = [
    "School",
    "Student",
    "AttendanceRecord",
    "PeriodStatus",
    "PERIOD_COUNT",
    "ABSENCE_STATUSES",
    "SyncOperation",
    "SyncCheckpoint",
    "SyncStatus",
]
