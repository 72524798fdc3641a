"""
Mapping of raw Aeries attendance records to local attendance rows.
"""

import logging
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta
from typing import Any, Callable, Dict, List, Mapping, Optional, Tuple

from attendance_sync.integrations.sis.error_handler import RecordValidationError
from attendance_sync.models.attendance import FULL_DAY_ABSENCE_STATUSES, PERIOD_COUNT, PeriodStatus


logger = logging.getLogger(__name__)

CORRECTION_WINDOW_DAYS = 7

STATUS_CODES: Dict[str, PeriodStatus] = {
    'P': PeriodStatus.PRESENT,
    'A': PeriodStatus.ABSENT,
    'T': PeriodStatus.TARDY,
    'E': PeriodStatus.EXCUSED_ABSENT,
    'U': PeriodStatus.UNEXCUSED_ABSENT,
    'S': PeriodStatus.SUSPENDED,
}
STATUS_CODES.update({status.value: status for status in PeriodStatus})
STATUS_CODES.update({
    'EXCUSED': PeriodStatus.EXCUSED_ABSENT,
    'UNEXCUSED': PeriodStatus.UNEXCUSED_ABSENT,
    'SUSPENSION': PeriodStatus.SUSPENDED,
    'LATE': PeriodStatus.TARDY,
})


@dataclass(frozen=True)
class SchoolRef:
    """Local school a batch of records belongs to."""
    id: int
    school_code: str
    aeries_school_code: str


@dataclass(frozen=True)
class AttendanceRecordData:
    """A transformed record, ready for the upsert sink."""
    student_id: int
    school_id: int
    attendance_date: date
    is_present: bool
    is_full_day_absent: bool
    days_enrolled: float
    period_statuses: Tuple[PeriodStatus, ...]
    tardy_count: int
    can_be_corrected: bool
    correction_deadline: date
    aeries_student_id: str
    school_code: str
    source: str = "aeries"
    warnings: Tuple[str, ...] = field(default=(), compare=False)

    @property
    def key(self) -> Tuple[int, date]:
        return (self.student_id, self.attendance_date)

    def to_row(self, sync_operation_id: Optional[str] = None,
               synced_at: Optional[datetime] = None) -> Dict[str, Any]:
        row = {
            'student_id': self.student_id,
            'school_id': self.school_id,
            'attendance_date': self.attendance_date,
            'is_present': self.is_present,
            'is_full_day_absent': self.is_full_day_absent,
            'days_enrolled': self.days_enrolled,
            'tardy_count': self.tardy_count,
            'can_be_corrected': self.can_be_corrected,
            'correction_deadline': self.correction_deadline,
            'aeries_student_id': self.aeries_student_id,
            'school_code': self.school_code,
            'source': self.source,
            'sync_operation_id': sync_operation_id,
            'synced_at': synced_at,
        }
        for number, status in enumerate(self.period_statuses, start=1):
            row[f'period_{number}_status'] = status
        return row


def record_key(raw: Mapping[str, Any]) -> str:
    """Stable identifier of a raw record for error reports."""
    student = raw.get('studentId') or raw.get('student_id') or '?'
    day = raw.get('attendanceDate') or raw.get('date') or '?'
    return f"{student}:{str(day)[:10]}"


class RecordTransformer:
    """
    Turn raw remote records into local attendance rows.

    Unknown status codes become PRESENT with a data-quality warning. Records
    that cannot be keyed (no student id, no usable date) or whose student is
    not in the local directory raise RecordValidationError.
    """

    def __init__(self, today: Callable[[], date] = date.today, source: str = "aeries"):
        self._today = today
        self.source = source

    def normalize_status(self, code: Any, context: str = "") -> Tuple[PeriodStatus, Optional[str]]:
        """
        Map a remote status code to a PeriodStatus.

        Returns:
            Tuple of (status, warning); warning is None for recognised codes
        """
        if code is None or (isinstance(code, str) and not code.strip()):
            return PeriodStatus.PRESENT, None

        normalized = str(code).strip().upper().replace(' ', '_').replace('-', '_')
        status = STATUS_CODES.get(normalized)
        if status is not None:
            return status, None

        warning = f"Unknown attendance status code {code!r}{context}; defaulting to PRESENT"
        logger.warning(warning)
        return PeriodStatus.PRESENT, warning

    def transform(
        self,
        raw: Mapping[str, Any],
        school: SchoolRef,
        student_lookup: Callable[[str], Optional[int]]
    ) -> AttendanceRecordData:
        """
        Transform one raw record.

        Args:
            raw: Record as returned by the remote API
            school: Local school the record was fetched for
            student_lookup: Resolves a remote student id to a local student id

        Returns:
            Transformed record

        Raises:
            RecordValidationError: If the record is malformed or its student is unknown
        """
        if not isinstance(raw, Mapping):
            raise RecordValidationError(f"Record is not an object: {raw!r}")
        key = record_key(raw)

        remote_student_id = raw.get('studentId', raw.get('student_id'))
        if remote_student_id is None or str(remote_student_id).strip() == "":
            raise RecordValidationError("Missing studentId", record_key=key)
        remote_student_id = str(remote_student_id).strip()

        attendance_date = self._parse_date(raw.get('attendanceDate') or raw.get('date'), key)

        student_id = student_lookup(remote_student_id)
        if student_id is None:
            raise RecordValidationError(
                f"Student {remote_student_id} not found in school {school.school_code}",
                record_key=key,
                details={'aeries_student_id': remote_student_id, 'school_code': school.school_code}
            )

        warnings: List[str] = []
        periods = self._map_periods(raw.get('periods'), key, warnings)

        daily_code = raw.get('dailyStatus', raw.get('status'))
        if daily_code is not None and str(daily_code).strip():
            daily, warning = self.normalize_status(daily_code, f" for {key}")
            if warning:
                warnings.append(warning)
            is_present = not daily.is_absence
            is_full_day_absent = daily in FULL_DAY_ABSENCE_STATUSES
        else:
            is_present = any(not status.is_absence for status in periods)
            is_full_day_absent = all(status in FULL_DAY_ABSENCE_STATUSES for status in periods)

        tardy_count = self._int_field(raw.get('tardyCount'), key, 'tardyCount')
        if tardy_count is None:
            tardy_count = sum(1 for status in periods if status is PeriodStatus.TARDY)

        days_enrolled = raw.get('daysEnrolled')
        try:
            days_enrolled = float(days_enrolled) if days_enrolled is not None else 1.0
        except (TypeError, ValueError):
            raise RecordValidationError(f"Invalid daysEnrolled {days_enrolled!r}", record_key=key)

        return AttendanceRecordData(
            student_id=student_id,
            school_id=school.id,
            attendance_date=attendance_date,
            is_present=is_present,
            is_full_day_absent=is_full_day_absent,
            days_enrolled=days_enrolled,
            period_statuses=tuple(periods),
            tardy_count=tardy_count,
            can_be_corrected=self.is_correction_eligible(attendance_date),
            correction_deadline=self.correction_deadline(attendance_date),
            aeries_student_id=remote_student_id,
            school_code=school.school_code,
            source=self.source,
            warnings=tuple(warnings),
        )

    def correction_deadline(self, attendance_date: date) -> date:
        return attendance_date + timedelta(days=CORRECTION_WINDOW_DAYS)

    def is_correction_eligible(self, attendance_date: date) -> bool:
        return (self._today() - attendance_date).days <= CORRECTION_WINDOW_DAYS

    def _map_periods(self, periods: Any, key: str, warnings: List[str]) -> List[PeriodStatus]:
        statuses = [PeriodStatus.PRESENT] * PERIOD_COUNT
        if not periods:
            return statuses
        if not isinstance(periods, list):
            raise RecordValidationError(f"periods must be a list, got {type(periods).__name__}",
                                        record_key=key)

        for position, entry in enumerate(periods, start=1):
            if isinstance(entry, Mapping):
                number = entry.get('period', position)
                code = entry.get('status', entry.get('code'))
            else:
                number, code = position, entry
            try:
                number = int(number)
            except (TypeError, ValueError):
                raise RecordValidationError(f"Invalid period number {number!r}", record_key=key)
            if not 1 <= number <= PERIOD_COUNT:
                logger.warning(f"Ignoring period {number} outside 1..{PERIOD_COUNT} for {key}")
                continue

            status, warning = self.normalize_status(code, f" in period {number} for {key}")
            if warning:
                warnings.append(warning)
            statuses[number - 1] = status
        return statuses

    @staticmethod
    def _parse_date(value: Any, key: str) -> date:
        if isinstance(value, datetime):
            return value.date()
        if isinstance(value, date):
            return value
        if not value:
            raise RecordValidationError("Missing attendanceDate", record_key=key)
        try:
            return date.fromisoformat(str(value).strip()[:10])
        except ValueError:
            raise RecordValidationError(f"Invalid attendanceDate {value!r}", record_key=key)

    @staticmethod
    def _int_field(value: Any, key: str, name: str) -> Optional[int]:
        if value is None:
            return None
        try:
            result = int(value)
        except (TypeError, ValueError):
            raise RecordValidationError(f"Invalid {name} {value!r}", record_key=key)
        if result < 0:
            raise RecordValidationError(f"Negative {name} {value!r}", record_key=key)
        return result
