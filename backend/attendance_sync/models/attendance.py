from sqlalchemy import (
    Column, Integer, String, Boolean, Date, DateTime, Float, ForeignKey,
    UniqueConstraint, Enum as SQLEnum
)
from sqlalchemy.sql import func
from sqlalchemy.orm import relationship
import enum

from attendance_sync.core.database import Base


PERIOD_COUNT = 7


class PeriodStatus(str, enum.Enum):
    PRESENT = "PRESENT"
    ABSENT = "ABSENT"
    TARDY = "TARDY"
    EXCUSED_ABSENT = "EXCUSED_ABSENT"
    UNEXCUSED_ABSENT = "UNEXCUSED_ABSENT"
    SUSPENDED = "SUSPENDED"

    @property
    def is_absence(self) -> bool:
        return self in ABSENCE_STATUSES


ABSENCE_STATUSES = frozenset({
    PeriodStatus.ABSENT,
    PeriodStatus.EXCUSED_ABSENT,
    PeriodStatus.UNEXCUSED_ABSENT,
    PeriodStatus.SUSPENDED,
})

# Suspension keeps a student out of class without counting as a full-day absence
FULL_DAY_ABSENCE_STATUSES = frozenset({
    PeriodStatus.ABSENT,
    PeriodStatus.EXCUSED_ABSENT,
    PeriodStatus.UNEXCUSED_ABSENT,
})


class AttendanceRecord(Base):
    """One student on one calendar date, as synchronized from the SIS."""

    __tablename__ = "attendance_records"

    id = Column(Integer, primary_key=True, index=True)

    # Foreign keys
    student_id = Column(Integer, ForeignKey("students.id"), nullable=False)
    school_id = Column(Integer, ForeignKey("schools.id"), nullable=False)

    # Daily attendance
    attendance_date = Column(Date, nullable=False, index=True)
    is_present = Column(Boolean, nullable=False, default=True)
    is_full_day_absent = Column(Boolean, nullable=False, default=False)
    days_enrolled = Column(Float, nullable=False, default=1.0)

    # Period-based attendance
    period_1_status = Column(SQLEnum(PeriodStatus), nullable=False, default=PeriodStatus.PRESENT)
    period_2_status = Column(SQLEnum(PeriodStatus), nullable=False, default=PeriodStatus.PRESENT)
    period_3_status = Column(SQLEnum(PeriodStatus), nullable=False, default=PeriodStatus.PRESENT)
    period_4_status = Column(SQLEnum(PeriodStatus), nullable=False, default=PeriodStatus.PRESENT)
    period_5_status = Column(SQLEnum(PeriodStatus), nullable=False, default=PeriodStatus.PRESENT)
    period_6_status = Column(SQLEnum(PeriodStatus), nullable=False, default=PeriodStatus.PRESENT)
    period_7_status = Column(SQLEnum(PeriodStatus), nullable=False, default=PeriodStatus.PRESENT)
    tardy_count = Column(Integer, nullable=False, default=0)

    # Correction window
    can_be_corrected = Column(Boolean, nullable=False, default=False)
    correction_deadline = Column(Date, nullable=False)

    # Source and sync metadata
    aeries_student_id = Column(String(50), nullable=False)
    school_code = Column(String(20), nullable=False)
    source = Column(String(50), nullable=False, default="aeries")
    sync_operation_id = Column(String(64), nullable=True, index=True)
    synced_at = Column(DateTime(timezone=True), nullable=True)

    # Timestamps
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), onupdate=func.now())

    # Relationships
    student = relationship("Student")
    school = relationship("School")

    __table_args__ = (
        UniqueConstraint("student_id", "attendance_date", name="uq_attendance_records_student_date"),
    )
