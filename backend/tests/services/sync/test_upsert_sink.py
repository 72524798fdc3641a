"""
Tests for the idempotent attendance upsert sink.
"""

import pytest
from dataclasses import replace
from datetime import date

from sqlalchemy import func, select

from attendance_sync.integrations.sis.error_handler import InvalidConfigurationError
from attendance_sync.models.attendance import AttendanceRecord, PeriodStatus
from attendance_sync.services.sync.transformer import RecordTransformer, SchoolRef
from attendance_sync.services.sync.upsert_sink import BatchUpsertSink

from sync_helpers import TODAY, seed_school


async def row_count(session_factory):
    async with session_factory() as session:
        return await session.scalar(select(func.count()).select_from(AttendanceRecord))


async def transformed_records(session_factory, statuses):
    school_id = await seed_school(session_factory, "RMS", "120", ["1001", "1002", "1003"])
    school = SchoolRef(id=school_id, school_code="RMS", aeries_school_code="120")
    students = {"1001": 1, "1002": 2, "1003": 3}
    transformer = RecordTransformer(today=lambda: TODAY)
    return [
        transformer.transform(
            {'studentId': student, 'attendanceDate': '2024-09-03', 'dailyStatus': status},
            school, students.get
        )
        for student, status in statuses
    ]


class TestBatchUpsertSink:
    """Test batch writes keyed by student and date."""

    @pytest.mark.asyncio
    async def test_write_batch(self, session_factory):
        """Test a clean batch is written in full."""
        records = await transformed_records(session_factory, [("1001", "P"), ("1002", "A"), ("1003", "T")])
        sink = BatchUpsertSink(session_factory)

        result = await sink.write_batch(records, "op-1")

        assert result.succeeded == 3
        assert result.failures == []
        assert await row_count(session_factory) == 3

    @pytest.mark.asyncio
    async def test_rewrite_is_idempotent(self, session_factory):
        """Test writing the same records twice leaves the same final state."""
        records = await transformed_records(session_factory, [("1001", "P"), ("1002", "A")])
        sink = BatchUpsertSink(session_factory)

        await sink.write_batch(records, "op-1")
        async with session_factory() as session:
            first = (await session.execute(
                select(AttendanceRecord.student_id, AttendanceRecord.is_present,
                       AttendanceRecord.period_1_status).order_by(AttendanceRecord.student_id)
            )).all()

        await sink.write_batch(records, "op-1")
        async with session_factory() as session:
            second = (await session.execute(
                select(AttendanceRecord.student_id, AttendanceRecord.is_present,
                       AttendanceRecord.period_1_status).order_by(AttendanceRecord.student_id)
            )).all()

        assert await row_count(session_factory) == 2
        assert first == second

    @pytest.mark.asyncio
    async def test_upsert_overwrites_existing_row(self, session_factory):
        """Test a later write for the same student and date replaces the row."""
        present, = await transformed_records(session_factory, [("1001", "P")])
        absent = replace(present, is_present=False, is_full_day_absent=True,
                         period_statuses=(PeriodStatus.ABSENT,) * 7)
        sink = BatchUpsertSink(session_factory)

        await sink.write_batch([present], "op-1")
        await sink.write_batch([absent], "op-2")

        async with session_factory() as session:
            row = (await session.execute(select(AttendanceRecord))).scalar_one()
        assert row.is_present is False
        assert row.period_1_status == PeriodStatus.ABSENT
        assert row.sync_operation_id == "op-2"

    @pytest.mark.asyncio
    async def test_duplicates_within_batch_keep_last(self, session_factory):
        """Test duplicate keys inside one batch collapse to the last record."""
        first, = await transformed_records(session_factory, [("1001", "P")])
        last = replace(first, tardy_count=4)
        sink = BatchUpsertSink(session_factory)

        result = await sink.write_batch([first, last], "op-1")

        assert result.succeeded == 2
        async with session_factory() as session:
            row = (await session.execute(select(AttendanceRecord))).scalar_one()
        assert row.tardy_count == 4

    @pytest.mark.asyncio
    async def test_bad_record_does_not_sink_batch(self, session_factory):
        """Test one failing record is reported while the rest are written."""
        records = await transformed_records(session_factory, [("1001", "P"), ("1002", "P"), ("1003", "P")])
        broken = replace(records[1], student_id=None, attendance_date=date(2024, 9, 4))
        sink = BatchUpsertSink(session_factory)

        result = await sink.write_batch([records[0], broken, records[2]], "op-1")

        assert result.succeeded == 2
        assert result.failed == 1
        assert result.failures[0].record_key == "1002:2024-09-04"
        assert await row_count(session_factory) == 2

    @pytest.mark.asyncio
    async def test_empty_batch(self, session_factory):
        sink = BatchUpsertSink(session_factory)

        result = await sink.write_batch([])

        assert result.succeeded == 0
        assert result.failed == 0

    @pytest.mark.asyncio
    async def test_unsupported_dialect(self, session_factory):
        """Test dialects without an upsert construct are rejected."""
        with pytest.raises(InvalidConfigurationError):
            BatchUpsertSink(session_factory, dialect_name="mssql")
