"""
Tests for raw Aeries record transformation.
"""

import logging
import pytest
from datetime import date

from attendance_sync.integrations.sis.error_handler import (
    ErrorClassifier, RecordValidationError, SyncErrorKind
)
from attendance_sync.models.attendance import PeriodStatus
from attendance_sync.services.sync.transformer import RecordTransformer, SchoolRef


SCHOOL = SchoolRef(id=1, school_code="RMS", aeries_school_code="120")
STUDENTS = {"1001": 11, "1002": 12}


def lookup(aeries_id):
    return STUDENTS.get(aeries_id)


@pytest.fixture
def transformer():
    return RecordTransformer(today=lambda: date(2024, 9, 12))


class TestStatusNormalization:
    """Test remote status code mapping."""

    @pytest.mark.parametrize("code,expected", [
        ("P", PeriodStatus.PRESENT),
        ("a", PeriodStatus.ABSENT),
        ("T", PeriodStatus.TARDY),
        ("E", PeriodStatus.EXCUSED_ABSENT),
        ("U", PeriodStatus.UNEXCUSED_ABSENT),
        ("S", PeriodStatus.SUSPENDED),
        ("present", PeriodStatus.PRESENT),
        ("Excused Absent", PeriodStatus.EXCUSED_ABSENT),
        ("unexcused_absent", PeriodStatus.UNEXCUSED_ABSENT),
        ("SUSPENDED", PeriodStatus.SUSPENDED),
    ])
    def test_known_codes(self, transformer, code, expected):
        """Test short codes and long names are recognised case-insensitively."""
        status, warning = transformer.normalize_status(code)

        assert status == expected
        assert warning is None

    def test_unknown_code_defaults_to_present(self, transformer, caplog):
        """Test unknown codes become PRESENT with a data-quality warning."""
        with caplog.at_level(logging.WARNING):
            status, warning = transformer.normalize_status("ZZ")

        assert status == PeriodStatus.PRESENT
        assert "ZZ" in warning
        assert "Unknown attendance status code" in caplog.text


class TestRecordTransformer:
    """Test the record transformation."""

    def test_full_record(self, transformer):
        """Test a complete record maps every field."""
        record = transformer.transform({
            'studentId': '1001',
            'attendanceDate': '2024-09-10',
            'dailyStatus': 'P',
            'periods': [
                {'period': 1, 'status': 'P'},
                {'period': 2, 'status': 'T'},
                {'period': 3, 'status': 'A'},
            ],
            'daysEnrolled': 1,
        }, SCHOOL, lookup)

        assert record.student_id == 11
        assert record.school_id == 1
        assert record.attendance_date == date(2024, 9, 10)
        assert record.is_present is True
        assert record.is_full_day_absent is False
        assert record.period_statuses[:3] == (
            PeriodStatus.PRESENT, PeriodStatus.TARDY, PeriodStatus.ABSENT
        )
        assert record.period_statuses[3:] == (PeriodStatus.PRESENT,) * 4
        assert record.tardy_count == 1
        assert record.aeries_student_id == '1001'
        assert record.school_code == 'RMS'

    def test_correction_window(self, transformer):
        """Test the deadline is date + 7 days and eligibility ends after 7 days."""
        inside = transformer.transform(
            {'studentId': '1001', 'attendanceDate': '2024-09-05', 'dailyStatus': 'A'}, SCHOOL, lookup
        )
        outside = transformer.transform(
            {'studentId': '1001', 'attendanceDate': '2024-09-04', 'dailyStatus': 'A'}, SCHOOL, lookup
        )

        assert inside.correction_deadline == date(2024, 9, 12)
        assert inside.can_be_corrected is True
        assert outside.correction_deadline == date(2024, 9, 11)
        assert outside.can_be_corrected is False

    def test_full_day_absence(self, transformer):
        """Test an absent daily status marks a full-day absence."""
        record = transformer.transform(
            {'studentId': '1002', 'date': '2024-09-03T00:00:00', 'status': 'U'}, SCHOOL, lookup
        )

        assert record.attendance_date == date(2024, 9, 3)
        assert record.is_present is False
        assert record.is_full_day_absent is True

    def test_suspension_is_not_full_day_absence(self, transformer):
        daily = transformer.transform(
            {'studentId': '1001', 'attendanceDate': '2024-09-03', 'dailyStatus': 'S'}, SCHOOL, lookup
        )
        periods = transformer.transform(
            {'studentId': '1001', 'attendanceDate': '2024-09-04', 'periods': ['S'] * 7},
            SCHOOL, lookup
        )

        assert daily.is_present is False
        assert daily.is_full_day_absent is False
        assert periods.is_present is False
        assert periods.is_full_day_absent is False
        assert periods.period_statuses[0] == PeriodStatus.SUSPENDED

    def test_presence_derived_from_periods(self, transformer):
        """Test presence without a daily status comes from the periods."""
        partial = transformer.transform(
            {'studentId': '1001', 'attendanceDate': '2024-09-03', 'periods': ['A', 'A', 'T']},
            SCHOOL, lookup
        )
        absent = transformer.transform(
            {'studentId': '1001', 'attendanceDate': '2024-09-04', 'periods': ['A'] * 7},
            SCHOOL, lookup
        )

        assert partial.is_present is True
        assert partial.tardy_count == 1
        assert absent.is_present is False
        assert absent.is_full_day_absent is True

    def test_explicit_tardy_count_wins(self, transformer):
        record = transformer.transform(
            {'studentId': '1001', 'attendanceDate': '2024-09-03', 'periods': ['T', 'T'], 'tardyCount': 5},
            SCHOOL, lookup
        )

        assert record.tardy_count == 5

    def test_unknown_status_does_not_fail(self, transformer):
        """Test an unrecognised period code never fails the record."""
        record = transformer.transform(
            {'studentId': '1001', 'attendanceDate': '2024-09-03', 'periods': [{'period': 4, 'status': '??'}]},
            SCHOOL, lookup
        )

        assert record.period_statuses[3] == PeriodStatus.PRESENT
        assert len(record.warnings) == 1

    def test_unresolvable_student_is_recoverable(self, transformer):
        """Test unknown students raise a recoverable validation error."""
        with pytest.raises(RecordValidationError) as exc_info:
            transformer.transform(
                {'studentId': '9999', 'attendanceDate': '2024-09-03', 'dailyStatus': 'P'}, SCHOOL, lookup
            )

        assert exc_info.value.record_key == "9999:2024-09-03"
        assert ErrorClassifier().classify(exc_info.value) == SyncErrorKind.RECOVERABLE

    @pytest.mark.parametrize("raw", [
        {'attendanceDate': '2024-09-03'},
        {'studentId': '1001'},
        {'studentId': '1001', 'attendanceDate': 'not-a-date'},
        {'studentId': '1001', 'attendanceDate': '2024-09-03', 'tardyCount': 'many'},
        {'studentId': '1001', 'attendanceDate': '2024-09-03', 'periods': 'PPP'},
        "not a record",
    ])
    def test_malformed_records(self, transformer, raw):
        """Test malformed records raise RecordValidationError."""
        with pytest.raises(RecordValidationError):
            transformer.transform(raw, SCHOOL, lookup)

    def test_to_row_columns(self, transformer):
        """Test rows carry every period column and the sync metadata."""
        record = transformer.transform(
            {'studentId': '1001', 'attendanceDate': '2024-09-03', 'dailyStatus': 'P'}, SCHOOL, lookup
        )

        row = record.to_row("op-1")

        assert row['sync_operation_id'] == "op-1"
        assert row['source'] == "aeries"
        assert all(f'period_{n}_status' in row for n in range(1, 8))
        assert record.key == (11, date(2024, 9, 3))
