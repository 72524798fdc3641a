"""
Tests for sync error classification and collection.
"""

import asyncio
import logging
import socket
import ssl

import pytest
from sqlalchemy.exc import IntegrityError, OperationalError

from attendance_sync.integrations.sis.error_handler import (
    ClassifiedSyncError, ErrorClassifier, ErrorCollector, FatalSyncError,
    InvalidConfigurationError, InvalidRangeError, RecordValidationError, RetryExhaustedError,
    SISAuthenticationError, SISConnectivityError, SISRateLimitError, SISServerError,
    SISTimeoutError, SISTransportError, SyncErrorKind
)


@pytest.fixture
def classifier():
    return ErrorClassifier()


class TestErrorClassifier:
    """Test FATAL / RECOVERABLE labelling."""

    @pytest.mark.parametrize("error", [
        SISTransportError("unauthorized", status=401),
        SISTransportError("forbidden", status=403),
        SISTransportError("proxy auth", status=407),
        SISAuthenticationError("certificate revoked"),
        SISConnectivityError("no route"),
        InvalidConfigurationError("bad batch size"),
        InvalidRangeError("start after end"),
        SISTransportError("dns", original_exception=socket.gaierror(-2, "Name or service not known")),
        SISTransportError("refused", original_exception=ConnectionRefusedError(111, "Connection refused")),
        SISTransportError("tls", original_exception=ssl.SSLCertVerificationError("certificate verify failed")),
    ])
    def test_fatal_errors(self, classifier, error):
        """Test credential, configuration and connectivity failures are FATAL."""
        assert classifier.classify(error) == SyncErrorKind.FATAL

    @pytest.mark.parametrize("error", [
        SISTransportError("rate limited", status=429),
        SISTransportError("timeout", status=408),
        SISTransportError("server error", status=500),
        SISTransportError("unavailable", status=503),
        SISTransportError("reset", original_exception=ConnectionResetError(104, "Connection reset by peer")),
        SISTransportError("slow", original_exception=asyncio.TimeoutError()),
        SISTimeoutError("read timeout"),
        SISRateLimitError("slow down", retry_after=5),
        SISServerError("bad gateway"),
        RecordValidationError("unknown student", record_key="9999:2024-09-03"),
        OperationalError("INSERT", {}, Exception("database is locked")),
        IntegrityError("INSERT", {}, Exception("NOT NULL constraint failed")),
    ])
    def test_recoverable_errors(self, classifier, error):
        """Test transient and record-level failures are RECOVERABLE."""
        assert classifier.classify(error) == SyncErrorKind.RECOVERABLE

    def test_unclassified_defaults_to_recoverable(self, classifier, caplog):
        """Test unknown errors are RECOVERABLE with a warning."""
        with caplog.at_level(logging.WARNING, logger="sis_integration"):
            kind = classifier.classify(ValueError("surprise"))

        assert kind == SyncErrorKind.RECOVERABLE
        assert "Unclassified error" in caplog.text

    def test_fatal_rules_checked_first(self, classifier):
        """Test a fatal cause wins over a recoverable wrapper."""
        error = SISServerError("gateway", original_exception=SISAuthenticationError("expired"))

        assert classifier.classify(error) == SyncErrorKind.FATAL

    def test_classified_errors_keep_their_kind(self, classifier):
        """Test an already classified error is never re-interpreted."""
        exhausted = RetryExhaustedError(SISTransportError("forbidden", status=403), attempts=3)

        assert classifier.classify(exhausted) == SyncErrorKind.RECOVERABLE
        assert classifier.classify(FatalSyncError(ValueError("x"))) == SyncErrorKind.FATAL


class TestErrorCollector:
    """Test the per-run error log."""

    def test_record_with_context(self):
        collector = ErrorCollector()

        entry = collector.record(
            RecordValidationError("unknown student"), SyncErrorKind.RECOVERABLE, "transform",
            school_code="RMS", chunk="2024-09-02..2024-09-06", batch_index=4, record_key="9999:2024-09-03"
        )

        assert entry.kind == SyncErrorKind.RECOVERABLE
        assert entry.error_type == "RecordValidationError"
        assert entry.batch_index == 4
        assert entry.to_dict()['record_key'] == "9999:2024-09-03"
        assert len(collector) == 1
        assert collector.fatal is None

    def test_classified_errors_are_unwrapped(self):
        """Test attempts and the original error type are kept."""
        collector = ErrorCollector()
        error = RetryExhaustedError(SISTransportError("unavailable", status=503), attempts=3)

        entry = collector.record(error, error.kind, "fetch")

        assert entry.attempts == 3
        assert entry.error_type == "SISTransportError"
        assert "retries exhausted" in entry.message

    def test_first_fatal_is_kept(self):
        collector = ErrorCollector()

        collector.record(SISAuthenticationError("first"), SyncErrorKind.FATAL, "write")
        collector.record(SISAuthenticationError("second"), SyncErrorKind.FATAL, "write")

        assert collector.fatal.message == "first"

    def test_breakdowns(self):
        """Test error counts by kind and by stage and type."""
        collector = ErrorCollector()
        collector.record(RecordValidationError("a"), SyncErrorKind.RECOVERABLE, "transform")
        collector.record(RecordValidationError("b"), SyncErrorKind.RECOVERABLE, "transform")
        collector.record(SISAuthenticationError("c"), SyncErrorKind.FATAL, "write")

        assert collector.breakdown_by_kind() == {'RECOVERABLE': 2, 'FATAL': 1}
        assert collector.breakdown_by_type() == {
            'transform:RecordValidationError': 2,
            'write:SISAuthenticationError': 1,
        }

    def test_errors_returns_copy(self):
        collector = ErrorCollector()
        collector.record(ValueError("x"), SyncErrorKind.RECOVERABLE, "transform")

        collector.errors.clear()

        assert len(collector.errors) == 1


class TestErrorHierarchy:
    """Test error metadata."""

    def test_transport_error_details(self):
        error = SISTransportError("rate limited", status=429, retry_after=7.0)

        data = error.to_dict()

        assert data['error_type'] == "SISTransportError"
        assert data['details'] == {'status': 429, 'retry_after': 7.0}

    def test_classified_error_message_falls_back_to_type(self):
        error = ClassifiedSyncError(SyncErrorKind.RECOVERABLE, asyncio.TimeoutError())

        assert error.message == "TimeoutError"
        assert error.exhausted is False
