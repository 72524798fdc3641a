"""CLI tests for the sync, resume and history commands."""

from datetime import date, datetime, timezone
from unittest.mock import AsyncMock, patch

import pytest
from typer.testing import CliRunner

from attendance_sync.cli import EXIT_CONFIGURATION_ERROR, EXIT_FAILED, EXIT_OK, app
from attendance_sync.integrations.sis.error_handler import InvalidRangeError
from attendance_sync.models.sync_metadata import SyncOperation, SyncStatus
from attendance_sync.schemas.sync import CheckpointData, SyncCounters, SyncState, SyncSummary


def make_summary(status=SyncStatus.COMPLETED, **overrides):
    values = dict(
        operation_id="op-1",
        status=status,
        state=SyncState.COMPLETED if status is SyncStatus.COMPLETED else SyncState.ABORTED,
        start_date=date(2024, 8, 15),
        end_date=date(2025, 6, 12),
        started_at=datetime(2025, 6, 20, 8, 0, tzinfo=timezone.utc),
        elapsed_seconds=12.5,
        counters=SyncCounters(records_seen=1230, records_succeeded=1230, batches_completed=3),
    )
    values.update(overrides)
    return SyncSummary(**values)


@pytest.fixture()
def cli_runner():
    return CliRunner()


@pytest.fixture(autouse=True)
def no_logging_setup():
    with patch("attendance_sync.cli.configure_logging"):
        yield


class TestSyncCommand:
    """Test the sync command and its exit codes."""

    def test_completed_sync(self, cli_runner):
        run = AsyncMock(return_value=make_summary())
        with patch("attendance_sync.cli._run", run):
            result = cli_runner.invoke(app, [
                "sync", "--start", "2024-08-15", "--end", "2025-06-12",
                "--school", "RMS", "--school", "WHS", "--batch-size", "250",
            ])

        assert result.exit_code == EXIT_OK, result.output
        assert "COMPLETED" in result.output
        options = run.await_args.args[0]
        assert options.start_date == date(2024, 8, 15)
        assert options.end_date == date(2025, 6, 12)
        assert options.school_codes == ["RMS", "WHS"]
        assert options.batch_size == 250
        assert options.chunk_days is None

    def test_failed_sync(self, cli_runner):
        """Test a FAILED run exits 1 and points at the resume command."""
        summary = make_summary(
            SyncStatus.FAILED,
            fatal_error={'message': "certificate revoked"},
            resume_checkpoint=CheckpointData(operation_id="op-1", last_completed_batch=2),
        )
        with patch("attendance_sync.cli._run", AsyncMock(return_value=summary)):
            result = cli_runner.invoke(app, ["sync"])

        assert result.exit_code == EXIT_FAILED
        assert "certificate revoked" in result.output
        assert "attendance-sync resume op-1" in result.output

    def test_cancelled_sync_exits_non_zero(self, cli_runner):
        summary = make_summary(SyncStatus.CANCELLED,
                               resume_checkpoint=CheckpointData(operation_id="op-1", last_completed_batch=5))
        with patch("attendance_sync.cli._run", AsyncMock(return_value=summary)):
            result = cli_runner.invoke(app, ["sync"])

        assert result.exit_code == EXIT_FAILED

    def test_configuration_error(self, cli_runner):
        run = AsyncMock(side_effect=InvalidRangeError("start_date 2025-06-12 is after end_date 2024-08-15"))
        with patch("attendance_sync.cli._run", run):
            result = cli_runner.invoke(app, ["sync", "--start", "2025-06-12", "--end", "2024-08-15"])

        assert result.exit_code == EXIT_CONFIGURATION_ERROR

    def test_invalid_batch_size(self, cli_runner):
        result = cli_runner.invoke(app, ["sync", "--batch-size", "0"])

        assert result.exit_code != 0

    def test_summary_json(self, cli_runner, tmp_path):
        target = tmp_path / "summary.json"
        with patch("attendance_sync.cli._run", AsyncMock(return_value=make_summary())):
            result = cli_runner.invoke(app, ["sync", "--summary-json", str(target)])

        assert result.exit_code == EXIT_OK
        assert SyncSummary.model_validate_json(target.read_text()).counters.records_seen == 1230


class TestResumeCommand:
    """Test resuming by operation id."""

    def test_resume(self, cli_runner):
        run = AsyncMock(return_value=make_summary(resumed_from="op-0"))
        with patch("attendance_sync.cli._run", run):
            result = cli_runner.invoke(app, ["resume", "op-0", "--checkpoint-every", "5"])

        assert result.exit_code == EXIT_OK
        assert "Resumed from op-0" in result.output
        options = run.await_args.args[0]
        assert options.resume_from == "op-0"
        assert options.checkpoint_every == 5


class TestHistoryCommand:
    """Test the history listing."""

    def test_history(self, cli_runner):
        operation = SyncOperation(
            operation_id="op-1", status=SyncStatus.FAILED,
            start_date=date(2024, 8, 15), end_date=date(2025, 6, 12),
            last_completed_batch=2, records_succeeded=1000, records_failed=0,
            started_at=datetime(2025, 6, 20, 8, 0, tzinfo=timezone.utc),
        )
        history = AsyncMock(return_value=[operation])
        with patch("attendance_sync.cli._history", history):
            result = cli_runner.invoke(app, ["history", "--limit", "5", "--status", "failed"])

        assert result.exit_code == 0, result.output
        assert "op-1" in result.output
        history.assert_awaited_once_with(5, SyncStatus.FAILED)

    def test_empty_history(self, cli_runner):
        with patch("attendance_sync.cli._history", AsyncMock(return_value=[])):
            result = cli_runner.invoke(app, ["history"])

        assert result.exit_code == 0
        assert "No sync operations recorded" in result.output
