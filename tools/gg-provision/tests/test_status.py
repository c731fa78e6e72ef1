"""Tests for status document publishing."""

import json
import os
import stat
from datetime import datetime, timezone
from pathlib import Path

import pytest

from gg_provision.status import (
    DEFAULT_MESSAGES,
    ProvisioningState,
    ProvisioningStatus,
    StatusReporter,
    read_status,
    utc_timestamp,
)


class TestProvisioningState:
    """Tests for ProvisioningState."""

    def test_terminal_states(self):
        """Test which states end a run."""
        terminal = {s for s in ProvisioningState if s.is_terminal}
        assert terminal == {
            ProvisioningState.COMPLETED,
            ProvisioningState.ALREADY_PROVISIONED,
            ProvisioningState.ERROR,
        }

    def test_success_states(self):
        """Test which terminal states are successful."""
        assert ProvisioningState.COMPLETED.is_success
        assert ProvisioningState.ALREADY_PROVISIONED.is_success
        assert not ProvisioningState.ERROR.is_success

    def test_every_state_has_message(self):
        """Test default messages cover the enumeration."""
        assert set(DEFAULT_MESSAGES) == set(ProvisioningState)


class TestProvisioningStatus:
    """Tests for ProvisioningStatus serialization."""

    def test_error_details_only_for_error(self):
        """Test that error details are dropped outside ERROR."""
        status = ProvisioningStatus(ProvisioningState.COMPLETED, "done", "2024-01-01T00:00:00Z", 100, "stray")
        assert "error_details" not in status.to_dict()

    def test_error_document(self):
        """Test the ERROR document shape."""
        status = ProvisioningStatus(ProvisioningState.ERROR, "failed", "2024-01-01T00:00:00Z", 40, "db gone")
        assert status.to_dict() == {
            "status": "ERROR",
            "message": "failed",
            "timestamp": "2024-01-01T00:00:00Z",
            "progress_percentage": 40,
            "error_details": "db gone",
        }

    def test_from_dict(self):
        """Test loading the on-disk shape."""
        status = ProvisioningStatus.from_dict(
            {"status": "READING_DATABASE", "message": "m", "timestamp": "t", "progress_percentage": 40}
        )
        assert status.state is ProvisioningState.READING_DATABASE
        assert status.error_details is None


def test_utc_timestamp_format():
    """Test timestamp rendering."""
    now = datetime(2024, 3, 5, 7, 8, 9, tzinfo=timezone.utc)
    assert utc_timestamp(now) == "2024-03-05T07:08:09Z"


class TestStatusReporter:
    """Tests for StatusReporter."""

    def test_publish_writes_document(self, temp_dir: Path):
        """Test a published document on disk."""
        status_file = temp_dir / "status.json"
        reporter = StatusReporter(status_file)

        assert reporter.publish(ProvisioningState.CHECKING_CONNECTIVITY) is True

        data = json.loads(status_file.read_text())
        assert data["status"] == "CHECKING_CONNECTIVITY"
        assert data["message"] == DEFAULT_MESSAGES[ProvisioningState.CHECKING_CONNECTIVITY]
        assert data["progress_percentage"] == 20
        assert data["timestamp"].endswith("Z")
        assert "error_details" not in data

    def test_default_progress_sequence(self, temp_dir: Path):
        """Test per-state default progress."""
        reporter = StatusReporter(temp_dir / "status.json")
        expected = {
            ProvisioningState.NOT_STARTED: 0,
            ProvisioningState.CHECKING_PROVISIONING: 10,
            ProvisioningState.CHECKING_CONNECTIVITY: 20,
            ProvisioningState.READING_DATABASE: 40,
            ProvisioningState.GENERATING_CONFIG: 60,
            ProvisioningState.COMPLETED: 100,
        }
        for state, progress in expected.items():
            reporter.publish(state)
            assert reporter.progress == progress

    def test_progress_never_decreases(self, temp_dir: Path):
        """Test that a lower progress is raised to the last value."""
        reporter = StatusReporter(temp_dir / "status.json")
        reporter.publish(ProvisioningState.READING_DATABASE)
        reporter.publish(ProvisioningState.CHECKING_CONNECTIVITY, progress=5)
        assert reporter.progress == 40

    def test_error_keeps_progress(self, temp_dir: Path):
        """Test that ERROR keeps the interrupted state's progress."""
        status_file = temp_dir / "status.json"
        reporter = StatusReporter(status_file)
        reporter.publish(ProvisioningState.READING_DATABASE)
        reporter.publish(ProvisioningState.ERROR, error_details="DeviceConfigRepository: database not found")

        data = json.loads(status_file.read_text())
        assert data["status"] == "ERROR"
        assert data["progress_percentage"] == 40
        assert data["error_details"] == "DeviceConfigRepository: database not found"

    @pytest.mark.parametrize("progress", [-1, 101])
    def test_progress_out_of_range(self, temp_dir: Path, progress: int):
        """Test rejecting progress outside 0..100."""
        reporter = StatusReporter(temp_dir / "status.json")
        with pytest.raises(ValueError):
            reporter.publish(ProvisioningState.GENERATING_CONFIG, progress=progress)

    def test_document_replaced_wholesale(self, temp_dir: Path):
        """Test that fields of a previous document do not survive."""
        status_file = temp_dir / "status.json"
        reporter = StatusReporter(status_file)
        reporter.publish(ProvisioningState.GENERATING_CONFIG, "custom message", progress=80)
        reporter.publish(ProvisioningState.COMPLETED)

        data = json.loads(status_file.read_text())
        assert data["message"] == DEFAULT_MESSAGES[ProvisioningState.COMPLETED]
        assert data["progress_percentage"] == 100

    def test_world_readable(self, temp_dir: Path):
        """Test that monitors can read the status file."""
        status_file = temp_dir / "status.json"
        StatusReporter(status_file).publish(ProvisioningState.NOT_STARTED)
        assert stat.S_IMODE(os.stat(status_file).st_mode) == 0o644

    def test_no_temporary_files_left(self, temp_dir: Path):
        """Test that atomic replacement cleans up after itself."""
        reporter = StatusReporter(temp_dir / "status.json")
        for state in (ProvisioningState.NOT_STARTED, ProvisioningState.CHECKING_PROVISIONING):
            reporter.publish(state)
        assert [p.name for p in temp_dir.iterdir()] == ["status.json"]

    def test_creates_parent_directory(self, temp_dir: Path):
        """Test publishing into a directory that does not exist yet."""
        status_file = temp_dir / "run" / "status.json"
        assert StatusReporter(status_file).publish(ProvisioningState.NOT_STARTED)
        assert status_file.exists()

    def test_write_failure_returns_false(self, temp_dir: Path):
        """Test that an unwritable location is reported, not raised."""
        blocker = temp_dir / "not-a-dir"
        blocker.write_text("")
        reporter = StatusReporter(blocker / "status.json")

        assert reporter.publish(ProvisioningState.NOT_STARTED) is False
        assert reporter.current.state is ProvisioningState.NOT_STARTED


class TestReadStatus:
    """Tests for read_status."""

    def test_round_trip(self, temp_dir: Path):
        """Test reading what a reporter published."""
        status_file = temp_dir / "status.json"
        StatusReporter(status_file).publish(ProvisioningState.ERROR, error_details="boom")
        status = read_status(status_file)
        assert status.state is ProvisioningState.ERROR
        assert status.error_details == "boom"

    def test_missing_file(self, temp_dir: Path):
        """Test reading before anything was published."""
        with pytest.raises(FileNotFoundError):
            read_status(temp_dir / "status.json")

    def test_invalid_document(self, temp_dir: Path):
        """Test reading a file that is not a status document."""
        status_file = temp_dir / "status.json"
        status_file.write_text("{not json")
        with pytest.raises(ValueError):
            read_status(status_file)
