"""Status document publishing for provisioning runs.

The status document is a small JSON file that a supervising process polls
while the provisioning agent runs. Every publication replaces the whole
document through an atomic rename, so a reader sees either the previous or
the new document and never a torn write.
"""

import json
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Optional

from .fileio import PUBLIC_MODE, atomic_write

logger = logging.getLogger(__name__)


class ProvisioningState(Enum):
    """Externally observable provisioning states."""

    NOT_STARTED = "NOT_STARTED"
    CHECKING_PROVISIONING = "CHECKING_PROVISIONING"
    CHECKING_CONNECTIVITY = "CHECKING_CONNECTIVITY"
    READING_DATABASE = "READING_DATABASE"
    GENERATING_CONFIG = "GENERATING_CONFIG"
    COMPLETED = "COMPLETED"
    ALREADY_PROVISIONED = "ALREADY_PROVISIONED"
    ERROR = "ERROR"

    @property
    def is_terminal(self) -> bool:
        """Check if the run ends in this state."""
        return self in (
            ProvisioningState.COMPLETED,
            ProvisioningState.ALREADY_PROVISIONED,
            ProvisioningState.ERROR,
        )

    @property
    def is_success(self) -> bool:
        """Check if this is a successful terminal state."""
        return self in (ProvisioningState.COMPLETED, ProvisioningState.ALREADY_PROVISIONED)


DEFAULT_MESSAGES = {
    ProvisioningState.NOT_STARTED: "Provisioning run starting",
    ProvisioningState.CHECKING_PROVISIONING: "Checking if Greengrass is already provisioned",
    ProvisioningState.CHECKING_CONNECTIVITY: "Checking connectivity to cloud endpoints",
    ProvisioningState.READING_DATABASE: "Reading device configuration from database",
    ProvisioningState.GENERATING_CONFIG: "Writing certificates and Greengrass configuration",
    ProvisioningState.COMPLETED: "Provisioning completed successfully",
    ProvisioningState.ALREADY_PROVISIONED: "Greengrass is already provisioned",
    ProvisioningState.ERROR: "An error occurred during provisioning",
}

# ERROR has no entry: it keeps the progress of the state it interrupted.
DEFAULT_PROGRESS = {
    ProvisioningState.NOT_STARTED: 0,
    ProvisioningState.CHECKING_PROVISIONING: 10,
    ProvisioningState.CHECKING_CONNECTIVITY: 20,
    ProvisioningState.READING_DATABASE: 40,
    ProvisioningState.GENERATING_CONFIG: 60,
    ProvisioningState.COMPLETED: 100,
    ProvisioningState.ALREADY_PROVISIONED: 100,
}

TIMESTAMP_FORMAT = "%Y-%m-%dT%H:%M:%SZ"


@dataclass(frozen=True)
class ProvisioningStatus:
    """One complete status document."""

    state: ProvisioningState
    message: str
    timestamp: str
    progress_percentage: int
    error_details: Optional[str] = None

    def to_dict(self) -> dict:
        """Serialize to the on-disk JSON shape."""
        data = {
            "status": self.state.value,
            "message": self.message,
            "timestamp": self.timestamp,
            "progress_percentage": self.progress_percentage,
        }
        if self.state is ProvisioningState.ERROR and self.error_details:
            data["error_details"] = self.error_details
        return data

    @classmethod
    def from_dict(cls, data: dict) -> "ProvisioningStatus":
        """Deserialize from the on-disk JSON shape."""
        return cls(
            state=ProvisioningState(data["status"]),
            message=data.get("message", ""),
            timestamp=data.get("timestamp", ""),
            progress_percentage=int(data.get("progress_percentage", 0)),
            error_details=data.get("error_details"),
        )


def utc_timestamp(now: Optional[datetime] = None) -> str:
    """Format ``now`` (default: current time) as an RFC 3339 UTC timestamp."""
    now = now or datetime.now(timezone.utc)
    return now.astimezone(timezone.utc).strftime(TIMESTAMP_FORMAT)


class StatusReporter:
    """Single writer of the status document.

    Progress never decreases for the lifetime of a reporter: a lower value is
    raised to the last published one.
    """

    def __init__(self, status_file: Path) -> None:
        """Initialize status reporter.

        Args:
            status_file: Path of the JSON status document
        """
        self.status_file = Path(status_file)
        self._current: Optional[ProvisioningStatus] = None

    @property
    def current(self) -> Optional[ProvisioningStatus]:
        """Last status this reporter attempted to publish."""
        return self._current

    @property
    def progress(self) -> int:
        """Last published progress percentage."""
        return self._current.progress_percentage if self._current else 0

    def publish(
        self,
        state: ProvisioningState,
        message: Optional[str] = None,
        progress: Optional[int] = None,
        error_details: Optional[str] = None,
    ) -> bool:
        """Replace the status document.

        Args:
            state: New state
            message: Human-readable message (default: per-state message)
            progress: Progress percentage (default: per-state value)
            error_details: Failure cause, only kept for ERROR

        Returns:
            True if the document was written, False if the write failed
        """
        if progress is None:
            progress = DEFAULT_PROGRESS.get(state, self.progress)
        if not 0 <= progress <= 100:
            raise ValueError(f"Progress out of range: {progress}")
        progress = max(progress, self.progress)

        status = ProvisioningStatus(
            state=state,
            message=message or DEFAULT_MESSAGES[state],
            timestamp=utc_timestamp(),
            progress_percentage=progress,
            error_details=error_details if state is ProvisioningState.ERROR else None,
        )
        self._current = status

        try:
            self.status_file.parent.mkdir(parents=True, exist_ok=True)
            atomic_write(
                self.status_file,
                json.dumps(status.to_dict(), indent=4) + "\n",
                mode=PUBLIC_MODE,
            )
        except OSError as e:
            logger.error("Failed to write status file %s: %s", self.status_file, e)
            return False

        if state is ProvisioningState.ERROR:
            logger.error("Status updated: %s - %s (%s)", state.value, status.message, error_details)
        else:
            logger.info("Status updated: %s - %s [%d%%]", state.value, status.message, progress)
        return True


def read_status(status_file: Path) -> ProvisioningStatus:
    """Load a status document.

    Raises:
        FileNotFoundError: If no status has been published yet
        ValueError: If the document is not a valid status document
    """
    with open(status_file) as f:
        try:
            data = json.load(f)
            return ProvisioningStatus.from_dict(data)
        except (KeyError, TypeError, json.JSONDecodeError) as e:
            raise ValueError(f"Invalid status document {status_file}: {e}") from e
