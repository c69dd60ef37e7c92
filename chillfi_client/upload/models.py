"""
Data models for the upload subsystem.

    TaskStatus        per-file state machine of the bulk pipeline
    SongMetadata      metadata sent with each audio file
    UploadTask        one file moving through the pipeline
    UploadSummary     counts reported when a queue run finishes

Upload channel messages (closed set, dispatched by type):
    TaskStatusChanged   a task moved to a new status
    FileProgress        bytes sent for the current file, as a fraction
    QueueProgress       overall queue progress
"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Any, Union


class TaskStatus(str, Enum):
    """Lifecycle of one file in the bulk upload pipeline."""
    PENDING = "pending"
    HASHING = "hashing"
    CHECKING_DUPLICATE = "checking-duplicate"
    TRANSFERRING = "transferring"
    SUCCEEDED = "succeeded"
    DUPLICATE_SKIPPED = "duplicate-skipped"
    PAUSED_NETWORK = "paused-network"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (TaskStatus.SUCCEEDED, TaskStatus.DUPLICATE_SKIPPED, TaskStatus.FAILED)


# Forward-only transitions, plus the two ways out of paused-network
_TRANSITIONS: dict[TaskStatus, frozenset[TaskStatus]] = {
    TaskStatus.PENDING: frozenset({TaskStatus.HASHING, TaskStatus.FAILED}),
    TaskStatus.HASHING: frozenset({TaskStatus.CHECKING_DUPLICATE, TaskStatus.FAILED}),
    TaskStatus.CHECKING_DUPLICATE: frozenset({
        TaskStatus.DUPLICATE_SKIPPED, TaskStatus.TRANSFERRING, TaskStatus.FAILED,
    }),
    TaskStatus.TRANSFERRING: frozenset({
        TaskStatus.SUCCEEDED, TaskStatus.PAUSED_NETWORK, TaskStatus.FAILED,
    }),
    TaskStatus.PAUSED_NETWORK: frozenset({TaskStatus.TRANSFERRING, TaskStatus.FAILED}),
    TaskStatus.SUCCEEDED: frozenset(),
    TaskStatus.DUPLICATE_SKIPPED: frozenset(),
    TaskStatus.FAILED: frozenset(),
}


@dataclass
class SongMetadata:
    """
    Metadata sent alongside an audio file.

    Missing tags fall back to the same defaults the web client uses:
    title from the filename, "Unknown Artist", "Unknown Album".
    """
    title: str
    artist: str = "Unknown Artist"
    album: str = "Unknown Album"
    genre: str | None = None
    year: int | None = None
    track_number: int | None = None
    duration: float | None = None
    artwork: str | None = None  # base64 image data

    @classmethod
    def from_filename(cls, path: Path) -> "SongMetadata":
        return cls(title=path.stem)

    def to_payload(self) -> dict[str, Any]:
        return {
            "title": self.title,
            "artist": self.artist,
            "album": self.album,
            "genre": self.genre,
            "year": self.year,
            "trackNumber": self.track_number,
            "duration": self.duration,
            "artwork": self.artwork,
        }


@dataclass(eq=False)
class UploadTask:
    """
    One file in the bulk upload queue.

    Attributes:
        path: Local audio file.
        metadata: Metadata derived at submission time.
        index: Position in the queue (progress is reported at this slot,
               including after a resume).
        digest: SHA-256 hex digest, once computed.
        status: Current TaskStatus.
        error: Last failure message.
        fraction: Bytes sent for the current transfer, 0.0 to 1.0.
        resume_attempts: Resumptions used so far.
        abandoned: True when cancel() stopped the task.
        result: Server result for a succeeded transfer.
    """
    path: Path
    metadata: SongMetadata
    index: int
    digest: str | None = None
    status: TaskStatus = TaskStatus.PENDING
    error: str | None = None
    fraction: float = 0.0
    resume_attempts: int = 0
    abandoned: bool = False
    result: dict[str, Any] | None = None
    updated_at: datetime = field(default_factory=datetime.now)

    def can_transition(self, status: TaskStatus) -> bool:
        return status in _TRANSITIONS[self.status]

    def transition(self, status: TaskStatus) -> TaskStatus:
        """
        Move to a new status.

        Returns:
            The previous status.

        Raises:
            ValueError: If the transition is not allowed.
        """
        if not self.can_transition(status):
            raise ValueError(
                f"Invalid upload transition for {self.path.name}: "
                f"{self.status.value} -> {status.value}"
            )
        previous = self.status
        self.status = status
        self.updated_at = datetime.now()
        return previous


@dataclass
class UploadSummary:
    """Counts for one finished queue run."""
    uploaded: int = 0
    skipped: int = 0
    failed: int = 0
    paused: int = 0

    @property
    def total(self) -> int:
        return self.uploaded + self.skipped + self.failed + self.paused

    @classmethod
    def from_tasks(cls, tasks: list[UploadTask]) -> "UploadSummary":
        summary = cls()
        for task in tasks:
            if task.status == TaskStatus.SUCCEEDED:
                summary.uploaded += 1
            elif task.status == TaskStatus.DUPLICATE_SKIPPED:
                summary.skipped += 1
            elif task.status == TaskStatus.FAILED:
                summary.failed += 1
            elif task.status == TaskStatus.PAUSED_NETWORK:
                summary.paused += 1
        return summary


# =============================================================================
# Upload channel messages
# =============================================================================

@dataclass(frozen=True)
class TaskStatusChanged:
    task: UploadTask
    previous: TaskStatus
    current: TaskStatus


@dataclass(frozen=True)
class FileProgress:
    task: UploadTask
    fraction: float


@dataclass(frozen=True)
class QueueProgress:
    """
    Overall progress: (index + current file fraction) / total.
    """
    overall: float
    index: int
    total: int


UploadEvent = Union[TaskStatusChanged, FileProgress, QueueProgress]
