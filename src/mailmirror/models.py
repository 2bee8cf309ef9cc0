"""
Data model for mirroring jobs: job records, folder trees and the message
envelopes that flow through a batch.
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum

from mailmirror.config import EndpointConfig, SyncOptions
from mailmirror.errors import InvalidStateTransition
from mailmirror.utils import imap_common

# Which side of a job a session belongs to
ROLE_SOURCE = "source"
ROLE_DESTINATION = "destination"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class SyncStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    PAUSED = "paused"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"
    STOPPED = "stopped"


TERMINAL_STATUSES = frozenset({SyncStatus.COMPLETED, SyncStatus.FAILED, SyncStatus.CANCELLED, SyncStatus.STOPPED})

ALLOWED_TRANSITIONS = {
    SyncStatus.PENDING: {SyncStatus.RUNNING, SyncStatus.FAILED},
    SyncStatus.RUNNING: {
        SyncStatus.PAUSED,
        SyncStatus.COMPLETED,
        SyncStatus.FAILED,
        SyncStatus.CANCELLED,
        SyncStatus.STOPPED,
    },
    SyncStatus.PAUSED: {SyncStatus.RUNNING, SyncStatus.FAILED, SyncStatus.CANCELLED, SyncStatus.STOPPED},
}


class SyncMode(str, Enum):
    FULL = "full"
    INCREMENTAL = "incremental"
    FOLDER = "folder"


@dataclass
class JobProgress:
    total_folders: int = 0
    processed_folders: int = 0
    total_emails: int = 0
    processed_emails: int = 0
    errors: int = 0
    percentage: int = 0
    last_progress_at: datetime | None = None

    def recompute_percentage(self) -> int:
        if self.total_emails > 0:
            pct = round(self.processed_emails * 100 / self.total_emails)
        elif self.total_folders > 0:
            pct = round(self.processed_folders * 100 / self.total_folders)
        else:
            pct = 0
        self.percentage = max(0, min(100, pct))
        return self.percentage

    def to_dict(self) -> dict:
        return {
            "total_folders": self.total_folders,
            "processed_folders": self.processed_folders,
            "total_emails": self.total_emails,
            "processed_emails": self.processed_emails,
            "errors": self.errors,
            "percentage": self.percentage,
            "last_progress_at": self.last_progress_at.isoformat() if self.last_progress_at else None,
        }


@dataclass
class JobStats:
    emails_synced: int = 0
    emails_skipped: int = 0
    emails_failed: int = 0
    folders_created: int = 0
    folders_skipped: int = 0

    def to_dict(self) -> dict:
        return {
            "emails_synced": self.emails_synced,
            "emails_skipped": self.emails_skipped,
            "emails_failed": self.emails_failed,
            "folders_created": self.folders_created,
            "folders_skipped": self.folders_skipped,
        }


@dataclass
class JobError:
    message: str
    code: str
    timestamp: datetime = field(default_factory=utcnow)
    retry_count: int = 0

    def to_dict(self) -> dict:
        return {
            "message": self.message,
            "code": self.code,
            "timestamp": self.timestamp.isoformat(),
            "retry_count": self.retry_count,
        }


@dataclass
class ResumeCursor:
    """Where a paused job continues: folder position in the plan and next sequence number."""

    folder_index: int = 0
    next_seq: int = 1


@dataclass
class SyncJob:
    source: EndpointConfig
    destination: EndpointConfig
    mode: SyncMode = SyncMode.FULL
    folders: tuple[str, ...] = ()
    options: SyncOptions = field(default_factory=SyncOptions)
    id: str = field(default_factory=lambda: uuid.uuid4().hex)
    status: SyncStatus = SyncStatus.PENDING
    progress: JobProgress = field(default_factory=JobProgress)
    stats: JobStats = field(default_factory=JobStats)
    error: JobError | None = None
    created_at: datetime = field(default_factory=utcnow)
    started_at: datetime | None = None
    completed_at: datetime | None = None
    cursor: ResumeCursor = field(default_factory=ResumeCursor)
    folder_totals: dict[str, int] = field(default_factory=dict)

    def __post_init__(self):
        self.mode = SyncMode(self.mode)
        self.folders = tuple(self.folders or ())
        if self.mode == SyncMode.FOLDER and not self.folders:
            raise ValueError("folder mode requires at least one folder")

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def can_transition(self, new_status: SyncStatus) -> bool:
        return new_status in ALLOWED_TRANSITIONS.get(self.status, set())

    def transition(self, new_status: SyncStatus) -> None:
        if not self.can_transition(new_status):
            raise InvalidStateTransition(
                f"Job {self.id} cannot move from {self.status.value} to {new_status.value}"
            )
        self.status = new_status
        now = utcnow()
        if new_status == SyncStatus.RUNNING and self.started_at is None:
            self.started_at = now
        if new_status in TERMINAL_STATUSES:
            self.completed_at = now

    def mark_progress(self) -> None:
        self.progress.last_progress_at = utcnow()
        self.progress.recompute_percentage()

    @property
    def duration(self) -> float:
        if self.started_at and self.completed_at:
            return (self.completed_at - self.started_at).total_seconds()
        return 0.0

    def snapshot(self) -> dict:
        return {
            "id": self.id,
            "status": self.status.value,
            "mode": self.mode.value,
            "folders": list(self.folders),
            "source": self.source.describe(),
            "destination": self.destination.describe(),
            "options": self.options.to_dict(),
            "progress": self.progress.to_dict(),
            "stats": self.stats.to_dict(),
            "error": self.error.to_dict() if self.error else None,
            "created_at": self.created_at.isoformat(),
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
            "duration": self.duration,
        }


@dataclass
class FolderNode:
    name: str
    path: str
    delimiter: str | None = None
    attributes: tuple[str, ...] = ()
    children: list[FolderNode] = field(default_factory=list)

    @property
    def selectable(self) -> bool:
        return not (
            imap_common.has_attribute(self.attributes, imap_common.ATTR_NOSELECT)
            or imap_common.has_attribute(self.attributes, imap_common.ATTR_NONEXISTENT)
        )

    @property
    def special_use(self) -> str | None:
        return imap_common.special_use_of(self.attributes)

    def iter_preorder(self):
        yield self
        for child in self.children:
            yield from child.iter_preorder()


def iter_tree(roots):
    """Pre-order walk over a forest of FolderNodes: parents always precede their children."""
    for root in roots:
        yield from root.iter_preorder()


@dataclass
class MessageEnvelope:
    seq: int
    raw: bytes
    uid: int | None = None
    flags: tuple[str, ...] = ()
    internal_date: str | None = None
    headers: dict[str, str | None] = field(default_factory=dict)

    @property
    def message_id(self) -> str | None:
        return self.headers.get("Message-ID")

    @property
    def subject(self) -> str:
        return self.headers.get("Subject") or "(No Subject)"

    @property
    def size(self) -> int:
        return len(self.raw) if self.raw else 0
