"""Domain models for the work-item queue and its processing pipeline."""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any


class WorkItemStatus(str, Enum):
    """Durable work-item lifecycle states."""

    QUEUED = "queued"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    NEEDS_INPUT = "needs-input"
    PR_OPEN = "pr_open"
    MERGED = "merged"


class Priority(str, Enum):
    """Work-item priority; higher rank is dequeued first."""

    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"

    @property
    def rank(self) -> int:
        return _PRIORITY_RANKS[self]


_PRIORITY_RANKS = {Priority.LOW: 1, Priority.MEDIUM: 2, Priority.HIGH: 3}


class ErrorClass(str, Enum):
    """Normalized failure classes used by the retry policy and reporting."""

    INFRA = "infra"
    BUILD = "build"
    TEST = "test"
    AGENT = "agent"
    UNKNOWN = "unknown"
    REVIEW = "review"
    CANCELLED = "cancelled"


class RunStatus(str, Enum):
    """Outcome recorded on one processing attempt."""

    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    NEEDS_INPUT = "needs-input"
    PR_OPEN = "pr_open"
    RETRYING = "retrying"


class ArtifactCategory(str, Enum):
    RECORDING = "recording"
    LOG = "log"
    DOCUMENT = "document"


class StoreError(RuntimeError):
    """Store rejected an operation because of the item's current state."""


class ConfigError(ValueError):
    """Routing configuration is present but invalid."""


@dataclass(slots=True)
class WorkItemCreate:
    """Input payload for enqueuing one ticket."""

    repo: str
    ticket_number: int
    title: str
    body: str = ""
    # Bare names or tracker records such as {"name": "bug"}.
    labels: list[str | Mapping[str, Any]] = field(default_factory=list)
    priority: Priority = Priority.MEDIUM
    pipeline_type: str | None = None
    url: str | None = None


@dataclass(slots=True)
class WorkItemView:
    """Readable work-item view for CLI, scheduler and snapshot."""

    item_id: int
    repo: str
    ticket_number: int
    title: str
    body: str
    labels: list[str]
    priority: Priority
    pipeline_type: str | None
    status: WorkItemStatus
    url: str | None
    created_at: datetime
    queued_at: datetime
    started_at: datetime | None
    completed_at: datetime | None
    retry_count: int
    error: str | None
    error_class: ErrorClass | None
    external_ref: str | None
    updated_at: datetime

    @property
    def repo_owner(self) -> str:
        owner, _, name = self.repo.partition("/")
        return owner if name else ""

    @property
    def repo_name(self) -> str:
        owner, _, name = self.repo.partition("/")
        return name or owner


@dataclass(slots=True)
class RunView:
    """One processing attempt."""

    run_id: int
    item_id: int
    attempt: int
    pipeline_type: str | None
    model: str | None
    status: RunStatus
    started_at: datetime
    completed_at: datetime | None
    duration_ms: int | None
    solution: str | None
    error: str | None
    error_class: ErrorClass | None
    exit_code: int | None


@dataclass(slots=True)
class RunFinish:
    """Terminal fields written when an attempt ends."""

    status: RunStatus
    solution: str | None = None
    error: str | None = None
    error_class: ErrorClass | None = None
    exit_code: int | None = None
    model: str | None = None


@dataclass(slots=True)
class ArtifactWrite:
    """Artifact metadata captured after an attempt."""

    filename: str
    category: ArtifactCategory
    size_bytes: int
    path: str


@dataclass(slots=True)
class ArtifactView:
    artifact_id: int
    run_id: int
    filename: str
    category: ArtifactCategory
    size_bytes: int
    path: str
    created_at: datetime


@dataclass(slots=True)
class QueueState:
    """Every section of the queue read view, taken from one read transaction."""

    queued: list[WorkItemView]
    processing: WorkItemView | None
    recent: dict[WorkItemStatus, list[WorkItemView]]
    status_counts: dict[str, int]
    pipeline_counts: dict[str, int]
    average_duration_ms: int | None
    total_runs: int


@dataclass(slots=True)
class EngineResult:
    """Generation outcome; failures are data, never exceptions."""

    success: bool
    model: str
    timestamp: datetime
    text: str = ""
    error: str | None = None


@dataclass(slots=True)
class PipelineResult:
    """External pipeline execution outcome."""

    executed: bool
    success: bool = False
    exit_code: int | None = None
    stdout: str = ""
    stderr: str = ""
    error_class: ErrorClass | None = None
    timed_out: bool = False
    error: str | None = None
