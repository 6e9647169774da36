"""Runtime configuration for the queue worker and control surface."""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path


@dataclass(slots=True)
class SchedulerSettings:
    """Scheduler cycle and watch-loop settings."""

    stale_after_seconds: int = 1_800
    watch_interval_seconds: float = 30.0
    max_auto_retries: int = 1
    requeue_to_back: bool = False
    merge_check_every: int = 10


@dataclass(slots=True)
class PipelineSettings:
    """External pipeline process settings."""

    kill_grace_seconds: float = 5.0


@dataclass(slots=True)
class IngestionSettings:
    """Ticket source settings."""

    default_repo: str = ""
    limit: int = 50


@dataclass(slots=True)
class SnapshotSettings:
    """Read snapshot settings."""

    recent_limit: int = 50


@dataclass(slots=True)
class Settings:
    """Application settings grouped by domain concerns."""

    data_dir: Path = Path(".issue_queue")
    db_path: Path | None = None
    routing_config_path: Path | None = None
    artifacts_dir: Path | None = None
    snapshot_path: Path | None = None
    sqlite_busy_timeout_ms: int = 5_000
    log_level: str = "INFO"
    scheduler: SchedulerSettings = field(default_factory=SchedulerSettings)
    pipeline: PipelineSettings = field(default_factory=PipelineSettings)
    ingestion: IngestionSettings = field(default_factory=IngestionSettings)
    snapshot: SnapshotSettings = field(default_factory=SnapshotSettings)

    @classmethod
    def from_env(cls, db_path: Path | None = None) -> Settings:
        """Load settings from environment with sane defaults for local development."""

        data_dir = Path(os.getenv("ISSUE_QUEUE_DATA_DIR", ".issue_queue"))
        return cls(
            data_dir=data_dir,
            db_path=db_path or _env_path("ISSUE_QUEUE_DB_PATH"),
            routing_config_path=_env_path("ISSUE_QUEUE_ROUTING_CONFIG"),
            artifacts_dir=_env_path("ISSUE_QUEUE_ARTIFACTS_DIR"),
            snapshot_path=_env_path("ISSUE_QUEUE_SNAPSHOT_PATH"),
            sqlite_busy_timeout_ms=int(os.getenv("ISSUE_QUEUE_SQLITE_BUSY_TIMEOUT_MS", "5000")),
            log_level=os.getenv("ISSUE_QUEUE_LOG_LEVEL", "INFO").strip().upper(),
            scheduler=SchedulerSettings(
                stale_after_seconds=int(os.getenv("ISSUE_QUEUE_STALE_AFTER_SECONDS", "1800")),
                watch_interval_seconds=float(
                    os.getenv("ISSUE_QUEUE_WATCH_INTERVAL_SECONDS", "30"),
                ),
                max_auto_retries=int(os.getenv("ISSUE_QUEUE_MAX_AUTO_RETRIES", "1")),
                requeue_to_back=_env_bool("ISSUE_QUEUE_REQUEUE_TO_BACK", default=False),
                merge_check_every=int(os.getenv("ISSUE_QUEUE_MERGE_CHECK_EVERY", "10")),
            ),
            pipeline=PipelineSettings(
                kill_grace_seconds=float(
                    os.getenv("ISSUE_QUEUE_PIPELINE_KILL_GRACE_SECONDS", "5"),
                ),
            ),
            ingestion=IngestionSettings(
                default_repo=os.getenv("ISSUE_QUEUE_DEFAULT_REPO", "").strip(),
                limit=int(os.getenv("ISSUE_QUEUE_INGEST_LIMIT", "50")),
            ),
            snapshot=SnapshotSettings(
                recent_limit=int(os.getenv("ISSUE_QUEUE_SNAPSHOT_RECENT_LIMIT", "50")),
            ),
        )

    @property
    def resolved_db_path(self) -> Path:
        return self.db_path or self.data_dir / "queue.db"

    @property
    def resolved_routing_config_path(self) -> Path:
        return self.routing_config_path or self.data_dir / "routing.config.json"

    @property
    def resolved_artifacts_dir(self) -> Path:
        return self.artifacts_dir or self.data_dir / "artifacts"

    @property
    def resolved_snapshot_path(self) -> Path:
        return self.snapshot_path or self.data_dir / "queue-snapshot.json"

    # Worker lock and pipeline marker live beside the database they guard.
    @property
    def lock_path(self) -> Path:
        return self.resolved_db_path.parent / "worker.lock"

    @property
    def pid_path(self) -> Path:
        return self.resolved_db_path.parent / "pipeline.pid"

    @property
    def log_path(self) -> Path:
        return self.data_dir / "worker.log"

    def validate(self) -> None:
        """Raise configuration error on values the scheduler cannot work with."""

        if self.scheduler.stale_after_seconds <= 0:
            raise ValueError("ISSUE_QUEUE_STALE_AFTER_SECONDS must be > 0.")
        if self.scheduler.watch_interval_seconds <= 0:
            raise ValueError("ISSUE_QUEUE_WATCH_INTERVAL_SECONDS must be > 0.")
        if self.scheduler.max_auto_retries < 0:
            raise ValueError("ISSUE_QUEUE_MAX_AUTO_RETRIES must be >= 0.")
        if self.scheduler.merge_check_every < 0:
            raise ValueError("ISSUE_QUEUE_MERGE_CHECK_EVERY must be >= 0.")
        if self.pipeline.kill_grace_seconds < 0:
            raise ValueError("ISSUE_QUEUE_PIPELINE_KILL_GRACE_SECONDS must be >= 0.")
        if self.ingestion.limit <= 0:
            raise ValueError("ISSUE_QUEUE_INGEST_LIMIT must be a positive integer.")
        if self.snapshot.recent_limit <= 0:
            raise ValueError("ISSUE_QUEUE_SNAPSHOT_RECENT_LIMIT must be a positive integer.")
        if self.sqlite_busy_timeout_ms <= 0:
            raise ValueError("ISSUE_QUEUE_SQLITE_BUSY_TIMEOUT_MS must be > 0.")


def _env_path(name: str) -> Path | None:
    value = os.getenv(name, "").strip()
    if not value:
        return None
    return Path(value)


def _env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    normalized = value.strip().lower()
    if normalized in {"1", "true", "yes", "on"}:
        return True
    if normalized in {"0", "false", "no", "off"}:
        return False
    raise ValueError(f"Invalid boolean value for {name}: {value!r}")
