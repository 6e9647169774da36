"""Denormalized JSON read view of the queue for dashboards."""

from __future__ import annotations

import json
import logging
import os
import tempfile
from pathlib import Path
from typing import Any

from issue_queue.orchestrator.models import WorkItemStatus, WorkItemView
from issue_queue.orchestrator.repository import WorkItemRepository
from issue_queue.storage.common import utc_now

logger = logging.getLogger(__name__)

_RECENT_SECTIONS = (
    ("completed", WorkItemStatus.COMPLETED),
    ("failed", WorkItemStatus.FAILED),
    ("needs_input", WorkItemStatus.NEEDS_INPUT),
    ("pr_open", WorkItemStatus.PR_OPEN),
    ("merged", WorkItemStatus.MERGED),
)


def item_to_dict(item: WorkItemView) -> dict[str, Any]:
    return {
        "item_id": item.item_id,
        "repo": item.repo,
        "ticket_number": item.ticket_number,
        "title": item.title,
        "labels": list(item.labels),
        "priority": item.priority.value,
        "pipeline_type": item.pipeline_type,
        "status": item.status.value,
        "url": item.url,
        "created_at": item.created_at.isoformat(),
        "queued_at": item.queued_at.isoformat(),
        "started_at": item.started_at.isoformat() if item.started_at else None,
        "completed_at": item.completed_at.isoformat() if item.completed_at else None,
        "retry_count": item.retry_count,
        "error": item.error,
        "error_class": item.error_class.value if item.error_class else None,
        "external_ref": item.external_ref,
    }


class SnapshotGenerator:
    """Rebuilds the whole snapshot from the store on every write."""

    def __init__(
        self,
        *,
        repository: WorkItemRepository,
        path: Path,
        recent_limit: int = 50,
    ) -> None:
        self.repository = repository
        self.path = path
        self.recent_limit = recent_limit

    def build(self) -> dict[str, Any]:
        state = self.repository.read_queue_state(
            recent_statuses=tuple(status for _, status in _RECENT_SECTIONS),
            recent_limit=self.recent_limit,
        )
        return {
            "generated_at": utc_now().isoformat(),
            "queue": [item_to_dict(item) for item in state.queued],
            "processing": item_to_dict(state.processing) if state.processing is not None else None,
            "recent": {
                key: [item_to_dict(item) for item in state.recent[status]]
                for key, status in _RECENT_SECTIONS
            },
            "stats": {
                "counts_by_status": state.status_counts,
                "counts_by_pipeline": state.pipeline_counts,
                "average_duration_ms": state.average_duration_ms,
                "total_runs": state.total_runs,
            },
        }

    def write(self) -> Path:
        """Replace the snapshot file atomically."""

        snapshot = self.build()
        self.path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(
            prefix=f".{self.path.name}.",
            suffix=".tmp",
            dir=self.path.parent,
        )
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as handle:
                json.dump(snapshot, handle, indent=2, ensure_ascii=False)
                handle.write("\n")
            os.replace(tmp_name, self.path)
        except BaseException:
            Path(tmp_name).unlink(missing_ok=True)
            raise
        logger.debug("Snapshot written to %s", self.path)
        return self.path
