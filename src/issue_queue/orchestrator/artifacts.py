"""Per-item artifact directory layout and collection."""

from __future__ import annotations

import logging
from pathlib import Path

from issue_queue.orchestrator.models import (
    ArtifactCategory,
    ArtifactView,
    ArtifactWrite,
    WorkItemView,
)
from issue_queue.orchestrator.repository import WorkItemRepository

logger = logging.getLogger(__name__)

_CATEGORY_BY_SUFFIX: dict[str, ArtifactCategory] = {
    ".mp4": ArtifactCategory.RECORDING,
    ".mov": ArtifactCategory.RECORDING,
    ".webm": ArtifactCategory.RECORDING,
    ".gif": ArtifactCategory.RECORDING,
    ".log": ArtifactCategory.LOG,
    ".txt": ArtifactCategory.LOG,
    ".json": ArtifactCategory.LOG,
    ".patch": ArtifactCategory.LOG,
    ".diff": ArtifactCategory.LOG,
    ".md": ArtifactCategory.DOCUMENT,
    ".html": ArtifactCategory.DOCUMENT,
    ".pdf": ArtifactCategory.DOCUMENT,
    ".yaml": ArtifactCategory.DOCUMENT,
    ".yml": ArtifactCategory.DOCUMENT,
}


def item_artifact_dir(artifacts_root: Path, item: WorkItemView) -> Path:
    """``<root>/<owner>/<repo>/<ticket>``; owner is omitted for bare repo names."""

    base = artifacts_root
    if item.repo_owner:
        base = base / item.repo_owner
    return base / item.repo_name / str(item.ticket_number)


def categorize(filename: str) -> ArtifactCategory | None:
    return _CATEGORY_BY_SUFFIX.get(Path(filename).suffix.lower())


class ArtifactCollector:
    """Registers the files a run left in the item's artifact directory."""

    def __init__(self, *, repository: WorkItemRepository, artifacts_root: Path) -> None:
        self.repository = repository
        self.artifacts_root = artifacts_root

    def collect(self, run_id: int, item: WorkItemView) -> list[ArtifactView]:
        directory = item_artifact_dir(self.artifacts_root, item)
        if not directory.is_dir():
            return []

        collected: list[ArtifactView] = []
        for path in sorted(directory.iterdir()):
            if not path.is_file():
                continue
            category = categorize(path.name)
            if category is None:
                continue
            collected.append(
                self.repository.add_artifact(
                    run_id,
                    ArtifactWrite(
                        filename=path.name,
                        category=category,
                        size_bytes=path.stat().st_size,
                        path=str(path),
                    ),
                ),
            )
        if collected:
            logger.info(
                "Artifacts for item %d: %d recordings, %d logs, %d documents",
                item.item_id,
                sum(1 for a in collected if a.category is ArtifactCategory.RECORDING),
                sum(1 for a in collected if a.category is ArtifactCategory.LOG),
                sum(1 for a in collected if a.category is ArtifactCategory.DOCUMENT),
            )
        return collected
