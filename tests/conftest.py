"""Shared test fixtures."""

from __future__ import annotations

from collections.abc import Callable
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

import pytest

from issue_queue.orchestrator.models import (
    Priority,
    WorkItemCreate,
    WorkItemStatus,
    WorkItemView,
)
from issue_queue.orchestrator.repository import WorkItemRepository
from issue_queue.orchestrator.routing import RoutingConfig, parse_routing_config


@pytest.fixture()
def repository(tmp_path: Path):
    repo = WorkItemRepository(tmp_path / "queue.db")
    repo.init_schema()
    yield repo
    repo.close()


@pytest.fixture()
def enqueue(repository: WorkItemRepository) -> Callable[..., WorkItemView]:
    """Enqueue a ticket and return its stored view."""

    def _enqueue(
        ticket: int,
        *,
        repo: str = "acme/widgets",
        title: str | None = None,
        labels: list[str] | None = None,
        priority: Priority = Priority.MEDIUM,
    ) -> WorkItemView:
        created = repository.enqueue(
            WorkItemCreate(
                repo=repo,
                ticket_number=ticket,
                title=title or f"Ticket {ticket}",
                body=f"Body of ticket {ticket}",
                labels=labels or [],
                priority=priority,
                url=f"https://github.com/{repo}/issues/{ticket}",
            ),
        )
        assert created
        return repository.find_items(ticket, repo=repo)[0]

    return _enqueue


@pytest.fixture()
def routing_factory(tmp_path: Path) -> Callable[..., RoutingConfig]:
    """Routing config whose pipelines run bash scripts written under ``tmp_path``."""

    def _factory(
        scripts: dict[str, str],
        *,
        timeout_seconds: int = 30,
        extract_flows: tuple[str, ...] = ("test",),
        produces_reference: tuple[str, ...] = ("implement",),
        generate_url: str = "http://llm.test/api/generate",
    ) -> RoutingConfig:
        script_dir = tmp_path / "scripts"
        script_dir.mkdir(exist_ok=True)
        pipelines: dict[str, Any] = {}
        for name in ("implement", "test", "generate"):
            if name in scripts:
                (script_dir / f"{name}.sh").write_text(
                    "#!/usr/bin/env bash\n" + scripts[name],
                    "utf-8",
                )
            pipelines[name] = {
                "script": f"scripts/{name}.sh",
                "model": f"{name}-model",
                "timeout_seconds": timeout_seconds,
                "extract_flows": name in extract_flows,
                "produces_reference": name in produces_reference,
            }
        return parse_routing_config(
            {
                "defaults": {
                    "pipeline": "implement",
                    "generate_url": generate_url,
                    "worktree_base": str(tmp_path / "worktrees"),
                },
                "pipelines": pipelines,
                "routing": {
                    "e2e": "test",
                    "content": "generate",
                    "*": "implement",
                },
            },
            base_dir=tmp_path,
        )

    return _factory


@pytest.fixture()
def item_factory() -> Callable[..., WorkItemView]:
    """Detached work-item views for collaborators that never touch the store."""

    return _make_item


def _make_item(**overrides: Any) -> WorkItemView:
    now = datetime(2026, 10, 17, 9, 0, tzinfo=UTC)
    values: dict[str, Any] = {
        "item_id": 7,
        "repo": "acme/widgets",
        "ticket_number": 42,
        "title": "Fix checkout crash",
        "body": "Crash when the cart is empty.",
        "labels": ["coding"],
        "priority": Priority.HIGH,
        "pipeline_type": "implement",
        "status": WorkItemStatus.PROCESSING,
        "url": "https://github.com/acme/widgets/issues/42",
        "created_at": now,
        "queued_at": now,
        "started_at": now,
        "completed_at": None,
        "retry_count": 0,
        "error": None,
        "error_class": None,
        "external_ref": None,
        "updated_at": now,
    }
    values.update(overrides)
    return WorkItemView(**values)
