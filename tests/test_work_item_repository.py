from __future__ import annotations

from concurrent.futures import ThreadPoolExecutor
from pathlib import Path

import allure
import pytest
from sqlalchemy import text
from sqlalchemy.exc import IntegrityError

from issue_queue.orchestrator.models import (
    ArtifactCategory,
    ArtifactWrite,
    ErrorClass,
    Priority,
    RunFinish,
    RunStatus,
    StoreError,
    WorkItemCreate,
    WorkItemStatus,
)
from issue_queue.orchestrator.repository import WorkItemRepository
from issue_queue.orchestrator.routing import builtin_routing_config, route

pytestmark = [
    allure.epic("Work Queue"),
    allure.feature("Store & Lifecycle"),
]


def test_enqueue_is_idempotent_per_repo_and_ticket(repository, enqueue) -> None:
    enqueue(12)
    duplicate = WorkItemCreate(repo="acme/widgets", ticket_number=12, title="Again")

    assert repository.enqueue(duplicate) is False
    enqueue(12, repo="acme/gadgets")
    assert [item.repo for item in repository.find_items(12)] == ["acme/widgets", "acme/gadgets"]


def test_enqueued_item_starts_queued_with_labels(repository, enqueue) -> None:
    item = enqueue(3, labels=["e2e", "priority-high"], priority=Priority.HIGH)

    assert item.status is WorkItemStatus.QUEUED
    assert item.labels == ["e2e", "priority-high"]
    assert item.priority is Priority.HIGH
    assert item.retry_count == 0
    assert item.started_at is None
    assert item.queued_at.tzinfo is not None


def test_label_records_are_stored_as_plain_names(repository) -> None:
    repository.enqueue(
        WorkItemCreate(
            repo="acme/widgets",
            ticket_number=9,
            title="Checkout flow is flaky",
            labels=[{"name": "E2E", "color": "ff0000"}, " priority-high "],
        ),
    )

    item = repository.dequeue_next()

    assert item.labels == ["e2e", "priority-high"]
    assert route(item.labels, builtin_routing_config()) == "test"


def test_label_records_in_existing_rows_read_as_names(repository, enqueue) -> None:
    item = enqueue(10)
    with repository.engine.begin() as connection:
        connection.execute(
            text("UPDATE work_items SET labels_json = :raw"),
            {"raw": '[{"name": "content"}, "Docs"]'},
        )

    assert repository.get_item(item.item_id).labels == ["content", "docs"]


def test_dequeue_orders_by_priority_then_fifo(repository, enqueue) -> None:
    enqueue(1, priority=Priority.LOW)
    enqueue(2, priority=Priority.MEDIUM)
    enqueue(3, priority=Priority.HIGH)
    enqueue(4, priority=Priority.MEDIUM)

    order = []
    while (item := repository.dequeue_next()) is not None:
        order.append(item.ticket_number)
        repository.complete(item.item_id)

    assert order == [3, 2, 4, 1]


def test_dequeue_returns_none_while_an_item_is_processing(repository, enqueue) -> None:
    enqueue(1)
    enqueue(2)

    first = repository.dequeue_next()
    assert first is not None
    assert first.status is WorkItemStatus.PROCESSING
    assert first.started_at is not None

    assert repository.dequeue_next() is None
    assert repository.get_processing().item_id == first.item_id


def test_dequeue_on_empty_queue_returns_none(repository) -> None:
    assert repository.dequeue_next() is None


def test_concurrent_dequeue_claims_exactly_one_item(tmp_path: Path, repository, enqueue) -> None:
    for ticket in range(1, 6):
        enqueue(ticket)

    def _claim(_: int) -> int | None:
        worker_repo = WorkItemRepository(tmp_path / "queue.db")
        try:
            claimed = worker_repo.dequeue_next()
            return claimed.item_id if claimed is not None else None
        finally:
            worker_repo.close()

    with ThreadPoolExecutor(max_workers=4) as pool:
        results = list(pool.map(_claim, range(8)))

    claimed = [item_id for item_id in results if item_id is not None]
    assert len(claimed) == 1
    assert repository.status_counts()["processing"] == 1


def test_partial_unique_index_rejects_second_processing_row(repository, enqueue) -> None:
    enqueue(1)
    enqueue(2)

    with pytest.raises(IntegrityError), repository.engine.begin() as connection:
        connection.execute(text("UPDATE work_items SET status = 'processing'"))

    assert repository.status_counts()["processing"] == 0


def test_terminal_transitions_require_processing(repository, enqueue) -> None:
    item = enqueue(1)

    assert repository.complete(item.item_id) is False
    assert repository.fail(item.item_id, "boom", ErrorClass.BUILD) is False

    repository.dequeue_next()
    assert repository.mark_pr_open(item.item_id, "https://github.com/acme/widgets/pull/9")
    stored = repository.get_item(item.item_id)
    assert stored.status is WorkItemStatus.PR_OPEN
    assert stored.external_ref == "https://github.com/acme/widgets/pull/9"
    assert stored.completed_at is not None

    assert repository.mark_merged(item.item_id) is True
    assert repository.get_item(item.item_id).status is WorkItemStatus.MERGED
    assert repository.mark_merged(item.item_id) is False


def test_needs_input_keeps_error_and_reference(repository, enqueue) -> None:
    item = enqueue(1)
    repository.dequeue_next()

    assert repository.mark_needs_input(
        item.item_id,
        "Pipeline failed (exit code: 1, class: build)",
        ErrorClass.BUILD,
        "https://github.com/acme/widgets/pull/3",
    )

    stored = repository.get_item(item.item_id)
    assert stored.status is WorkItemStatus.NEEDS_INPUT
    assert stored.error_class is ErrorClass.BUILD
    assert stored.external_ref == "https://github.com/acme/widgets/pull/3"


def test_requeue_increments_retry_count_and_clears_timestamps(repository, enqueue) -> None:
    item = enqueue(1)
    repository.dequeue_next()
    repository.fail(item.item_id, "boom", ErrorClass.TEST)

    requeued = repository.requeue(item.item_id)

    assert requeued.status is WorkItemStatus.QUEUED
    assert requeued.retry_count == 1
    assert requeued.started_at is None
    assert requeued.completed_at is None
    assert requeued.error is None
    assert requeued.error_class is None
    assert repository.retry_count(item.item_id) == 1


def test_requeue_keeps_queue_position_by_default(repository, enqueue) -> None:
    first = enqueue(1)
    enqueue(2)
    repository.dequeue_next()
    repository.fail(first.item_id, "boom", ErrorClass.INFRA)

    requeued = repository.requeue(first.item_id)

    assert requeued.queued_at == first.queued_at
    assert [item.ticket_number for item in repository.list_queued()] == [1, 2]


def test_requeue_to_back_resets_queued_at(tmp_path: Path) -> None:
    repository = WorkItemRepository(tmp_path / "back.db", requeue_to_back=True)
    repository.init_schema()
    try:
        for ticket in (1, 2):
            repository.enqueue(
                WorkItemCreate(repo="acme/widgets", ticket_number=ticket, title=f"T{ticket}"),
            )
        first = repository.dequeue_next()
        repository.fail(first.item_id, "boom", ErrorClass.INFRA)

        repository.requeue(first.item_id)

        assert [item.ticket_number for item in repository.list_queued()] == [2, 1]
    finally:
        repository.close()


def test_requeue_rejects_queued_and_unexpected_status(repository, enqueue) -> None:
    item = enqueue(1)

    with pytest.raises(StoreError, match="cannot be requeued from status=queued"):
        repository.requeue(item.item_id)

    repository.dequeue_next()
    repository.fail(item.item_id, "Cancelled by user", ErrorClass.CANCELLED)
    with pytest.raises(StoreError, match="status=failed"):
        repository.requeue(item.item_id, expected_status=WorkItemStatus.PROCESSING)
    assert repository.get_item(item.item_id).status is WorkItemStatus.FAILED


def test_remove_refuses_processing_item(repository, enqueue) -> None:
    item = enqueue(1)
    repository.dequeue_next()

    with pytest.raises(StoreError, match="cancel it first"):
        repository.remove(item.item_id)

    repository.fail(item.item_id, "boom", ErrorClass.BUILD)
    repository.remove(item.item_id)
    assert repository.get_item(item.item_id) is None

    with pytest.raises(StoreError, match="Item not found"):
        repository.remove(item.item_id)


def test_remove_cascades_to_runs_and_artifacts(repository, enqueue) -> None:
    item = enqueue(1)
    repository.dequeue_next()
    run = repository.start_run(item.item_id, pipeline_type="implement")
    repository.add_artifact(
        run.run_id,
        ArtifactWrite(filename="x.log", category=ArtifactCategory.LOG, size_bytes=1, path="x.log"),
    )
    repository.complete(item.item_id)

    repository.remove(item.item_id)

    assert repository.total_runs() == 0
    assert repository.list_artifacts(run.run_id) == []


def test_clear_queue_and_clear_history(repository, enqueue) -> None:
    done = enqueue(1)
    failed = enqueue(2)
    parked = enqueue(3)
    enqueue(4)
    enqueue(5)
    for item, finish in (
        (done, lambda item_id: repository.complete(item_id)),
        (failed, lambda item_id: repository.fail(item_id, "boom", ErrorClass.BUILD)),
        (
            parked,
            lambda item_id: repository.mark_needs_input(item_id, "help", ErrorClass.AGENT, None),
        ),
    ):
        claimed = repository.dequeue_next()
        assert claimed.item_id == item.item_id
        finish(item.item_id)

    assert repository.clear_history() == 2
    assert repository.clear_queue() == 2
    counts = repository.status_counts()
    assert counts["needs-input"] == 1
    assert sum(counts.values()) == 1


def test_list_items_filters_by_status_and_orders_recent_first(repository, enqueue) -> None:
    first = enqueue(1)
    enqueue(2)
    repository.dequeue_next()
    repository.complete(first.item_id)

    assert [item.ticket_number for item in repository.list_items()] == [1, 2]
    completed = repository.list_items(status=WorkItemStatus.COMPLETED)
    assert [item.ticket_number for item in completed] == [1]
    assert len(repository.list_items(limit=1)) == 1


def test_runs_are_numbered_per_item_and_closed_once(repository, enqueue) -> None:
    item = enqueue(1)
    repository.dequeue_next()
    first = repository.start_run(item.item_id, pipeline_type="implement", model="m1")
    assert first.attempt == 1
    assert first.status is RunStatus.RUNNING

    finish = RunFinish(
        status=RunStatus.FAILED,
        error="boom",
        error_class=ErrorClass.INFRA,
        exit_code=3,
        model="m2",
    )
    assert repository.finish_run(first.run_id, finish) is True
    assert repository.finish_run(first.run_id, finish) is False

    second = repository.start_run(item.item_id, pipeline_type="implement")
    assert second.attempt == 2

    runs = repository.list_runs(item.item_id)
    assert [run.attempt for run in runs] == [1, 2]
    closed = runs[0]
    assert closed.status is RunStatus.FAILED
    assert closed.exit_code == 3
    assert closed.model == "m2"
    assert closed.duration_ms is not None
    assert closed.completed_at is not None
    assert repository.latest_run(item.item_id).run_id == second.run_id


def test_finish_run_raises_for_unknown_run(repository) -> None:
    with pytest.raises(StoreError, match="Run not found"):
        repository.finish_run(999, RunFinish(status=RunStatus.COMPLETED))


def test_aggregates_cover_statuses_pipelines_and_durations(repository, enqueue) -> None:
    assert repository.average_duration_ms() is None
    assert repository.total_runs() == 0

    item = enqueue(1)
    enqueue(2)
    repository.dequeue_next()
    repository.assign_pipeline(item.item_id, "test")
    run = repository.start_run(item.item_id, pipeline_type="test")
    repository.finish_run(run.run_id, RunFinish(status=RunStatus.COMPLETED))
    repository.complete(item.item_id)

    counts = repository.status_counts()
    assert set(counts) == {status.value for status in WorkItemStatus}
    assert counts["completed"] == 1
    assert counts["queued"] == 1
    assert repository.pipeline_counts() == {"test": 1}
    assert repository.average_duration_ms() is not None
    assert repository.total_runs() == 1
