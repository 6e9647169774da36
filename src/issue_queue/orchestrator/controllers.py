"""Controllers for queue CLI commands."""

from __future__ import annotations

from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path

from issue_queue.config import Settings
from issue_queue.orchestrator.artifacts import ArtifactCollector
from issue_queue.orchestrator.engine import ProcessingEngine
from issue_queue.orchestrator.locking import WorkerLock
from issue_queue.orchestrator.models import (
    ErrorClass,
    RunFinish,
    RunStatus,
    StoreError,
    WorkItemStatus,
    WorkItemView,
)
from issue_queue.orchestrator.pipeline import PipelineExecutor, cancel_active_pipeline
from issue_queue.orchestrator.repository import WorkItemRepository
from issue_queue.orchestrator.routing import RoutingConfig, load_routing_config
from issue_queue.orchestrator.scheduler import CycleOutcome, Scheduler
from issue_queue.orchestrator.snapshot import SnapshotGenerator
from issue_queue.orchestrator.tickets import (
    GhCliMergeChecker,
    GhCliTicketSource,
    check_pull_requests,
    ingest,
    ticket_to_create,
)

CANCEL_MESSAGE = "Cancelled by user"


@dataclass(slots=True)
class ProcessCommand:
    """CLI input for one scheduler cycle."""

    db_path: Path | None


@dataclass(slots=True)
class WatchCommand:
    """CLI input for the watch loop."""

    db_path: Path | None
    interval_seconds: float | None
    max_cycles: int | None = None


@dataclass(slots=True)
class IngestCommand:
    """CLI input for loading open tickets."""

    db_path: Path | None
    repo: str | None


@dataclass(slots=True)
class AddCommand:
    """CLI input for enqueuing one ticket."""

    db_path: Path | None
    ticket: int
    repo: str | None


@dataclass(slots=True)
class ItemCommand:
    """CLI input for remove/retry operations addressed by ticket number."""

    db_path: Path | None
    ticket: int
    repo: str | None


@dataclass(slots=True)
class QueueCommand:
    """CLI input for commands that only need the store."""

    db_path: Path | None


@dataclass(slots=True)
class ListItemsCommand:
    db_path: Path | None
    status: str | None
    limit: int


class QueueCliController:
    """Coordinates scheduler, store mutations and inspection CLI operations."""

    def process(self, command: ProcessCommand) -> list[str]:
        settings = _settings(command.db_path)
        with _repository(settings) as repository, _scheduler(settings, repository) as scheduler:
            result = scheduler.run_cycle()

        lines = [f"Cycle: {result.outcome.value}"]
        if result.recovered is not None:
            lines.append(f"Recovered stale item: {_item_label(result.recovered)}")
        if result.outcome is CycleOutcome.PROCESSED and result.item is not None:
            lines.append(_item_line(result.item))
        return lines

    def watch(self, command: WatchCommand) -> list[str]:
        settings = _settings(command.db_path)
        interval = command.interval_seconds or settings.scheduler.watch_interval_seconds
        with _repository(settings) as repository, _scheduler(settings, repository) as scheduler:
            summary = scheduler.watch(interval_seconds=interval, max_cycles=command.max_cycles)
        return [
            "Watch summary: "
            f"ticks={summary.ticks} cycles={summary.cycles} processed={summary.processed} "
            f"errors={summary.errors} merge_checks={summary.merge_checks}",
        ]

    def ingest(self, command: IngestCommand) -> list[str]:
        settings = _settings(command.db_path)
        config = load_routing_config(settings.resolved_routing_config_path)
        source = GhCliTicketSource(
            repo=_repo(settings, command.repo),
            limit=settings.ingestion.limit,
        )
        with _repository(settings) as repository:
            summary = ingest(repository=repository, source=source, config=config)
            _snapshot(settings, repository).write()
        return [
            f"Loaded {summary.added} new ticket(s) "
            f"({summary.total} open, {summary.skipped} already tracked)",
        ]

    def add(self, command: AddCommand) -> list[str]:
        settings = _settings(command.db_path)
        config = load_routing_config(settings.resolved_routing_config_path)
        source = GhCliTicketSource(repo=_repo(settings, command.repo))
        ticket = source.get(command.ticket)
        with _repository(settings) as repository:
            if not repository.enqueue(ticket_to_create(ticket, config)):
                return [f"Already tracked: {ticket.repo}#{ticket.number}"]
            _snapshot(settings, repository).write()
        return [f"Enqueued: {ticket.repo}#{ticket.number} {ticket.title}"]

    def remove(self, command: ItemCommand) -> list[str]:
        settings = _settings(command.db_path)
        with _repository(settings) as repository:
            item = _resolve_item(repository, ticket=command.ticket, repo=command.repo)
            repository.remove(item.item_id)
            _snapshot(settings, repository).write()
        return [f"Removed: {_item_label(item)}"]

    def retry(self, command: ItemCommand) -> list[str]:
        settings = _settings(command.db_path)
        with _repository(settings) as repository:
            item = _resolve_item(repository, ticket=command.ticket, repo=command.repo)
            if item.status is WorkItemStatus.PROCESSING:
                raise StoreError(f"{_item_label(item)} is processing; cancel it first.")
            requeued = repository.requeue(item.item_id)
            _snapshot(settings, repository).write()
        return [f"Requeued: {_item_label(requeued)} retry_count={requeued.retry_count}"]

    def cancel(self, command: QueueCommand) -> list[str]:
        settings = _settings(command.db_path)
        with _repository(settings) as repository:
            processing = repository.get_processing()
            if processing is None:
                return ["No item is processing."]
            # The item leaves processing before the group dies, so the cycle's
            # own outcome write no-ops.
            if not repository.fail(processing.item_id, CANCEL_MESSAGE, ErrorClass.CANCELLED):
                current = repository.get_item(processing.item_id)
                state = current.status.value if current is not None else "removed"
                raise StoreError(
                    f"{_item_label(processing)} finished before it could be cancelled "
                    f"(status={state}).",
                )
            signalled = cancel_active_pipeline(
                settings.pid_path,
                grace_seconds=settings.pipeline.kill_grace_seconds,
            )
            run = repository.latest_run(processing.item_id)
            if run is not None and run.status is RunStatus.RUNNING:
                repository.finish_run(
                    run.run_id,
                    RunFinish(
                        status=RunStatus.FAILED,
                        error=CANCEL_MESSAGE,
                        error_class=ErrorClass.CANCELLED,
                    ),
                )
            _snapshot(settings, repository).write()
        lines = [f"Cancelled: {_item_label(processing)}"]
        if signalled:
            lines.append("Pipeline process group terminated.")
        return lines

    def clear_queue(self, command: QueueCommand) -> list[str]:
        settings = _settings(command.db_path)
        with _repository(settings) as repository:
            removed = repository.clear_queue()
            _snapshot(settings, repository).write()
        return [f"Cleared {removed} queued item(s)."]

    def clear_history(self, command: QueueCommand) -> list[str]:
        settings = _settings(command.db_path)
        with _repository(settings) as repository:
            removed = repository.clear_history()
            _snapshot(settings, repository).write()
        return [f"Cleared {removed} completed/failed item(s)."]

    def check_prs(self, command: QueueCommand) -> list[str]:
        settings = _settings(command.db_path)
        with _repository(settings) as repository:
            summary = check_pull_requests(repository=repository, checker=GhCliMergeChecker())
            _snapshot(settings, repository).write()
        return [
            "PR check: "
            f"checked={summary.checked} merged={summary.merged} "
            f"closed={summary.closed} errors={summary.errors}",
        ]

    def status(self, command: QueueCommand) -> list[str]:
        """Queue health overview; also refreshes the snapshot."""

        settings = _settings(command.db_path)
        with _repository(settings) as repository:
            snapshot = _snapshot(settings, repository)
            view = snapshot.build()
            snapshot.write()

        stats = view["stats"]
        counts = " ".join(
            f"{status}={count}" for status, count in stats["counts_by_status"].items()
        )
        average = stats["average_duration_ms"]
        lines = [
            f"Items: {counts}",
            f"Runs: total={stats['total_runs']} "
            f"avg_duration_ms={average if average is not None else '-'}",
        ]
        processing = view["processing"]
        if processing is not None:
            lines.append(
                f"Processing: {processing['repo']}#{processing['ticket_number']} "
                f"{processing['title']} since {processing['started_at']}",
            )
        else:
            lines.append("Processing: -")
        lines.append(f"Queue: {len(view['queue'])}")
        for position, entry in enumerate(view["queue"], start=1):
            lines.append(
                f"  {position}. {entry['repo']}#{entry['ticket_number']} "
                f"priority={entry['priority']} pipeline={entry['pipeline_type'] or '-'} "
                f"{entry['title']}",
            )
        lines.append(f"Snapshot: {snapshot.path}")
        return lines

    def list_items(self, command: ListItemsCommand) -> list[str]:
        settings = _settings(command.db_path)
        status_filter = _parse_status(command.status)
        with _repository(settings) as repository:
            items = repository.list_items(status=status_filter, limit=command.limit)

        lines = [f"Items: {len(items)}"]
        lines.extend(f"  {_item_line(item)}" for item in items)
        return lines

    def runs(self, command: ItemCommand) -> list[str]:
        settings = _settings(command.db_path)
        with _repository(settings) as repository:
            item = _resolve_item(repository, ticket=command.ticket, repo=command.repo)
            runs = repository.list_runs(item.item_id)
            artifacts = {run.run_id: repository.list_artifacts(run.run_id) for run in runs}

        lines = [_item_line(item), f"Runs: {len(runs)}"]
        for run in runs:
            lines.append(
                f"  #{run.attempt} status={run.status.value} "
                f"pipeline={run.pipeline_type or '-'} model={run.model or '-'} "
                f"exit_code={run.exit_code if run.exit_code is not None else '-'} "
                f"duration_ms={run.duration_ms if run.duration_ms is not None else '-'} "
                f"error_class={run.error_class.value if run.error_class else '-'}",
            )
            if run.error:
                lines.append(f"    error: {run.error}")
            for artifact in artifacts[run.run_id]:
                lines.append(
                    f"    {artifact.category.value}: {artifact.filename} "
                    f"({artifact.size_bytes} bytes)",
                )
        return lines


def _settings(db_path: Path | None) -> Settings:
    settings = Settings.from_env(db_path=db_path)
    settings.validate()
    return settings


@contextmanager
def _repository(settings: Settings) -> Iterator[WorkItemRepository]:
    repository = WorkItemRepository(
        settings.resolved_db_path,
        sqlite_busy_timeout_ms=settings.sqlite_busy_timeout_ms,
        requeue_to_back=settings.scheduler.requeue_to_back,
    )
    repository.init_schema()
    try:
        yield repository
    finally:
        repository.close()


@contextmanager
def _scheduler(settings: Settings, repository: WorkItemRepository) -> Iterator[Scheduler]:
    config: RoutingConfig = load_routing_config(settings.resolved_routing_config_path)
    artifacts_root = settings.resolved_artifacts_dir
    with ProcessingEngine(config=config, artifacts_root=artifacts_root) as engine:
        yield Scheduler(
            repository=repository,
            config=config,
            engine=engine,
            executor=PipelineExecutor(
                config=config,
                artifacts_root=artifacts_root,
                pid_file=settings.pid_path,
                kill_grace_seconds=settings.pipeline.kill_grace_seconds,
            ),
            collector=ArtifactCollector(repository=repository, artifacts_root=artifacts_root),
            snapshot=_snapshot(settings, repository),
            lock=WorkerLock(settings.lock_path),
            merge_checker=GhCliMergeChecker(),
            stale_after_seconds=settings.scheduler.stale_after_seconds,
            max_auto_retries=settings.scheduler.max_auto_retries,
            merge_check_every=settings.scheduler.merge_check_every,
        )


def _snapshot(settings: Settings, repository: WorkItemRepository) -> SnapshotGenerator:
    return SnapshotGenerator(
        repository=repository,
        path=settings.resolved_snapshot_path,
        recent_limit=settings.snapshot.recent_limit,
    )


def _repo(settings: Settings, repo: str | None) -> str:
    resolved = (repo or settings.ingestion.default_repo).strip()
    if not resolved:
        raise ValueError("Pass --repo or set ISSUE_QUEUE_DEFAULT_REPO.")
    return resolved


def _resolve_item(
    repository: WorkItemRepository,
    *,
    ticket: int,
    repo: str | None,
) -> WorkItemView:
    items = repository.find_items(ticket, repo=repo)
    if not items:
        suffix = f" in {repo}" if repo else ""
        raise StoreError(f"No item for ticket #{ticket}{suffix}.")
    if len(items) > 1:
        repos = ", ".join(item.repo for item in items)
        raise StoreError(
            f"Ticket #{ticket} is tracked in several repositories ({repos}); pass --repo.",
        )
    return items[0]


def _parse_status(value: str | None) -> WorkItemStatus | None:
    if value is None:
        return None
    normalized = value.strip().lower()
    try:
        return WorkItemStatus(normalized)
    except ValueError as error:
        allowed = ", ".join(status.value for status in WorkItemStatus)
        raise ValueError(f"Unsupported status {value!r}. Use one of: {allowed}.") from error


def _item_label(item: WorkItemView) -> str:
    return f"{item.repo}#{item.ticket_number}"


def _item_line(item: WorkItemView) -> str:
    line = (
        f"{_item_label(item)} status={item.status.value} priority={item.priority.value} "
        f"pipeline={item.pipeline_type or '-'} retries={item.retry_count} {item.title}"
    )
    if item.external_ref:
        line += f" ref={item.external_ref}"
    if item.error:
        line += f" error_class={item.error_class.value if item.error_class else '-'}"
    return line
