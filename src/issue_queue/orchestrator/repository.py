"""Persistent work-item store backed by SQLModel + SQLite."""

from __future__ import annotations

import json
import logging
from datetime import datetime
from pathlib import Path

from sqlalchemy import delete as sa_delete
from sqlalchemy import func
from sqlalchemy import update as sa_update
from sqlalchemy.exc import IntegrityError
from sqlmodel import Session, col, select

from issue_queue.orchestrator.models import (
    ArtifactCategory,
    ArtifactView,
    ArtifactWrite,
    ErrorClass,
    Priority,
    QueueState,
    RunFinish,
    RunStatus,
    RunView,
    StoreError,
    WorkItemCreate,
    WorkItemStatus,
    WorkItemView,
)
from issue_queue.orchestrator.routing import normalize_labels
from issue_queue.storage.alembic_runner import upgrade_head
from issue_queue.storage.common import (
    build_sqlite_engine,
    to_db_datetime,
    to_utc_aware_datetime,
    utc_now,
)
from issue_queue.storage.sqlmodel_models import Artifact, Run, WorkItem

logger = logging.getLogger(__name__)

_REQUEUE_SOURCES = (
    WorkItemStatus.FAILED,
    WorkItemStatus.NEEDS_INPUT,
    WorkItemStatus.PROCESSING,
)
_HISTORY_STATUSES = (WorkItemStatus.COMPLETED, WorkItemStatus.FAILED)


class WorkItemRepository:
    """Queue persistence facade; every state change is a conditional update."""

    def __init__(
        self,
        db_path: Path,
        *,
        sqlite_busy_timeout_ms: int = 5_000,
        requeue_to_back: bool = False,
    ) -> None:
        self.db_path = db_path
        self.requeue_to_back = requeue_to_back
        db_path.parent.mkdir(parents=True, exist_ok=True)
        self.engine = build_sqlite_engine(
            db_path=db_path,
            busy_timeout_ms=sqlite_busy_timeout_ms,
        )

    def close(self) -> None:
        """Close underlying DB resources."""

        self.engine.dispose()

    def init_schema(self) -> None:
        """Run schema migrations."""

        upgrade_head(self.db_path)

    # -- lifecycle -----------------------------------------------------------

    def enqueue(self, payload: WorkItemCreate) -> bool:
        """Insert a queued item; False when ``(repo, ticket_number)`` already exists."""

        now = to_db_datetime(utc_now())
        with Session(self.engine) as session:
            existing = session.exec(
                select(WorkItem.item_id).where(
                    WorkItem.repo == payload.repo,
                    WorkItem.ticket_number == payload.ticket_number,
                ),
            ).first()
            if existing is not None:
                return False
            session.add(
                WorkItem(
                    repo=payload.repo,
                    ticket_number=payload.ticket_number,
                    title=payload.title,
                    body=payload.body or "",
                    labels_json=json.dumps(normalize_labels(payload.labels), ensure_ascii=False),
                    priority=payload.priority.value,
                    priority_rank=payload.priority.rank,
                    pipeline_type=payload.pipeline_type,
                    status=WorkItemStatus.QUEUED.value,
                    url=payload.url,
                    created_at=now,
                    queued_at=now,
                    updated_at=now,
                ),
            )
            try:
                session.commit()
            except IntegrityError:
                session.rollback()
                return False
        logger.info("Enqueued %s#%d", payload.repo, payload.ticket_number)
        return True

    def dequeue_next(self) -> WorkItemView | None:
        """Select the next queued item and mark it processing in one transaction.

        Returns None when nothing is queued or another item already holds the
        processing slot.
        """

        now = to_db_datetime(utc_now())
        with Session(self.engine) as session:
            busy = session.exec(
                select(WorkItem.item_id).where(
                    WorkItem.status == WorkItemStatus.PROCESSING.value,
                ),
            ).first()
            if busy is not None:
                return None

            candidate = session.exec(
                _dequeue_order(
                    select(WorkItem).where(WorkItem.status == WorkItemStatus.QUEUED.value),
                ).limit(1),
            ).first()
            if candidate is None:
                return None

            try:
                result = session.exec(
                    sa_update(WorkItem)
                    .where(
                        col(WorkItem.item_id) == candidate.item_id,
                        col(WorkItem.status) == WorkItemStatus.QUEUED.value,
                    )
                    .values(
                        status=WorkItemStatus.PROCESSING.value,
                        started_at=now,
                        completed_at=None,
                        updated_at=now,
                    ),
                )
            except IntegrityError:
                session.rollback()
                return None
            if result.rowcount != 1:
                session.rollback()
                return None
            session.commit()
            session.refresh(candidate)
            return _to_item_view(candidate)

    def get_processing(self) -> WorkItemView | None:
        with Session(self.engine) as session:
            return _processing_item(session)

    def assign_pipeline(self, item_id: int, pipeline_type: str) -> None:
        """Record the pipeline resolved for an item at processing time."""

        with Session(self.engine) as session:
            session.exec(
                sa_update(WorkItem)
                .where(col(WorkItem.item_id) == item_id)
                .values(pipeline_type=pipeline_type),
            )
            session.commit()

    def fail(
        self,
        item_id: int,
        error: str,
        error_class: ErrorClass,
        *,
        from_status: WorkItemStatus = WorkItemStatus.PROCESSING,
    ) -> bool:
        """Mark an item failed."""

        now = to_db_datetime(utc_now())
        return self._transition(
            item_id,
            from_status=from_status,
            to_status=WorkItemStatus.FAILED,
            values={
                "error": error,
                "error_class": error_class.value,
                "completed_at": now,
                "updated_at": now,
            },
        )

    def complete(self, item_id: int) -> bool:
        now = to_db_datetime(utc_now())
        return self._transition(
            item_id,
            from_status=WorkItemStatus.PROCESSING,
            to_status=WorkItemStatus.COMPLETED,
            values={
                "error": None,
                "error_class": None,
                "completed_at": now,
                "updated_at": now,
            },
        )

    def mark_pr_open(self, item_id: int, url: str) -> bool:
        now = to_db_datetime(utc_now())
        return self._transition(
            item_id,
            from_status=WorkItemStatus.PROCESSING,
            to_status=WorkItemStatus.PR_OPEN,
            values={
                "external_ref": url,
                "error": None,
                "error_class": None,
                "completed_at": now,
                "updated_at": now,
            },
        )

    def mark_needs_input(
        self,
        item_id: int,
        error: str,
        error_class: ErrorClass,
        url: str | None,
    ) -> bool:
        """Park an item whose draft change proposal needs a human."""

        now = to_db_datetime(utc_now())
        return self._transition(
            item_id,
            from_status=WorkItemStatus.PROCESSING,
            to_status=WorkItemStatus.NEEDS_INPUT,
            values={
                "external_ref": url,
                "error": error,
                "error_class": error_class.value,
                "completed_at": now,
                "updated_at": now,
            },
        )

    def mark_merged(self, item_id: int) -> bool:
        return self._transition(
            item_id,
            from_status=WorkItemStatus.PR_OPEN,
            to_status=WorkItemStatus.MERGED,
            values={"updated_at": to_db_datetime(utc_now())},
        )

    def requeue(
        self,
        item_id: int,
        *,
        error: str | None = None,
        error_class: ErrorClass | None = None,
        expected_status: WorkItemStatus | None = None,
    ) -> WorkItemView:
        """Move a failed, needs-input or processing item back to the queue.

        ``retry_count`` is incremented. The error fields are overwritten with
        the given values, so an explicit retry clears them and an automatic
        retry keeps the cause visible. ``expected_status`` narrows the
        accepted source state.
        """

        now = to_db_datetime(utc_now())
        with Session(self.engine) as session:
            row = self._get_row(session=session, item_id=item_id)
            previous = WorkItemStatus(row.status)
            if previous not in _REQUEUE_SOURCES or (
                expected_status is not None and previous is not expected_status
            ):
                raise StoreError(
                    f"Item {item_id} cannot be requeued from status={previous.value}.",
                )
            values: dict[str, object] = {
                "status": WorkItemStatus.QUEUED.value,
                "retry_count": row.retry_count + 1,
                "started_at": None,
                "completed_at": None,
                "error": error,
                "error_class": error_class.value if error_class is not None else None,
                "updated_at": now,
            }
            if self.requeue_to_back:
                values["queued_at"] = now
            result = session.exec(
                sa_update(WorkItem)
                .where(
                    col(WorkItem.item_id) == item_id,
                    col(WorkItem.status) == previous.value,
                )
                .values(**values),
            )
            if result.rowcount != 1:
                session.rollback()
                raise StoreError(
                    "Item state changed concurrently while requeueing; "
                    f"please retry command (item_id={item_id}).",
                )
            session.commit()
            session.refresh(row)
            view = _to_item_view(row)
        logger.info(
            "Requeued item %d from %s (retry_count=%d)",
            item_id,
            previous.value,
            view.retry_count,
        )
        return view

    def remove(self, item_id: int) -> None:
        """Delete an item with its runs and artifacts."""

        with Session(self.engine) as session:
            row = self._get_row(session=session, item_id=item_id)
            if row.status == WorkItemStatus.PROCESSING.value:
                raise StoreError(f"Item {item_id} is processing; cancel it first.")
            result = session.exec(
                sa_delete(WorkItem).where(
                    col(WorkItem.item_id) == item_id,
                    col(WorkItem.status) != WorkItemStatus.PROCESSING.value,
                ),
            )
            if result.rowcount != 1:
                session.rollback()
                raise StoreError(
                    "Item state changed concurrently while removing; "
                    f"please retry command (item_id={item_id}).",
                )
            session.commit()

    def clear_queue(self) -> int:
        """Delete every queued item."""

        return self._delete_by_status((WorkItemStatus.QUEUED,))

    def clear_history(self) -> int:
        """Delete completed and failed items."""

        return self._delete_by_status(_HISTORY_STATUSES)

    # -- reads ---------------------------------------------------------------

    def get_item(self, item_id: int) -> WorkItemView | None:
        with Session(self.engine) as session:
            row = session.get(WorkItem, item_id)
        return _to_item_view(row) if row is not None else None

    def find_items(self, ticket_number: int, repo: str | None = None) -> list[WorkItemView]:
        """Items for a ticket number, optionally narrowed to one repository."""

        with Session(self.engine) as session:
            statement = select(WorkItem).where(WorkItem.ticket_number == ticket_number)
            if repo is not None:
                statement = statement.where(WorkItem.repo == repo)
            rows = session.exec(statement.order_by(col(WorkItem.item_id).asc())).all()
        return [_to_item_view(row) for row in rows]

    def list_items(
        self,
        *,
        status: WorkItemStatus | None = None,
        limit: int | None = 50,
    ) -> list[WorkItemView]:
        """List recently updated items, optionally filtered by status."""

        with Session(self.engine) as session:
            return _recent_items(session, status=status, limit=limit)

    def list_queued(self) -> list[WorkItemView]:
        """Queued items in dequeue order."""

        with Session(self.engine) as session:
            return _queued_items(session)

    def retry_count(self, item_id: int) -> int:
        with Session(self.engine) as session:
            row = self._get_row(session=session, item_id=item_id)
            return row.retry_count

    # -- runs and artifacts --------------------------------------------------

    def start_run(
        self,
        item_id: int,
        *,
        pipeline_type: str | None,
        model: str | None = None,
        started_at: datetime | None = None,
    ) -> RunView:
        """Open a run row for the next attempt of an item."""

        with Session(self.engine) as session:
            previous_attempts = session.exec(
                select(func.count()).select_from(Run).where(Run.item_id == item_id),
            ).one()
            row = Run(
                item_id=item_id,
                attempt=int(previous_attempts) + 1,
                pipeline_type=pipeline_type,
                model=model,
                status=RunStatus.RUNNING.value,
                started_at=to_db_datetime(started_at or utc_now()),
            )
            session.add(row)
            session.commit()
            session.refresh(row)
            return _to_run_view(row)

    def finish_run(self, run_id: int, finish: RunFinish) -> bool:
        """Close a running attempt; False when it was already closed."""

        now = utc_now()
        with Session(self.engine) as session:
            row = session.get(Run, run_id)
            if row is None:
                raise StoreError(f"Run not found: {run_id}")
            started_at = to_utc_aware_datetime(row.started_at)
            duration_ms = max(0, int((now - started_at).total_seconds() * 1000))
            values: dict[str, object] = {
                "status": finish.status.value,
                "completed_at": to_db_datetime(now),
                "duration_ms": duration_ms,
                "solution": finish.solution,
                "error": finish.error,
                "error_class": finish.error_class.value if finish.error_class else None,
                "exit_code": finish.exit_code,
            }
            if finish.model is not None:
                values["model"] = finish.model
            result = session.exec(
                sa_update(Run)
                .where(
                    col(Run.run_id) == run_id,
                    col(Run.status) == RunStatus.RUNNING.value,
                )
                .values(**values),
            )
            if result.rowcount != 1:
                session.rollback()
                return False
            session.commit()
            return True

    def add_artifact(self, run_id: int, artifact: ArtifactWrite) -> ArtifactView:
        """Persist artifact metadata."""

        with Session(self.engine) as session:
            row = Artifact(
                run_id=run_id,
                filename=artifact.filename,
                category=artifact.category.value,
                size_bytes=artifact.size_bytes,
                path=artifact.path,
                created_at=to_db_datetime(utc_now()),
            )
            session.add(row)
            session.commit()
            session.refresh(row)
            return _to_artifact_view(row)

    def list_runs(self, item_id: int) -> list[RunView]:
        with Session(self.engine) as session:
            rows = session.exec(
                select(Run).where(Run.item_id == item_id).order_by(col(Run.attempt).asc()),
            ).all()
        return [_to_run_view(row) for row in rows]

    def latest_run(self, item_id: int) -> RunView | None:
        with Session(self.engine) as session:
            row = session.exec(
                select(Run)
                .where(Run.item_id == item_id)
                .order_by(col(Run.attempt).desc())
                .limit(1),
            ).first()
        return _to_run_view(row) if row is not None else None

    def list_artifacts(self, run_id: int) -> list[ArtifactView]:
        with Session(self.engine) as session:
            rows = session.exec(
                select(Artifact)
                .where(Artifact.run_id == run_id)
                .order_by(col(Artifact.filename).asc()),
            ).all()
        return [_to_artifact_view(row) for row in rows]

    # -- aggregates ----------------------------------------------------------

    def status_counts(self) -> dict[str, int]:
        """Item count per status; every known status is present."""

        with Session(self.engine) as session:
            return _status_counts(session)

    def pipeline_counts(self) -> dict[str, int]:
        with Session(self.engine) as session:
            return _pipeline_counts(session)

    def average_duration_ms(self) -> int | None:
        """Mean duration of finished runs, None when no run has finished."""

        with Session(self.engine) as session:
            return _average_duration_ms(session)

    def total_runs(self) -> int:
        with Session(self.engine) as session:
            return _total_runs(session)

    def read_queue_state(
        self,
        *,
        recent_statuses: tuple[WorkItemStatus, ...],
        recent_limit: int = 50,
    ) -> QueueState:
        """Read every snapshot section inside one transaction.

        Each item appears in exactly one section, even while a worker moves
        items concurrently.
        """

        with Session(self.engine) as session, session.begin():
            return QueueState(
                queued=_queued_items(session),
                processing=_processing_item(session),
                recent={
                    status: _recent_items(session, status=status, limit=recent_limit)
                    for status in recent_statuses
                },
                status_counts=_status_counts(session),
                pipeline_counts=_pipeline_counts(session),
                average_duration_ms=_average_duration_ms(session),
                total_runs=_total_runs(session),
            )

    # -- internals -----------------------------------------------------------

    def _transition(
        self,
        item_id: int,
        *,
        from_status: WorkItemStatus,
        to_status: WorkItemStatus,
        values: dict[str, object],
    ) -> bool:
        with Session(self.engine) as session:
            result = session.exec(
                sa_update(WorkItem)
                .where(
                    col(WorkItem.item_id) == item_id,
                    col(WorkItem.status) == from_status.value,
                )
                .values(status=to_status.value, **values),
            )
            if result.rowcount != 1:
                session.rollback()
                logger.warning(
                    "Item %d is not %s; %s transition skipped",
                    item_id,
                    from_status.value,
                    to_status.value,
                )
                return False
            session.commit()
        logger.info("Item %d: %s -> %s", item_id, from_status.value, to_status.value)
        return True

    def _delete_by_status(self, statuses: tuple[WorkItemStatus, ...]) -> int:
        with Session(self.engine) as session:
            result = session.exec(
                sa_delete(WorkItem).where(
                    col(WorkItem.status).in_([status.value for status in statuses]),
                ),
            )
            session.commit()
            return int(result.rowcount or 0)

    def _get_row(self, *, session: Session, item_id: int) -> WorkItem:
        row = session.get(WorkItem, item_id)
        if row is None:
            raise StoreError(f"Item not found: {item_id}")
        return row


def _processing_item(session: Session) -> WorkItemView | None:
    row = session.exec(
        select(WorkItem).where(WorkItem.status == WorkItemStatus.PROCESSING.value),
    ).first()
    return _to_item_view(row) if row is not None else None


def _queued_items(session: Session) -> list[WorkItemView]:
    rows = session.exec(
        _dequeue_order(
            select(WorkItem).where(WorkItem.status == WorkItemStatus.QUEUED.value),
        ),
    ).all()
    return [_to_item_view(row) for row in rows]


def _recent_items(
    session: Session,
    *,
    status: WorkItemStatus | None,
    limit: int | None,
) -> list[WorkItemView]:
    statement = select(WorkItem)
    if status is not None:
        statement = statement.where(WorkItem.status == status.value)
    statement = statement.order_by(
        col(WorkItem.updated_at).desc(),
        col(WorkItem.item_id).desc(),
    )
    if limit is not None:
        statement = statement.limit(limit)
    return [_to_item_view(row) for row in session.exec(statement).all()]


def _status_counts(session: Session) -> dict[str, int]:
    counts = {status.value: 0 for status in WorkItemStatus}
    rows = session.exec(
        select(WorkItem.status, func.count()).group_by(WorkItem.status),
    ).all()
    for status, count in rows:
        counts[status] = int(count)
    return counts


def _pipeline_counts(session: Session) -> dict[str, int]:
    rows = session.exec(
        select(WorkItem.pipeline_type, func.count())
        .where(col(WorkItem.pipeline_type).is_not(None))
        .group_by(WorkItem.pipeline_type),
    ).all()
    return {str(pipeline): int(count) for pipeline, count in rows}


def _average_duration_ms(session: Session) -> int | None:
    value = session.exec(
        select(func.avg(Run.duration_ms)).where(col(Run.duration_ms).is_not(None)),
    ).one()
    return round(value) if value is not None else None


def _total_runs(session: Session) -> int:
    return int(session.exec(select(func.count()).select_from(Run)).one())


def _dequeue_order(statement):
    return statement.order_by(
        col(WorkItem.priority_rank).desc(),
        col(WorkItem.queued_at).asc(),
        col(WorkItem.item_id).asc(),
    )


def _optional_datetime(value: datetime | None) -> datetime | None:
    return to_utc_aware_datetime(value) if value is not None else None


def _parse_labels(raw: str) -> list[str]:
    parsed = json.loads(raw) if raw else []
    if not isinstance(parsed, list):
        return []
    return normalize_labels(parsed)


def _to_item_view(row: WorkItem) -> WorkItemView:
    return WorkItemView(
        item_id=row.item_id or 0,
        repo=row.repo,
        ticket_number=row.ticket_number,
        title=row.title,
        body=row.body,
        labels=_parse_labels(row.labels_json),
        priority=Priority(row.priority),
        pipeline_type=row.pipeline_type,
        status=WorkItemStatus(row.status),
        url=row.url,
        created_at=to_utc_aware_datetime(row.created_at),
        queued_at=to_utc_aware_datetime(row.queued_at),
        started_at=_optional_datetime(row.started_at),
        completed_at=_optional_datetime(row.completed_at),
        retry_count=row.retry_count,
        error=row.error,
        error_class=ErrorClass(row.error_class) if row.error_class is not None else None,
        external_ref=row.external_ref,
        updated_at=to_utc_aware_datetime(row.updated_at),
    )


def _to_run_view(row: Run) -> RunView:
    return RunView(
        run_id=row.run_id or 0,
        item_id=row.item_id,
        attempt=row.attempt,
        pipeline_type=row.pipeline_type,
        model=row.model,
        status=RunStatus(row.status),
        started_at=to_utc_aware_datetime(row.started_at),
        completed_at=_optional_datetime(row.completed_at),
        duration_ms=row.duration_ms,
        solution=row.solution,
        error=row.error,
        error_class=ErrorClass(row.error_class) if row.error_class is not None else None,
        exit_code=row.exit_code,
    )


def _to_artifact_view(row: Artifact) -> ArtifactView:
    return ArtifactView(
        artifact_id=row.artifact_id or 0,
        run_id=row.run_id,
        filename=row.filename,
        category=ArtifactCategory(row.category),
        size_bytes=row.size_bytes,
        path=row.path,
        created_at=to_utc_aware_datetime(row.created_at),
    )
