"""Scheduler cycle and watch loop driving one work item at a time."""

from __future__ import annotations

import logging
import signal
import time
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime
from enum import Enum

from issue_queue.orchestrator.artifacts import ArtifactCollector
from issue_queue.orchestrator.engine import ProcessingEngine
from issue_queue.orchestrator.locking import LockContentionError, WorkerLock
from issue_queue.orchestrator.models import (
    EngineResult,
    ErrorClass,
    PipelineResult,
    RunFinish,
    RunStatus,
    WorkItemStatus,
    WorkItemView,
)
from issue_queue.orchestrator.outcome import (
    AUTO_RETRY_SUFFIX,
    OutcomeAction,
    OutcomeDecision,
    apply_outcome,
    decide_outcome,
)
from issue_queue.orchestrator.pipeline import PipelineExecutor
from issue_queue.orchestrator.repository import WorkItemRepository
from issue_queue.orchestrator.routing import RoutingConfig, route
from issue_queue.orchestrator.snapshot import SnapshotGenerator
from issue_queue.orchestrator.tickets import MergeChecker, MergeCheckSummary, check_pull_requests
from issue_queue.storage.common import utc_now

logger = logging.getLogger(__name__)


class CycleOutcome(str, Enum):
    LOCKED = "locked"
    BUSY = "busy"
    IDLE = "idle"
    PROCESSED = "processed"


@dataclass(slots=True)
class CycleResult:
    """What one scheduler cycle did."""

    outcome: CycleOutcome
    item: WorkItemView | None = None
    decision: OutcomeDecision | None = None
    recovered: WorkItemView | None = None


@dataclass(slots=True)
class WatchSummary:
    """Aggregate watch-loop counters for CLI reporting."""

    ticks: int = 0
    cycles: int = 0
    processed: int = 0
    errors: int = 0
    merge_checks: int = 0


class Scheduler:
    """Runs the lock, recover, dequeue, process and record sequence."""

    def __init__(  # noqa: PLR0913
        self,
        *,
        repository: WorkItemRepository,
        config: RoutingConfig,
        engine: ProcessingEngine,
        executor: PipelineExecutor,
        collector: ArtifactCollector,
        snapshot: SnapshotGenerator,
        lock: WorkerLock,
        merge_checker: MergeChecker | None = None,
        stale_after_seconds: int = 1800,
        max_auto_retries: int = 1,
        merge_check_every: int = 10,
    ) -> None:
        self.repository = repository
        self.config = config
        self.engine = engine
        self.executor = executor
        self.collector = collector
        self.snapshot = snapshot
        self.lock = lock
        self.merge_checker = merge_checker
        self.stale_after_seconds = stale_after_seconds
        self.max_auto_retries = max_auto_retries
        self.merge_check_every = merge_check_every
        self._stop_requested = False

    def run_cycle(self) -> CycleResult:
        """Process at most one queued item under the worker lock."""

        try:
            self.lock.acquire()
        except LockContentionError as error:
            logger.info("Another worker is already running (%s). Skipping.", error)
            return CycleResult(outcome=CycleOutcome.LOCKED)
        try:
            return self._run_locked()
        finally:
            self.lock.release()

    def recover_stale(self, now: datetime | None = None) -> WorkItemView | None:
        """Fail a processing item whose worker has been gone too long."""

        processing = self.repository.get_processing()
        if processing is None or processing.started_at is None:
            return None
        age_seconds = ((now or utc_now()) - processing.started_at).total_seconds()
        if age_seconds < self.stale_after_seconds:
            return None

        message = f"Worker timeout/crash recovery (stale for {round(age_seconds / 60)} min)"
        if not self.repository.fail(processing.item_id, message, ErrorClass.INFRA):
            return None
        logger.warning(
            "Recovered stale item %d (%s#%d): %s",
            processing.item_id,
            processing.repo,
            processing.ticket_number,
            message,
        )
        run = self.repository.latest_run(processing.item_id)
        if run is None or run.status is not RunStatus.RUNNING:
            run = self.repository.start_run(
                processing.item_id,
                pipeline_type=processing.pipeline_type,
                started_at=processing.started_at,
            )
        self.repository.finish_run(
            run.run_id,
            RunFinish(status=RunStatus.FAILED, error=message, error_class=ErrorClass.INFRA),
        )
        self.snapshot.write()
        return self.repository.get_item(processing.item_id)

    def check_merges(self) -> MergeCheckSummary | None:
        if self.merge_checker is None:
            return None
        summary = check_pull_requests(repository=self.repository, checker=self.merge_checker)
        if summary.merged or summary.closed:
            self.snapshot.write()
        return summary

    def watch(
        self,
        *,
        interval_seconds: float = 30.0,
        max_cycles: int | None = None,
    ) -> WatchSummary:
        """Run cycles every ``interval_seconds`` until stopped.

        After a cycle that processed an item the next one starts immediately
        while items remain queued. A failing cycle is logged and the loop
        carries on at the next tick. ``max_cycles`` bounds the run for tests
        and one-shot drains.
        """

        summary = WatchSummary()
        logger.info("Watching queue (checking every %ss)", interval_seconds)
        with self._signal_handlers():
            while not self._stop_requested:
                summary.ticks += 1
                if self._merge_check_due(summary.ticks):
                    summary.merge_checks += 1
                    try:
                        self.check_merges()
                    except Exception:  # noqa: BLE001
                        logger.exception("Merge check failed")

                while not self._stop_requested and not _limit_reached(summary, max_cycles):
                    try:
                        result = self.run_cycle()
                    except Exception:  # noqa: BLE001
                        summary.cycles += 1
                        summary.errors += 1
                        logger.exception("Scheduler cycle failed")
                        break
                    summary.cycles += 1
                    if result.outcome is not CycleOutcome.PROCESSED:
                        break
                    summary.processed += 1
                    if not self._more_work_ready():
                        break

                if _limit_reached(summary, max_cycles):
                    break
                self._sleep_with_stop(interval_seconds)
        logger.info(
            "Watch stopped: cycles=%d processed=%d errors=%d",
            summary.cycles,
            summary.processed,
            summary.errors,
        )
        return summary

    def request_stop(self) -> None:
        self._stop_requested = True

    def _run_locked(self) -> CycleResult:
        recovered = self.recover_stale()
        if self.repository.get_processing() is not None:
            logger.info("Already processing an item")
            return CycleResult(outcome=CycleOutcome.BUSY, recovered=recovered)

        item = self.repository.dequeue_next()
        if item is None:
            logger.info("Queue is empty")
            return CycleResult(outcome=CycleOutcome.IDLE, recovered=recovered)
        self.snapshot.write()

        pipeline_type = route(item.labels, self.config)
        pipeline = self.config.pipeline(pipeline_type)
        self.repository.assign_pipeline(item.item_id, pipeline_type)
        run = self.repository.start_run(
            item.item_id,
            pipeline_type=pipeline_type,
            model=pipeline.model,
            started_at=item.started_at,
        )
        logger.info(
            "Started processing item %d [%s]: %s",
            item.item_id,
            pipeline_type,
            item.title,
        )

        engine_result = self.engine.generate(item, pipeline_type)
        pipeline_result: PipelineResult | None = None
        if engine_result.success and self._still_processing(item.item_id):
            pipeline_result = self.executor.run(pipeline_type, item, engine_result.text)
        elif engine_result.success:
            logger.info("Item %d left processing during generation; pipeline skipped", item.item_id)
        else:
            logger.error("Generation failed for item %d: %s", item.item_id, engine_result.error)

        decision = decide_outcome(
            engine_result=engine_result,
            pipeline_result=pipeline_result,
            pipeline=pipeline,
            retry_count=item.retry_count,
            max_auto_retries=self.max_auto_retries,
        )
        applied = apply_outcome(self.repository, item, decision)
        self.repository.finish_run(
            run.run_id,
            self._run_finish(
                item=item,
                decision=decision,
                applied=applied,
                engine_result=engine_result,
                pipeline_result=pipeline_result,
            ),
        )
        self.collector.collect(run.run_id, item)
        self.snapshot.write()

        current = self.repository.get_item(item.item_id)
        logger.info(
            "Item %d finished: %s",
            item.item_id,
            current.status.value if current is not None else decision.action.value,
        )
        return CycleResult(
            outcome=CycleOutcome.PROCESSED,
            item=current,
            decision=decision,
            recovered=recovered,
        )

    def _run_finish(  # noqa: PLR0913
        self,
        *,
        item: WorkItemView,
        decision: OutcomeDecision,
        applied: bool,
        engine_result: EngineResult,
        pipeline_result: PipelineResult | None,
    ) -> RunFinish:
        solution = engine_result.text if engine_result.success else None
        exit_code = pipeline_result.exit_code if pipeline_result is not None else None
        if not applied:
            # Item left processing underneath us, e.g. a user cancel.
            current = self.repository.get_item(item.item_id)
            return RunFinish(
                status=RunStatus.FAILED,
                solution=solution,
                error=current.error if current is not None else decision.message,
                error_class=current.error_class if current is not None else decision.error_class,
                exit_code=exit_code,
                model=engine_result.model,
            )
        error = decision.message
        if decision.action is OutcomeAction.REQUEUE and error is not None:
            error += AUTO_RETRY_SUFFIX
        return RunFinish(
            status=decision.run_status,
            solution=solution,
            error=error,
            error_class=decision.error_class,
            exit_code=exit_code,
            model=engine_result.model,
        )

    def _merge_check_due(self, tick: int) -> bool:
        if self.merge_checker is None or self.merge_check_every <= 0:
            return False
        return tick % self.merge_check_every == 0

    def _still_processing(self, item_id: int) -> bool:
        current = self.repository.get_item(item_id)
        return current is not None and current.status is WorkItemStatus.PROCESSING

    def _more_work_ready(self) -> bool:
        return bool(self.repository.list_queued()) and self.repository.get_processing() is None

    def _sleep_with_stop(self, seconds: float) -> None:
        deadline = time.monotonic() + seconds
        while not self._stop_requested and time.monotonic() < deadline:
            time.sleep(min(0.1, max(0.0, deadline - time.monotonic())))

    @contextmanager
    def _signal_handlers(self) -> Iterator[None]:
        original_sigint = signal.getsignal(signal.SIGINT)
        original_sigterm = signal.getsignal(signal.SIGTERM)

        def _handler(signum: int, _: object | None) -> None:
            logger.info(
                "Received %s; stopping after the current cycle",
                signal.Signals(signum).name,
            )
            self.request_stop()

        try:
            signal.signal(signal.SIGINT, _handler)
            signal.signal(signal.SIGTERM, _handler)
            installed = True
        except ValueError:
            # Signal handlers can only be installed in main thread.
            installed = False
        try:
            yield
        finally:
            if installed:
                signal.signal(signal.SIGINT, original_sigint)
                signal.signal(signal.SIGTERM, original_sigterm)


def _limit_reached(summary: WatchSummary, max_cycles: int | None) -> bool:
    return max_cycles is not None and summary.cycles >= max_cycles
