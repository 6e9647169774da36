"""Map generation and pipeline results to the next work-item state."""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from enum import Enum

from issue_queue.orchestrator.models import (
    EngineResult,
    ErrorClass,
    PipelineResult,
    RunStatus,
    StoreError,
    WorkItemStatus,
    WorkItemView,
)
from issue_queue.orchestrator.pipeline import STDOUT_LOG
from issue_queue.orchestrator.repository import WorkItemRepository
from issue_queue.orchestrator.routing import PipelineConfig

logger = logging.getLogger(__name__)

REFERENCE_URL_RE = re.compile(
    r"https://[^\s/]+/[^\s/]+/[^\s/]+/(?:pull|merge_requests)/\d+",
)
AUTO_RETRY_SUFFIX = " [auto-retrying]"


class OutcomeAction(str, Enum):
    COMPLETE = "complete"
    PR_OPEN = "pr_open"
    NEEDS_INPUT = "needs_input"
    FAIL = "fail"
    REQUEUE = "requeue"


@dataclass(slots=True)
class OutcomeDecision:
    """What to do with a processed item."""

    action: OutcomeAction
    error_class: ErrorClass | None = None
    message: str | None = None
    reference_url: str | None = None

    @property
    def run_status(self) -> RunStatus:
        return _RUN_STATUS[self.action]


_RUN_STATUS = {
    OutcomeAction.COMPLETE: RunStatus.COMPLETED,
    OutcomeAction.PR_OPEN: RunStatus.PR_OPEN,
    OutcomeAction.NEEDS_INPUT: RunStatus.NEEDS_INPUT,
    OutcomeAction.FAIL: RunStatus.FAILED,
    OutcomeAction.REQUEUE: RunStatus.RETRYING,
}


def find_reference_url(text: str) -> str | None:
    """First change-proposal URL in ``text``."""

    match = REFERENCE_URL_RE.search(text or "")
    return match.group(0) if match else None


def decide_outcome(
    *,
    engine_result: EngineResult,
    pipeline_result: PipelineResult | None,
    pipeline: PipelineConfig,
    retry_count: int,
    max_auto_retries: int = 1,
) -> OutcomeDecision:
    """Pure decision table; the store is only touched by ``apply_outcome``."""

    if not engine_result.success:
        return OutcomeDecision(
            action=OutcomeAction.FAIL,
            error_class=ErrorClass.INFRA,
            message=engine_result.error or "Generation failed",
        )
    if pipeline_result is None or not pipeline_result.executed:
        return OutcomeDecision(action=OutcomeAction.COMPLETE)

    if not pipeline_result.success:
        error_class = pipeline_result.error_class or ErrorClass.UNKNOWN
        message = pipeline_result.error or (
            f"Pipeline failed (exit code: {pipeline_result.exit_code}, "
            f"class: {error_class.value}). Check {STDOUT_LOG}"
        )
        if error_class is ErrorClass.INFRA and retry_count < max_auto_retries:
            return OutcomeDecision(
                action=OutcomeAction.REQUEUE,
                error_class=error_class,
                message=message,
            )
        if error_class in {ErrorClass.BUILD, ErrorClass.AGENT}:
            reference_url = find_reference_url(pipeline_result.stdout)
            if reference_url is not None:
                return OutcomeDecision(
                    action=OutcomeAction.NEEDS_INPUT,
                    error_class=error_class,
                    message=message,
                    reference_url=reference_url,
                )
        return OutcomeDecision(action=OutcomeAction.FAIL, error_class=error_class, message=message)

    if pipeline.produces_reference:
        reference_url = find_reference_url(pipeline_result.stdout)
        if reference_url is not None:
            return OutcomeDecision(action=OutcomeAction.PR_OPEN, reference_url=reference_url)
    return OutcomeDecision(action=OutcomeAction.COMPLETE)


def apply_outcome(
    repository: WorkItemRepository,
    item: WorkItemView,
    decision: OutcomeDecision,
) -> bool:
    """Write the decision to the store; False when the item left processing meanwhile."""

    item_id = item.item_id
    if decision.action is OutcomeAction.COMPLETE:
        return repository.complete(item_id)
    if decision.action is OutcomeAction.PR_OPEN:
        return repository.mark_pr_open(item_id, decision.reference_url or "")
    if decision.action is OutcomeAction.NEEDS_INPUT:
        return repository.mark_needs_input(
            item_id,
            decision.message or "",
            decision.error_class or ErrorClass.UNKNOWN,
            decision.reference_url,
        )
    if decision.action is OutcomeAction.FAIL:
        return repository.fail(
            item_id,
            decision.message or "",
            decision.error_class or ErrorClass.UNKNOWN,
        )
    try:
        repository.requeue(
            item_id,
            error=(decision.message or "") + AUTO_RETRY_SUFFIX,
            error_class=decision.error_class,
            expected_status=WorkItemStatus.PROCESSING,
        )
    except StoreError as error:
        logger.warning("Automatic retry of item %d skipped: %s", item_id, error)
        return False
    logger.info("Auto-retrying item %d after %s", item_id, decision.message)
    return True
