"""Ticket source and change-proposal merge checker collaborators."""

from __future__ import annotations

import json
import logging
import subprocess
from collections.abc import Callable, Sequence
from dataclasses import dataclass, field
from typing import Any, Protocol

from issue_queue.orchestrator.models import (
    ErrorClass,
    WorkItemCreate,
    WorkItemStatus,
)
from issue_queue.orchestrator.repository import WorkItemRepository
from issue_queue.orchestrator.routing import (
    RoutingConfig,
    normalize_labels,
    priority_from_labels,
    route,
)

logger = logging.getLogger(__name__)

GH_TIMEOUT_SECONDS = 30
_ISSUE_FIELDS = "number,title,body,labels,url,createdAt"

Runner = Callable[[Sequence[str]], "subprocess.CompletedProcess[str]"]


class TicketSourceError(RuntimeError):
    """External ticket system could not be queried."""


@dataclass(slots=True)
class Ticket:
    number: int
    repo: str
    title: str
    body: str = ""
    labels: list[str] = field(default_factory=list)
    url: str | None = None


class TicketSource(Protocol):
    """Protocol implemented by ticket systems."""

    def list_open(self) -> list[Ticket]:
        """Open tickets eligible for the queue."""

    def get(self, number: int) -> Ticket:
        """One ticket by number."""


class MergeChecker(Protocol):
    """Protocol implemented by change-proposal hosts."""

    def pr_state(self, repo: str, url: str) -> str:
        """``OPEN``, ``MERGED`` or ``CLOSED``."""


def _run_gh(args: Sequence[str]) -> subprocess.CompletedProcess[str]:
    return subprocess.run(  # noqa: S603
        ["gh", *args],  # noqa: S607
        capture_output=True,
        text=True,
        timeout=GH_TIMEOUT_SECONDS,
        check=False,
    )


def _gh_json(runner: Runner, args: Sequence[str]) -> Any:
    try:
        completed = runner(args)
    except (OSError, subprocess.TimeoutExpired) as error:
        raise TicketSourceError(f"gh {' '.join(args[:2])} failed: {error}") from error
    if completed.returncode != 0:
        raise TicketSourceError(
            f"gh {' '.join(args[:2])} exited {completed.returncode}: "
            f"{completed.stderr.strip() or completed.stdout.strip()}",
        )
    try:
        return json.loads(completed.stdout or "null")
    except json.JSONDecodeError as error:
        raise TicketSourceError(f"gh {' '.join(args[:2])} returned malformed JSON") from error


class GhCliTicketSource:
    """Reads issues through the ``gh`` command-line client."""

    def __init__(self, *, repo: str, limit: int = 50, runner: Runner = _run_gh) -> None:
        if not repo:
            raise TicketSourceError("A repository (owner/name) is required to read tickets.")
        self.repo = repo
        self.limit = limit
        self._runner = runner

    def list_open(self) -> list[Ticket]:
        payload = _gh_json(
            self._runner,
            [
                "issue",
                "list",
                "--repo",
                self.repo,
                "--state",
                "open",
                "--json",
                _ISSUE_FIELDS,
                "--limit",
                str(self.limit),
            ],
        )
        if not isinstance(payload, list):
            raise TicketSourceError("gh issue list did not return a list")
        return [self._to_ticket(entry) for entry in payload if isinstance(entry, dict)]

    def get(self, number: int) -> Ticket:
        payload = _gh_json(
            self._runner,
            ["issue", "view", str(number), "--repo", self.repo, "--json", _ISSUE_FIELDS],
        )
        if not isinstance(payload, dict):
            raise TicketSourceError(f"gh issue view {number} did not return an object")
        return self._to_ticket(payload)

    def _to_ticket(self, raw: dict[str, Any]) -> Ticket:
        number = int(raw["number"])
        return Ticket(
            number=number,
            repo=self.repo,
            title=str(raw.get("title") or f"Issue #{number}"),
            body=str(raw.get("body") or ""),
            labels=normalize_labels(raw.get("labels") or []),
            url=raw.get("url") or f"https://github.com/{self.repo}/issues/{number}",
        )


class GhCliMergeChecker:
    """Reads pull-request state through the ``gh`` command-line client."""

    def __init__(self, *, runner: Runner = _run_gh) -> None:
        self._runner = runner

    def pr_state(self, repo: str, url: str) -> str:
        payload = _gh_json(self._runner, ["pr", "view", url, "--repo", repo, "--json", "state"])
        if not isinstance(payload, dict) or not isinstance(payload.get("state"), str):
            raise TicketSourceError(f"gh pr view {url} returned no state")
        return payload["state"].upper()


@dataclass(slots=True)
class IngestSummary:
    added: int = 0
    skipped: int = 0

    @property
    def total(self) -> int:
        return self.added + self.skipped


@dataclass(slots=True)
class MergeCheckSummary:
    checked: int = 0
    merged: int = 0
    closed: int = 0
    errors: int = 0


def ticket_to_create(ticket: Ticket, config: RoutingConfig) -> WorkItemCreate:
    return WorkItemCreate(
        repo=ticket.repo,
        ticket_number=ticket.number,
        title=ticket.title,
        body=ticket.body,
        labels=list(ticket.labels),
        priority=priority_from_labels(ticket.labels),
        pipeline_type=route(ticket.labels, config),
        url=ticket.url,
    )


def ingest(
    *,
    repository: WorkItemRepository,
    source: TicketSource,
    config: RoutingConfig,
) -> IngestSummary:
    """Enqueue every open ticket not yet tracked; ``(repo, number)`` is the dedup key."""

    summary = IngestSummary()
    for ticket in source.list_open():
        if repository.enqueue(ticket_to_create(ticket, config)):
            summary.added += 1
        else:
            summary.skipped += 1
    logger.info(
        "Loaded %d new ticket(s) (%d open, %d already tracked)",
        summary.added,
        summary.total,
        summary.skipped,
    )
    return summary


def check_pull_requests(
    *,
    repository: WorkItemRepository,
    checker: MergeChecker,
) -> MergeCheckSummary:
    """Move pr_open items to merged, or to failed when the proposal was closed."""

    summary = MergeCheckSummary()
    for item in repository.list_items(status=WorkItemStatus.PR_OPEN, limit=None):
        if not item.external_ref:
            continue
        summary.checked += 1
        try:
            state = checker.pr_state(item.repo, item.external_ref)
        except TicketSourceError as error:
            summary.errors += 1
            logger.warning("Failed to check %s: %s", item.external_ref, error)
            continue
        if state == "MERGED":
            if repository.mark_merged(item.item_id):
                summary.merged += 1
                logger.info("%s merged; item %d marked merged", item.external_ref, item.item_id)
        elif state == "CLOSED":
            if repository.fail(
                item.item_id,
                "PR was closed without merging",
                ErrorClass.REVIEW,
                from_status=WorkItemStatus.PR_OPEN,
            ):
                summary.closed += 1
                logger.info("%s closed; item %d marked failed", item.external_ref, item.item_id)
    return summary
