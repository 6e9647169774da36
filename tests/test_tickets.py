from __future__ import annotations

import json
import subprocess
from collections.abc import Sequence

import allure
import pytest

from issue_queue.orchestrator.models import ErrorClass, Priority, WorkItemStatus
from issue_queue.orchestrator.routing import builtin_routing_config
from issue_queue.orchestrator.tickets import (
    GhCliMergeChecker,
    GhCliTicketSource,
    Ticket,
    TicketSourceError,
    check_pull_requests,
    ingest,
)

pytestmark = [
    allure.epic("Work Queue"),
    allure.feature("Ticket Intake"),
]

ISSUES = [
    {
        "number": 11,
        "title": "Checkout flow is flaky",
        "body": "Steps...",
        "labels": [{"name": "e2e"}, {"name": "priority-high"}],
        "url": "https://github.com/acme/widgets/issues/11",
        "createdAt": "2026-10-01T10:00:00Z",
    },
    {
        "number": 12,
        "title": "Write release notes",
        "body": None,
        "labels": [{"name": "content"}],
        "url": "https://github.com/acme/widgets/issues/12",
        "createdAt": "2026-10-02T10:00:00Z",
    },
]


class _Runner:
    def __init__(self, *responses: subprocess.CompletedProcess[str]) -> None:
        self.responses = list(responses)
        self.calls: list[list[str]] = []

    def __call__(self, args: Sequence[str]) -> subprocess.CompletedProcess[str]:
        self.calls.append(list(args))
        return self.responses.pop(0)


def _ok(payload) -> subprocess.CompletedProcess[str]:
    return subprocess.CompletedProcess(["gh"], 0, stdout=json.dumps(payload), stderr="")


class _StaticSource:
    def __init__(self, tickets: list[Ticket]) -> None:
        self.tickets = tickets

    def list_open(self) -> list[Ticket]:
        return list(self.tickets)

    def get(self, number: int) -> Ticket:
        return next(ticket for ticket in self.tickets if ticket.number == number)


def test_gh_source_lists_open_issues_with_normalized_labels() -> None:
    runner = _Runner(_ok(ISSUES))
    source = GhCliTicketSource(repo="acme/widgets", limit=20, runner=runner)

    tickets = source.list_open()

    assert runner.calls[0][:4] == ["issue", "list", "--repo", "acme/widgets"]
    assert runner.calls[0][-2:] == ["--limit", "20"]
    assert [ticket.number for ticket in tickets] == [11, 12]
    assert tickets[0].labels == ["e2e", "priority-high"]
    assert tickets[1].body == ""
    assert tickets[1].repo == "acme/widgets"


def test_gh_source_get_one_issue() -> None:
    runner = _Runner(_ok(ISSUES[0]))

    ticket = GhCliTicketSource(repo="acme/widgets", runner=runner).get(11)

    assert runner.calls[0][:3] == ["issue", "view", "11"]
    assert ticket.title == "Checkout flow is flaky"


def test_gh_failures_raise_ticket_source_error() -> None:
    failed = subprocess.CompletedProcess(["gh"], 1, stdout="", stderr="HTTP 404: Not Found")
    garbage = subprocess.CompletedProcess(["gh"], 0, stdout="not json", stderr="")
    source = GhCliTicketSource(repo="acme/widgets", runner=_Runner(failed, garbage))

    with pytest.raises(TicketSourceError, match="HTTP 404"):
        source.get(99)
    with pytest.raises(TicketSourceError, match="malformed JSON"):
        source.list_open()


def test_gh_source_requires_repository() -> None:
    with pytest.raises(TicketSourceError, match="repository"):
        GhCliTicketSource(repo="")


def test_ingest_routes_and_deduplicates(repository) -> None:
    config = builtin_routing_config()
    source = GhCliTicketSource(repo="acme/widgets", runner=_Runner(_ok(ISSUES), _ok(ISSUES)))

    first = ingest(repository=repository, source=source, config=config)
    second = ingest(repository=repository, source=source, config=config)

    assert (first.added, first.skipped, first.total) == (2, 0, 2)
    assert (second.added, second.skipped) == (0, 2)
    queued = repository.list_queued()
    assert [item.ticket_number for item in queued] == [11, 12]
    assert queued[0].priority is Priority.HIGH
    assert queued[0].pipeline_type == "test"
    assert queued[1].pipeline_type == "generate"


def test_check_pull_requests_moves_merged_and_closed(repository, enqueue) -> None:
    refs = {
        1: "https://github.com/acme/widgets/pull/1",
        2: "https://github.com/acme/widgets/pull/2",
        3: "https://github.com/acme/widgets/pull/3",
        4: "https://github.com/acme/widgets/pull/4",
    }
    items = {ticket: enqueue(ticket) for ticket in refs}
    for ticket, ref in refs.items():
        repository.dequeue_next()
        repository.mark_pr_open(items[ticket].item_id, ref)
    runner = _Runner(
        _ok({"state": "MERGED"}),
        _ok({"state": "closed"}),
        _ok({"state": "OPEN"}),
        subprocess.CompletedProcess(["gh"], 1, stdout="", stderr="rate limited"),
    )

    summary = check_pull_requests(repository=repository, checker=GhCliMergeChecker(runner=runner))

    assert (summary.checked, summary.merged, summary.closed, summary.errors) == (4, 1, 1, 1)
    counts = repository.status_counts()
    assert (counts["merged"], counts["failed"], counts["pr_open"]) == (1, 1, 2)
    (failed,) = repository.list_items(status=WorkItemStatus.FAILED)
    assert failed.error == "PR was closed without merging"
    assert failed.error_class is ErrorClass.REVIEW


def test_ingest_from_any_ticket_source(repository) -> None:
    source = _StaticSource([Ticket(number=3, repo="acme/docs", title="Docs", labels=["coding"])])

    summary = ingest(repository=repository, source=source, config=builtin_routing_config())

    assert summary.added == 1
    assert repository.find_items(3, repo="acme/docs")[0].pipeline_type == "implement"
