"""CLI entrypoint for issue-queue."""

import functools
import logging
from collections.abc import Callable
from pathlib import Path
from typing import Any

import rich_click as click

from issue_queue import __version__
from issue_queue.config import Settings
from issue_queue.orchestrator.controllers import (
    AddCommand,
    IngestCommand,
    ItemCommand,
    ListItemsCommand,
    ProcessCommand,
    QueueCliController,
    QueueCommand,
    WatchCommand,
)
from issue_queue.orchestrator.locking import LockContentionError
from issue_queue.orchestrator.models import ConfigError, StoreError, WorkItemStatus
from issue_queue.orchestrator.tickets import TicketSourceError

click.rich_click.USE_MARKDOWN = True
QUEUE_CONTROLLER = QueueCliController()

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
_NOISY_LOGGERS = ("httpx", "httpcore")

_db_path_option = click.option(
    "--db-path",
    type=click.Path(path_type=Path),
    default=None,
    help="SQLite DB path.",
)
_ticket_option = click.option(
    "--ticket",
    type=click.IntRange(min=1),
    required=True,
    help="Ticket number.",
)
_repo_option = click.option(
    "--repo",
    default=None,
    help="Repository as owner/name. Defaults to ISSUE_QUEUE_DEFAULT_REPO.",
)


def _cli_errors(func: Callable[..., None]) -> Callable[..., None]:
    """Report domain errors as a clean CLI failure instead of a traceback."""

    @functools.wraps(func)
    def wrapper(*args: Any, **kwargs: Any) -> None:
        try:
            func(*args, **kwargs)
        except (
            StoreError,
            ConfigError,
            TicketSourceError,
            LockContentionError,
            ValueError,
        ) as error:
            raise click.ClickException(str(error)) from error

    return wrapper


@click.group()
@click.version_option(version=__version__, prog_name="issue-queue")
@click.option(
    "--log-level",
    type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR"], case_sensitive=False),
    default=None,
    help="Log level. Defaults to ISSUE_QUEUE_LOG_LEVEL or INFO.",
)
@click.pass_context
def issue_queue(ctx: click.Context, log_level: str | None) -> None:
    """Work-item queue: ingest tickets, process one at a time, track outcomes.

    Items move `queued` → `processing` → `completed` / `failed` / `needs-input` / `pr_open`,
    and `pr_open` → `merged` once the change proposal lands.
    """

    try:
        settings = Settings.from_env()
    except ValueError as error:
        raise click.ClickException(str(error)) from error
    _configure_logging(log_level or settings.log_level, settings.log_path)
    ctx.call_on_close(_reset_logging)


@issue_queue.command("process")
@_db_path_option
@_cli_errors
def process(db_path: Path | None) -> None:
    """Run one scheduler cycle: recover stale work, then process the next queued item."""

    _emit_lines(QUEUE_CONTROLLER.process(ProcessCommand(db_path=db_path)))


@issue_queue.command("watch")
@_db_path_option
@click.option(
    "--interval",
    "interval_seconds",
    type=click.FloatRange(min=0, min_open=True),
    default=None,
    help="Seconds between cycles. Defaults to ISSUE_QUEUE_WATCH_INTERVAL_SECONDS or 30.",
)
@click.option(
    "--max-cycles",
    type=click.IntRange(min=1),
    default=None,
    help="Stop after this many cycles.",
)
@_cli_errors
def watch(db_path: Path | None, interval_seconds: float | None, max_cycles: int | None) -> None:
    """Run scheduler cycles until interrupted (Ctrl-C or SIGTERM)."""

    _emit_lines(
        QUEUE_CONTROLLER.watch(
            WatchCommand(
                db_path=db_path,
                interval_seconds=interval_seconds,
                max_cycles=max_cycles,
            ),
        ),
    )


@issue_queue.command("ingest")
@_db_path_option
@_repo_option
@_cli_errors
def ingest(db_path: Path | None, repo: str | None) -> None:
    """Enqueue every open ticket that is not tracked yet."""

    _emit_lines(QUEUE_CONTROLLER.ingest(IngestCommand(db_path=db_path, repo=repo)))


@issue_queue.command("add")
@_db_path_option
@_ticket_option
@_repo_option
@_cli_errors
def add(db_path: Path | None, ticket: int, repo: str | None) -> None:
    """Enqueue one ticket by number."""

    _emit_lines(QUEUE_CONTROLLER.add(AddCommand(db_path=db_path, ticket=ticket, repo=repo)))


@issue_queue.command("remove")
@_db_path_option
@_ticket_option
@_repo_option
@_cli_errors
def remove(db_path: Path | None, ticket: int, repo: str | None) -> None:
    """Delete an item that is not processing."""

    _emit_lines(QUEUE_CONTROLLER.remove(ItemCommand(db_path=db_path, ticket=ticket, repo=repo)))


@issue_queue.command("retry")
@_db_path_option
@_ticket_option
@_repo_option
@_cli_errors
def retry(db_path: Path | None, ticket: int, repo: str | None) -> None:
    """Put a failed or needs-input item back in the queue."""

    _emit_lines(QUEUE_CONTROLLER.retry(ItemCommand(db_path=db_path, ticket=ticket, repo=repo)))


@issue_queue.command("cancel")
@_db_path_option
@_cli_errors
def cancel(db_path: Path | None) -> None:
    """Terminate the running pipeline and mark the processing item failed."""

    _emit_lines(QUEUE_CONTROLLER.cancel(QueueCommand(db_path=db_path)))


@issue_queue.command("clear-queue")
@_db_path_option
@_cli_errors
def clear_queue(db_path: Path | None) -> None:
    """Delete all queued items."""

    _emit_lines(QUEUE_CONTROLLER.clear_queue(QueueCommand(db_path=db_path)))


@issue_queue.command("clear-history")
@_db_path_option
@_cli_errors
def clear_history(db_path: Path | None) -> None:
    """Delete all completed and failed items."""

    _emit_lines(QUEUE_CONTROLLER.clear_history(QueueCommand(db_path=db_path)))


@issue_queue.command("check-prs")
@_db_path_option
@_cli_errors
def check_prs(db_path: Path | None) -> None:
    """Move `pr_open` items to `merged` (or `failed` when closed)."""

    _emit_lines(QUEUE_CONTROLLER.check_prs(QueueCommand(db_path=db_path)))


@issue_queue.command("status")
@_db_path_option
@_cli_errors
def status(db_path: Path | None) -> None:
    """Show queue counts, the processing item and the queue order."""

    _emit_lines(QUEUE_CONTROLLER.status(QueueCommand(db_path=db_path)))


@issue_queue.command("items")
@_db_path_option
@click.option(
    "--status",
    "status_filter",
    type=click.Choice([status.value for status in WorkItemStatus], case_sensitive=False),
    default=None,
    help="Only show items in this status.",
)
@click.option(
    "--limit",
    type=click.IntRange(min=1, max=1000),
    default=50,
    show_default=True,
    help="Max number of items to print.",
)
@_cli_errors
def items(db_path: Path | None, status_filter: str | None, limit: int) -> None:
    """List items, most recently updated first."""

    _emit_lines(
        QUEUE_CONTROLLER.list_items(
            ListItemsCommand(db_path=db_path, status=status_filter, limit=limit),
        ),
    )


@issue_queue.command("runs")
@_db_path_option
@_ticket_option
@_repo_option
@_cli_errors
def runs(db_path: Path | None, ticket: int, repo: str | None) -> None:
    """Show the run history and artifacts of one item."""

    _emit_lines(QUEUE_CONTROLLER.runs(ItemCommand(db_path=db_path, ticket=ticket, repo=repo)))


def _configure_logging(level: str, log_path: Path) -> None:
    """Log to stderr and to the worker log file under the data directory."""

    package_logger = logging.getLogger("issue_queue")
    _reset_logging()
    package_logger.setLevel(level.upper())

    formatter = logging.Formatter(LOG_FORMAT)
    console_handler = logging.StreamHandler()
    console_handler.setFormatter(formatter)
    package_logger.addHandler(console_handler)

    try:
        log_path.parent.mkdir(parents=True, exist_ok=True)
        file_handler = logging.FileHandler(log_path, encoding="utf-8")
    except OSError as error:
        package_logger.warning("File logging disabled (%s): %s", log_path, error)
    else:
        file_handler.setFormatter(formatter)
        package_logger.addHandler(file_handler)

    for name in _NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)


def _reset_logging() -> None:
    package_logger = logging.getLogger("issue_queue")
    for handler in list(package_logger.handlers):
        package_logger.removeHandler(handler)
        handler.close()


def _emit_lines(lines: list[str]) -> None:
    for line in lines:
        click.echo(line)


if __name__ == "__main__":  # pragma: no cover
    issue_queue()
