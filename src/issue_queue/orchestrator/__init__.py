"""Single-flight work-item queue for ticket-driven pipelines.

Why not Celery / RQ / a cron job?
~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~
The queue holds one item in ``processing`` at a time, system-wide.  That
is a property of the data, not of a worker pool: it is enforced by a
partial unique index on ``work_items(status)`` and by ``BEGIN IMMEDIATE``
transactions, so two overlapping schedulers cannot both claim an item.
The worker lock file only keeps a second scheduler from doing the
surrounding bookkeeping twice.

The interesting work sits at the integration boundary instead:

- Label routing to named pipelines, and a text-generation call whose
  prompt and metadata are kept as artifacts.
- A long-running external script run in its own process group, killed as
  a group on timeout or cancel.
- Outcome classification from exit codes and script output (needs-input,
  change proposal opened, transient infra failure retried once).

A broker would add an operational dependency to a single-machine,
SQLite-only, CLI-first tool while all of the above would still be custom
task code.
"""
