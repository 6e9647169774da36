"""Single-worker lock marker for the scheduler cycle."""

from __future__ import annotations

import json
import logging
import os
import socket
import time
from dataclasses import asdict, dataclass
from pathlib import Path
from types import TracebackType
from uuid import uuid4

from issue_queue.storage.common import utc_now

logger = logging.getLogger(__name__)

_ACQUIRE_ATTEMPTS = 3
# An empty marker younger than this is still being written by its owner.
_FRESH_MARKER_SECONDS = 5.0


class LockContentionError(RuntimeError):
    """Raised when a live process already holds the worker lock."""


@dataclass(frozen=True, slots=True)
class LockPayload:
    pid: int
    host: str
    token: str
    acquired_at: str

    def to_json(self) -> str:
        return json.dumps(asdict(self), sort_keys=True)


def pid_active(pid: int) -> bool:
    """Whether a process with ``pid`` exists on this host."""

    if pid <= 0:
        return False
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        return True
    return True


def read_lock_payload(path: Path) -> dict[str, object]:
    try:
        raw = path.read_text(encoding="utf-8").strip()
    except FileNotFoundError:
        return {}
    if not raw:
        return {}
    try:
        payload = json.loads(raw)
    except json.JSONDecodeError:
        # Bare pid markers are accepted as well.
        return {"pid": int(raw)} if raw.isdigit() else {}
    return payload if isinstance(payload, dict) else {}


class WorkerLock:
    """Exclusive marker file identifying the process running a cycle.

    The marker is created with ``O_CREAT | O_EXCL``; a marker left by a dead
    process is reclaimed. Use as a context manager so the marker is released
    on every exit path.
    """

    def __init__(self, path: Path) -> None:
        self.path = path
        self.payload: LockPayload | None = None

    def acquire(self) -> LockPayload:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        payload = LockPayload(
            pid=os.getpid(),
            host=socket.gethostname(),
            token=uuid4().hex,
            acquired_at=utc_now().isoformat(),
        )
        for _ in range(_ACQUIRE_ATTEMPTS):
            try:
                fd = os.open(self.path, os.O_CREAT | os.O_EXCL | os.O_WRONLY, 0o644)
            except FileExistsError:
                self._reclaim_if_dead()
                continue
            with os.fdopen(fd, "w", encoding="utf-8") as handle:
                handle.write(payload.to_json() + "\n")
            self.payload = payload
            logger.debug("Worker lock acquired: %s pid=%d", self.path, payload.pid)
            return payload
        raise LockContentionError(f"Could not acquire worker lock at {self.path}.")

    def release(self) -> None:
        """Remove the marker if it is still ours."""

        if self.payload is None:
            return
        current = read_lock_payload(self.path)
        if current.get("token") == self.payload.token:
            self.path.unlink(missing_ok=True)
            logger.debug("Worker lock released: %s", self.path)
        else:
            logger.warning("Worker lock %s no longer belongs to this process; left in place", self)
        self.payload = None

    def __enter__(self) -> WorkerLock:
        self.acquire()
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        traceback: TracebackType | None,
    ) -> None:
        self.release()

    def __str__(self) -> str:
        return str(self.path)

    def _reclaim_if_dead(self) -> None:
        try:
            age = time.time() - self.path.stat().st_mtime
        except FileNotFoundError:
            return
        prior = read_lock_payload(self.path)
        if not prior and age < _FRESH_MARKER_SECONDS:
            raise LockContentionError(f"Worker lock {self.path} is being acquired.")
        raw_pid = prior.get("pid", 0)
        prior_pid = raw_pid if isinstance(raw_pid, int) else 0
        if pid_active(prior_pid):
            raise LockContentionError(
                f"Worker lock {self.path} is held by pid={prior_pid} "
                f"host={prior.get('host', '?')}.",
            )
        # Move the marker aside first; only one reclaimer can win the rename,
        # and the moved file is checked before it is discarded.
        moved = self.path.with_name(f"{self.path.name}.{uuid4().hex}.stale")
        try:
            os.rename(self.path, moved)
        except FileNotFoundError:
            return
        if read_lock_payload(moved) != prior:
            self._restore(moved)
            return
        logger.warning(
            "Reclaiming worker lock %s left by dead process pid=%s",
            self.path,
            prior_pid or "?",
        )
        moved.unlink(missing_ok=True)

    def _restore(self, moved: Path) -> None:
        """Put back a marker that was replaced between the read and the rename."""

        try:
            os.link(moved, self.path)
        except FileExistsError:
            logger.warning("Worker lock %s was re-created while restoring it", self.path)
        finally:
            moved.unlink(missing_ok=True)
