"""External pipeline invocation with timeout and process-group cancel."""

from __future__ import annotations

import logging
import os
import re
import signal
import subprocess
import time
from pathlib import Path
from typing import IO

from issue_queue.orchestrator.artifacts import item_artifact_dir
from issue_queue.orchestrator.models import ErrorClass, PipelineResult, WorkItemView
from issue_queue.orchestrator.routing import RoutingConfig

logger = logging.getLogger(__name__)

SOLUTION_FILENAME = "ai-solution.md"
FLOWS_DIRNAME = "flows"
STDOUT_LOG = "pipeline-stdout.log"
STDERR_LOG = "pipeline-stderr.log"
INFRA_EXIT_CODE = 3

EXIT_CODE_CLASSES = {
    0: None,
    1: ErrorClass.BUILD,
    2: ErrorClass.TEST,
    3: ErrorClass.INFRA,
    4: ErrorClass.AGENT,
}

FLOW_MARKERS = (
    "appId",
    "launchApp",
    "tapOn",
    "assertVisible",
    "scrollUntilVisible",
    "takeScreenshot",
)
_YAML_BLOCK_RE = re.compile(r"```ya?ml[^\S\n]*\n(.*?)```", re.IGNORECASE | re.DOTALL)
_POLL_SECONDS = 0.1


def classify_exit_code(code: int | None) -> ErrorClass | None:
    """Pipeline exit-code contract: 0 ok, 1 build, 2 test, 3 infra, 4 agent."""

    if code in EXIT_CODE_CLASSES:
        return EXIT_CODE_CLASSES[code]
    return ErrorClass.UNKNOWN


def extract_flows(solution_text: str, flows_dir: Path) -> list[Path]:
    """Write every fenced YAML block that looks like a UI flow to ``flows_dir``.

    Blocks without any flow marker are skipped. Nothing is created when no
    block matches.
    """

    flows: list[Path] = []
    for match in _YAML_BLOCK_RE.finditer(solution_text):
        content = match.group(1).strip()
        if not any(marker in content for marker in FLOW_MARKERS):
            continue
        flows_dir.mkdir(parents=True, exist_ok=True)
        path = flows_dir / f"ai-flow-{len(flows) + 1}.yaml"
        path.write_text(content + "\n", "utf-8")
        flows.append(path)
    return flows


def read_pid_file(pid_file: Path) -> int | None:
    try:
        raw = pid_file.read_text("utf-8").strip()
    except FileNotFoundError:
        return None
    return int(raw) if raw.isdigit() else None


def cancel_active_pipeline(pid_file: Path, *, grace_seconds: float = 5.0) -> bool:
    """Terminate the process group recorded in ``pid_file``.

    Returns True when a live group was signalled. The marker is removed
    either way.
    """

    pgid = read_pid_file(pid_file)
    try:
        if pgid is None or not _group_alive(pgid):
            return False
        logger.warning("Cancelling pipeline process group %d", pgid)
        _terminate_group(pgid, grace_seconds=grace_seconds)
        return True
    finally:
        pid_file.unlink(missing_ok=True)


class PipelineExecutor:
    """Runs the pipeline script for an item as its own process group."""

    def __init__(
        self,
        *,
        config: RoutingConfig,
        artifacts_root: Path,
        pid_file: Path,
        kill_grace_seconds: float = 5.0,
    ) -> None:
        self.config = config
        self.artifacts_root = artifacts_root
        self.pid_file = pid_file
        self.kill_grace_seconds = kill_grace_seconds

    def run(self, pipeline_type: str, item: WorkItemView, solution_text: str) -> PipelineResult:
        pipeline = self.config.pipeline(pipeline_type)
        script = self.config.resolve_path(pipeline.script)
        if not script.is_file():
            logger.warning("No pipeline script for %s at %s", pipeline_type, script)
            return PipelineResult(executed=False, error=f"Pipeline script not found: {script}")

        artifact_dir = item_artifact_dir(self.artifacts_root, item)
        artifact_dir.mkdir(parents=True, exist_ok=True)
        solution_file = artifact_dir / SOLUTION_FILENAME
        solution_file.write_text(solution_text, "utf-8")

        args = ["bash", str(script), str(item.ticket_number)]
        if pipeline.extract_flows:
            flows = extract_flows(solution_text, artifact_dir / FLOWS_DIRNAME)
            if flows:
                logger.info("Extracted %d flow(s) for item %d", len(flows), item.item_id)
                args.append(str(artifact_dir / FLOWS_DIRNAME))
            else:
                logger.info("No flows found in solution for item %d", item.item_id)
        else:
            args.append(str(solution_file))

        env = self._build_env(
            pipeline_type=pipeline_type,
            item=item,
            artifact_dir=artifact_dir,
            timeout_seconds=pipeline.timeout_seconds,
            model=pipeline.model,
        )
        logger.info("Executing %s pipeline for item %d", pipeline_type, item.item_id)
        return self._spawn(
            args=args,
            env=env,
            timeout_seconds=pipeline.timeout_seconds,
            stdout_path=artifact_dir / STDOUT_LOG,
            stderr_path=artifact_dir / STDERR_LOG,
        )

    def _build_env(  # noqa: PLR0913
        self,
        *,
        pipeline_type: str,
        item: WorkItemView,
        artifact_dir: Path,
        timeout_seconds: int,
        model: str,
    ) -> dict[str, str]:
        repo_root = self.config.worktree_base
        if item.repo_owner:
            repo_root = repo_root / item.repo_owner
        repo_root = repo_root / item.repo_name

        env = os.environ.copy()
        env["REPO_OWNER"] = item.repo_owner
        env["REPO_NAME"] = item.repo_name
        env["REPO_FULL"] = item.repo
        env["REPO_ROOT"] = str(repo_root)
        env["WORKTREE_DIR"] = str(repo_root / f"issue-{item.ticket_number}")
        env["ARTIFACTS_DIR"] = str(artifact_dir.resolve())
        env["ISSUE_TYPE"] = pipeline_type
        env["ISSUE_NUMBER"] = str(item.ticket_number)
        env["PIPELINE_TIMEOUT"] = str(timeout_seconds)
        env["PIPELINE_MODEL"] = model
        return env

    def _spawn(
        self,
        *,
        args: list[str],
        env: dict[str, str],
        timeout_seconds: int,
        stdout_path: Path,
        stderr_path: Path,
    ) -> PipelineResult:
        try:
            with (
                stdout_path.open("w", encoding="utf-8") as stdout_handle,
                stderr_path.open("w", encoding="utf-8") as stderr_handle,
            ):
                try:
                    process = subprocess.Popen(  # noqa: S603
                        args,
                        env=env,
                        stdin=subprocess.DEVNULL,
                        stdout=stdout_handle,
                        stderr=stderr_handle,
                        text=True,
                        start_new_session=True,
                    )
                except OSError as error:
                    logger.error("Pipeline failed to start: %s", error)
                    return PipelineResult(
                        executed=True,
                        exit_code=INFRA_EXIT_CODE,
                        error_class=ErrorClass.INFRA,
                        error=f"Pipeline failed to start: {error}",
                    )
                self.pid_file.parent.mkdir(parents=True, exist_ok=True)
                self.pid_file.write_text(str(process.pid), "utf-8")
                returncode, timed_out = self._wait(process, stdout_handle, timeout_seconds)
        finally:
            self.pid_file.unlink(missing_ok=True)

        stdout = _read_text(stdout_path)
        stderr = _read_text(stderr_path)
        if timed_out:
            logger.error("Pipeline timed out after %ss; process group killed", timeout_seconds)
            return PipelineResult(
                executed=True,
                exit_code=INFRA_EXIT_CODE,
                stdout=stdout,
                stderr=stderr,
                error_class=ErrorClass.INFRA,
                timed_out=True,
                error=f"Pipeline timed out after {timeout_seconds}s",
            )
        if returncode == 0:
            logger.info("Pipeline completed successfully")
            return PipelineResult(
                executed=True,
                success=True,
                exit_code=0,
                stdout=stdout,
                stderr=stderr,
            )
        logger.error("Pipeline failed (exit code: %d)", returncode)
        return PipelineResult(
            executed=True,
            exit_code=returncode,
            stdout=stdout,
            stderr=stderr,
            error_class=classify_exit_code(returncode),
        )

    def _wait(
        self,
        process: subprocess.Popen[str],
        stdout_handle: IO[str],
        timeout_seconds: int,
    ) -> tuple[int, bool]:
        deadline = time.monotonic() + timeout_seconds
        while True:
            returncode = process.poll()
            if returncode is not None:
                return returncode, False
            if time.monotonic() >= deadline:
                _terminate_group(
                    process.pid,
                    grace_seconds=self.kill_grace_seconds,
                    process=process,
                )
                process.wait()
                stdout_handle.flush()
                return INFRA_EXIT_CODE, True
            time.sleep(_POLL_SECONDS)


def _terminate_group(
    pgid: int,
    *,
    grace_seconds: float,
    process: subprocess.Popen[str] | None = None,
) -> None:
    try:
        os.killpg(pgid, signal.SIGTERM)
    except ProcessLookupError:
        return
    except PermissionError:
        logger.warning("No permission to signal process group %d", pgid)
        return
    deadline = time.monotonic() + grace_seconds
    while time.monotonic() < deadline:
        if process is not None:
            # Reap the leader so an exited group stops answering signal 0.
            process.poll()
        if not _group_alive(pgid):
            return
        time.sleep(_POLL_SECONDS)
    try:
        os.killpg(pgid, signal.SIGKILL)
    except ProcessLookupError:
        return


def _group_alive(pgid: int) -> bool:
    if pgid <= 0:
        return False
    try:
        os.killpg(pgid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        return True
    return True


def _read_text(path: Path) -> str:
    try:
        return path.read_text("utf-8", errors="replace")
    except FileNotFoundError:
        return ""
