from __future__ import annotations

import subprocess
import time
from pathlib import Path

import allure
import pytest

from issue_queue.orchestrator.models import ErrorClass
from issue_queue.orchestrator.pipeline import (
    FLOWS_DIRNAME,
    SOLUTION_FILENAME,
    STDERR_LOG,
    STDOUT_LOG,
    PipelineExecutor,
    cancel_active_pipeline,
    classify_exit_code,
    extract_flows,
)

pytestmark = [
    allure.epic("Work Queue"),
    allure.feature("Pipeline Execution"),
]

FLOW_SOLUTION = """\
Here is the flow:

```yaml
appId: com.acme.widgets
---
- launchApp
- tapOn: "Checkout"
```

And some unrelated config:

```yml
retries: 3
```
"""


def _executor(tmp_path: Path, config, *, grace: float = 0.5) -> PipelineExecutor:
    return PipelineExecutor(
        config=config,
        artifacts_root=tmp_path / "artifacts",
        pid_file=tmp_path / "pipeline.pid",
        kill_grace_seconds=grace,
    )


def _artifact_dir(tmp_path: Path) -> Path:
    return tmp_path / "artifacts" / "acme" / "widgets" / "42"


def test_successful_run_passes_ticket_solution_and_env(
    tmp_path: Path,
    routing_factory,
    item_factory,
) -> None:
    config = routing_factory(
        {
            "implement": (
                'echo "args=$1 $2"\n'
                'echo "repo=$REPO_FULL owner=$REPO_OWNER name=$REPO_NAME type=$ISSUE_TYPE"\n'
                'echo "worktree=$WORKTREE_DIR model=$PIPELINE_MODEL timeout=$PIPELINE_TIMEOUT"\n'
                'echo "to stderr" >&2\n'
            ),
        },
    )
    executor = _executor(tmp_path, config)

    result = executor.run("implement", item_factory(), "the solution")

    solution_file = _artifact_dir(tmp_path) / SOLUTION_FILENAME
    assert result.executed is True
    assert result.success is True
    assert result.exit_code == 0
    assert result.error_class is None
    assert f"args=42 {solution_file}" in result.stdout
    assert "repo=acme/widgets owner=acme name=widgets type=implement" in result.stdout
    worktree = tmp_path / "worktrees" / "acme" / "widgets" / "issue-42"
    assert f"worktree={worktree} model=implement-model timeout=30" in result.stdout
    assert result.stderr.strip() == "to stderr"
    assert solution_file.read_text("utf-8") == "the solution"
    assert (_artifact_dir(tmp_path) / STDOUT_LOG).read_text("utf-8") == result.stdout
    assert (_artifact_dir(tmp_path) / STDERR_LOG).exists()
    assert not (tmp_path / "pipeline.pid").exists()


@pytest.mark.parametrize(
    ("exit_code", "error_class"),
    [
        (1, ErrorClass.BUILD),
        (2, ErrorClass.TEST),
        (3, ErrorClass.INFRA),
        (4, ErrorClass.AGENT),
        (9, ErrorClass.UNKNOWN),
    ],
)
def test_nonzero_exit_is_classified(
    tmp_path: Path,
    routing_factory,
    item_factory,
    exit_code: int,
    error_class: ErrorClass,
) -> None:
    config = routing_factory({"implement": f"echo failing\nexit {exit_code}\n"})

    result = _executor(tmp_path, config).run("implement", item_factory(), "solution")

    assert result.executed is True
    assert result.success is False
    assert result.exit_code == exit_code
    assert result.error_class is error_class
    assert result.timed_out is False


def test_timeout_kills_process_group(tmp_path: Path, routing_factory, item_factory) -> None:
    marker = tmp_path / "child-survived"
    config = routing_factory(
        {"implement": f"(sleep 3; touch {marker}) &\nsleep 30\n"},
        timeout_seconds=1,
    )

    started = time.monotonic()
    result = _executor(tmp_path, config, grace=0.5).run("implement", item_factory(), "solution")

    assert time.monotonic() - started < 10
    assert result.timed_out is True
    assert result.exit_code == 3
    assert result.error_class is ErrorClass.INFRA
    assert result.error == "Pipeline timed out after 1s"
    assert not (tmp_path / "pipeline.pid").exists()
    time.sleep(3.5)
    assert not marker.exists()


def test_missing_script_is_not_executed(tmp_path: Path, routing_factory, item_factory) -> None:
    config = routing_factory({})

    result = _executor(tmp_path, config).run("implement", item_factory(), "solution")

    assert result.executed is False
    assert "Pipeline script not found" in result.error


def test_flow_pipeline_receives_flows_directory(
    tmp_path: Path,
    routing_factory,
    item_factory,
) -> None:
    config = routing_factory({"test": 'echo "args=$# dir=$2"\nls "$2"\n'})

    result = _executor(tmp_path, config).run("test", item_factory(), FLOW_SOLUTION)

    flows_dir = _artifact_dir(tmp_path) / FLOWS_DIRNAME
    assert result.success is True
    assert f"args=2 dir={flows_dir}" in result.stdout
    assert "ai-flow-1.yaml" in result.stdout
    assert sorted(path.name for path in flows_dir.iterdir()) == ["ai-flow-1.yaml"]


def test_flow_pipeline_without_flows_gets_only_ticket(
    tmp_path: Path,
    routing_factory,
    item_factory,
) -> None:
    config = routing_factory({"test": 'echo "args=$#"\n'})

    result = _executor(tmp_path, config).run("test", item_factory(), "no yaml here")

    assert "args=1" in result.stdout
    assert not (_artifact_dir(tmp_path) / FLOWS_DIRNAME).exists()


def test_extract_flows_skips_blocks_without_markers(tmp_path: Path) -> None:
    flows = extract_flows(FLOW_SOLUTION, tmp_path / "flows")

    assert [path.name for path in flows] == ["ai-flow-1.yaml"]
    content = flows[0].read_text("utf-8")
    assert content.startswith("appId: com.acme.widgets")
    assert "retries" not in content


def test_classify_exit_code_contract() -> None:
    assert classify_exit_code(0) is None
    assert classify_exit_code(2) is ErrorClass.TEST
    assert classify_exit_code(137) is ErrorClass.UNKNOWN


def test_cancel_active_pipeline_terminates_recorded_group(tmp_path: Path) -> None:
    process = subprocess.Popen(["sleep", "30"], start_new_session=True)  # noqa: S607
    pid_file = tmp_path / "pipeline.pid"
    pid_file.write_text(str(process.pid), "utf-8")

    try:
        assert cancel_active_pipeline(pid_file, grace_seconds=0.5) is True
        assert process.wait(timeout=5) != 0
    finally:
        if process.poll() is None:
            process.kill()
            process.wait()
    assert not pid_file.exists()


def test_cancel_without_running_pipeline(tmp_path: Path) -> None:
    pid_file = tmp_path / "pipeline.pid"
    assert cancel_active_pipeline(pid_file) is False

    pid_file.write_text("not-a-pid", "utf-8")
    assert cancel_active_pipeline(pid_file) is False
    assert not pid_file.exists()
