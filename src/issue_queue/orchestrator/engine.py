"""Prompt rendering and text generation against the model endpoint."""

from __future__ import annotations

import json
import logging
from dataclasses import asdict
from pathlib import Path

import httpx

from issue_queue.orchestrator.artifacts import item_artifact_dir
from issue_queue.orchestrator.models import EngineResult, WorkItemView
from issue_queue.orchestrator.routing import PipelineConfig, RoutingConfig, normalize_labels
from issue_queue.storage.common import utc_now

logger = logging.getLogger(__name__)

PROMPT_FILENAME = "prompt-sent.md"
METADATA_FILENAME = "run-metadata.json"

BUILTIN_PROMPT_TEMPLATE = """\
You are an automated engineer working on a single ticket.

Read the issue context below and produce a complete solution. Put code and
configuration in fenced blocks, one block per file, and explain briefly what
each change does.
"""


class ProcessingEngine:
    """Builds the prompt for an item and asks the model endpoint for a solution.

    Every failure (transport error, timeout, non-2xx, malformed body) comes
    back as ``EngineResult(success=False)``; nothing is retried here.
    """

    def __init__(
        self,
        *,
        config: RoutingConfig,
        artifacts_root: Path,
        client: httpx.Client | None = None,
    ) -> None:
        self.config = config
        self.artifacts_root = artifacts_root
        self._client = client or httpx.Client()
        self._owns_client = client is None

    def close(self) -> None:
        if self._owns_client:
            self._client.close()

    def __enter__(self) -> ProcessingEngine:
        return self

    def __exit__(self, *_: object) -> None:
        self.close()

    def generate(self, item: WorkItemView, pipeline_type: str) -> EngineResult:
        pipeline = self.config.pipeline(pipeline_type)
        model = pipeline.model or self.config.defaults.model
        generate_url = self.config.defaults.generate_url
        started_at = utc_now()

        prompt = render_prompt(
            template=self._load_template(pipeline),
            item=item,
        )
        artifact_dir = item_artifact_dir(self.artifacts_root, item)
        artifact_dir.mkdir(parents=True, exist_ok=True)
        (artifact_dir / PROMPT_FILENAME).write_text(prompt, "utf-8")

        logger.info("Generating [%s] for item %d with %s", pipeline_type, item.item_id, model)
        result = self._post(
            url=generate_url,
            model=model,
            prompt=prompt,
            timeout_seconds=pipeline.timeout_seconds,
        )

        metadata = {
            "model": model,
            "pipeline": pipeline_type,
            "started_at": started_at.isoformat(),
            "finished_at": result.timestamp.isoformat(),
            "generate_url": generate_url,
            "success": result.success,
            "error": result.error,
            "config": asdict(pipeline),
        }
        (artifact_dir / METADATA_FILENAME).write_text(
            json.dumps(metadata, indent=2, ensure_ascii=False),
            "utf-8",
        )
        return result

    def _post(
        self,
        *,
        url: str,
        model: str,
        prompt: str,
        timeout_seconds: int,
    ) -> EngineResult:
        try:
            response = self._client.post(
                url,
                json={"model": model, "prompt": prompt, "stream": False},
                timeout=httpx.Timeout(float(timeout_seconds), connect=10.0),
            )
        except httpx.TimeoutException:
            logger.warning("Generation timed out after %ss (%s)", timeout_seconds, url)
            return _failure(model, f"Generation timed out after {timeout_seconds}s")
        except httpx.HTTPError as exc:
            logger.warning("Generation request failed (%s): %s", url, exc)
            return _failure(model, f"Generation request failed: {exc}")

        if not response.is_success:
            logger.warning("Generation endpoint returned HTTP %d", response.status_code)
            return _failure(model, f"Generation endpoint returned HTTP {response.status_code}")

        try:
            payload = response.json()
        except ValueError:
            return _failure(model, "Generation endpoint returned malformed JSON")
        text = payload.get("response") if isinstance(payload, dict) else None
        if not isinstance(text, str):
            return _failure(model, "Generation response has no 'response' text")
        return EngineResult(success=True, model=model, timestamp=utc_now(), text=text)

    def _load_template(self, pipeline: PipelineConfig) -> str:
        path = self.config.resolve_path(pipeline.prompt)
        try:
            return path.read_text("utf-8")
        except OSError:
            logger.warning("Prompt template %s not found; using built-in template", path)
            return BUILTIN_PROMPT_TEMPLATE


def render_prompt(*, template: str, item: WorkItemView) -> str:
    """Template followed by the issue-context section."""

    labels = normalize_labels(item.labels)
    return (
        f"{template.rstrip()}\n"
        "\n"
        "---\n"
        "\n"
        "## Issue Context\n"
        "\n"
        f"Task: {item.title}\n"
        f"ID: {item.ticket_number}\n"
        f"Priority: {item.priority.value}\n"
        f"Description: {item.body or 'No description provided'}\n"
        f"Repository: {item.repo}\n"
        f"Labels: {', '.join(labels) or 'none'}\n"
    )


def _failure(model: str, error: str) -> EngineResult:
    return EngineResult(success=False, model=model, timestamp=utc_now(), error=error)
