"""Label-based routing of work items to pipelines.

The routing config is read once from ``routing.config.json`` and frozen;
``route`` itself is a pure function of the item labels and that config.
"""

from __future__ import annotations

import json
import logging
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from pathlib import Path
from types import MappingProxyType
from typing import Any

from issue_queue.orchestrator.models import ConfigError, Priority

logger = logging.getLogger(__name__)

FALLBACK_ROUTE = "*"
DEFAULT_GENERATE_URL = "http://localhost:11434/api/generate"
DEFAULT_MODEL = "qwen2.5-coder:32b"
DEFAULT_TIMEOUT_SECONDS = 1800

_PRIORITY_LABELS = {
    "priority-high": Priority.HIGH,
    "priority-medium": Priority.MEDIUM,
    "priority-low": Priority.LOW,
}


@dataclass(frozen=True, slots=True)
class PipelineConfig:
    """One pipeline entry: script, prompt template and generation model."""

    name: str
    script: str
    prompt: str
    model: str
    timeout_seconds: int
    produces_reference: bool = False
    extract_flows: bool = False


@dataclass(frozen=True, slots=True)
class RoutingDefaults:
    pipeline: str = "implement"
    model: str = DEFAULT_MODEL
    generate_url: str = DEFAULT_GENERATE_URL
    timeout_seconds: int = DEFAULT_TIMEOUT_SECONDS
    worktree_base: str = "~/worktrees"


@dataclass(frozen=True, slots=True)
class RoutingConfig:
    """Immutable routing table shared by the scheduler, engine and executor."""

    defaults: RoutingDefaults
    pipelines: Mapping[str, PipelineConfig]
    routing: Mapping[str, str]
    aliases: Mapping[str, str] = field(default_factory=lambda: MappingProxyType({}))
    base_dir: Path = Path()

    def pipeline(self, name: str) -> PipelineConfig:
        """Pipeline by name; unknown names resolve to the default pipeline."""

        found = self.pipelines.get(name)
        if found is not None:
            return found
        return self.pipelines[self.defaults.pipeline]

    def resolve_path(self, value: str) -> Path:
        """Script and prompt paths are relative to the config file's directory."""

        path = Path(value).expanduser()
        if path.is_absolute():
            return path
        return self.base_dir / path

    @property
    def worktree_base(self) -> Path:
        return Path(self.defaults.worktree_base).expanduser()


def builtin_routing_config(base_dir: Path | None = None) -> RoutingConfig:
    """Defaults used when no routing file is present."""

    defaults = RoutingDefaults()
    return RoutingConfig(
        defaults=defaults,
        pipelines=MappingProxyType(
            {
                "implement": PipelineConfig(
                    name="implement",
                    script="scripts/pipelines/implement.sh",
                    prompt="prompts/implement.md",
                    model=DEFAULT_MODEL,
                    timeout_seconds=DEFAULT_TIMEOUT_SECONDS,
                    produces_reference=True,
                ),
                "test": PipelineConfig(
                    name="test",
                    script="scripts/pipelines/test.sh",
                    prompt="prompts/test.md",
                    model="codestral:22b",
                    timeout_seconds=DEFAULT_TIMEOUT_SECONDS,
                    extract_flows=True,
                ),
                "generate": PipelineConfig(
                    name="generate",
                    script="scripts/pipelines/generate.sh",
                    prompt="prompts/generate.md",
                    model="llama3.1:70b",
                    timeout_seconds=DEFAULT_TIMEOUT_SECONDS,
                ),
            },
        ),
        routing=MappingProxyType(
            {
                "e2e": "test",
                "content": "generate",
                "coding": "implement",
                FALLBACK_ROUTE: "implement",
            },
        ),
        base_dir=base_dir or Path.cwd(),
    )


def load_routing_config(path: Path) -> RoutingConfig:
    """Load and validate the routing file.

    A missing or unreadable file falls back to the built-in defaults. A file
    that parses but is inconsistent raises ``ConfigError``.
    """

    try:
        raw_text = path.read_text("utf-8")
    except OSError as error:
        logger.warning("Could not read routing config %s (%s); using defaults", path, error)
        return builtin_routing_config()

    try:
        payload = json.loads(raw_text)
    except json.JSONDecodeError as error:
        raise ConfigError(f"Routing config {path} is not valid JSON: {error}") from error
    return parse_routing_config(payload, base_dir=path.resolve().parent)


def parse_routing_config(payload: Any, *, base_dir: Path) -> RoutingConfig:
    if not isinstance(payload, dict):
        raise ConfigError("Routing config must be a JSON object.")

    defaults = _parse_defaults(payload.get("defaults") or {})
    raw_pipelines = payload.get("pipelines")
    if not isinstance(raw_pipelines, dict) or not raw_pipelines:
        raise ConfigError("Routing config must define at least one pipeline.")
    pipelines = {
        str(name): _parse_pipeline(str(name), entry, defaults=defaults)
        for name, entry in raw_pipelines.items()
    }
    if defaults.pipeline not in pipelines:
        raise ConfigError(f"Default pipeline {defaults.pipeline!r} is not defined.")

    raw_routing = payload.get("routing")
    if not isinstance(raw_routing, dict):
        raise ConfigError("Routing config must contain a 'routing' object.")
    routing = {str(label).strip().lower(): str(target) for label, target in raw_routing.items()}
    if FALLBACK_ROUTE not in routing:
        raise ConfigError("Routing table must contain a '*' fallback entry.")
    for label, target in routing.items():
        if target not in pipelines:
            raise ConfigError(f"Routing label {label!r} targets unknown pipeline {target!r}.")

    raw_aliases = payload.get("aliases") or {}
    if not isinstance(raw_aliases, dict):
        raise ConfigError("'aliases' must be an object mapping label to label.")
    aliases = {
        str(alias).strip().lower(): str(label).strip().lower()
        for alias, label in raw_aliases.items()
    }

    return RoutingConfig(
        defaults=defaults,
        pipelines=MappingProxyType(pipelines),
        routing=MappingProxyType(routing),
        aliases=MappingProxyType(aliases),
        base_dir=base_dir,
    )


def normalize_labels(labels: Iterable[object]) -> list[str]:
    """Plain lower-case label names from bare strings or ``{"name": ...}`` records."""

    normalized: list[str] = []
    for label in labels:
        if isinstance(label, str):
            name = label
        elif isinstance(label, Mapping):
            name = str(label.get("name") or "")
        else:
            continue
        name = name.strip().lower()
        if name:
            normalized.append(name)
    return normalized


def route(labels: Iterable[object], config: RoutingConfig) -> str:
    """Pipeline name for the first routed label, else the ``*`` fallback."""

    for label in normalize_labels(labels):
        resolved = config.aliases.get(label, label)
        target = config.routing.get(resolved)
        if target is not None and resolved != FALLBACK_ROUTE:
            return target
    return config.routing[FALLBACK_ROUTE]


def priority_from_labels(labels: Iterable[object]) -> Priority:
    """Highest priority named by a ``priority-*`` label; medium when none is present."""

    found = [
        _PRIORITY_LABELS[label] for label in normalize_labels(labels) if label in _PRIORITY_LABELS
    ]
    if not found:
        return Priority.MEDIUM
    return max(found, key=lambda priority: priority.rank)


def _parse_defaults(raw: Any) -> RoutingDefaults:
    if not isinstance(raw, dict):
        raise ConfigError("'defaults' must be an object.")
    base = RoutingDefaults()
    return RoutingDefaults(
        pipeline=str(raw.get("pipeline", base.pipeline)),
        model=str(raw.get("model", base.model)),
        generate_url=str(raw.get("generate_url", base.generate_url)),
        timeout_seconds=_positive_int(
            raw.get("timeout_seconds", base.timeout_seconds),
            name="defaults.timeout_seconds",
        ),
        worktree_base=str(raw.get("worktree_base", base.worktree_base)),
    )


def _parse_pipeline(name: str, raw: Any, *, defaults: RoutingDefaults) -> PipelineConfig:
    if not isinstance(raw, dict):
        raise ConfigError(f"Pipeline {name!r} must be an object.")
    script = raw.get("script")
    if not isinstance(script, str) or not script.strip():
        raise ConfigError(f"Pipeline {name!r} must name a script.")
    return PipelineConfig(
        name=name,
        script=script.strip(),
        prompt=str(raw.get("prompt") or f"prompts/{name}.md"),
        model=str(raw.get("model") or defaults.model),
        timeout_seconds=_positive_int(
            raw.get("timeout_seconds", defaults.timeout_seconds),
            name=f"pipelines.{name}.timeout_seconds",
        ),
        produces_reference=bool(raw.get("produces_reference", False)),
        extract_flows=bool(raw.get("extract_flows", False)),
    )


def _positive_int(value: Any, *, name: str) -> int:
    if isinstance(value, bool) or not isinstance(value, int) or value <= 0:
        raise ConfigError(f"{name} must be a positive integer, got {value!r}.")
    return value
