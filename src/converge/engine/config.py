from __future__ import annotations

import dataclasses
import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from types import MappingProxyType
from typing import Any, Mapping

import yaml

from converge.engine.errors import ParseError

logger = logging.getLogger(__name__)

CONFIG_ENV = "CONVERGE_CONFIG"
DEFAULT_CONFIG = Path("converge.yml")


@dataclass(frozen=True)
class RunConfig:
    forks: int = 5
    check_mode: bool = False
    diff_mode: bool = False
    tags: tuple[str, ...] = ()
    skip_tags: tuple[str, ...] = ()
    limit: str | None = None
    extra_vars: Mapping[str, Any] = field(default_factory=dict)
    any_errors_fatal: bool = False
    force_handlers: bool = False
    task_timeout: float | None = None
    settle_delay: float = 0.0
    verbosity: int = 0
    json_output: bool = False
    variable_start: str = "{{"
    variable_end: str = "}}"

    def __post_init__(self) -> None:
        if self.forks < 1:
            raise ValueError("forks must be at least 1")
        if self.task_timeout is not None and self.task_timeout <= 0:
            raise ValueError("task_timeout must be positive")
        if self.settle_delay < 0:
            raise ValueError("settle_delay cannot be negative")
        object.__setattr__(self, "tags", tuple(self.tags))
        object.__setattr__(self, "skip_tags", tuple(self.skip_tags))
        object.__setattr__(self, "extra_vars", MappingProxyType(dict(self.extra_vars)))

    def replace(self, **overrides: Any) -> RunConfig:
        """Layer overrides (usually CLI flags) on top; ``None`` values are ignored."""
        changes = {k: v for k, v in overrides.items() if v is not None}
        return dataclasses.replace(self, **changes)


def config_path() -> Path:
    return Path(os.environ.get(CONFIG_ENV, DEFAULT_CONFIG))


def split_tags(value: Any) -> tuple[str, ...]:
    if value is None:
        return ()
    if isinstance(value, str):
        return tuple(t.strip() for t in value.split(",") if t.strip())
    return tuple(str(t) for t in value)


def load_config(path: Path | None = None) -> RunConfig:
    path = path if path is not None else config_path()
    if not path.exists():
        logger.debug("No config file at %s, using defaults", path)
        return RunConfig()
    try:
        data = yaml.safe_load(path.read_text()) or {}
    except yaml.YAMLError as e:
        raise ParseError(f"Invalid YAML: {e}", file_path=str(path))
    if not isinstance(data, dict):
        raise ParseError("Config must be a mapping", file_path=str(path))
    defaults = data.get("defaults") or {}
    if not isinstance(defaults, dict):
        raise ParseError("'defaults' must be a mapping", file_path=str(path))

    known = {f.name for f in dataclasses.fields(RunConfig)}
    unknown = sorted(set(defaults) - known)
    if unknown:
        raise ParseError(f"Unknown config option(s): {', '.join(unknown)}", file_path=str(path))

    values = dict(defaults)
    for key in ("tags", "skip_tags"):
        if key in values:
            values[key] = split_tags(values[key])
    try:
        return RunConfig(**values)
    except (TypeError, ValueError) as e:
        raise ParseError(str(e), file_path=str(path))
