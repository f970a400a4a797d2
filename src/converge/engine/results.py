"""
Converge Result Classes

Module results, per-host counters and the run report.
"""

from __future__ import annotations

import json
import logging
import threading
from dataclasses import dataclass, field, replace
from enum import Enum
from types import MappingProxyType
from typing import Any, Dict, Iterable, List, Mapping, Optional

from converge.engine.errors import ExitCode

logger = logging.getLogger(__name__)

NO_LOG_MESSAGE = (
    "the output has been hidden due to the fact that 'no_log: true' "
    "was specified for this result"
)
SECRET_MASK = "********"


class TaskStatus(Enum):
    """Status of a task execution."""
    OK = "ok"
    CHANGED = "changed"
    FAILED = "failed"
    SKIPPED = "skipped"
    UNREACHABLE = "unreachable"


@dataclass(frozen=True)
class ModuleResult:
    """Outcome of one module invocation on one host."""

    changed: bool = False
    failed: bool = False
    msg: str = ""
    fields: Mapping[str, Any] = field(default_factory=dict)
    skipped: bool = False

    def __post_init__(self) -> None:
        object.__setattr__(self, "fields", MappingProxyType(dict(self.fields)))

    @classmethod
    def failure(cls, msg: str, **fields: Any) -> "ModuleResult":
        return cls(failed=True, msg=msg, fields=fields)

    @classmethod
    def skip(cls, msg: str) -> "ModuleResult":
        return cls(skipped=True, msg=msg)

    @property
    def status(self) -> TaskStatus:
        if self.skipped:
            return TaskStatus.SKIPPED
        if self.failed:
            return TaskStatus.FAILED
        if self.changed:
            return TaskStatus.CHANGED
        return TaskStatus.OK

    def evolve(self, **changes: Any) -> "ModuleResult":
        """Return a copy with some attributes replaced."""
        return replace(self, **changes)

    def as_registered(self) -> Dict[str, Any]:
        """The mapping stored under a task's ``register`` name."""
        data: Dict[str, Any] = dict(self.fields)
        data["changed"] = self.changed
        data["failed"] = self.failed
        data["skipped"] = self.skipped
        if self.msg:
            data["msg"] = self.msg
        for stream in ("stdout", "stderr"):
            if isinstance(data.get(stream), str):
                data[f"{stream}_lines"] = data[stream].splitlines()
        return data


@dataclass
class HostStats:
    """Counters for a single host across the run."""

    host: str
    ok: int = 0
    changed: int = 0
    failed: int = 0
    skipped: int = 0
    unreachable: int = 0
    ignored: int = 0

    def record(self, status: TaskStatus, ignored: bool = False) -> None:
        """Record a task result status."""
        if status == TaskStatus.FAILED and ignored:
            self.ignored += 1
        elif status == TaskStatus.OK:
            self.ok += 1
        elif status == TaskStatus.CHANGED:
            self.changed += 1
        elif status == TaskStatus.FAILED:
            self.failed += 1
        elif status == TaskStatus.SKIPPED:
            self.skipped += 1
        elif status == TaskStatus.UNREACHABLE:
            self.unreachable += 1

    def to_dict(self) -> Dict[str, Any]:
        return {
            "ok": self.ok,
            "changed": self.changed,
            "failed": self.failed,
            "skipped": self.skipped,
            "unreachable": self.unreachable,
            "ignored": self.ignored,
        }

    @property
    def has_failures(self) -> bool:
        """Check if host has any non-ignored failures."""
        return self.failed > 0 or self.unreachable > 0


@dataclass(frozen=True)
class ReportEntry:
    """One recorded unit outcome."""

    play: str
    host: str
    task: str
    status: TaskStatus
    kind: Optional[str] = None
    message: str = ""
    params: Any = None
    fields: Any = None
    ignored: bool = False

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            "play": self.play,
            "host": self.host,
            "task": self.task,
            "status": self.status.value,
        }
        if self.kind:
            data["kind"] = self.kind
        if self.message:
            data["msg"] = self.message
        if self.params is not None:
            data["params"] = self.params
        if self.fields:
            data["result"] = self.fields
        if self.ignored:
            data["ignored"] = True
        return data


def redact(value: Any, sensitive: Iterable[str]) -> Any:
    """Replace every occurrence of a sensitive string inside ``value``."""
    secrets = sorted({s for s in sensitive if s}, key=len, reverse=True)
    if not secrets:
        return value
    return _mask(value, secrets)


def _mask(value: Any, secrets: List[str]) -> Any:
    if isinstance(value, str):
        masked = str(value)
        for secret in secrets:
            masked = masked.replace(secret, SECRET_MASK)
        return masked
    if isinstance(value, Mapping):
        return {k: _mask(v, secrets) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_mask(v, secrets) for v in value]
    return value


def _plain(value: Any) -> Any:
    """Copy into JSON-friendly builtins."""
    if isinstance(value, Mapping):
        return {str(k): _plain(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_plain(v) for v in value]
    if isinstance(value, str):
        return str(value)
    if value is None or isinstance(value, (bool, int, float)):
        return value
    return str(value)


class RunReport:
    """
    Accumulates per-unit outcomes and per-host counters for one run.

    Safe to call from concurrent host workers. ``no_log`` entries never store
    the params, result fields or message; vault plaintexts are masked in every
    entry.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._entries: List[ReportEntry] = []
        self._stats: Dict[str, HostStats] = {}

    def record(
        self,
        play: str,
        host: str,
        task: str,
        status: TaskStatus,
        result: Optional[ModuleResult] = None,
        *,
        kind: Optional[str] = None,
        message: Optional[str] = None,
        params: Optional[Mapping[str, Any]] = None,
        ignored: bool = False,
        no_log: bool = False,
        sensitive: Iterable[str] = (),
    ) -> ReportEntry:
        if message is None:
            message = result.msg if result is not None else ""
        fields = dict(result.fields) if result is not None else {}

        if no_log:
            message = NO_LOG_MESSAGE
            params_out: Any = NO_LOG_MESSAGE if params is not None else None
            fields_out: Any = {"censored": NO_LOG_MESSAGE} if fields else None
        else:
            params_out = redact(_plain(params), sensitive) if params is not None else None
            fields_out = redact(_plain(fields), sensitive) if fields else None
            message = redact(str(message), sensitive)

        entry = ReportEntry(
            play=play,
            host=host,
            task=task,
            status=status,
            kind=kind,
            message=message,
            params=params_out,
            fields=fields_out,
            ignored=ignored,
        )
        with self._lock:
            self._entries.append(entry)
            stats = self._stats.get(host)
            if stats is None:
                stats = self._stats[host] = HostStats(host)
            stats.record(status, ignored=ignored)
        logger.debug("host=%s task=%s status=%s kind=%s", host, task, status.value, kind)
        return entry

    def add_host(self, host: str) -> None:
        """Make sure ``host`` appears in the recap even if nothing ran on it."""
        with self._lock:
            self._stats.setdefault(host, HostStats(host))

    @property
    def entries(self) -> List[ReportEntry]:
        with self._lock:
            return list(self._entries)

    @property
    def stats(self) -> Dict[str, HostStats]:
        with self._lock:
            return dict(self._stats)

    def entries_for(self, host: str) -> List[ReportEntry]:
        return [e for e in self.entries if e.host == host]

    def failed_hosts(self) -> List[str]:
        return [h for h, s in self.stats.items() if s.has_failures]

    def problems(self) -> List[Dict[str, Any]]:
        """Failed and unreachable entries, ignored ones included."""
        return [
            {
                "task": e.task,
                "host": e.host,
                "status": e.status.value,
                "kind": e.kind,
                "msg": e.message,
                "ignored": e.ignored,
            }
            for e in self.entries
            if e.status in (TaskStatus.FAILED, TaskStatus.UNREACHABLE)
        ]

    def finalize(self) -> ExitCode:
        if self.failed_hosts():
            return ExitCode.HOST_FAILED
        return ExitCode.SUCCESS

    def to_dict(self) -> Dict[str, Any]:
        return {
            "tasks": [e.to_dict() for e in self.entries],
            "stats": {h: s.to_dict() for h, s in self.stats.items()},
            "problems": self.problems(),
            "exit_code": int(self.finalize()),
        }

    def to_json(self, indent: int = 2) -> str:
        return json.dumps(self.to_dict(), indent=indent)
