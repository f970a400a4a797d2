"""
Converge Display

Human-readable progress output: PLAY/TASK banners, per-host status lines and
the PLAY RECAP. Silent when JSON output is requested, so stdout carries a
single JSON document.
"""

from __future__ import annotations

import json
import sys
import threading
from typing import Optional, TextIO

from converge.engine.results import ReportEntry, RunReport, TaskStatus

GREEN = '\033[32m'
YELLOW = '\033[33m'
RED = '\033[31m'
CYAN = '\033[36m'
MAGENTA = '\033[35m'
RESET = '\033[0m'

STATUS_COLORS = {
    TaskStatus.OK: GREEN,
    TaskStatus.CHANGED: YELLOW,
    TaskStatus.FAILED: RED,
    TaskStatus.SKIPPED: CYAN,
    TaskStatus.UNREACHABLE: RED,
}

BANNER_WIDTH = 70


class Display:
    """Prints run progress. Host workers call it concurrently."""

    def __init__(
        self,
        verbosity: int = 0,
        json_output: bool = False,
        stream: Optional[TextIO] = None,
        color: Optional[bool] = None,
    ):
        self.verbosity = verbosity
        self.json_output = json_output
        self.stream = stream or sys.stdout
        if color is None:
            color = hasattr(self.stream, 'isatty') and self.stream.isatty()
        self.color = color
        self._lock = threading.Lock()
        self._last_task: Optional[str] = None

    def _paint(self, text: str, color: str) -> str:
        if not self.color:
            return text
        return f"{color}{text}{RESET}"

    def _print(self, msg: str = "") -> None:
        if self.json_output:
            return
        print(msg, file=self.stream)

    def _banner(self, title: str, fill: str = '*') -> str:
        return f"\n{title} " + fill * max(3, BANNER_WIDTH - len(title) - 1)

    def playbook_start(self, path: str) -> None:
        self._print(f"\nPLAYBOOK: {path}")

    def play_start(self, name: str) -> None:
        with self._lock:
            self._last_task = None
            self._print(self._banner(f"PLAY [{name}]"))

    def handlers_start(self) -> None:
        with self._lock:
            self._last_task = None
            self._print(self._banner("RUNNING HANDLERS", '-'))

    def task_result(self, entry: ReportEntry) -> None:
        """Print one host's result, with a TASK banner when the task changes."""
        if self.json_output:
            return
        with self._lock:
            if entry.task != self._last_task:
                self._last_task = entry.task
                self._print(self._banner(f"TASK [{entry.task}]"))
            self._print(self._result_line(entry))

    def _result_line(self, entry: ReportEntry) -> str:
        status = entry.status
        label = 'fatal' if status in (TaskStatus.FAILED, TaskStatus.UNREACHABLE) else status.value
        color = STATUS_COLORS.get(status, '')
        line = self._paint(f"{label}: [{entry.host}]", color)

        if status == TaskStatus.UNREACHABLE:
            return f"{line} => UNREACHABLE! {entry.message}"
        if status == TaskStatus.FAILED:
            suffix = self._paint(" ...ignoring", CYAN) if entry.ignored else ""
            return f"{line} => {entry.message}{suffix}"
        if status == TaskStatus.SKIPPED:
            if self.verbosity and entry.message:
                return f"{line} => {entry.message}"
            return line
        if self.verbosity and entry.fields:
            return f"{line} => {json.dumps(entry.fields, sort_keys=True, default=str)}"
        if entry.message:
            return f"{line} => {entry.message}"
        return line

    def warning(self, msg: str) -> None:
        if not self.json_output:
            print(self._paint(f"[WARNING]: {msg}", YELLOW), file=sys.stderr)

    def error(self, msg: str) -> None:
        """Print an error to stderr. JSON mode reports errors as a JSON object instead."""
        if not self.json_output:
            print(self._paint(msg, RED), file=sys.stderr)

    def recap(self, report: RunReport) -> None:
        if self.json_output:
            return
        self._print(self._banner("PLAY RECAP"))

        for host, stats in sorted(report.stats.items()):
            parts = []
            for label, count, color in (
                ("ok", stats.ok, GREEN),
                ("changed", stats.changed, YELLOW),
                ("unreachable", stats.unreachable, RED),
                ("failed", stats.failed, RED),
                ("skipped", stats.skipped, CYAN),
                ("ignored", stats.ignored, MAGENTA),
            ):
                text = f"{label}={count}"
                parts.append(self._paint(text, color) if count else text)
            host_label = self._paint(host, RED if stats.has_failures else GREEN)
            padding = ' ' * max(1, 28 - len(host))
            self._print(f"{host_label}{padding}: " + "  ".join(parts))
