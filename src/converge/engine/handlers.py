"""
Converge Handler Dispatcher

Tracks handler notifications per host. A handler runs at most once per host
per run, in the order it was first notified.
"""

from __future__ import annotations

import logging
import threading
from typing import Dict, Iterable, List, Set

from converge.engine.playbook import Task

logger = logging.getLogger(__name__)


class HandlerDispatcher:
    """
    Collects ``notify`` requests and hands back the handlers to run.

    ``notify`` accepts a handler name or any of its ``listen`` aliases. Shared
    between host workers, so every method takes the lock.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._handlers: Dict[str, Task] = {}
        self._aliases: Dict[str, List[str]] = {}
        self._pending: Dict[str, List[str]] = {}
        self._fired: Dict[str, Set[str]] = {}

    def register(self, handlers: Iterable[Task]) -> None:
        """Make a play's handlers notifiable. Later plays may add more."""
        with self._lock:
            for handler in handlers:
                self._handlers[handler.name] = handler
                for alias in (handler.name,) + tuple(handler.listen):
                    names = self._aliases.setdefault(alias, [])
                    if handler.name not in names:
                        names.append(handler.name)

    def notify(self, host: str, name: str) -> bool:
        """
        Record that ``name`` was notified on ``host``.

        Returns False (and logs a warning) if nothing listens to ``name``.
        """
        with self._lock:
            targets = self._aliases.get(name)
            if not targets:
                logger.warning("host=%s notified unknown handler %r", host, name)
                return False
            pending = self._pending.setdefault(host, [])
            fired = self._fired.get(host, set())
            for handler_name in targets:
                if handler_name not in pending and handler_name not in fired:
                    pending.append(handler_name)
            return True

    def pending(self, host: str) -> List[str]:
        with self._lock:
            return list(self._pending.get(host, []))

    def flush(self, host: str) -> List[Task]:
        """Pending handlers for ``host`` in first-notified order; marks them fired."""
        with self._lock:
            names = self._pending.pop(host, [])
            fired = self._fired.setdefault(host, set())
            flushed = []
            for name in names:
                if name in fired:
                    continue
                fired.add(name)
                flushed.append(self._handlers[name])
            return flushed

    def discard(self, host: str) -> List[str]:
        """Drop a host's pending notifications without running them."""
        with self._lock:
            dropped = self._pending.pop(host, [])
        if dropped:
            logger.debug("host=%s dropping handlers %s", host, dropped)
        return dropped

    def has_fired(self, host: str, name: str) -> bool:
        with self._lock:
            return name in self._fired.get(host, set())
