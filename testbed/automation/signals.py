#!/usr/bin/env python3
"""One-shot failure broadcast used to abort a scenario early."""

from __future__ import annotations

from threading import Event, Lock
from typing import Optional

from testbed.automation.progress import RunLog


class FailureSignal:
    """Single-fire broadcast event carrying the first failure cause.

    The not-fired -> fired transition happens under a lock so that concurrent
    watchers cannot both record a cause. Later ``fire`` calls are ignored and
    report ``False``.
    """

    def __init__(self, log: Optional[RunLog] = None):
        self._log = log
        self._lock = Lock()
        self._event = Event()
        self._cause: Optional[str] = None
        self._source: Optional[str] = None

    def fire(self, cause: object, source: str = "scenario") -> bool:
        with self._lock:
            if self._event.is_set():
                if self._log:
                    self._log.info(source, f"ignoring further failure after first: {cause}")
                return False
            self._cause = str(cause)
            self._source = source
            if self._log:
                self._log.error(source, self._cause)
            self._event.set()
        return True

    @property
    def is_fired(self) -> bool:
        return self._event.is_set()

    @property
    def cause(self) -> Optional[str]:
        return self._cause

    @property
    def source(self) -> Optional[str]:
        return self._source

    def wait(self, timeout: Optional[float] = None) -> bool:
        """Block until fired or ``timeout`` elapses; return whether it fired."""
        return self._event.wait(timeout)
