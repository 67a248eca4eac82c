#!/usr/bin/env python3
"""Run-scoped progress logging shared by the scenario and its collaborators."""

from __future__ import annotations

import sys
from datetime import datetime
from pathlib import Path
from threading import Lock
from typing import Optional, TextIO


class RunLog:
    """Print tagged progress lines and optionally mirror them to progress.log.

    Lines look like ``[2024-05-01T10:00:00] [otlp_prometheus] [scenario] message``.
    The sampler, the resource watchers and the driver all log through the same
    instance, so writes are serialized.
    """

    def __init__(self, run_name: str, progress_path: Optional[Path] = None, stream: Optional[TextIO] = None):
        self.run_name = run_name
        self.progress_path = progress_path
        self._stream = stream
        self._lock = Lock()

    def _format(self, tag: str, message: str) -> str:
        ts = datetime.now().isoformat(timespec="seconds")
        return f"[{ts}] [{self.run_name}] [{tag}] {message}"

    def info(self, tag: str, message: str) -> None:
        self._emit(self._format(tag, message), self._stream or sys.stdout)

    def error(self, tag: str, message: str) -> None:
        self._emit(self._format(tag, f"error: {message}"), self._stream or sys.stderr)

    def _emit(self, line: str, stream: TextIO) -> None:
        with self._lock:
            print(line, file=stream, flush=True)
            if self.progress_path is None:
                return
            try:
                self.progress_path.parent.mkdir(parents=True, exist_ok=True)
                with self.progress_path.open("a", encoding="utf-8") as f:
                    f.write(line + "\n")
            except OSError:
                # Best-effort only: don't break a run if the progress file is unwritable.
                pass
