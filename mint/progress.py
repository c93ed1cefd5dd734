from __future__ import annotations

import sys
import threading
from typing import TextIO


class ProgressWriter:
    """Serialized progress output; quiet in JSON mode, details only when verbose."""

    def __init__(self, *, enabled: bool = True, verbose: bool = False, stream: TextIO | None = None) -> None:
        self.enabled = enabled
        self.verbose = verbose
        self._stream = stream
        self._lock = threading.Lock()

    def _write(self, message: str) -> None:
        with self._lock:
            print(message, file=self._stream or sys.stdout, flush=True)

    def line(self, message: str) -> None:
        if self.enabled:
            self._write(message)

    def detail(self, message: str) -> None:
        if self.enabled and self.verbose:
            self._write(message)


def quiet() -> ProgressWriter:
    return ProgressWriter(enabled=False)
