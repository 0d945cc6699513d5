from __future__ import annotations

import os
import threading
from datetime import datetime
from pathlib import Path
from typing import Union


class AuditSink:
    """
    Append-only, human-readable activity log shared by every run on the host.

    Each event is one line written with a single `write()` on an `O_APPEND` descriptor, so concurrently
    running sessions interleave whole lines rather than fragments.
    """

    def __init__(self, path: Union[str, Path], *, run_id: str = "GLOBAL") -> None:
        self.path = Path(path)
        self.run_id = run_id
        self._lock = threading.Lock()

    def write(self, message: str) -> None:
        stamp = datetime.now().strftime("%Y-%m-%d %H:%M:%S")
        text = " ".join((message or "").splitlines())
        line = f"[{stamp}] [{self.run_id}] {text}\n".encode("utf-8")

        with self._lock:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            fd = os.open(self.path, os.O_WRONLY | os.O_APPEND | os.O_CREAT, 0o644)
            try:
                os.write(fd, line)
            finally:
                os.close(fd)

    def fatal(self, message: str) -> None:
        self.write(f"FATAL {message}")

    def read_lines(self) -> list[str]:
        if not self.path.exists():
            return []
        return self.path.read_text(encoding="utf-8").splitlines()
