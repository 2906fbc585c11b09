"""Best-effort background writer for the serialized codebase context."""

from __future__ import annotations

import logging
import threading
from pathlib import Path
from typing import Optional

__all__ = ["DebugSnapshotTask", "write_debug_snapshot"]

LOGGER = logging.getLogger(__name__)


class DebugSnapshotTask:
    """Detached write of one payload; failures land in ``error``, never raise."""

    def __init__(self, path: Path, payload: str, *, logger: Optional[logging.Logger] = None) -> None:
        self.path = path
        self.error: Optional[OSError] = None
        self._payload = payload
        self._logger = logger or LOGGER
        self._thread = threading.Thread(
            target=self._run, name="ctxsync-debug-snapshot", daemon=True
        )

    def start(self) -> "DebugSnapshotTask":
        self._thread.start()
        return self

    @property
    def done(self) -> bool:
        return not self._thread.is_alive()

    def wait(self, timeout: Optional[float] = None) -> bool:
        """Block until the write finishes; only tests and shutdown paths call this."""
        self._thread.join(timeout)
        return self.done

    def _run(self) -> None:
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            self.path.write_text(self._payload, encoding="utf-8")
        except OSError as error:
            self.error = error
            self._logger.warning("Failed to write debug snapshot %s: %s", self.path, error)
            return
        self._logger.debug("Wrote debug snapshot to %s (%d chars)", self.path, len(self._payload))


def write_debug_snapshot(
    path: Path,
    payload: str,
    *,
    logger: Optional[logging.Logger] = None,
) -> DebugSnapshotTask:
    """Start writing ``payload`` to ``path`` on a daemon thread and return the task."""
    return DebugSnapshotTask(path, payload, logger=logger).start()
