"""Per-model request counters consumed by the autoscaler."""
from __future__ import annotations

import threading
from typing import Dict


class DemandTracker:
    def __init__(self) -> None:
        self._counts: Dict[str, int] = {}
        self._lock = threading.Lock()

    def record(self, model: str) -> None:
        with self._lock:
            self._counts[model] = self._counts.get(model, 0) + 1

    def drain(self) -> Dict[str, int]:
        """Return the counts since the previous drain and reset them.

        Models without requests since the last drain are omitted.
        """
        with self._lock:
            counts, self._counts = self._counts, {}
        return counts

    def peek(self) -> Dict[str, int]:
        with self._lock:
            return dict(self._counts)
