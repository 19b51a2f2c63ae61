from __future__ import annotations

import threading
from typing import Dict


class MetricsStore:
    """Thread-safe in-memory metrics."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._counters: Dict[str, int] = {
            "uploads": 0,
            "bytes_uploaded": 0,
            "failed_uploads": 0,
            "downloads": 0,
        }
        self._failures: Dict[str, int] = {}

    def record_upload(self, size_bytes: int) -> None:
        with self._lock:
            self._counters["uploads"] += 1
            self._counters["bytes_uploaded"] += size_bytes

    def record_failure(self, reason: str) -> None:
        with self._lock:
            self._counters["failed_uploads"] += 1
            self._failures[reason] = self._failures.get(reason, 0) + 1

    def record_download(self) -> None:
        with self._lock:
            self._counters["downloads"] += 1

    def snapshot(self) -> Dict[str, object]:
        with self._lock:
            data: Dict[str, object] = dict(self._counters)
            data["failures_by_reason"] = dict(self._failures)
            return data


metrics = MetricsStore()
