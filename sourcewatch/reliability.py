"""
Per-source reliability history.

Bookkeeping only: nothing here feeds the composite score. Each source keeps an
all-time total plus a ring buffer of its most recent outcomes, so callers can tell
"historically flaky" apart from "currently down".
"""

from __future__ import annotations

import threading
from collections import deque
from datetime import datetime
from typing import Any, Optional

from sourcewatch.models import UTC, DomainHealth, OutcomeSample, ReliabilityRecord


class _History:
    __slots__ = ("total", "successful", "recent")

    def __init__(self, window: int) -> None:
        self.total = 0
        self.successful = 0
        self.recent: deque[OutcomeSample] = deque(maxlen=window)


class ReliabilityTracker:
    def __init__(self, window_size: int = 10) -> None:
        self._window = max(1, window_size)
        self._records: dict[str, _History] = {}
        self._lock = threading.Lock()

    @property
    def window_size(self) -> int:
        return self._window

    def record(
        self,
        source_id: str,
        available: bool,
        response_time_ms: int = 0,
        timestamp: Optional[datetime] = None,
    ) -> None:
        sample = OutcomeSample(
            timestamp=timestamp or datetime.now(UTC),
            available=available,
            response_time_ms=max(0, int(response_time_ms)),
        )
        with self._lock:
            history = self._records.get(source_id)
            if history is None:
                history = self._records[source_id] = _History(self._window)
            history.total += 1
            if available:
                history.successful += 1
            history.recent.append(sample)

    def get(self, source_id: str) -> Optional[ReliabilityRecord]:
        """Snapshot of the source's history, or None if it was never recorded."""
        with self._lock:
            history = self._records.get(source_id)
            if history is None:
                return None
            return ReliabilityRecord(
                total_checks=history.total,
                successful_checks=history.successful,
                recent_outcomes=list(history.recent),
            )

    def source_ids(self) -> list[str]:
        with self._lock:
            return list(self._records)

    def clear(self) -> None:
        with self._lock:
            self._records.clear()

    def export(self) -> dict[str, Any]:
        """JSON-compatible dump of every record."""
        with self._lock:
            ids = list(self._records)
        out: dict[str, Any] = {}
        for source_id in ids:
            record = self.get(source_id)
            if record is not None:
                out[source_id] = record.model_dump(mode="json")
        return out

    def load(self, data: dict[str, Any]) -> int:
        """Replace histories with records from ``export``; returns how many were loaded."""
        loaded = 0
        with self._lock:
            for source_id, raw in data.items():
                record = ReliabilityRecord.model_validate(raw)
                history = _History(self._window)
                history.total = record.total_checks
                history.successful = min(record.successful_checks, record.total_checks)
                history.recent.extend(record.recent_outcomes)
                self._records[source_id] = history
                loaded += 1
        return loaded


class DomainHealthTracker:
    """Per-hostname success counts with the time of the last success and failure."""

    def __init__(self) -> None:
        self._records: dict[str, DomainHealth] = {}
        self._lock = threading.Lock()

    def record(self, hostname: str, available: bool, timestamp: Optional[datetime] = None) -> None:
        host = hostname.lower()
        if not host:
            return
        when = timestamp or datetime.now(UTC)
        with self._lock:
            current = self._records.get(host) or DomainHealth()
            update: dict[str, Any] = {"total_count": current.total_count + 1}
            if available:
                update["success_count"] = current.success_count + 1
                update["last_success"] = when
            else:
                update["last_failure"] = when
            self._records[host] = current.model_copy(update=update)

    def get(self, hostname: str) -> Optional[DomainHealth]:
        with self._lock:
            record = self._records.get(hostname.lower())
            return record.model_copy() if record is not None else None

    def hostnames(self) -> list[str]:
        with self._lock:
            return list(self._records)

    def clear(self) -> None:
        with self._lock:
            self._records.clear()

    def export(self) -> dict[str, Any]:
        with self._lock:
            return {host: record.model_dump(mode="json") for host, record in self._records.items()}

    def load(self, data: dict[str, Any]) -> int:
        with self._lock:
            for host, raw in data.items():
                self._records[host.lower()] = DomainHealth.model_validate(raw)
        return len(data)
