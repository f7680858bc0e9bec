"""Shared pid -> ProcessRecord table.

The sampler is the only writer; HTTP handlers and the dump path read.
Writers and readers run on different threads, so every operation holds the
table lock and readers only ever receive a copy.
"""

from __future__ import annotations

import threading
from collections.abc import Iterable, Mapping
from types import MappingProxyType

from memchart.probe import ProcessRecord

# Immutable point-in-time copy of the table
TableView = Mapping[str, ProcessRecord]


class SnapshotTable:
    """Lock-guarded mapping of pid (string) to ProcessRecord.

    Starts empty. Lives as long as the process; no teardown needed.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._records: dict[str, ProcessRecord] = {}

    def __len__(self) -> int:
        with self._lock:
            return len(self._records)

    def __contains__(self, pid: object) -> bool:
        with self._lock:
            return pid in self._records

    def upsert(self, pid: str, record: ProcessRecord) -> None:
        """Insert or refresh the record for pid."""
        with self._lock:
            self._records[pid] = record

    def remove(self, pid: str) -> None:
        """Drop the record for pid. Unknown pids are ignored."""
        with self._lock:
            self._records.pop(pid, None)

    def apply(
        self,
        upserts: Mapping[str, ProcessRecord],
        removals: Iterable[str] = (),
    ) -> None:
        """Commit one reconciliation cycle atomically.

        Readers see either the table before the cycle or after it, never a
        mix of the two.
        """
        with self._lock:
            self._records.update(upserts)
            for pid in removals:
                self._records.pop(pid, None)

    def snapshot_view(self) -> TableView:
        """Return a read-only copy of the current table."""
        with self._lock:
            return MappingProxyType(dict(self._records))
