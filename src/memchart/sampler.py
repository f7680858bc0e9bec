"""Enumerate live pids, probe each one and reconcile the snapshot table."""

from __future__ import annotations

import os
import time
from collections.abc import Sequence
from dataclasses import dataclass
from pathlib import Path

import structlog

from memchart.probe import (
    DEFAULT_PROC_ROOT,
    ProbeNotFound,
    ProbeReadError,
    ProcessRecord,
    is_kernel_process,
    probe_process,
)
from memchart.table import SnapshotTable

log = structlog.get_logger()


class EnumerationError(Exception):
    """The process-information root could not be listed. Fatal."""


@dataclass(frozen=True)
class CycleResult:
    """Outcome of one reconciliation cycle."""

    probed: int
    updated: int
    removed: int
    skipped: int
    elapsed_ms: float


def enumerate_pids(proc_root: Path = DEFAULT_PROC_ROOT) -> list[str]:
    """List every entry of proc_root whose name starts with a digit.

    Raises:
        EnumerationError: proc_root cannot be read.
    """
    try:
        names = os.listdir(proc_root)
    except OSError as e:
        raise EnumerationError(f"cannot list {proc_root}: {e}") from e
    return [name for name in names if name[:1].isdigit()]


class Sampler:
    """Reconciles a SnapshotTable against /proc.

    The sampler is the table's only writer. Probing happens outside the
    table lock; results are committed once per cycle.
    """

    def __init__(
        self,
        table: SnapshotTable | None = None,
        proc_root: Path = DEFAULT_PROC_ROOT,
    ) -> None:
        self.table = table if table is not None else SnapshotTable()
        self.proc_root = Path(proc_root)
        self.cycle_count = 0

    def run_cycle(self, pids: Sequence[str] | None = None) -> CycleResult:
        """Probe the given pids (or every live pid) and update the table.

        Success upserts, a vanished process or a kernel thread is removed,
        and a read failure leaves any existing record as it was.

        Raises:
            EnumerationError: No pids were given and /proc cannot be listed.
        """
        start = time.monotonic()
        if not pids:
            live = enumerate_pids(self.proc_root)
            # Tracked pids that have exited are no longer listed; probe them
            # anyway so they come back NotFound and get evicted.
            seen = set(live)
            pids = live + [pid for pid in self.table.snapshot_view() if pid not in seen]

        upserts: dict[str, ProcessRecord] = {}
        removals: list[str] = []
        skipped = 0

        for pid in pids:
            try:
                record = probe_process(pid, self.proc_root)
            except ProbeNotFound:
                log.debug("process_gone", pid=pid)
                removals.append(pid)
                continue
            except ProbeReadError as e:
                log.warning("probe_failed", pid=pid, error=e.reason)
                skipped += 1
                continue

            if is_kernel_process(record):
                removals.append(pid)
            else:
                upserts[pid] = record

        self.table.apply(upserts, removals)
        self.cycle_count += 1

        result = CycleResult(
            probed=len(pids),
            updated=len(upserts),
            removed=len(removals),
            skipped=skipped,
            elapsed_ms=round((time.monotonic() - start) * 1000, 1),
        )
        log.debug(
            "cycle_completed",
            cycle=self.cycle_count,
            probed=result.probed,
            updated=result.updated,
            removed=result.removed,
            skipped=result.skipped,
            elapsed_ms=result.elapsed_ms,
        )
        return result

    def run_once(self, pids: Sequence[str] | None = None) -> SnapshotTable:
        """One-shot mode: a single cycle, returning the populated table."""
        self.run_cycle(pids)
        return self.table
