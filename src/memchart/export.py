"""Render a table view as a JSON document or CSV text."""

from __future__ import annotations

import csv
import io
import json
from dataclasses import dataclass
from datetime import datetime

from memchart.table import TableView

# Timestamp format of the JSON document (12-hour clock, e.g. "03:04:05")
TIMESTAMP_FORMAT = "%I:%M:%S"

# Column order is fixed: uss comes before pss
CSV_HEADER = ("pid", "name", "rss", "uss", "pss")


@dataclass(frozen=True)
class Snapshot:
    """A timestamped view of all tracked processes."""

    timestamp: str
    processes: TableView

    def to_dict(self) -> dict:
        """Serialize using the document's wire keys."""
        return {
            "time": self.timestamp,
            "pids": {pid: record.to_dict() for pid, record in self.processes.items()},
        }


def export_timestamp(now: datetime | None = None) -> str:
    """Format the export time."""
    return (now or datetime.now()).strftime(TIMESTAMP_FORMAT)


def _pid_order(pid: str) -> tuple[int, str]:
    return (int(pid), pid) if pid.isdigit() else (-1, pid)


def render_json(view: TableView, timestamp: str | None = None) -> str:
    """Render the view as an indented JSON document stamped with export time."""
    snapshot = Snapshot(timestamp=timestamp or export_timestamp(), processes=view)
    return json.dumps(snapshot.to_dict(), indent=2)


def csv_rows(view: TableView) -> list[list[str]]:
    """Return one row per process, ordered by pid."""
    rows = []
    for pid in sorted(view, key=_pid_order):
        record = view[pid]
        rows.append([pid, record.name, str(record.rss), str(record.uss), str(record.pss)])
    return rows


def render_csv(view: TableView) -> str:
    """Render the view as CSV with a ``pid,name,rss,uss,pss`` header."""
    buf = io.StringIO()
    writer = csv.writer(buf, lineterminator="\n")
    writer.writerow(CSV_HEADER)
    writer.writerows(csv_rows(view))
    return buf.getvalue()
