"""Per-process reader for the Linux /proc filesystem.

For each pid three files are read:
- cmdline: raw NUL-separated command line (empty for kernel threads)
- smaps: per-mapping memory accounting
- stat: status line whose second field is the parenthesized process name
"""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path

from memchart.smaps import smaps_totals

DEFAULT_PROC_ROOT = Path("/proc")


class ProbeError(Exception):
    """A pid could not be sampled."""

    def __init__(self, pid: str, reason: str) -> None:
        super().__init__(f"pid {pid}: {reason}")
        self.pid = pid
        self.reason = reason


class ProbeNotFound(ProbeError):
    """The process is gone; its record should be evicted."""


class ProbeReadError(ProbeError):
    """The process exists but could not be read this cycle."""


@dataclass(frozen=True)
class ProcessRecord:
    """One process's identity and aggregated memory usage (kB)."""

    cmdline: bytes
    name: str
    rss: int = 0
    pss: int = 0
    uss: int = 0

    def to_dict(self) -> dict:
        """Serialize the exported fields. The command line is not exported."""
        return {"name": self.name, "rss": self.rss, "pss": self.pss, "uss": self.uss}


def is_kernel_process(record: ProcessRecord) -> bool:
    """Kernel threads have no user command line."""
    return len(record.cmdline) == 0


def parse_process_name(stat: str) -> str | None:
    """Return the text between the first '(' and the last ')' of a stat line.

    Names may themselves contain parentheses, hence the last ')'.
    Returns None if the line has no parenthesized field.
    """
    start = stat.find("(")
    end = stat.rfind(")")
    if start == -1 or end <= start:
        return None
    return stat[start + 1 : end]


def probe_process(pid: str, proc_root: Path = DEFAULT_PROC_ROOT) -> ProcessRecord:
    """Read one process from /proc and aggregate its memory usage.

    Raises:
        ProbeNotFound: The /proc/<pid> directory no longer exists.
        ProbeReadError: Any other read failure, e.g. permission denied.
    """
    pid_dir = proc_root / pid
    try:
        cmdline = (pid_dir / "cmdline").read_bytes()
        smaps = (pid_dir / "smaps").read_text(errors="replace")
        stat = (pid_dir / "stat").read_text(errors="replace")
    except (FileNotFoundError, ProcessLookupError) as e:
        # A missing file inside a live directory is not an exit
        if isinstance(e, ProcessLookupError) or not pid_dir.exists():
            raise ProbeNotFound(pid, "process exited") from e
        raise ProbeReadError(pid, str(e)) from e
    except OSError as e:
        raise ProbeReadError(pid, str(e)) from e

    name = parse_process_name(stat)
    if name is None:
        raise ProbeReadError(pid, "stat has no process name")

    sizes = smaps_totals(smaps)
    return ProcessRecord(
        cmdline=cmdline,
        name=name,
        rss=sizes.rss,
        pss=sizes.pss,
        uss=sizes.uss,
    )
