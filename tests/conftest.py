"""Shared test fixtures for memchart."""

from pathlib import Path

import pytest

from memchart.probe import ProcessRecord


def smaps_block(
    start: str = "08048000",
    end: str = "08049000",
    rss: int = 4,
    pss: int = 2,
    private_clean: int = 0,
    private_dirty: int = 4,
    path: str = "/bin/cat",
) -> str:
    """Create one smaps block with the counters memchart aggregates."""
    return (
        f"{start}-{end} r-xp 00000000 03:00 8312       {path}\n"
        f"Size:                  4 kB\n"
        f"Rss:                 {rss} kB\n"
        f"Pss:                 {pss} kB\n"
        f"Shared_Clean:          0 kB\n"
        f"Shared_Dirty:          0 kB\n"
        f"Private_Clean:       {private_clean} kB\n"
        f"Private_Dirty:       {private_dirty} kB\n"
        f"Referenced:            4 kB\n"
        f"Swap:                  0 kB\n"
    )


def make_proc_entry(
    root: Path,
    pid: str | int,
    name: str = "cat",
    cmdline: bytes = b"/bin/cat\x00",
    smaps: str | None = None,
    stat: str | None = None,
) -> Path:
    """Create a fake /proc/<pid> directory under root."""
    pid_dir = root / str(pid)
    pid_dir.mkdir(parents=True, exist_ok=True)
    (pid_dir / "cmdline").write_bytes(cmdline)
    (pid_dir / "smaps").write_text(smaps if smaps is not None else smaps_block())
    (pid_dir / "stat").write_text(stat if stat is not None else f"{pid} ({name}) S 1 1 1 0 -1\n")
    return pid_dir


def make_record(
    name: str = "cat",
    rss: int = 4,
    pss: int = 2,
    uss: int = 4,
    cmdline: bytes = b"/bin/cat\x00",
) -> ProcessRecord:
    """Create a ProcessRecord for testing."""
    return ProcessRecord(cmdline=cmdline, name=name, rss=rss, pss=pss, uss=uss)


@pytest.fixture
def proc_root(tmp_path: Path) -> Path:
    """Create an empty fake /proc root."""
    root = tmp_path / "proc"
    root.mkdir()
    # Non-pid entries that enumeration must skip
    (root / "self").mkdir()
    (root / "meminfo").write_text("MemTotal: 1024 kB\n")
    return root
