"""Parser for /proc/PID/smaps and the RSS/PSS/USS aggregation.

smaps is a sequence of blocks, one per mapping. Each block starts with a
header line describing the address range, permissions and backing file:

    08048000-08049000 r-xp 00000000 03:00 8312       /bin/cat

followed by counter lines of the form ``Label:   <value> kB``.

All values are kilobytes, as reported by the kernel.
"""

from __future__ import annotations

import re
from dataclasses import dataclass

# Unit suffix that marks a counter line
UNIT = "kB"

# Counters that make up the unique set size
USS_COUNTERS = ("private_clean", "private_dirty")

# Counter value: optional sign, ASCII digits, optional fraction
_NUMBER = re.compile(r"[+-]?\d+(\.\d+)?", re.ASCII)

# start address -> {lowercased counter name -> kB}
Mappings = dict[str, dict[str, int]]


@dataclass(frozen=True)
class MemSizes:
    """Aggregated memory figures for one process, in kB."""

    rss: int = 0
    pss: int = 0
    uss: int = 0


def parse_or_zero(text: str | None) -> int:
    """Parse a counter value, treating anything unparsable as 0.

    Only plain ASCII decimals are accepted. Fractions are truncated toward
    zero; underscores, exponents, NaN, infinity and non-ASCII digits give 0.
    """
    if not text or not _NUMBER.fullmatch(text):
        return 0
    return int(text.split(".", 1)[0])


def parse_smaps(smaps: str) -> Mappings:
    """Extract the per-mapping counters from smaps-formatted text.

    A line whose last field is not ``kB`` is a header and opens a new counter
    set keyed by the start address. Lines such as ``VmFlags: rd ex`` also
    qualify and open empty pseudo-blocks, which contribute nothing to totals.

    Known fragility: an empty line ends the scan, so any mappings after a
    blank line are dropped. Real smaps output contains no blank lines.
    """
    mappings: Mappings = {}
    current: dict[str, int] | None = None

    for line in smaps.split("\n"):
        if not line:
            break
        fields = line.split()
        if not fields:
            continue

        if fields[-1] != UNIT:
            start = fields[0].split("-", 1)[0]
            current = {}
            mappings[start] = current
        elif current is not None:
            name = fields[0].rstrip(":").lower()
            current[name] = parse_or_zero(fields[1] if len(fields) > 2 else None)

    return mappings


def memsizes(mappings: Mappings) -> MemSizes:
    """Sum RSS, PSS and USS over every mapping. Missing counters count as 0."""
    rss = pss = uss = 0
    for counters in mappings.values():
        rss += counters.get("rss", 0)
        pss += counters.get("pss", 0)
        uss += sum(counters.get(name, 0) for name in USS_COUNTERS)
    return MemSizes(rss=rss, pss=pss, uss=uss)


def smaps_totals(smaps: str) -> MemSizes:
    """Parse smaps text and aggregate it in one step."""
    return memsizes(parse_smaps(smaps))
