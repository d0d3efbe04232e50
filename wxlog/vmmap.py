"""Parsing of the macOS vmmap report of a process's writable memory regions."""

from __future__ import annotations

import re
import subprocess
from dataclasses import dataclass

FILTER_REGION_TYPE = "MALLOC_NANO"
FILTER_REGION_TYPE_2 = "MALLOC_SMALL"
FILTER_SHRMOD = "SM=PRV"
EMPTY_FLAG = "(empty)"
COMMAND_VMMAP = "vmmap"
COMMAND_UNAME = "uname"

_HEADER_PREFIX = "==== Writable regions for"

# REGION TYPE  START - END  [ VSIZE  RSDNT  DIRTY  SWAP] PRT/MAX SHRMOD PURGE  REGION DETAIL
_LINE_RE = re.compile(
    r"^(\S+)\s+([0-9a-f]+)-([0-9a-f]+)\s+\[\s*(\S+)\s+(\S+)(?:\s+\S+){2}\]"
    r"\s+(\S+)\s+(\S+)(?:\s+\S+)?\s+(.*)$"
)
_SIZE_RE = re.compile(r"(\d+(?:\.\d+)?)([KMGB]+)?")
_MULTIPLIERS = {
    "B": 1,
    "K": 1024,
    "KB": 1024,
    "M": 1024 * 1024,
    "MB": 1024 * 1024,
    "G": 1024 * 1024 * 1024,
    "GB": 1024 * 1024 * 1024,
}


@dataclass
class MemRegion:
    """One writable memory region as reported by vmmap."""

    region_type: str
    start: int
    end: int
    vsize: int = 0
    rsdnt: int = 0
    shrmod: str = ""
    permissions: str = ""
    region_detail: str = ""
    empty: bool = False

    @property
    def size(self) -> int:
        """Number of bytes between start and end."""
        return self.end - self.start


def get_vmmap(pid: int) -> list[MemRegion]:
    """Run vmmap on a process and parse its writable regions."""
    result = subprocess.run(
        [COMMAND_VMMAP, "-wide", str(pid)],
        stdout=subprocess.PIPE,
        stderr=subprocess.STDOUT,
        text=True,
        errors="replace",
        check=True,
    )
    return load_vmmap(result.stdout)


def load_vmmap(output: str) -> list[MemRegion]:
    """Parse the writable-regions section of vmmap output."""
    lines = iter(output.splitlines())
    for line in lines:
        if line.startswith(_HEADER_PREFIX):
            next(lines, None)  # column headers
            break
    else:
        return []

    regions = []
    for line in lines:
        if not line:
            continue
        match = _LINE_RE.match(line)
        if match is None:
            continue
        regions.append(
            MemRegion(
                region_type=match.group(1).strip(),
                start=int(match.group(2), 16),
                end=int(match.group(3), 16),
                vsize=parse_size(match.group(4)),
                rsdnt=parse_size(match.group(5)),
                permissions=match.group(6),
                shrmod=match.group(7),
                region_detail=match.group(8).strip(),
                empty=EMPTY_FLAG in line,
            )
        )
    return regions


def darwin_version() -> str:
    """Return the Darwin kernel release, or an empty string if unknown."""
    try:
        result = subprocess.run(
            [COMMAND_UNAME, "-r"],
            capture_output=True,
            text=True,
            errors="replace",
            check=True,
        )
    except (OSError, subprocess.SubprocessError):
        return ""
    return result.stdout.strip()


def filter_regions(regions: list[MemRegion], version: str | None = None) -> list[MemRegion]:
    """Keep the non-empty heap regions worth scanning for keys.

    Darwin 25 and later keep them in MALLOC_SMALL, earlier releases in
    MALLOC_NANO. With no version given the running kernel's is used.
    """
    if version is None:
        version = darwin_version()
    target = FILTER_REGION_TYPE_2 if version.startswith("25") else FILTER_REGION_TYPE
    return [r for r in regions if not r.empty and r.region_type == target]


def parse_size(size_str: str) -> int:
    """Convert a size such as '5616K' or '128.0M' to bytes; 0 if unparsable."""
    match = _SIZE_RE.fullmatch(size_str.strip())
    if match is None:
        return 0
    value = float(match.group(1))
    multiplier = _MULTIPLIERS.get(match.group(2) or "", 1)
    return int(value * multiplier + 0.5)