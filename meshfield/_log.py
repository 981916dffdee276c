from __future__ import annotations

import os
import resource
import sys
from typing import Optional

import torch

VERBOSE: int = 0


def set_verbosity(level: int) -> None:
    global VERBOSE
    VERBOSE = int(level or 0)


def log(level: int, msg: str) -> None:
    """Print `msg` when VERBOSE >= level."""
    if VERBOSE >= level:
        print(msg, flush=True)


def warn(msg: str) -> None:
    print(f"Warning: {msg}", file=sys.stderr, flush=True)


def _format_bytes(n: float) -> str:
    if n != n or n < 0:
        return "n/a"
    units = ["B", "KiB", "MiB", "GiB", "TiB"]
    i = 0
    while n >= 1024.0 and i < len(units) - 1:
        n /= 1024.0
        i += 1
    return f"{n:.2f}{units[i]}"


def _proc_rss_bytes() -> Optional[int]:
    """Current process RSS from /proc (Linux)."""
    try:
        with open("/proc/self/statm", "r", encoding="utf-8") as f:
            parts = f.read().strip().split()
        if len(parts) < 2:
            return None
        return int(parts[1]) * int(os.sysconf("SC_PAGE_SIZE"))
    except (OSError, ValueError):
        return None


def resource_line(device: torch.device) -> str:
    """Return a compact resource usage string."""
    pieces: list[str] = []

    rss = _proc_rss_bytes()
    if rss is not None:
        pieces.append(f"proc_rss={_format_bytes(float(rss))}")

    # ru_maxrss is KiB on Linux, bytes on macOS
    maxrss = float(resource.getrusage(resource.RUSAGE_SELF).ru_maxrss)
    if sys.platform.startswith("linux"):
        maxrss *= 1024.0
    pieces.append(f"proc_rss_peak={_format_bytes(maxrss)}")

    if device.type == "cuda" and torch.cuda.is_available():
        i = device.index if device.index is not None else int(torch.cuda.current_device())
        alloc = float(torch.cuda.memory_allocated(i))
        reserv = float(torch.cuda.memory_reserved(i))
        total = float(torch.cuda.get_device_properties(i).total_memory)
        pieces.append(f"vram_alloc={_format_bytes(alloc)}/{_format_bytes(total)}")
        pieces.append(f"vram_resv={_format_bytes(reserv)}/{_format_bytes(total)}")

    return " ".join(pieces)
