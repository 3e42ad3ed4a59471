"""Hashrate and hash-count display helpers."""

from __future__ import annotations


def compute_hashrate(hashes: int, elapsed_seconds: float) -> float:
    """Hashes per second over a window. Returns 0.0 for invalid inputs."""
    if elapsed_seconds <= 0 or hashes <= 0:
        return 0.0
    return hashes / elapsed_seconds


def format_hashrate(rate: float) -> str:
    """``1_234_567`` -> ``"1.23 MH/s"``, ``4_500`` -> ``"4.5 KH/s"``, ``12`` -> ``"12 H/s"``."""
    if rate >= 1e6:
        return f"{rate / 1e6:.2f} MH/s"
    if rate >= 1e3:
        return f"{rate / 1e3:.1f} KH/s"
    return f"{round(rate)} H/s"


def format_hash_count(count: int) -> str:
    """Compact total: ``1.20G``, ``3.4M``, ``5K``, ``999``."""
    if count >= 1e9:
        return f"{count / 1e9:.2f}G"
    if count >= 1e6:
        return f"{count / 1e6:.1f}M"
    if count >= 1e3:
        return f"{count / 1e3:.0f}K"
    return str(count)


def format_lane_rates(per_lane: list[float]) -> str:
    """``T0: 1.2M T1: 850K`` style per-lane summary."""
    parts = []
    for i, rate in enumerate(per_lane):
        if rate >= 1e6:
            parts.append(f"T{i}: {rate / 1e6:.1f}M")
        elif rate >= 1e3:
            parts.append(f"T{i}: {rate / 1e3:.0f}K")
        else:
            parts.append(f"T{i}: {round(rate)}")
    return " ".join(parts)
