"""
Measurement statistics.

Pure functions -- no I/O, no side effects.
"""
from __future__ import annotations

import statistics
from typing import List


def calculate_jitter(samples: List[float]) -> float:
    """Mean absolute difference between consecutive samples."""
    if len(samples) < 2:
        return 0.0
    diffs = [abs(samples[i] - samples[i - 1]) for i in range(1, len(samples))]
    return statistics.mean(diffs)


def calculate_speed_mbps(
    bytes_total: int,
    elapsed_seconds: float,
    overhead_factor: float = 1.0,
) -> float:
    """Throughput in Mbit/s, scaled by a protocol overhead factor."""
    if elapsed_seconds <= 0:
        return 0.0
    return (bytes_total * 8 * overhead_factor) / elapsed_seconds / 1_000_000


# ---------------------------------------------------------------------------
# Formatting helpers
# ---------------------------------------------------------------------------

def format_speed(speed_mbps: float) -> str:
    """Human-readable speed string."""
    if speed_mbps >= 1000:
        return f"{speed_mbps / 1000:.2f} Gbps"
    return f"{speed_mbps:.2f} Mbps"


def format_latency(latency_ms: float) -> str:
    """Human-readable latency string."""
    if latency_ms >= 1000:
        return f"{latency_ms / 1000:.2f} s"
    return f"{latency_ms:.1f} ms"
