from __future__ import annotations

import time
from collections import defaultdict, deque
from dataclasses import dataclass
from typing import Deque


@dataclass(frozen=True)
class SendSample:
    ts: float
    channel: str
    latency_ms: float
    success: bool
    attempts: int


_send_samples: Deque[SendSample] = deque(maxlen=5000)
_counters: dict[str, int] = defaultdict(int)


def record_send(*, channel: str, latency_ms: float, success: bool, attempts: int) -> None:
    # Capture per-channel send latency and outcomes.
    _send_samples.append(
        SendSample(
            ts=time.time(),
            channel=channel,
            latency_ms=latency_ms,
            success=success,
            attempts=attempts,
        )
    )


def increment_counter(name: str, value: int = 1) -> None:
    # Store counters for ops status and dashboards.
    _counters[name] += value


def counters_snapshot() -> dict[str, int]:
    return dict(_counters)


def send_stats_by_channel(window_s: int = 3600) -> dict[str, dict[str, float | int]]:
    # Summarize recent sends per channel for the ops status surface.
    cutoff = time.time() - window_s
    grouped: dict[str, list[SendSample]] = defaultdict(list)
    for sample in _send_samples:
        if sample.ts >= cutoff:
            grouped[sample.channel].append(sample)
    stats: dict[str, dict[str, float | int]] = {}
    for channel, samples in grouped.items():
        latencies = sorted(sample.latency_ms for sample in samples)
        idx = max(0, int(round(0.95 * (len(latencies) - 1))))
        stats[channel] = {
            "count": len(samples),
            "failures": sum(1 for sample in samples if not sample.success),
            "attempts": sum(sample.attempts for sample in samples),
            "p95_ms": latencies[idx],
        }
    return stats


def reset_telemetry() -> None:
    # Allow tests to start from empty counters.
    _send_samples.clear()
    _counters.clear()
