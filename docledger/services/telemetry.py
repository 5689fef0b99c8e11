from __future__ import annotations

import math
import time
from collections import defaultdict, deque
from dataclasses import dataclass
from typing import Deque


@dataclass(frozen=True)
class StorageCallSample:
    ts: float
    operation: str
    latency_ms: float
    success: bool


_storage_samples: Deque[StorageCallSample] = deque(maxlen=10000)
_reindex_latency_samples: Deque[float] = deque(maxlen=5000)
_counters: dict[str, int] = defaultdict(int)
_gauges: dict[str, float] = {}


def record_storage_call(*, operation: str, latency_ms: float, success: bool) -> None:
    # Capture storage call latency and outcome, including all retry attempts.
    _storage_samples.append(
        StorageCallSample(
            ts=time.time(),
            operation=operation,
            latency_ms=latency_ms,
            success=success,
        )
    )


def record_reindex_latency(latency_s: float) -> None:
    # Track enqueue-to-completion latency for the reindex SLA dashboard.
    _reindex_latency_samples.append(latency_s)


def increment_counter(name: str, value: int = 1) -> None:
    _counters[name] += value


def set_gauge(name: str, value: float) -> None:
    _gauges[name] = float(value)


def storage_latency_by_operation(window_s: int) -> dict[str, dict[str, float | None]]:
    # Aggregate p95/max latency and failure counts per storage operation.
    cutoff = time.time() - window_s
    grouped: dict[str, list[StorageCallSample]] = defaultdict(list)
    for sample in _storage_samples:
        if sample.ts >= cutoff:
            grouped[sample.operation].append(sample)
    result: dict[str, dict[str, float | None]] = {}
    for operation, samples in grouped.items():
        latencies = sorted(sample.latency_ms for sample in samples)
        idx = max(0, math.ceil(0.95 * len(latencies)) - 1)
        result[operation] = {
            "p95": latencies[idx],
            "max": latencies[-1],
            "failures": float(sum(1 for sample in samples if not sample.success)),
        }
    return result


def reindex_latency_stats() -> dict[str, float | None]:
    if not _reindex_latency_samples:
        return {"p95": None, "max": None}
    latencies = sorted(_reindex_latency_samples)
    idx = max(0, math.ceil(0.95 * len(latencies)) - 1)
    return {"p95": latencies[idx], "max": latencies[-1]}


def counters_snapshot() -> dict[str, int]:
    return dict(_counters)


def gauges_snapshot() -> dict[str, float]:
    return dict(_gauges)


def reset_telemetry() -> None:
    # Clear in-process samples so tests observe only their own signals.
    _storage_samples.clear()
    _reindex_latency_samples.clear()
    _counters.clear()
    _gauges.clear()
