"""
Per-backend operation counters for the MMR similarity phase.

Overlapping ``retrieve`` calls (and the worker thread the accelerator path
runs in) all write to the same ``BackendMetrics``, so updates go through a
lock.  Readers get an immutable ``MetricsSnapshot``.
"""

from __future__ import annotations

import threading
import time
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Dict, Iterator

from pydantic import BaseModel, ConfigDict, computed_field

from .compute import BackendKind


class MetricsSnapshot(BaseModel):
    model_config = ConfigDict(frozen=True)

    cpu_operations: int = 0
    gpu_operations: int = 0
    cpu_seconds: float = 0.0
    gpu_seconds: float = 0.0

    @computed_field  # type: ignore[misc]
    @property
    def average_cpu_seconds(self) -> float:
        return self.cpu_seconds / self.cpu_operations if self.cpu_operations else 0.0

    @computed_field  # type: ignore[misc]
    @property
    def average_gpu_seconds(self) -> float:
        return self.gpu_seconds / self.gpu_operations if self.gpu_operations else 0.0

    @computed_field  # type: ignore[misc]
    @property
    def total_operations(self) -> int:
        return self.cpu_operations + self.gpu_operations


@dataclass
class BackendMetrics:
    operations: Dict[BackendKind, int] = field(
        default_factory=lambda: {kind: 0 for kind in BackendKind}
    )
    seconds: Dict[BackendKind, float] = field(
        default_factory=lambda: {kind: 0.0 for kind in BackendKind}
    )
    _lock: threading.Lock = field(default_factory=threading.Lock, repr=False, compare=False)

    def record(self, kind: BackendKind, duration: float) -> None:
        kind = BackendKind(kind)
        duration = max(0.0, float(duration))
        with self._lock:
            self.operations[kind] += 1
            self.seconds[kind] += duration

    def snapshot(self) -> MetricsSnapshot:
        with self._lock:
            return MetricsSnapshot(
                cpu_operations=self.operations[BackendKind.CPU],
                gpu_operations=self.operations[BackendKind.GPU],
                cpu_seconds=self.seconds[BackendKind.CPU],
                gpu_seconds=self.seconds[BackendKind.GPU],
            )

    def report(self) -> str:
        s = self.snapshot()
        return (
            f"cpu: {s.cpu_operations} ops, {s.cpu_seconds:.4f}s "
            f"(avg {s.average_cpu_seconds:.4f}s) | "
            f"gpu: {s.gpu_operations} ops, {s.gpu_seconds:.4f}s "
            f"(avg {s.average_gpu_seconds:.4f}s)"
        )


@contextmanager
def time_block(metrics: BackendMetrics, kind: BackendKind) -> Iterator[None]:
    """Record the wall-clock time of the ``with`` body if it completes."""
    start = time.perf_counter()
    yield
    metrics.record(kind, time.perf_counter() - start)
