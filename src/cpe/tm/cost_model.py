"""Telemetry-derived cost estimates per (operation, host)."""

from __future__ import annotations

import math
from collections import defaultdict
from collections.abc import Iterable
from statistics import fmean

from cpe.core.types import CostEstimate, TelemetryRecord


def _nearest_rank(sorted_values: list[float], percentile: float) -> float:
    rank = max(1, math.ceil(percentile / 100.0 * len(sorted_values)))
    return sorted_values[rank - 1]


class CostModel:
    """Summary statistics of recent operation durations.

    Keys with fewer than `min_samples` observations produce an unknown
    estimate instead of a number computed from too little data.
    """

    def __init__(self, durations: dict[tuple[str, str], list[float]], min_samples: int = 5) -> None:
        self._durations = {key: sorted(values) for key, values in durations.items()}
        self._min_samples = min_samples

    @classmethod
    def build(cls, records: Iterable[TelemetryRecord], min_samples: int = 5) -> CostModel:
        durations: dict[tuple[str, str], list[float]] = defaultdict(list)
        for record in records:
            if record.duration_ms < 0:
                continue
            durations[(record.operation, record.host.lower())].append(float(record.duration_ms))
        return cls(dict(durations), min_samples=min_samples)

    def estimate(self, operation: str, host: str) -> CostEstimate:
        values = self._durations.get((operation, host.lower()), [])
        if len(values) < self._min_samples:
            return CostEstimate(operation=operation, host=host.lower(), samples=len(values))
        return CostEstimate(
            operation=operation,
            host=host.lower(),
            samples=len(values),
            mean_ms=fmean(values),
            p50_ms=_nearest_rank(values, 50),
            p95_ms=_nearest_rank(values, 95),
        )

    def expected_ms(self, operation: str, host: str, fallback_ms: float) -> tuple[float, bool]:
        """Return (duration, known); unknown keys yield the caller's fallback."""
        estimate = self.estimate(operation, host)
        if estimate.mean_ms is None:
            return float(fallback_ms), False
        return estimate.mean_ms, True

    def keys(self) -> list[tuple[str, str]]:
        return sorted(self._durations)

    def estimates(self) -> list[CostEstimate]:
        return [self.estimate(operation, host) for operation, host in self.keys()]
