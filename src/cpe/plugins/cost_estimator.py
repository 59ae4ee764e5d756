"""Plugin publishing telemetry-derived cost annotations for every known target."""

from __future__ import annotations

import logging
from collections.abc import Callable, Iterable
from typing import Any

from cpe.core.plugins import TickResult
from cpe.core.types import TelemetryRecord, canonical_target
from cpe.tm.cost_model import CostModel
from cpe.ws.workspace import WorkspaceView

logger = logging.getLogger(__name__)

TelemetryLoader = Callable[[], Iterable[TelemetryRecord]]


class CostEstimatorPlugin:
    """Two ticks: build the cost model, then annotate targets with it.

    Annotating in the second round also covers proposals other plugins
    emitted during the first one.
    """

    def __init__(
        self,
        load_telemetry: TelemetryLoader,
        *,
        high_cost_threshold_ms: float = 500.0,
        min_samples: int = 5,
        conservative_cost_ms: float = 1000.0,
        name: str = "cost-estimator",
        priority: int = 100,
    ) -> None:
        self.name = name
        self.priority = priority
        self._load_telemetry = load_telemetry
        self._threshold_ms = high_cost_threshold_ms
        self._min_samples = min_samples
        self._conservative_ms = conservative_cost_ms
        self._model: CostModel | None = None

    def tick(self, workspace: WorkspaceView, remaining_budget_ms: float) -> TickResult:
        _ = remaining_budget_ms
        if self._model is None:
            self._model = CostModel.build(self._load_telemetry(), min_samples=self._min_samples)
            logger.debug("cost_model_built session_id=%s keys=%s", workspace.session_id, len(self._model.keys()))
            return TickResult(done=False)

        estimates: dict[str, dict[str, Any]] = {}
        high_cost: list[str] = []
        for candidate in workspace.targets():
            target = canonical_target(candidate.target)
            if target is None or target in estimates:
                continue
            estimate = self._model.estimate(candidate.operation, candidate.host)
            expected_ms, known = self._model.expected_ms(candidate.operation, candidate.host, self._conservative_ms)
            estimates[target] = {**estimate.as_dict(), "expected_ms": expected_ms, "known": known}
            if known and expected_ms > self._threshold_ms:
                high_cost.append(target)
        return TickResult(
            done=True,
            annotations={"cost_estimates": estimates, "high_cost_targets": high_cost},
        )
