"""Example continuous planning loop for background workers."""

from __future__ import annotations

import random
import time

from cpe.core.config import Settings
from cpe.core.types import PlanningStatus, TelemetryRecord
from cpe.epl.processor import PlanRequestProcessor
from cpe.examples.scenarios import late_stage_request, news_site_request, telemetry_examples
from cpe.hp.planner import HierarchicalPlanner
from cpe.ps.runner import PlanningRunner
from cpe.sm.manager import StateManager


def run_loop(iterations: int = 10, sleep_s: float = 0.05, seed: int = 7, learn_every: int = 5) -> None:
    """Plan, simulate executing the selected action, and feed the outcome back."""
    settings = Settings()
    sm = StateManager(settings.db_url)
    epl = PlanRequestProcessor(settings.request_schema_path)
    runner = PlanningRunner(settings, state=sm)
    planner = HierarchicalPlanner(state=sm)
    rng = random.Random(seed)

    for raw in telemetry_examples():
        runner.record_telemetry(TelemetryRecord(**raw))

    requests = [news_site_request(), late_stage_request()]
    for index in range(iterations):
        raw = requests[index % len(requests)]
        request = epl.ingest(raw)
        blueprint = runner.run(request)

        selected = blueprint.plan[0] if blueprint.plan else None
        reward = 0.0
        if selected is not None and blueprint.status is not PlanningStatus.NO_ACTIONABLE_CANDIDATES:
            # Simulated execution: yield-proportional reward with noise.
            reward = max(0.0, min(1.0, selected["estimated_yield"] / 300.0 + rng.uniform(-0.1, 0.1)))
            runner.record_outcome(
                arm_key=f"{selected['category']}:{selected['operation']}",
                reward=reward,
                domain=request.domain,
                session_id=blueprint.session_id,
                actual_value=selected["estimated_yield"] * (0.5 + reward),
            )
        if (index + 1) % learn_every == 0:
            planner.learn_heuristics(request.domain)

        print(
            f"[{index:02d}] domain={request.domain} status={blueprint.status.value} "
            f"selected={selected['target'] if selected else '-'} plan={len(blueprint.plan)} "
            f"frontier={len(blueprint.pareto_frontier)} reward={reward:.3f} "
            f"budget_exceeded={blueprint.budget_exceeded}"
        )
        time.sleep(sleep_s)


if __name__ == "__main__":
    run_loop()
