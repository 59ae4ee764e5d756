"""Multi-goal Pareto optimizer over crawl candidates."""

from __future__ import annotations

import logging
import math
from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field
from typing import Any

from sqlalchemy.exc import SQLAlchemyError

from cpe.ax.explorer import AdaptiveExplorer
from cpe.core.errors import NoCandidatesError
from cpe.core.types import ActionCandidate, GoalScores, clamp_unit
from cpe.sm.manager import StateManager

logger = logging.getLogger(__name__)

GOALS = ("breadth", "depth", "speed", "efficiency")
DEFAULT_WEIGHTS = {goal: 0.25 for goal in GOALS}


@dataclass(slots=True)
class ProgressState:
    """How far the current crawl has got, as seen by the optimizer."""

    budget_used: float = 0.0
    plateau: bool = False
    category_counts: dict[str, int] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, data: Mapping[str, Any] | None) -> ProgressState:
        data = data or {}
        return cls(
            budget_used=float(data.get("budget_used", 0.0)),
            plateau=bool(data.get("plateau", False)),
            category_counts={str(k): int(v) for k, v in dict(data.get("category_counts", {})).items()},
        )


@dataclass(slots=True)
class OptimizationResult:
    selected: ActionCandidate
    selected_index: int
    scores: list[GoalScores]
    frontier: list[int]
    weights: dict[str, float]
    reasoning: str
    optimization_id: int | None = None
    exploration: dict[str, Any] | None = None
    warnings: list[str] = field(default_factory=list)


@dataclass(slots=True, frozen=True)
class DomainProfile:
    optimal_weights: dict[str, float]
    sample_size: int
    avg_success: float


def dominates(a: GoalScores, b: GoalScores) -> bool:
    """True when `a` is at least as good on every goal and strictly better on one."""
    strictly_better = False
    for left, right in zip(a.vector(), b.vector()):
        if left < right:
            return False
        if left > right:
            strictly_better = True
    return strictly_better


def pareto_frontier(scores: Sequence[GoalScores]) -> list[int]:
    """Indices of the undominated members of `scores`, in input order."""
    return [
        index
        for index, candidate in enumerate(scores)
        if not any(dominates(other, candidate) for j, other in enumerate(scores) if j != index)
    ]


def normalize_weights(weights: Mapping[str, float]) -> dict[str, float]:
    total = sum(max(0.0, float(weights.get(goal, 0.0))) for goal in GOALS)
    if total <= 0:
        return dict(DEFAULT_WEIGHTS)
    return {goal: max(0.0, float(weights.get(goal, 0.0))) / total for goal in GOALS}


class MultiGoalOptimizer:
    """Scores candidates on breadth, depth, speed and efficiency.

    Goal weights are session state: they start from the configured or learned
    profile and shift as the session's progress crosses thresholds.
    """

    def __init__(
        self,
        *,
        state: StateManager | None = None,
        explorer: AdaptiveExplorer | None = None,
        weights: Mapping[str, float] | None = None,
        depth_baseline: float = 250.0,
        efficiency_baseline: float = 0.4,
        max_latency_ms: float = 300_000.0,
        default_latency_ms: float = 60_000.0,
        tie_tolerance: float = 0.02,
    ) -> None:
        self._state = state
        self._explorer = explorer
        self._weights = normalize_weights(weights) if weights else dict(DEFAULT_WEIGHTS)
        self._depth_baseline = depth_baseline
        self._efficiency_baseline = efficiency_baseline
        self._max_latency_ms = max_latency_ms
        self._default_latency_ms = default_latency_ms
        self._tie_tolerance = tie_tolerance
        self._profiles: dict[str, DomainProfile] = {}
        self._frontier_cache: list[GoalScores] = []

    @property
    def weights(self) -> dict[str, float]:
        return dict(self._weights)

    def set_weights(self, weights: Mapping[str, float]) -> dict[str, float]:
        unknown = set(weights) - set(GOALS)
        if unknown:
            raise ValueError(f"Unknown goals: {sorted(unknown)}")
        total = sum(float(value) for value in weights.values())
        if abs(total - 1.0) > 0.01:
            raise ValueError(f"Weights must sum to 1.0 (got {total:.3f})")
        self._weights = normalize_weights(weights)
        return self.weights

    def adjusted_weights(self, progress: ProgressState) -> dict[str, float]:
        """Shift weight toward depth at 80% progress, toward speed at 90%, back to breadth on plateau."""
        adjusted = dict(self._weights)
        if progress.budget_used >= 0.8:
            adjusted["breadth"] = max(0.1, adjusted["breadth"] - 0.15)
            adjusted["depth"] = min(0.5, adjusted["depth"] + 0.15)
        if progress.budget_used >= 0.9:
            adjusted["depth"] = max(0.1, adjusted["depth"] - 0.15)
            adjusted["speed"] = min(0.5, adjusted["speed"] + 0.15)
        if progress.plateau:
            adjusted["depth"] = max(0.15, adjusted["depth"] - 0.1)
            adjusted["breadth"] = min(0.4, adjusted["breadth"] + 0.1)
        return normalize_weights(adjusted)

    # scoring

    def score(
        self,
        candidate: ActionCandidate,
        progress: ProgressState | None = None,
        latency_ms: float | None = None,
    ) -> GoalScores:
        progress = progress or ProgressState()
        return GoalScores(
            breadth=self._score_breadth(candidate, progress),
            depth=clamp_unit(0.5 * candidate.estimated_yield / self._depth_baseline),
            speed=self._score_speed(candidate, latency_ms),
            efficiency=self._score_efficiency(candidate),
        )

    @staticmethod
    def _score_breadth(candidate: ActionCandidate, progress: ProgressState) -> float:
        if candidate.category not in progress.category_counts:
            return 1.0
        if progress.category_counts[candidate.category] < 10:
            return 0.7
        return 0.3

    def _score_speed(self, candidate: ActionCandidate, latency_ms: float | None) -> float:
        if latency_ms is None:
            latency_ms = candidate.estimated_latency_ms
        if latency_ms is None:
            latency_ms = self._default_latency_ms
        return clamp_unit(1.0 - latency_ms / self._max_latency_ms)

    def _score_efficiency(self, candidate: ActionCandidate) -> float:
        requests = max(candidate.estimated_requests, 1e-9)
        ratio = min((candidate.estimated_yield / requests) / 20.0, 1.0)
        return clamp_unit(0.5 * ratio / self._efficiency_baseline)

    @staticmethod
    def weighted_total(scores: GoalScores, weights: Mapping[str, float]) -> float:
        return sum(value * weights[goal] for goal, value in zip(GOALS, scores.vector()))

    # selection

    def optimize(
        self,
        candidates: Sequence[ActionCandidate],
        progress: ProgressState | None = None,
        *,
        domain: str | None = None,
        latencies: Mapping[str, float] | None = None,
        time_remaining_s: float | None = None,
    ) -> OptimizationResult:
        if not candidates:
            raise NoCandidatesError("No candidates to optimize")

        progress = progress or ProgressState()
        weights = self.adjusted_weights(progress)
        latencies = latencies or {}
        raw = [self.score(candidate, progress, latencies.get(candidate.target)) for candidate in candidates]
        frontier = pareto_frontier(raw)
        on_frontier = set(frontier)
        scores = [
            GoalScores(
                breadth=item.breadth,
                depth=item.depth,
                speed=item.speed,
                efficiency=item.efficiency,
                total=self.weighted_total(item, weights),
                is_pareto=index in on_frontier,
            )
            for index, item in enumerate(raw)
        ]

        best = max(frontier, key=lambda index: scores[index].total)
        result = OptimizationResult(
            selected=candidates[best],
            selected_index=best,
            scores=scores,
            frontier=frontier,
            weights=weights,
            reasoning="",
        )

        near = [i for i in frontier if scores[best].total - scores[i].total <= self._tie_tolerance]
        if self._explorer is not None and len(near) > 1:
            choice = self._explorer.select(
                [candidates[i].arm_key for i in near],
                domain=domain or "default",
                time_remaining_s=time_remaining_s,
            )
            best = near[choice.index]
            result.selected, result.selected_index = candidates[best], best
            result.exploration = choice.as_dict()

        result.reasoning = self.explain(scores[best], weights)
        self._frontier_cache = [scores[i] for i in frontier]
        if self._state is not None and domain:
            try:
                result.optimization_id = self._state.record_goal_optimization(
                    domain=domain,
                    breadth=scores[best].breadth,
                    depth=scores[best].depth,
                    speed=scores[best].speed,
                    efficiency=scores[best].efficiency,
                    total=scores[best].total,
                    weights=weights,
                    selected_target=candidates[best].target,
                    is_pareto=scores[best].is_pareto,
                )
            except SQLAlchemyError as exc:
                logger.warning("goal_optimization_record_failed domain=%s error=%s", domain, exc)
                result.warnings.append(f"goal_optimization_record_failed: {exc}")
        return result

    @staticmethod
    def explain(scores: GoalScores, weights: Mapping[str, float]) -> str:
        values = dict(zip(GOALS, scores.vector()))
        ranked = sorted(GOALS, key=lambda goal: values[goal] * weights[goal], reverse=True)
        reasons = [
            f"Primary: {ranked[0]} (score {values[ranked[0]]:.2f}, weight {weights[ranked[0]]:.2f})",
            f"Secondary: {ranked[1]} (score {values[ranked[1]]:.2f}, weight {weights[ranked[1]]:.2f})",
        ]
        if scores.is_pareto:
            reasons.append("Pareto optimal (no dominating alternatives)")
        return "; ".join(reasons)

    # learning

    def learn_domain_profile(self, domain: str) -> DomainProfile | None:
        """Average the weights of the best-scoring quarter of recent outcomes."""
        if self._state is None:
            return None
        try:
            rows = self._state.goal_history(domain, limit=100)
        except SQLAlchemyError as exc:
            logger.warning("domain_profile_load_failed domain=%s error=%s", domain, exc)
            return None
        if not rows:
            return None

        top = sorted(rows, key=lambda row: row["success_score"], reverse=True)[: math.ceil(len(rows) * 0.25)]
        averaged = {goal: sum(row["weights"].get(goal, 0.0) for row in top) / len(top) for goal in GOALS}
        profile = DomainProfile(
            optimal_weights=normalize_weights(averaged),
            sample_size=len(top),
            avg_success=sum(row["success_score"] for row in top) / len(top),
        )
        self._profiles[domain] = profile
        return profile

    def recommended_weights(self, domain: str) -> dict[str, float]:
        profile = self._profiles.get(domain) or self.learn_domain_profile(domain)
        if profile is None:
            return dict(DEFAULT_WEIGHTS)
        return dict(profile.optimal_weights)

    def evaluate_outcome(
        self,
        outcome: Mapping[str, float],
        weights: Mapping[str, float] | None = None,
    ) -> dict[str, Any]:
        """Score an executed action's actual results on the four goals."""
        weights = normalize_weights(weights) if weights else self.weights
        hubs = outcome.get("hubs_crawled") or 1
        requests = outcome.get("requests_made") or 1
        articles = outcome.get("articles_collected", 0.0)
        elapsed = outcome.get("time_elapsed_ms", 0.0)
        estimated = outcome.get("estimated_time_ms") or elapsed
        scores = GoalScores(
            breadth=clamp_unit(outcome.get("categories_discovered", 0) / (outcome.get("total_categories") or 10)),
            depth=clamp_unit((articles / hubs) / 100.0),
            speed=clamp_unit(1.0 - elapsed / (estimated * 1.5)) if estimated else 1.0,
            efficiency=clamp_unit((articles / requests) / 20.0),
        )
        return {
            "scores": scores.as_dict(),
            "overall": self.weighted_total(scores, weights),
            "is_pareto": not any(dominates(cached, scores) for cached in self._frontier_cache),
        }

    def record_success(self, optimization_id: int, success_score: float) -> bool:
        if self._state is None:
            return False
        return self._state.update_goal_success(optimization_id, clamp_unit(success_score))

    def stats(self) -> dict[str, Any]:
        return {
            "weights": self.weights,
            "pareto_frontier_size": len(self._frontier_cache),
            "domains_learned": len(self._profiles),
            "thresholds": {"depth_shift": 0.8, "speed_shift": 0.9},
        }
