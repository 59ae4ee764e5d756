import random
from pathlib import Path

import pytest

from cpe.ax.explorer import AdaptiveExplorer, BanditArmTable
from cpe.core.errors import NoCandidatesError
from cpe.core.types import ActionCandidate, GoalScores
from cpe.mgo.optimizer import (
    DEFAULT_WEIGHTS,
    MultiGoalOptimizer,
    ProgressState,
    dominates,
    pareto_frontier,
)
from cpe.sm.manager import StateManager


def _candidates() -> list[ActionCandidate]:
    return [
        ActionCandidate(
            "https://news.example/world/",
            category="section",
            estimated_yield=250,
            estimated_requests=50,
            estimated_latency_ms=60_000,
        ),
        ActionCandidate(
            "https://news.example/archive/",
            category="archive",
            estimated_yield=50,
            estimated_requests=1,
            estimated_latency_ms=1_000,
        ),
        ActionCandidate(
            "https://news.example/tags/",
            category="tag",
            estimated_yield=40,
            estimated_requests=50,
            estimated_latency_ms=200_000,
        ),
    ]


def test_pareto_frontier_keeps_only_undominated_scores() -> None:
    strong = GoalScores(1.0, 1.0, 1.0, 1.0)
    weak = GoalScores(0.5, 0.5, 0.5, 0.5)
    wide = GoalScores(1.0, 0.0, 0.0, 0.0)
    deep = GoalScores(0.0, 1.0, 0.0, 0.0)

    assert dominates(strong, weak)
    assert not dominates(weak, strong)
    assert not dominates(strong, strong)
    assert pareto_frontier([weak, strong]) == [1]
    assert pareto_frontier([wide, deep]) == [0, 1]
    assert pareto_frontier([strong, GoalScores(1.0, 1.0, 1.0, 1.0)]) == [0, 1]


def test_pareto_frontier_property_on_random_scores() -> None:
    rng = random.Random(5)
    for _ in range(50):
        scores = [
            GoalScores(*(round(rng.random(), 1) for _ in range(4))) for _ in range(rng.randint(1, 12))
        ]
        frontier = pareto_frontier(scores)
        assert frontier
        for index in frontier:
            assert not any(dominates(other, scores[index]) for other in scores)
        for index in set(range(len(scores))) - set(frontier):
            assert any(dominates(scores[member], scores[index]) for member in frontier)


def test_optimizer_selects_highest_weighted_frontier_member() -> None:
    optimizer = MultiGoalOptimizer()

    result = optimizer.optimize(_candidates(), ProgressState())

    assert result.frontier == [0, 1]
    assert not result.scores[2].is_pareto
    assert result.selected.target == "https://news.example/archive/"
    assert result.scores[0].depth == pytest.approx(0.5)
    assert result.scores[1].efficiency == 1.0
    assert result.scores[1].total == max(result.scores[i].total for i in result.frontier)
    assert "Pareto optimal" in result.reasoning
    assert result.optimization_id is None


def test_optimizer_breadth_prefers_unseen_categories() -> None:
    progress = ProgressState(category_counts={"section": 3, "archive": 25})
    optimizer = MultiGoalOptimizer()

    scores = [optimizer.score(candidate, progress) for candidate in _candidates()]

    assert [score.breadth for score in scores] == [0.7, 0.3, 1.0]


def test_optimizer_rejects_empty_candidates() -> None:
    with pytest.raises(NoCandidatesError):
        MultiGoalOptimizer().optimize([])


def test_optimizer_shifts_weights_with_progress() -> None:
    optimizer = MultiGoalOptimizer()

    late = optimizer.adjusted_weights(ProgressState(budget_used=0.85))
    assert late["depth"] > DEFAULT_WEIGHTS["depth"]
    assert late["breadth"] < DEFAULT_WEIGHTS["breadth"]

    final = optimizer.adjusted_weights(ProgressState(budget_used=0.95))
    assert max(final, key=final.get) == "speed"

    stuck = optimizer.adjusted_weights(ProgressState(plateau=True))
    assert stuck["breadth"] > stuck["depth"]

    for weights in (late, final, stuck):
        assert sum(weights.values()) == pytest.approx(1.0)


def test_optimizer_set_weights_validates() -> None:
    optimizer = MultiGoalOptimizer()

    with pytest.raises(ValueError):
        optimizer.set_weights({"breadth": 0.5})
    with pytest.raises(ValueError):
        optimizer.set_weights({"breadth": 0.5, "novelty": 0.5})

    weights = optimizer.set_weights({"breadth": 0.4, "depth": 0.3, "speed": 0.2, "efficiency": 0.1})
    assert weights["breadth"] == pytest.approx(0.4)


def test_optimizer_explorer_breaks_near_ties() -> None:
    explorer = AdaptiveExplorer(BanditArmTable(), strategy="ucb", rng=random.Random(1))
    optimizer = MultiGoalOptimizer(explorer=explorer)
    twins = [
        ActionCandidate("https://a.example/", category="hub", estimated_yield=100),
        ActionCandidate("https://b.example/", category="section", estimated_yield=100),
    ]

    result = optimizer.optimize(twins, domain="a.example")

    assert result.exploration is not None
    assert result.exploration["arm"] == twins[result.selected_index].arm_key


def test_optimizer_learns_domain_profile(tmp_path: Path) -> None:
    sm = StateManager(f"sqlite:///{tmp_path / 'goals.db'}")
    optimizer = MultiGoalOptimizer(state=sm)
    assert optimizer.recommended_weights("news.example") == DEFAULT_WEIGHTS

    winning = {"breadth": 0.1, "depth": 0.6, "speed": 0.2, "efficiency": 0.1}
    for index in range(8):
        optimizer.set_weights(winning if index < 2 else DEFAULT_WEIGHTS)
        result = optimizer.optimize(_candidates(), domain="news.example")
        assert result.optimization_id is not None
        assert optimizer.record_success(result.optimization_id, 0.9 if index < 2 else 0.2)

    learner = MultiGoalOptimizer(state=sm)
    profile = learner.learn_domain_profile("news.example")

    assert profile is not None
    assert profile.sample_size == 2
    assert profile.avg_success == pytest.approx(0.9)
    assert learner.recommended_weights("news.example") == pytest.approx(winning)


def test_optimizer_evaluates_executed_outcome() -> None:
    optimizer = MultiGoalOptimizer()
    optimizer.optimize(_candidates())

    evaluation = optimizer.evaluate_outcome(
        {
            "categories_discovered": 5,
            "total_categories": 10,
            "articles_collected": 200,
            "hubs_crawled": 4,
            "requests_made": 20,
            "time_elapsed_ms": 1000,
            "estimated_time_ms": 2000,
        }
    )

    assert evaluation["scores"]["breadth"] == 0.5
    assert evaluation["scores"]["depth"] == 0.5
    assert evaluation["scores"]["efficiency"] == 0.5
    assert 0.0 <= evaluation["overall"] <= 1.0
