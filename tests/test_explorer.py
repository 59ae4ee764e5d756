import random
from pathlib import Path

import pytest
from sqlalchemy.exc import IntegrityError

from cpe.ax.explorer import AdaptiveExplorer, BanditArm, BanditArmTable
from cpe.core.errors import NoCandidatesError
from cpe.sm.manager import StateManager


class FakeClock:
    def __init__(self) -> None:
        self.now = 0.0

    def __call__(self) -> float:
        return self.now


def _explorer(strategy: str = "epsilon-greedy", seed: int = 7, **kwargs) -> AdaptiveExplorer:
    table = kwargs.pop("table", None) or BanditArmTable()
    return AdaptiveExplorer(table, strategy=strategy, rng=random.Random(seed), **kwargs)


def test_explorer_pull_counts_match_recorded_outcomes() -> None:
    explorer = _explorer()
    rng = random.Random(3)
    arms = ["hub:fetch", "section:fetch", "archive:fetch"]

    for _ in range(57):
        explorer.update_outcome(rng.choice(arms), rng.random(), domain="news.example")

    stats = explorer.stats("news.example")
    assert stats["total_pulls"] == 57
    assert sum(item["pulls"] for item in stats["arms"]) == 57


def test_explorer_forced_exploit_picks_best_average() -> None:
    explorer = _explorer()
    for reward, arm in ((0.2, "a"), (0.9, "b"), (0.5, "c")):
        explorer.update_outcome(arm, reward)

    explorer.force_mode("exploit", duration_s=60.0)
    choices = [explorer.select(["a", "b", "c"]) for _ in range(20)]

    assert {choice.arm for choice in choices} == {"b"}
    assert {choice.mode for choice in choices} == {"exploit"}
    assert explorer.epsilon == 0.2


def test_explorer_forced_mode_expires() -> None:
    clock = FakeClock()
    explorer = _explorer(clock=clock)

    explorer.force_mode("explore", duration_s=10.0)
    assert explorer.exploration_rate() == 0.8
    clock.now = 10.0
    assert explorer.forced_rate() is None
    assert explorer.exploration_rate() == 0.2

    with pytest.raises(ValueError):
        explorer.force_mode("wander")


def test_explorer_epsilon_greedy_explores_at_configured_rate() -> None:
    explorer = _explorer(seed=42, initial_epsilon=0.2, epsilon_decay=1.0)

    modes = [explorer.select(["a", "b", "c"]).mode for _ in range(1000)]

    assert 150 <= modes.count("explore") <= 250
    assert explorer.stats()["decisions"] == 1000


def test_explorer_epsilon_decays_to_floor() -> None:
    explorer = _explorer(initial_epsilon=0.2, epsilon_decay=0.5, epsilon_min=0.05)

    for _ in range(5):
        explorer.select(["a"])

    assert explorer.epsilon == 0.05


def test_explorer_rate_reacts_to_time_pressure_and_plateau() -> None:
    explorer = _explorer(initial_epsilon=0.2)
    assert explorer.exploration_rate(time_remaining_s=100.0) == pytest.approx(0.1)
    assert explorer.exploration_rate(time_remaining_s=1000.0) == pytest.approx(0.2)

    for _ in range(10):
        explorer.update_outcome("a", 0.5)

    assert explorer.detect_plateau()
    assert explorer.exploration_rate() == pytest.approx(0.3)


def test_explorer_ucb_tries_unpulled_arms_first() -> None:
    explorer = _explorer(strategy="ucb")
    explorer.update_outcome("a", 1.0)
    explorer.update_outcome("b", 1.0)

    choice = explorer.select(["a", "b", "c"])

    assert choice.arm == "c"
    assert choice.mode == "explore"


def test_explorer_thompson_prefers_strong_arm() -> None:
    explorer = _explorer(strategy="thompson-sampling", seed=11)
    for _ in range(30):
        explorer.update_outcome("strong", 1.0)
        explorer.update_outcome("weak", 0.0)

    choices = [explorer.select(["weak", "strong"]).arm for _ in range(50)]

    assert choices.count("strong") >= 45


def test_explorer_validates_inputs() -> None:
    explorer = _explorer()

    with pytest.raises(ValueError):
        explorer.update_outcome("a", 1.5)
    with pytest.raises(NoCandidatesError):
        explorer.select([])
    with pytest.raises(ValueError):
        _explorer(strategy="softmax")


def test_arm_confidence_grows_with_pulls() -> None:
    arm = BanditArm("a")
    assert arm.confidence == 0.1

    arm = BanditArm("a", pulls=50, total_reward=45.0, alpha=46.0, beta=6.0)
    assert arm.average == 0.9
    assert arm.confidence > 0.9


def test_explorer_shares_arms_through_state(tmp_path: Path) -> None:
    sm = StateManager(f"sqlite:///{tmp_path / 'arms.db'}")
    writer = _explorer(table=BanditArmTable(sm), state=sm)
    for reward in (1.0, 0.0, 1.0):
        writer.update_outcome("hub:fetch", reward, domain="news.example")

    reader = BanditArmTable(sm)
    arm = reader.get("news.example", "hub:fetch")
    assert arm.pulls == 3
    assert arm.total_reward == 2.0

    writer.select(["hub:fetch", "section:fetch"], domain="news.example")
    assert sm.exploration_decision_count("news.example") == 1


def test_explorer_learns_domain_coefficient(tmp_path: Path) -> None:
    sm = StateManager(f"sqlite:///{tmp_path / 'coef.db'}")
    explorer = _explorer(table=BanditArmTable(sm), state=sm, initial_epsilon=0.2)

    for index in range(20):
        explorer.update_outcome("hub:fetch", index * 0.05, domain="news.example")

    row = sm.get_domain_coefficient("news.example")
    assert row is not None
    assert row["optimal_epsilon"] == 0.2
    assert row["sample_size"] == 20
    assert row["average_reward"] == pytest.approx(0.475)

    fresh = _explorer(table=BanditArmTable(sm), state=sm, initial_epsilon=0.9)
    assert fresh.exploration_rate("news.example") == pytest.approx(0.2)


class ConflictingArmsState(StateManager):
    def increment_arm(self, domain: str, arm_key: str, reward: float) -> None:
        raise IntegrityError("INSERT INTO bandit_arms", {}, Exception("UNIQUE constraint failed"))


def test_explorer_surfaces_arm_write_conflicts_as_warnings(tmp_path: Path) -> None:
    sm = ConflictingArmsState(f"sqlite:///{tmp_path / 'conflict.db'}")
    explorer = _explorer(table=BanditArmTable(sm), state=sm)

    arm = explorer.update_outcome("hub:fetch", 0.6, domain="news.example")

    assert arm.pulls == 1
    warnings = explorer.drain_warnings()
    assert len(warnings) == 1
    assert warnings[0].startswith("arm_write_failed")
    assert explorer.stats("news.example")["recent_avg_reward"] == pytest.approx(0.6)


def test_explorer_observed_rewards_feed_plateau_only() -> None:
    explorer = _explorer()
    for _ in range(10):
        explorer.observe_reward(0.5)

    assert explorer.detect_plateau()
    assert explorer.stats()["total_pulls"] == 0
