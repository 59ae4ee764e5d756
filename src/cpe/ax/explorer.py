"""Adaptive explore/exploit controller built on multi-armed bandits."""

from __future__ import annotations

import logging
import math
import random
import threading
import time
from collections import defaultdict, deque
from collections.abc import Callable, Sequence
from dataclasses import dataclass, replace
from statistics import fmean
from typing import Any

from sqlalchemy.exc import SQLAlchemyError

from cpe.core.errors import NoCandidatesError
from cpe.sm.manager import StateManager

logger = logging.getLogger(__name__)

STRATEGIES = ("epsilon-greedy", "ucb", "thompson-sampling")
FORCED_EXPLORE_RATE = 0.8
UCB_C = math.sqrt(2.0)


@dataclass(slots=True)
class BanditArm:
    """Reward statistics for one (context, action-type) option."""

    key: str
    pulls: int = 0
    total_reward: float = 0.0
    alpha: float = 1.0
    beta: float = 1.0

    @property
    def average(self) -> float:
        return self.total_reward / self.pulls if self.pulls else 0.0

    @property
    def variance(self) -> float:
        total = self.alpha + self.beta
        return (self.alpha * self.beta) / (total * total * (total + 1.0))

    @property
    def confidence(self) -> float:
        if self.pulls < 3:
            return 0.1
        return max(0.0, 1.0 - self.variance * 10.0)


@dataclass(slots=True, frozen=True)
class ExplorationChoice:
    arm: str
    index: int
    mode: str
    strategy: str
    exploration_rate: float
    plateau: bool = False

    def as_dict(self) -> dict[str, Any]:
        return {
            "arm": self.arm,
            "mode": self.mode,
            "strategy": self.strategy,
            "exploration_rate": self.exploration_rate,
            "plateau": self.plateau,
        }


class BanditArmTable:
    """Arm statistics shared by every session, keyed by domain.

    Updates are serialized by a lock in memory and applied as atomic SQL
    increments when a state manager is attached.
    """

    def __init__(self, state: StateManager | None = None) -> None:
        self._state = state
        self._arms: dict[str, dict[str, BanditArm]] = defaultdict(dict)
        self._loaded: set[str] = set()
        self._lock = threading.Lock()

    def arms(self, domain: str) -> dict[str, BanditArm]:
        with self._lock:
            self._ensure_loaded(domain)
            return {key: replace(arm) for key, arm in self._arms[domain].items()}

    def get(self, domain: str, key: str) -> BanditArm:
        with self._lock:
            self._ensure_loaded(domain)
            arm = self._arms[domain].get(key)
            return replace(arm) if arm is not None else BanditArm(key)

    def record(self, domain: str, key: str, reward: float) -> BanditArm:
        """Apply one pull; raises SQLAlchemyError after the in-memory update if write-through fails."""
        with self._lock:
            self._ensure_loaded(domain)
            arm = self._arms[domain].setdefault(key, BanditArm(key))
            arm.pulls += 1
            arm.total_reward += reward
            arm.alpha += reward
            arm.beta += 1.0 - reward
            snapshot = replace(arm)
        if self._state is not None:
            self._state.increment_arm(domain, key, reward)
        return snapshot

    def _ensure_loaded(self, domain: str) -> None:
        if domain in self._loaded or self._state is None:
            return
        self._loaded.add(domain)
        try:
            rows = self._state.load_arms(domain)
        except SQLAlchemyError:
            logger.warning("arm_load_failed domain=%s", domain, exc_info=True)
            return
        for row in rows:
            self._arms[domain].setdefault(
                row["arm_key"],
                BanditArm(
                    key=row["arm_key"],
                    pulls=int(row["pulls"]),
                    total_reward=float(row["total_reward"]),
                    alpha=float(row["alpha"]),
                    beta=float(row["beta"]),
                ),
            )


class AdaptiveExplorer:
    """Chooses between near-equal options and learns from their rewards.

    An explorer outlives the sessions it serves: its decaying rate, reward
    window and forced modes carry from one decision to the next, while arm
    statistics live in the shared `BanditArmTable`.
    """

    def __init__(
        self,
        table: BanditArmTable,
        *,
        state: StateManager | None = None,
        strategy: str = "thompson-sampling",
        rng: random.Random | None = None,
        clock: Callable[[], float] = time.monotonic,
        initial_epsilon: float = 0.2,
        epsilon_decay: float = 0.99,
        epsilon_min: float = 0.05,
        low_time_threshold_s: float = 300.0,
        plateau_window: int = 5,
        plateau_threshold: float = 0.05,
        learn_every: int = 20,
    ) -> None:
        if strategy not in STRATEGIES:
            raise ValueError(f"Unknown exploration strategy: {strategy}")
        self._table = table
        self._state = state
        self.strategy = strategy
        self._rng = rng or random.Random()
        self._clock = clock
        self.epsilon = initial_epsilon
        self._decay = epsilon_decay
        self._min_epsilon = epsilon_min
        self._low_time_threshold_s = low_time_threshold_s
        self._plateau_window = plateau_window
        self._plateau_threshold = plateau_threshold
        self._learn_every = learn_every
        self._recent_rewards: deque[float] = deque(maxlen=plateau_window * 2)
        self._coefficients: dict[str, float] = {}
        self._coefficients_checked: set[str] = set()
        self._forced: tuple[float, float] | None = None
        self._outcomes: dict[str, int] = defaultdict(int)
        self._decisions = 0
        self._explorations = 0
        self._lock = threading.Lock()
        self.warnings: list[str] = []

    # control

    def force_mode(self, mode: str, duration_s: float = 10.0) -> None:
        """Override the computed rate with pure explore or pure exploit for a while."""
        if mode not in ("explore", "exploit"):
            raise ValueError(f"Unknown forced mode: {mode}")
        rate = FORCED_EXPLORE_RATE if mode == "explore" else 0.0
        self._forced = (rate, self._clock() + duration_s)
        logger.info("exploration_forced mode=%s duration_s=%.1f", mode, duration_s)

    def clear_force(self) -> None:
        self._forced = None

    def forced_rate(self) -> float | None:
        if self._forced is None:
            return None
        rate, until = self._forced
        if self._clock() >= until:
            self._forced = None
            return None
        return rate

    def detect_plateau(self) -> bool:
        """True when the last window of rewards barely improved on the one before."""
        window = self._plateau_window
        with self._lock:
            rewards = list(self._recent_rewards)
        if len(rewards) < window * 2:
            return False
        recent = fmean(rewards[-window:])
        previous = fmean(rewards[-window * 2 : -window])
        improvement = (recent - previous) / (previous or 1.0)
        return improvement < self._plateau_threshold

    def exploration_rate(self, domain: str | None = None, time_remaining_s: float | None = None) -> float:
        forced = self.forced_rate()
        if forced is not None:
            return forced
        rate = self.epsilon
        if domain is not None:
            coefficient = self._domain_coefficient(domain)
            if coefficient is not None:
                rate = coefficient
        if self.detect_plateau():
            rate = min(0.5, rate * 1.5)
        if time_remaining_s is not None and time_remaining_s < self._low_time_threshold_s:
            rate = max(0.01, rate * 0.5)
        return rate

    # selection

    def select(
        self,
        options: Sequence[str],
        *,
        domain: str = "default",
        time_remaining_s: float | None = None,
    ) -> ExplorationChoice:
        """Pick one arm among `options`; the first listed wins exact ties."""
        if not options:
            raise NoCandidatesError("Explorer received no options to choose from")

        forced = self.forced_rate()
        plateau = self.detect_plateau()
        rate = self.exploration_rate(domain, time_remaining_s)
        arms = self._table.arms(domain)
        stats = [arms.get(key) or BanditArm(key) for key in options]
        best_index = self._best_average(stats)

        if forced is not None or self.strategy == "epsilon-greedy":
            if self._rng.random() < rate:
                index, mode = self._rng.randrange(len(options)), "explore"
            else:
                index, mode = best_index, "exploit"
        elif self.strategy == "ucb":
            index = self._ucb(stats)
            mode = "exploit" if index == best_index else "explore"
        else:
            index = self._thompson(stats)
            mode = "exploit" if index == best_index else "explore"

        with self._lock:
            if forced is None:
                self.epsilon = max(self._min_epsilon, self.epsilon * self._decay)
            self._decisions += 1
            if mode == "explore":
                self._explorations += 1

        choice = ExplorationChoice(
            arm=options[index],
            index=index,
            mode=mode,
            strategy=self.strategy,
            exploration_rate=rate,
            plateau=plateau,
        )
        self._record_decision(domain, choice)
        return choice

    @staticmethod
    def _best_average(stats: Sequence[BanditArm]) -> int:
        best = 0
        for index, arm in enumerate(stats):
            if arm.average > stats[best].average:
                best = index
        return best

    @staticmethod
    def _ucb(stats: Sequence[BanditArm]) -> int:
        total = sum(arm.pulls for arm in stats)
        best, best_score = 0, -math.inf
        for index, arm in enumerate(stats):
            if arm.pulls == 0:
                score = math.inf
            else:
                score = arm.average + UCB_C * math.sqrt(math.log(max(total, 1)) / arm.pulls)
            if score > best_score:
                best, best_score = index, score
        return best

    def _thompson(self, stats: Sequence[BanditArm]) -> int:
        best, best_sample = 0, -math.inf
        for index, arm in enumerate(stats):
            sample = self._rng.betavariate(arm.alpha, arm.beta)
            if sample > best_sample:
                best, best_sample = index, sample
        return best

    # learning

    def update_outcome(self, arm_key: str, reward: float, *, domain: str = "default") -> BanditArm:
        """Record the observed reward for a pulled arm; the only learning entry point."""
        if not 0.0 <= reward <= 1.0:
            raise ValueError(f"reward must be normalized between 0 and 1, got {reward!r}")

        rate = self.exploration_rate(domain)
        try:
            arm = self._table.record(domain, arm_key, reward)
        except SQLAlchemyError as exc:
            self._warn("arm_write_failed", domain, exc)
            arm = self._table.get(domain, arm_key)
        self.observe_reward(reward)

        if self._state is not None:
            try:
                self._state.record_exploration_outcome(
                    domain=domain,
                    arm=arm_key,
                    reward=reward,
                    exploration_rate=rate,
                )
            except SQLAlchemyError as exc:
                self._warn("outcome_record_failed", domain, exc)

        self._outcomes[domain] += 1
        if self._outcomes[domain] % self._learn_every == 0:
            self.learn_domain_coefficient(domain)
        return arm

    def observe_reward(self, reward: float) -> None:
        """Feed the plateau window without touching arm statistics."""
        with self._lock:
            self._recent_rewards.append(reward)

    def learn_domain_coefficient(self, domain: str) -> float | None:
        """Derive the best-performing exploration rate from recent outcomes."""
        if self._state is None:
            return None
        try:
            rows = self._state.exploration_outcomes(domain, limit=100)
        except SQLAlchemyError as exc:
            self._warn("coefficient_learn_failed", domain, exc)
            return None
        if len(rows) < 20:
            return None

        buckets: dict[float, list[float]] = defaultdict(list)
        for row in rows:
            buckets[round(row["exploration_rate"], 1)].append(row["reward"])
        best_rate, best_average = max(
            ((rate, fmean(rewards)) for rate, rewards in buckets.items()),
            key=lambda item: (item[1], -item[0]),
        )

        self._coefficients[domain] = best_rate
        self._coefficients_checked.add(domain)
        try:
            self._state.save_domain_coefficient(
                domain=domain,
                optimal_epsilon=best_rate,
                sample_size=len(rows),
                average_reward=best_average,
            )
        except SQLAlchemyError as exc:
            self._warn("coefficient_save_failed", domain, exc)
        logger.info("exploration_coefficient_learned domain=%s epsilon=%.2f samples=%s", domain, best_rate, len(rows))
        return best_rate

    def stats(self, domain: str = "default") -> dict[str, Any]:
        arms = self._table.arms(domain)
        return {
            "strategy": self.strategy,
            "epsilon": self.epsilon,
            "decisions": self._decisions,
            "explorations": self._explorations,
            "plateau_detected": self.detect_plateau(),
            "recent_avg_reward": fmean(self._recent_rewards) if self._recent_rewards else 0.0,
            "total_pulls": sum(arm.pulls for arm in arms.values()),
            "domain_coefficient": self._coefficients.get(domain),
            "arms": [
                {
                    "arm": arm.key,
                    "pulls": arm.pulls,
                    "avg_reward": arm.average,
                    "confidence": arm.confidence,
                }
                for arm in arms.values()
            ],
        }

    def drain_warnings(self) -> list[str]:
        warnings, self.warnings = self.warnings, []
        return warnings

    def _domain_coefficient(self, domain: str) -> float | None:
        if domain not in self._coefficients_checked and self._state is not None:
            self._coefficients_checked.add(domain)
            try:
                row = self._state.get_domain_coefficient(domain)
            except SQLAlchemyError as exc:
                self._warn("coefficient_load_failed", domain, exc)
                row = None
            if row is not None:
                self._coefficients[domain] = float(row["optimal_epsilon"])
        return self._coefficients.get(domain)

    def _record_decision(self, domain: str, choice: ExplorationChoice) -> None:
        if self._state is None:
            return
        try:
            self._state.record_exploration_decision(
                domain=domain,
                strategy=choice.strategy,
                exploration_rate=choice.exploration_rate,
                selected_arm=choice.arm,
                mode=choice.mode,
            )
        except SQLAlchemyError as exc:
            self._warn("exploration_decision_record_failed", domain, exc)

    def _warn(self, event: str, domain: str, exc: Exception) -> None:
        logger.warning("%s domain=%s error=%s", event, domain, exc)
        self.warnings.append(f"{event}: {exc}")
