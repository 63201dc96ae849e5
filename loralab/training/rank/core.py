# Author : Eshan Roy <eshanized@proton.me>
# SPDX-License-Identifier: MIT

"""
LoRA rank scheduling.

A ``RankScheduler`` watches the metrics of each adapter step and decides
whether the adapter should grow or shrink. It only decides: the training
scheduler applies an accepted decision to the session between steps with
``resize_adapter``.

Strategies:
  - fixed: never changes the rank
  - progressive: climbs linearly from ``min_rank`` to ``max_rank`` over
    ``progressive_steps`` steps
  - adaptive: fits loss and gradient-norm trends over a recent window and
    grows an underfitting adapter or shrinks an unstable one
  - hardware_aware: shrinks under memory pressure and grows while there is
    headroom and throughput holds

Every strategy respects ``cooldown_steps`` between two adaptations and
clamps to ``[min_rank, max_rank]``.
"""

import logging
from collections import deque
from dataclasses import dataclass
from enum import Enum
from typing import Optional, Sequence

from loralab.config.schema import RankConfig
from loralab.logging.logger import get_logger

logger: logging.Logger = get_logger(__name__)

# The adaptive strategy needs this many observations before it fits trends.
MIN_ADAPTIVE_HISTORY = 20

CONVERGING_SLOPE = -0.001
GRADIENT_FLOW_FLOOR = 1e-8
VANISHING_GRADIENT = 1e-6
STRONG_GRADIENT = 1e-2
UNSTABLE_GRADIENT_SLOPE = 0.1
PLATEAU_IMPROVEMENT = 0.05
HIGH_MEMORY_UTILIZATION = 0.9
LOW_MEMORY_UTILIZATION = 0.7


class RankStrategy(str, Enum):
    FIXED = "fixed"
    PROGRESSIVE = "progressive"
    ADAPTIVE = "adaptive"
    HARDWARE_AWARE = "hardware_aware"


@dataclass(frozen=True)
class RankObservation:
    """Metrics of one completed step, as the rank policy sees them."""

    step: int
    loss: float
    gradient_norm: float
    tokens_per_second: float
    memory_mb: float = 0.0


@dataclass(frozen=True)
class RankDecision:
    current_rank: int
    recommended_rank: int
    should_adapt: bool
    reason: str
    confidence: float


def _slope(values: Sequence[float]) -> float:
    """Least-squares slope of ``values`` against their position."""
    n = len(values)
    if n < 2:
        return 0.0
    mean_x = (n - 1) / 2.0
    mean_y = sum(values) / n
    numerator = sum((x - mean_x) * (y - mean_y) for x, y in enumerate(values))
    denominator = sum((x - mean_x) ** 2 for x in range(n))
    return numerator / denominator


def _mean(values: Sequence[float]) -> float:
    return sum(values) / len(values) if values else 0.0


class RankScheduler:
    """
    Args:
        config: The ``rank`` config section.
        initial_rank: Rank the adapter starts with.
        rank_limit: Largest rank the targeted projections allow. Lowers
            ``config.max_rank`` when smaller.
        strategy: Overrides ``config.strategy``.
    """

    def __init__(
        self,
        config: RankConfig,
        initial_rank: int,
        rank_limit: Optional[int] = None,
        strategy: Optional[str] = None,
    ) -> None:
        if initial_rank < 1:
            raise ValueError(f"initial_rank must be positive, got {initial_rank}")
        self.config = config
        self.strategy = RankStrategy(strategy if strategy is not None else config.strategy)
        self.max_rank = config.max_rank if rank_limit is None else min(config.max_rank, rank_limit)
        self.min_rank = min(config.min_rank, self.max_rank)
        self._rank = initial_rank
        self._last_adaptation = 0
        self._history: deque[RankObservation] = deque(maxlen=config.convergence_window)

    @property
    def current_rank(self) -> int:
        return self._rank

    def update(self, observation: RankObservation) -> RankDecision:
        """
        Record one step and decide on the rank.

        An accepted decision (``should_adapt``) is committed here: the next
        call reports the new rank as current.
        """
        self._history.append(observation)

        if self.strategy is RankStrategy.FIXED:
            return RankDecision(self._rank, self._rank, False, "fixed rank", 1.0)
        if self.strategy is RankStrategy.PROGRESSIVE:
            recommended, reason, confidence = self._progressive(observation.step)
        elif self.strategy is RankStrategy.ADAPTIVE:
            recommended, reason, confidence = self._adaptive()
        else:
            recommended, reason, confidence = self._hardware_aware(observation)

        recommended = max(self.min_rank, min(self.max_rank, recommended))
        if recommended == self._rank:
            return RankDecision(self._rank, recommended, False, reason, confidence)

        if observation.step - self._last_adaptation < self.config.cooldown_steps:
            return RankDecision(self._rank, recommended, False, f"{reason} (cooldown active)", confidence)

        previous = self._rank
        self._rank = recommended
        self._last_adaptation = observation.step
        logger.info(
            "Rank adapted",
            extra={
                "step": observation.step,
                "strategy": self.strategy.value,
                "from_rank": previous,
                "to_rank": recommended,
                "reason": reason,
            },
        )
        return RankDecision(previous, recommended, True, reason, confidence)

    def _progressive(self, step: int) -> tuple[int, str, float]:
        progress = min(step / self.config.progressive_steps, 1.0)
        target = int(self.min_rank + (self.max_rank - self.min_rank) * progress + 0.5)
        return target, f"progressive schedule at {progress:.0%}", 1.0

    def _adaptive(self) -> tuple[int, str, float]:
        if len(self._history) < MIN_ADAPTIVE_HISTORY:
            return self._rank, "insufficient history", 0.0

        losses = [obs.loss for obs in self._history]
        gradients = [obs.gradient_norm for obs in self._history]
        loss_trend = _slope(losses)
        gradient_trend = _slope(gradients)
        converging = loss_trend < CONVERGING_SLOPE
        gradient_flow = gradients[-1] > GRADIENT_FLOW_FLOOR
        head = _mean(losses[:5])
        improvement = (head - _mean(losses[-5:])) / head if head else 0.0
        confidence = len(self._history) / self.config.convergence_window

        # Shrinking checks come first: a diverging run also looks like a plateau.
        if not gradient_flow:
            return self._rank - 1, "vanishing gradients", confidence
        if gradient_trend > UNSTABLE_GRADIENT_SLOPE and loss_trend > 0:
            return self._rank - 1, "unstable gradients", confidence
        if not converging and improvement < PLATEAU_IMPROVEMENT:
            return self._rank + 2, "underfitting", confidence
        if converging:
            recent = _mean(gradients[-10:])
            if recent < VANISHING_GRADIENT:
                return self._rank - 1, "converged with weak gradients", confidence
            if recent > STRONG_GRADIENT:
                return self._rank + 1, "converging with strong gradients", confidence
        return self._rank, "training stable", confidence

    def _hardware_aware(self, observation: RankObservation) -> tuple[int, str, float]:
        utilization = observation.memory_mb / self.config.target_memory_mb
        recent = list(self._history)[-10:]
        throughput = _mean([obs.tokens_per_second for obs in recent])
        if utilization > HIGH_MEMORY_UTILIZATION:
            return self._rank - 2, f"memory pressure at {utilization:.0%}", 0.9
        if (
            utilization < LOW_MEMORY_UTILIZATION
            and throughput > self.config.performance_threshold * observation.tokens_per_second
        ):
            return self._rank + 2, f"memory headroom at {utilization:.0%}", 0.9
        return self._rank, "hardware metrics stable", 0.9
