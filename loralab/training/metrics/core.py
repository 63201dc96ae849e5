# Author : Eshan Roy <eshanized@proton.me>
# SPDX-License-Identifier: MIT

"""
Throughput and progress metrics for a training run.

The scheduler feeds every completed step into a ``MetricsTracker``. The
tracker keeps a smoothed tokens-per-second figure and estimates the time
remaining when the run length is known. ``should_report`` rate-limits
progress so a fast run does not flood the event queue.
"""

import logging
import time
from dataclasses import dataclass, field
from typing import Callable, Optional

import torch

from loralab.logging.logger import get_logger

logger: logging.Logger = get_logger(__name__)

Clock = Callable[[], float]


@dataclass(frozen=True)
class StepMetrics:
    """Metrics for a single completed step."""

    step: int
    loss: float
    learning_rate: float
    gradient_norm: float
    tokens_per_second: float
    eta_seconds: Optional[float]
    tokens_seen: int
    memory_usage_mb: float = 0.0


@dataclass
class MetricsTracker:
    """
    Args:
        total_steps: Run length if known, for the ETA.
        progress_interval: Minimum seconds between reported steps.
        smoothing: Weight of the newest step in the throughput average.
        clock: Monotonic time source.
    """

    total_steps: Optional[int] = None
    progress_interval: float = 0.5
    smoothing: float = 0.3
    clock: Clock = time.monotonic
    tokens_seen: int = field(default=0, init=False)
    steps_done: int = field(default=0, init=False)
    _tokens_per_second: float = field(default=0.0, init=False)
    _step_start: float = field(default=0.0, init=False)
    _last_report: Optional[float] = field(default=None, init=False)

    def begin_step(self) -> None:
        self._step_start = self.clock()

    def end_step(
        self,
        step: int,
        loss: float,
        learning_rate: float,
        gradient_norm: float,
        tokens: int,
    ) -> StepMetrics:
        elapsed = self.clock() - self._step_start
        instant = tokens / elapsed if elapsed > 0 else 0.0
        if self.steps_done == 0:
            self._tokens_per_second = instant
        else:
            self._tokens_per_second = (
                self.smoothing * instant + (1.0 - self.smoothing) * self._tokens_per_second
            )
        self.tokens_seen += tokens
        self.steps_done += 1

        memory_mb = 0.0
        if torch.cuda.is_available():
            memory_mb = torch.cuda.max_memory_allocated() / (1024 * 1024)

        metrics = StepMetrics(
            step=step,
            loss=loss,
            learning_rate=learning_rate,
            gradient_norm=gradient_norm,
            tokens_per_second=self._tokens_per_second,
            eta_seconds=self._eta(tokens),
            tokens_seen=self.tokens_seen,
            memory_usage_mb=memory_mb,
        )
        logger.debug(
            "Training step",
            extra={
                "step": step,
                "loss": round(loss, 6),
                "lr": learning_rate,
                "grad_norm": round(gradient_norm, 4),
                "tokens_per_sec": round(self._tokens_per_second, 1),
                "tokens_seen": self.tokens_seen,
            },
        )
        return metrics

    def _eta(self, tokens: int) -> Optional[float]:
        if self.total_steps is None or self._tokens_per_second <= 0:
            return None
        remaining = max(self.total_steps - self.steps_done, 0)
        return remaining * tokens / self._tokens_per_second

    def should_report(self, final: bool = False) -> bool:
        """True when enough time has passed since the last report, or on the final step."""
        now = self.clock()
        if final or self._last_report is None or now - self._last_report >= self.progress_interval:
            self._last_report = now
            return True
        return False
