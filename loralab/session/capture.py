# Author : Eshan Roy <eshanized@proton.me>
# SPDX-License-Identifier: MIT

"""
CUDA graph capture of a whole training step.

The wrapped step function reads only bound buffers and performs forward,
backward, clipping and the optimizer update without any host sync. The
first ``warmup_steps`` calls run it eagerly on a side stream, as CUDA
graph capture requires. The next call records it into a
``torch.cuda.CUDAGraph`` and replays it at once, so that step is not
lost. Every later call is a single ``replay()``.

Gradients are set to None right before capture. Backward then allocates
them from the graph's private pool, and every replay overwrites them
instead of accumulating.

If recording raises, capture is abandoned for the life of this object and
the step runs eagerly instead.
"""

import logging
from typing import Callable, Optional

import torch

from loralab.logging.logger import get_logger

logger: logging.Logger = get_logger(__name__)

StepFn = Callable[[], torch.Tensor]


class CapturedStep:
    """
    Args:
        step_fn: Zero-argument device step returning a stats tensor.
        optimizer: The optimizer ``step_fn`` updates; used to reset grads.
        warmup_steps: Eager calls before capture.
    """

    def __init__(
        self,
        step_fn: StepFn,
        optimizer: torch.optim.Optimizer,
        warmup_steps: int = 3,
    ) -> None:
        self.step_fn = step_fn
        self.optimizer = optimizer
        self.warmup_steps = warmup_steps
        self.graph: Optional[torch.cuda.CUDAGraph] = None
        self.static_output: Optional[torch.Tensor] = None
        self.failed = False
        self._calls = 0

    @property
    def is_captured(self) -> bool:
        return self.graph is not None

    def __call__(self) -> torch.Tensor:
        self._calls += 1
        if self.graph is not None and self.static_output is not None:
            self.graph.replay()
            return self.static_output

        if self.failed or self._calls <= self.warmup_steps:
            return self._eager_on_side_stream()

        try:
            return self._capture_and_replay()
        except Exception as err:
            self.failed = True
            self.graph = None
            self.static_output = None
            logger.warning(
                "CUDA graph capture failed, continuing eagerly",
                extra={"error": f"{type(err).__name__}: {err}"},
            )
            return self._eager_on_side_stream()

    def _eager_on_side_stream(self) -> torch.Tensor:
        side = torch.cuda.Stream()
        side.wait_stream(torch.cuda.current_stream())
        with torch.cuda.stream(side):
            self.optimizer.zero_grad(set_to_none=True)
            output = self.step_fn()
        torch.cuda.current_stream().wait_stream(side)
        return output

    def _capture_and_replay(self) -> torch.Tensor:
        torch.cuda.synchronize()
        graph = torch.cuda.CUDAGraph()
        self.optimizer.zero_grad(set_to_none=True)
        with torch.cuda.graph(graph):
            static_output = self.step_fn()
        self.graph = graph
        self.static_output = static_output
        logger.info("Training step captured", extra={"warmup_steps": self.warmup_steps})

        graph.replay()
        return static_output

    def reset(self) -> None:
        """Drop the recorded graph; the next call warms up again."""
        self.graph = None
        self.static_output = None
        self.failed = False
        self._calls = 0
