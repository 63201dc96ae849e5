# Author : Eshan Roy <eshanized@proton.me>
# SPDX-License-Identifier: MIT

"""
Linear warmup followed by cosine decay to ``min_lr``.

A plain function rather than a torch LR scheduler: the session asks for
the rate of a given step and writes it into the optimizer itself, which
also works when the rate lives in a device tensor of a captured graph.
"""

import math
from typing import Optional

import torch


def get_learning_rate(
    step: int,
    max_lr: float,
    min_lr: float,
    warmup_steps: int,
    max_steps: Optional[int],
) -> float:
    """
    Three phases:
      1. step < warmup_steps: linear ramp up to max_lr
      2. warmup_steps <= step < max_steps: cosine from max_lr to min_lr
      3. step >= max_steps: min_lr

    With ``max_steps`` None the run length is unknown and the rate holds at
    ``max_lr`` after warmup.
    """
    if step < 0:
        return 0.0

    if step < warmup_steps:
        return max_lr * (step + 1) / warmup_steps

    if max_steps is None:
        return max_lr

    if step >= max_steps:
        return min_lr

    decay_steps = max_steps - warmup_steps
    progress = (step - warmup_steps) / decay_steps
    cosine_decay = 0.5 * (1.0 + math.cos(math.pi * progress))
    return min_lr + (max_lr - min_lr) * cosine_decay


def set_learning_rate(optimizer: torch.optim.Optimizer, lr: float) -> None:
    """Write ``lr`` into every param group, in place when it is a tensor."""
    for param_group in optimizer.param_groups:
        current = param_group["lr"]
        if isinstance(current, torch.Tensor):
            current.fill_(lr)
        else:
            param_group["lr"] = lr
