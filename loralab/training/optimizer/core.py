# Author : Eshan Roy <eshanized@proton.me>
# SPDX-License-Identifier: MIT

"""
AdamW factory for whichever parameter set the session is training.

Matrices (LoRA factors, projection weights, embeddings) get weight decay;
1-D tensors (norm scales) do not. When the session replays captured CUDA
graphs the optimizer must be ``capturable`` and its learning rate a device
tensor, so the schedule can change it without re-capturing.
"""

from typing import Iterable, Optional

import torch
import torch.nn as nn

from loralab.config.schema import TrainConfig


def _separate_weight_decay_params(
    named_parameters: Iterable[tuple[str, nn.Parameter]],
    weight_decay: float,
) -> list[dict[str, object]]:
    decay_params: list[torch.Tensor] = []
    no_decay_params: list[torch.Tensor] = []

    for _, param in named_parameters:
        if not param.requires_grad:
            continue
        if param.dim() >= 2:
            decay_params.append(param)
        else:
            no_decay_params.append(param)

    groups: list[dict[str, object]] = []
    if decay_params:
        groups.append({"params": decay_params, "weight_decay": weight_decay})
    if no_decay_params:
        groups.append({"params": no_decay_params, "weight_decay": 0.0})
    return groups


def create_optimizer(
    named_parameters: Iterable[tuple[str, nn.Parameter]],
    train_config: TrainConfig,
    capturable: bool = False,
    device: Optional[torch.device] = None,
) -> torch.optim.AdamW:
    """
    Args:
        named_parameters: ``(name, parameter)`` pairs; frozen ones are skipped.
        train_config: Validated training configuration.
        capturable: Build a CUDA-graph-safe optimizer with a tensor learning rate.
        device: Device for the tensor learning rate when ``capturable``.

    Raises:
        ValueError: If no parameter requires gradients.
    """
    param_groups = _separate_weight_decay_params(named_parameters, train_config.weight_decay)
    if not param_groups:
        raise ValueError("No trainable parameters to optimize")

    lr: float | torch.Tensor = train_config.learning_rate
    if capturable:
        lr = torch.tensor(train_config.learning_rate, device=device)

    return torch.optim.AdamW(
        param_groups,
        lr=lr,
        betas=(train_config.beta1, train_config.beta2),
        weight_decay=train_config.weight_decay,
        capturable=capturable,
        foreach=True if capturable else None,
    )
