# Author : Eshan Roy <eshanized@proton.me>
# SPDX-License-Identifier: MIT

"""
Base weights: the frozen pretrained parameters of the fixed graph.

``BaseWeights`` is a read-only mapping from parameter name to a CPU tensor.
Sessions copy these tensors onto their device and never write to the
mapping. ``base_weight_shapes`` derives the expected names and shapes from
the graph itself (built on the meta device, so nothing is allocated).

``init_base_weights`` produces deterministic stand-in weights from a seed,
for tests and for configs that do not name a pretrained file. It uses one
``torch.Generator`` for the whole model, so the same seed and dimensions
always give the same tensors.
"""

from pathlib import Path
from types import MappingProxyType
from typing import Mapping

import torch
from safetensors.torch import load_file

from loralab.model.graph import DecoderGraph, GraphConfig

BaseWeights = Mapping[str, torch.Tensor]


def base_weight_shapes(config: GraphConfig) -> dict[str, tuple[int, ...]]:
    with torch.device("meta"):
        graph = DecoderGraph(config)
    return {name: tuple(param.shape) for name, param in graph.named_parameters()}


def init_base_weights(config: GraphConfig, seed: int) -> BaseWeights:
    """Seeded normal init for matrices; norms start at 1."""
    generator = torch.Generator()
    generator.manual_seed(seed)

    weights: dict[str, torch.Tensor] = {}
    for name, shape in base_weight_shapes(config).items():
        if len(shape) >= 2:
            weights[name] = torch.empty(shape).normal_(0.0, config.init_std, generator=generator)
        else:
            weights[name] = torch.ones(shape)
    return MappingProxyType(weights)


def validate_base_weights(weights: BaseWeights, config: GraphConfig) -> None:
    """
    Raises:
        ValueError: Missing, unexpected, misshaped, or non-float32 tensors.
    """
    expected = base_weight_shapes(config)
    missing = sorted(set(expected) - set(weights))
    unexpected = sorted(set(weights) - set(expected))
    if missing or unexpected:
        raise ValueError(f"Base weights do not match the graph: missing={missing}, unexpected={unexpected}")
    for name, shape in expected.items():
        tensor = weights[name]
        if tuple(tensor.shape) != shape:
            raise ValueError(f"Base weight '{name}' has shape {tuple(tensor.shape)}, expected {shape}")
        if tensor.dtype != torch.float32:
            raise ValueError(f"Base weight '{name}' has dtype {tensor.dtype}, expected torch.float32")


def load_base_weights(path: Path, config: GraphConfig) -> BaseWeights:
    """
    Read pretrained weights from a safetensors file and check them against
    the graph.

    Raises:
        FileNotFoundError: If ``path`` does not exist.
        ValueError: If the tensors do not fit ``config``.
    """
    if not path.is_file():
        raise FileNotFoundError(f"Base weights not found: {path}")
    weights = {name: tensor.float() for name, tensor in load_file(str(path)).items()}
    validate_base_weights(weights, config)
    return MappingProxyType(weights)
