# Author : Eshan Roy <eshanized@proton.me>
# SPDX-License-Identifier: MIT

from pathlib import Path

import pytest
import torch
from safetensors.torch import save_file

from loralab.model.graph import GraphConfig
from loralab.model.weights import (
    BaseWeights,
    base_weight_shapes,
    init_base_weights,
    load_base_weights,
    validate_base_weights,
)


class TestBaseWeights:
    def test_shapes_follow_graph(self, graph_config: GraphConfig) -> None:
        shapes = base_weight_shapes(graph_config)
        assert shapes["tok_embeddings.weight"] == (graph_config.vocab_size, graph_config.dim)
        assert shapes["layers.0.attention.wq.weight"] == (32, graph_config.dim)
        assert shapes["layers.0.feed_forward.w2.weight"] == (graph_config.dim, graph_config.ffn_dim)
        assert shapes["norm.weight"] == (graph_config.dim,)

    def test_init_is_seeded(self, graph_config: GraphConfig) -> None:
        first = init_base_weights(graph_config, seed=3)
        second = init_base_weights(graph_config, seed=3)
        other = init_base_weights(graph_config, seed=4)
        assert all(torch.equal(first[name], second[name]) for name in first)
        assert not torch.equal(first["output.weight"], other["output.weight"])

    def test_mapping_is_read_only(self, base_weights: BaseWeights) -> None:
        with pytest.raises(TypeError):
            base_weights["norm.weight"] = torch.zeros(1)  # type: ignore[index]

    def test_validate_accepts_init(self, graph_config: GraphConfig, base_weights: BaseWeights) -> None:
        validate_base_weights(base_weights, graph_config)

    def test_validate_missing_tensor(self, graph_config: GraphConfig, base_weights: BaseWeights) -> None:
        weights = dict(base_weights)
        del weights["output.weight"]
        with pytest.raises(ValueError, match="missing"):
            validate_base_weights(weights, graph_config)

    def test_validate_shape(self, graph_config: GraphConfig, base_weights: BaseWeights) -> None:
        weights = dict(base_weights)
        weights["norm.weight"] = torch.ones(graph_config.dim + 1)
        with pytest.raises(ValueError, match="shape"):
            validate_base_weights(weights, graph_config)

    def test_validate_dtype(self, graph_config: GraphConfig, base_weights: BaseWeights) -> None:
        weights = dict(base_weights)
        weights["norm.weight"] = weights["norm.weight"].half()
        with pytest.raises(ValueError, match="dtype"):
            validate_base_weights(weights, graph_config)


class TestLoadBaseWeights:
    def test_loads_safetensors(self, tmp_path: Path, graph_config: GraphConfig, base_weights: BaseWeights) -> None:
        path = tmp_path / "base.safetensors"
        save_file({name: tensor.half() for name, tensor in base_weights.items()}, str(path))
        loaded = load_base_weights(path, graph_config)
        assert set(loaded) == set(base_weights)
        assert loaded["output.weight"].dtype == torch.float32

    def test_missing_file(self, tmp_path: Path, graph_config: GraphConfig) -> None:
        with pytest.raises(FileNotFoundError):
            load_base_weights(tmp_path / "absent.safetensors", graph_config)
