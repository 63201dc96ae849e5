# Author : Eshan Roy <eshanized@proton.me>
# SPDX-License-Identifier: MIT

"""
Tests for the decoder graph and its packed-batch semantics.

  1. The segment mask is causal within a segment and blocks everything across
  2. Targets never cross a segment boundary
  3. A packed sequence produces the same logits as the sequence alone
"""

import pytest
import torch
import torch.nn as nn

from loralab.model.graph import (
    IGNORE_INDEX,
    DecoderGraph,
    GraphConfig,
    loss_from_logits,
    packed_targets,
    segment_attention_mask,
)
from loralab.model.weights import BaseWeights


def _bound_graph(config: GraphConfig, weights: BaseWeights) -> DecoderGraph:
    graph = DecoderGraph(config)
    for name, tensor in weights.items():
        graph.bind_tensor(name, nn.Parameter(tensor.clone(), requires_grad=False))
    return graph.eval()


class TestSegmentMask:
    def test_mask_layout(self) -> None:
        mask = segment_attention_mask(torch.tensor([[1, 1, 2, 2, 0]]))
        assert mask.shape == (1, 1, 5, 5)
        m = mask[0, 0]
        assert m[1, 0] and m[3, 2]
        assert not m[0, 1]
        assert not m[2, 1] and not m[3, 0]
        assert m[4, 4]
        assert not m[4, 0] and not m[4, 3]

    def test_every_row_has_a_visible_position(self) -> None:
        mask = segment_attention_mask(torch.tensor([[0, 0, 1, 0]]))
        assert torch.all(mask.any(dim=-1))


class TestPackedTargets:
    def test_targets_stop_at_boundaries(self) -> None:
        input_ids = torch.tensor([[5, 6, 7, 8, 0]])
        segment_ids = torch.tensor([[1, 1, 2, 2, 0]])
        assert packed_targets(input_ids, segment_ids).tolist() == [
            [6, IGNORE_INDEX, 8, IGNORE_INDEX, IGNORE_INDEX]
        ]

    def test_loss_ignores_masked_targets(self) -> None:
        logits = torch.zeros(1, 3, 4)
        targets = torch.tensor([[1, IGNORE_INDEX, IGNORE_INDEX]])
        loss = loss_from_logits(logits, targets)
        assert torch.isclose(loss, torch.log(torch.tensor(4.0)))


class TestDecoderGraph:
    def test_logits_shape(self, graph_config: GraphConfig, base_weights: BaseWeights) -> None:
        graph = _bound_graph(graph_config, base_weights)
        ids = torch.randint(0, graph_config.vocab_size, (2, 8))
        positions = torch.arange(8).expand(2, 8)
        segments = torch.ones(2, 8, dtype=torch.long)
        assert graph(ids, positions, segments).shape == (2, 8, graph_config.vocab_size)

    def test_packed_sequence_matches_unpacked(
        self, graph_config: GraphConfig, base_weights: BaseWeights
    ) -> None:
        graph = _bound_graph(graph_config, base_weights)
        first = [11, 12, 13]
        second = [21, 22, 23]

        with torch.no_grad():
            packed = graph(
                torch.tensor([first + second + [0, 0]]),
                torch.tensor([[0, 1, 2, 0, 1, 2, 0, 0]]),
                torch.tensor([[1, 1, 1, 2, 2, 2, 0, 0]]),
            )
            alone = graph(
                torch.tensor([second]),
                torch.tensor([[0, 1, 2]]),
                torch.tensor([[1, 1, 1]]),
            )
        assert torch.allclose(packed[0, 3:6], alone[0], atol=1e-5)

    def test_neighbour_does_not_leak(self, graph_config: GraphConfig, base_weights: BaseWeights) -> None:
        graph = _bound_graph(graph_config, base_weights)
        positions = torch.tensor([[0, 1, 2, 0, 1, 2]])
        segments = torch.tensor([[1, 1, 1, 2, 2, 2]])
        with torch.no_grad():
            a = graph(torch.tensor([[11, 12, 13, 21, 22, 23]]), positions, segments)
            b = graph(torch.tensor([[11, 12, 13, 31, 32, 33]]), positions, segments)
        assert torch.allclose(a[0, :3], b[0, :3], atol=1e-6)

    def test_projections_cover_every_linear(self, graph_config: GraphConfig) -> None:
        names = [name for name, _ in DecoderGraph(graph_config).projections()]
        assert "layers.0.attention.wq" in names
        assert "layers.0.feed_forward.w3" in names
        assert "output" in names
        assert len(names) == 7 * graph_config.n_layers + 1

    def test_bind_unknown_slot(self, graph_config: GraphConfig) -> None:
        graph = DecoderGraph(graph_config)
        with pytest.raises(KeyError):
            graph.bind_tensor("layers.0.attention.scale", nn.Parameter(torch.ones(1)))

    def test_bind_wrong_shape(self, graph_config: GraphConfig) -> None:
        graph = DecoderGraph(graph_config)
        with pytest.raises(ValueError):
            graph.bind_tensor("norm.weight", nn.Parameter(torch.ones(graph_config.dim + 1)))
