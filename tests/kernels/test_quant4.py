# Author : Eshan Roy <eshanized@proton.me>
# SPDX-License-Identifier: MIT

import pytest
import torch
import torch.nn.functional as F

from loralab.kernels.quant4 import (
    check_quantizable,
    dequantize_q4,
    matmul_q4,
    quantize_q4,
    unpack_q4,
)


def _weight(out_features: int = 8, in_features: int = 64, seed: int = 0) -> torch.Tensor:
    return torch.randn(out_features, in_features, generator=torch.Generator().manual_seed(seed))


class TestPacking:
    def test_nibbles_low_first(self) -> None:
        quantized = quantize_q4(torch.tensor([[7.0, -7.0]]), group_size=2)
        # scale 1: 7 -> 15 in the low nibble, -7 -> 1 in the high nibble
        assert quantized.packed.dtype == torch.uint8
        assert quantized.packed.tolist() == [[15 | (1 << 4)]]
        assert quantized.scales.tolist() == [[1.0]]

    def test_unpack_inverts_packing(self) -> None:
        quantized = quantize_q4(_weight(), group_size=16)
        nibbles = unpack_q4(quantized.packed)
        assert nibbles.shape == (8, 64)
        assert int(nibbles.max()) <= 15
        repacked = nibbles[:, 0::2] | (nibbles[:, 1::2] << 4)
        assert torch.equal(repacked, quantized.packed)

    def test_shapes(self) -> None:
        quantized = quantize_q4(_weight(), group_size=16)
        assert quantized.shape == (8, 64)
        assert quantized.packed.shape == (8, 32)
        assert quantized.scales.shape == (8, 4)

    def test_zero_weight_round_trips_to_zero(self) -> None:
        quantized = quantize_q4(torch.zeros(2, 4), group_size=4)
        restored = dequantize_q4(quantized.packed, quantized.scales, 4)
        assert torch.equal(restored, torch.zeros(2, 4))


class TestAccuracy:
    def test_error_within_half_a_step(self) -> None:
        weight = _weight()
        quantized = quantize_q4(weight, group_size=16)
        restored = dequantize_q4(quantized.packed, quantized.scales, 16)
        step = quantized.scales.repeat_interleave(16, dim=1)
        assert torch.all((weight - restored).abs() <= step / 2 + 1e-6)

    def test_matmul_matches_dequantized_linear(self) -> None:
        weight = _weight()
        quantized = quantize_q4(weight, group_size=32)
        x = torch.randn(5, 64, generator=torch.Generator().manual_seed(3))
        expected = F.linear(x, dequantize_q4(quantized.packed, quantized.scales, 32))
        assert torch.allclose(matmul_q4(x, quantized.packed, quantized.scales, 32), expected)

    def test_matmul_close_to_dense(self) -> None:
        weight = _weight()
        quantized = quantize_q4(weight, group_size=32)
        x = torch.randn(5, 64, generator=torch.Generator().manual_seed(3))
        result = matmul_q4(x, quantized.packed, quantized.scales, 32)
        half_step = quantized.scales.repeat_interleave(32, dim=1) / 2
        bound = x.abs() @ half_step.T
        assert torch.all((result - x @ weight.T).abs() <= bound + 1e-4)

    def test_gradient_reaches_activations(self) -> None:
        quantized = quantize_q4(_weight(), group_size=32)
        x = torch.randn(2, 64, requires_grad=True)
        matmul_q4(x, quantized.packed, quantized.scales, 32).sum().backward()
        assert x.grad is not None
        assert x.grad.shape == (2, 64)


class TestCheckQuantizable:
    def test_rejects_non_matrix(self) -> None:
        with pytest.raises(ValueError, match="2-D"):
            check_quantizable((64,), 16)

    def test_rejects_odd_group(self) -> None:
        with pytest.raises(ValueError, match="even"):
            check_quantizable((8, 63), 3)

    def test_rejects_ragged_columns(self) -> None:
        with pytest.raises(ValueError, match="multiple"):
            check_quantizable((8, 40), 16)

    def test_accepts_aligned_shape(self) -> None:
        check_quantizable((8, 64), 16)
