# Author : Eshan Roy <eshanized@proton.me>
# SPDX-License-Identifier: MIT

"""
4-bit weight quantization and the reference mixed-precision matmul.

Weights are quantized per output row in groups of ``group_size`` input
columns. Each group stores one float32 scale (absmax / 7); values are
rounded to signed 4-bit integers in [-8, 7], offset by 8 and packed two
per byte, low nibble first:

    byte j of a row = q[2j] | (q[2j + 1] << 4)

Activations stay in higher precision. ``matmul_q4`` dequantizes to the
activation dtype and runs a dense linear. That is the reference program
every compiled kernel variant is checked against.

These functions are plain torch ops, so ``torch.compile`` can fuse them
and autograd flows through ``matmul_q4`` to the activations.
"""

from dataclasses import dataclass

import torch
import torch.nn.functional as F

Q4_MAX = 7
Q4_OFFSET = 8


@dataclass(frozen=True)
class QuantizedWeight:
    """Packed 4-bit weight: ``packed`` is (out, in / 2) uint8, ``scales`` is (out, in / group) float32."""

    packed: torch.Tensor
    scales: torch.Tensor
    group_size: int
    shape: tuple[int, int]

    def to(self, device: torch.device) -> "QuantizedWeight":
        return QuantizedWeight(
            packed=self.packed.to(device),
            scales=self.scales.to(device),
            group_size=self.group_size,
            shape=self.shape,
        )


def check_quantizable(shape: tuple[int, ...], group_size: int) -> None:
    """
    Raises:
        ValueError: If a weight of ``shape`` cannot be packed with ``group_size``.
    """
    if len(shape) != 2:
        raise ValueError(f"Only 2-D weights can be quantized, got shape {tuple(shape)}")
    if group_size % 2 != 0:
        raise ValueError(f"group_size must be even, got {group_size}")
    if shape[1] % group_size != 0:
        raise ValueError(f"in_features {shape[1]} is not a multiple of group_size {group_size}")


def quantize_q4(weight: torch.Tensor, group_size: int) -> QuantizedWeight:
    """Quantize a 2-D float weight to packed 4-bit with per-group scales."""
    check_quantizable(tuple(weight.shape), group_size)
    out_features, in_features = weight.shape

    grouped = weight.detach().float().reshape(out_features, in_features // group_size, group_size)
    scales = grouped.abs().amax(dim=-1, keepdim=True) / Q4_MAX
    scales = torch.where(scales == 0, torch.ones_like(scales), scales)

    q = torch.clamp(torch.round(grouped / scales), -Q4_OFFSET, Q4_MAX) + Q4_OFFSET
    q = q.to(torch.uint8).reshape(out_features, in_features)
    packed = q[:, 0::2] | (q[:, 1::2] << 4)

    return QuantizedWeight(
        packed=packed.contiguous(),
        scales=scales.squeeze(-1).contiguous(),
        group_size=group_size,
        shape=(int(out_features), int(in_features)),
    )


def unpack_q4(packed: torch.Tensor) -> torch.Tensor:
    """(out, in / 2) uint8 to (out, in) uint8 nibbles in [0, 15]."""
    low = packed & 0x0F
    high = (packed >> 4) & 0x0F
    return torch.stack((low, high), dim=-1).reshape(packed.shape[0], -1)


def dequantize_q4(
    packed: torch.Tensor,
    scales: torch.Tensor,
    group_size: int,
    dtype: torch.dtype = torch.float32,
) -> torch.Tensor:
    q = unpack_q4(packed).to(dtype) - Q4_OFFSET
    out_features, in_features = q.shape
    grouped = q.reshape(out_features, in_features // group_size, group_size)
    return (grouped * scales.to(dtype).unsqueeze(-1)).reshape(out_features, in_features)


def matmul_q4(
    x: torch.Tensor,
    packed: torch.Tensor,
    scales: torch.Tensor,
    group_size: int,
) -> torch.Tensor:
    """``x @ W.T`` with ``W`` given in packed 4-bit form."""
    weight = dequantize_q4(packed, scales, group_size, dtype=x.dtype)
    return F.linear(x, weight)
