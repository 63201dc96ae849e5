# Author : Eshan Roy <eshanized@proton.me>
# SPDX-License-Identifier: MIT

"""
Projection layer whose weight source is chosen at bind time.

``AdaptableLinear`` computes ``y = base(x) + scaling * B(A(dropout(x)))``:

  - ``base`` is either a dense weight (frozen or trainable, depending on
    the execution mode) or a packed 4-bit weight run through a kernel
    handle from the registry
  - the low-rank term exists only while a LoRA pair is attached

The layer owns none of these tensors for good. The execution session binds
and unbinds them whenever it switches mode, and the graph structure stays
the same throughout.
"""

import math
from typing import Optional

import torch
import torch.nn as nn
import torch.nn.functional as F

from loralab.kernels.quant4 import QuantizedWeight
from loralab.kernels.registry import KernelHandle


class AdaptableLinear(nn.Module):
    """
    Bias-free linear projection with optional LoRA and 4-bit base paths.

    Args:
        in_features: Input width.
        out_features: Output width.
    """

    def __init__(self, in_features: int, out_features: int) -> None:
        super().__init__()
        self.in_features = in_features
        self.out_features = out_features
        self.weight: Optional[nn.Parameter] = nn.Parameter(
            torch.empty(out_features, in_features), requires_grad=False
        )
        self.register_parameter("lora_A", None)
        self.register_parameter("lora_B", None)
        self.scaling = 0.0
        self.lora_dropout = 0.0
        self._quantized: Optional[QuantizedWeight] = None
        self._kernel: Optional[KernelHandle] = None

    @property
    def has_lora(self) -> bool:
        return self.lora_A is not None

    @property
    def is_quantized(self) -> bool:
        return self._quantized is not None

    def bind_weight(self, weight: nn.Parameter) -> None:
        """Use a dense weight; drops any 4-bit binding."""
        if tuple(weight.shape) != (self.out_features, self.in_features):
            raise ValueError(
                f"Weight shape {tuple(weight.shape)} does not match "
                f"({self.out_features}, {self.in_features})"
            )
        self._quantized = None
        self._kernel = None
        self.weight = weight

    def bind_quantized(self, quantized: QuantizedWeight, kernel: KernelHandle) -> None:
        """Run the frozen base through ``kernel``; the dense weight is released."""
        if quantized.shape != (self.out_features, self.in_features):
            raise ValueError(f"Quantized shape {quantized.shape} does not match this layer")
        self.weight = None
        self._quantized = quantized
        self._kernel = kernel

    def attach_lora(
        self,
        lora_A: nn.Parameter,
        lora_B: nn.Parameter,
        alpha: float,
        dropout: float = 0.0,
    ) -> None:
        rank = lora_A.shape[0]
        if tuple(lora_A.shape) != (rank, self.in_features):
            raise ValueError(f"lora_A shape {tuple(lora_A.shape)} != ({rank}, {self.in_features})")
        if tuple(lora_B.shape) != (self.out_features, rank):
            raise ValueError(f"lora_B shape {tuple(lora_B.shape)} != ({self.out_features}, {rank})")
        self.lora_A = lora_A
        self.lora_B = lora_B
        self.scaling = alpha / rank
        self.lora_dropout = dropout

    def detach_lora(self) -> None:
        self.lora_A = None
        self.lora_B = None
        self.scaling = 0.0

    def forward(self, x: torch.Tensor) -> torch.Tensor:
        if self._quantized is not None and self._kernel is not None:
            q = self._quantized
            out = self._kernel(x, q.packed, q.scales, q.group_size)
        elif self.weight is not None:
            out = F.linear(x, self.weight)
        else:
            raise RuntimeError("AdaptableLinear has no weight bound")

        if self.lora_A is not None and self.lora_B is not None:
            h = F.dropout(x, p=self.lora_dropout, training=self.training) if self.lora_dropout > 0 else x
            out = out + F.linear(F.linear(h, self.lora_A), self.lora_B) * self.scaling
        return out

    def extra_repr(self) -> str:
        return (
            f"in_features={self.in_features}, out_features={self.out_features}, "
            f"lora={self.has_lora}, quantized={self.is_quantized}"
        )


def init_lora_pair(
    in_features: int,
    out_features: int,
    rank: int,
    generator: torch.Generator,
    device: torch.device,
) -> tuple[nn.Parameter, nn.Parameter]:
    """
    Fresh LoRA factors: ``A`` from a seeded Kaiming-uniform draw, ``B`` zero,
    so an untrained adapter leaves the base output unchanged.
    """
    bound = 1.0 / math.sqrt(in_features)
    lora_A = torch.empty(rank, in_features).uniform_(-bound, bound, generator=generator)
    lora_B = torch.zeros(out_features, rank)
    return nn.Parameter(lora_A.to(device)), nn.Parameter(lora_B.to(device))


def resize_lora_pair(
    lora_A: torch.Tensor,
    lora_B: torch.Tensor,
    rank: int,
    generator: torch.Generator,
) -> tuple[nn.Parameter, nn.Parameter]:
    """
    Factors of rank ``rank`` carrying the same weight delta.

    The delta is ``(alpha / r) * B @ A``, so the new factors must multiply
    to ``(rank / r) * B @ A``. Growing keeps every existing row of ``A``,
    appends fresh Kaiming-uniform rows, and gives ``B`` rescaled columns
    plus zero columns for them: the delta is unchanged. Shrinking keeps
    the top ``rank`` singular directions of the rescaled product, the
    closest rank-``rank`` approximation of it.
    """
    old_rank = lora_A.shape[0]
    device = lora_A.device
    ratio = rank / old_rank
    with torch.no_grad():
        if rank >= old_rank:
            in_features = lora_A.shape[1]
            bound = 1.0 / math.sqrt(in_features)
            fresh = torch.empty(rank - old_rank, in_features).uniform_(-bound, bound, generator=generator)
            new_A = torch.cat((lora_A.detach().float(), fresh.to(device)), dim=0)
            zeros = torch.zeros(lora_B.shape[0], rank - old_rank, device=device)
            new_B = torch.cat((lora_B.detach().float() * ratio, zeros), dim=1)
        else:
            product = (lora_B.detach().float() @ lora_A.detach().float()) * ratio
            U, S, Vh = torch.linalg.svd(product, full_matrices=False)
            new_A = Vh[:rank].clone()
            new_B = U[:, :rank] * S[:rank]
    return nn.Parameter(new_A.contiguous()), nn.Parameter(new_B.contiguous())
