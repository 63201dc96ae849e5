# Author : Eshan Roy <eshanized@proton.me>
# SPDX-License-Identifier: MIT

"""
Immutable weight snapshots.

A snapshot is what leaves the execution session: CPU copies of the live
tensors behind a read-only mapping, plus string metadata. Nothing in a
snapshot aliases session memory, so an exporter can take its time while
training continues.
"""

from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Mapping

import torch

ADAPTER_KIND = "adapter"
FULL_KIND = "full"


@dataclass(frozen=True)
class WeightSnapshot:
    """``kind`` is ``adapter`` (LoRA factors only) or ``full`` (every parameter)."""

    kind: str
    tensors: Mapping[str, torch.Tensor]
    metadata: Mapping[str, str] = field(default_factory=lambda: MappingProxyType({}))

    @classmethod
    def capture(
        cls,
        kind: str,
        tensors: Mapping[str, torch.Tensor],
        metadata: Mapping[str, str],
    ) -> "WeightSnapshot":
        """Copy ``tensors`` to the CPU and freeze everything."""
        copied = {
            name: tensor.detach().to("cpu", copy=True).contiguous()
            for name, tensor in sorted(tensors.items())
        }
        return cls(
            kind=kind,
            tensors=MappingProxyType(copied),
            metadata=MappingProxyType(dict(metadata)),
        )

    def names(self) -> list[str]:
        return sorted(self.tensors)

    def raw_bytes(self, name: str) -> bytes:
        """The tensor's storage as bytes, for bit-exact comparisons."""
        return bytes(self.tensors[name].contiguous().view(-1).view(torch.uint8).tolist())

    def num_parameters(self) -> int:
        return sum(tensor.numel() for tensor in self.tensors.values())

