# Author : Eshan Roy <eshanized@proton.me>
# SPDX-License-Identifier: MIT

"""
I/O binding: persistent device buffers for the per-step inputs.

The session allocates one set of buffers for the static batch shape and
copies every batch into them. On CUDA, batches go through pinned host
staging buffers with ``non_blocking`` copies, so the only host-to-device
traffic of a steady-state step is the batch's token ids and the only
device-to-host traffic is the loss read-back. Captured CUDA graphs read
from these exact buffers, so they must never be reallocated while a
graph exists.
"""

import torch

from loralab.data.packing.core import Batch

_FIELDS = ("input_ids", "position_ids", "segment_ids")


class IOBinding:
    """
    Args:
        shape: Static ``(rows, row_length)`` of the batches to bind.
        device: Device holding the buffers.
    """

    def __init__(self, shape: tuple[int, int], device: torch.device) -> None:
        self.shape = shape
        self.device = device
        self._pinned = device.type == "cuda"
        self.input_ids = torch.zeros(shape, dtype=torch.long, device=device)
        self.position_ids = torch.zeros(shape, dtype=torch.long, device=device)
        self.segment_ids = torch.zeros(shape, dtype=torch.long, device=device)
        self._staging: dict[str, torch.Tensor] = {}
        if self._pinned:
            self._staging = {
                name: torch.empty(shape, dtype=torch.long, pin_memory=True) for name in _FIELDS
            }
        self.uploads = 0

    def accepts(self, batch: Batch) -> bool:
        return batch.shape == self.shape

    def upload(self, batch: Batch) -> None:
        """
        Copy ``batch`` into the bound buffers.

        Raises:
            ValueError: The batch shape differs from the bound shape.
        """
        if not self.accepts(batch):
            raise ValueError(f"Batch shape {batch.shape} does not match bound shape {self.shape}")
        for name in _FIELDS:
            source = getattr(batch, name)
            target = getattr(self, name)
            if self._pinned:
                staging = self._staging[name]
                staging.copy_(source)
                target.copy_(staging, non_blocking=True)
            else:
                target.copy_(source)
        self.uploads += 1

    def tensors(self) -> tuple[torch.Tensor, torch.Tensor, torch.Tensor]:
        return self.input_ids, self.position_ids, self.segment_ids
