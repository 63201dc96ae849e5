# Author : Eshan Roy <eshanized@proton.me>
# SPDX-License-Identifier: MIT

"""
Hardware capability report.

The execution session never queries devices itself. It receives a
``HardwareReport`` and uses it to pick between the GPU path, the CPU
reference path, or ``UnsupportedHardware``. ``detect_hardware`` is the
default producer of that report; tests build reports by hand.
"""

import logging
from dataclasses import dataclass
from typing import Optional

import torch

from loralab.logging.logger import get_logger

logger: logging.Logger = get_logger(__name__)

_BYTES_PER_MB = 1024 * 1024


@dataclass(frozen=True)
class HardwareReport:
    """What the host can run, as far as the training core cares."""

    gpu_available: bool
    backend: str
    device_name: str
    total_memory_mb: float = 0.0
    available_memory_mb: float = 0.0
    compute_capability: Optional[tuple[int, int]] = None

    def supports_graph_capture(self) -> bool:
        return self.gpu_available and self.backend == "cuda"


def cpu_only_report() -> HardwareReport:
    """A report for a host with no GPU backend."""
    return HardwareReport(gpu_available=False, backend="cpu", device_name="cpu")


def detect_hardware() -> HardwareReport:
    """Query torch for a CUDA device and its free memory."""
    if not torch.cuda.is_available():
        report = cpu_only_report()
    else:
        index = torch.cuda.current_device()
        free_bytes, total_bytes = torch.cuda.mem_get_info(index)
        report = HardwareReport(
            gpu_available=True,
            backend="cuda",
            device_name=torch.cuda.get_device_name(index),
            total_memory_mb=total_bytes / _BYTES_PER_MB,
            available_memory_mb=free_bytes / _BYTES_PER_MB,
            compute_capability=torch.cuda.get_device_capability(index),
        )

    logger.debug(
        "Hardware detected",
        extra={
            "gpu_available": report.gpu_available,
            "backend": report.backend,
            "device_name": report.device_name,
            "available_memory_mb": round(report.available_memory_mb, 1),
        },
    )
    return report
