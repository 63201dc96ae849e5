# Author : Eshan Roy <eshanized@proton.me>
# SPDX-License-Identifier: MIT

"""
Runtime bootstrap for loralab.

Run once per process before any real work:
  1. Validate the interpreter
  2. Seed every random source
  3. Configure the package logger
"""

import logging
import os
import random
from pathlib import Path

import torch

from loralab.config.schema import GlobalConfig
from loralab.logging.logger import get_logger
from loralab.runtime.environment import check_minimum_python, get_system_info


def set_deterministic_seed(seed: int) -> None:
    """
    Seed Python's ``random``, the hash seed, and torch (CPU and CUDA).

    cuDNN is also switched to deterministic kernels when CUDA is present.
    """
    random.seed(seed)
    os.environ["PYTHONHASHSEED"] = str(seed)
    torch.manual_seed(seed)
    if torch.cuda.is_available():
        torch.cuda.manual_seed_all(seed)
        torch.backends.cudnn.deterministic = True  # type: ignore[attr-defined]
        torch.backends.cudnn.benchmark = False  # type: ignore[attr-defined]


def bootstrap(config: GlobalConfig) -> logging.Logger:
    """
    Put the process into a known state and return the root package logger.

    Args:
        config: The validated global section.
    """
    check_minimum_python()
    set_deterministic_seed(config.seed)

    log_file = Path(config.log_file) if config.log_file is not None else None
    logger = get_logger("loralab", log_level=config.log_level, log_file=log_file)

    system_info = get_system_info()
    logger.info(
        "loralab bootstrap complete",
        extra={
            "project": config.project_name,
            "seed": config.seed,
            "python_version": system_info.python_version,
            "torch_version": system_info.torch_version,
            "platform": system_info.platform,
            "architecture": system_info.architecture,
        },
    )
    return logger
