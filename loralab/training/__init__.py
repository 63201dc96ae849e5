# Author : Eshan Roy <eshanized@proton.me>
# SPDX-License-Identifier: MIT

"""
loralab training package.

Subsystems:
  - optimizer: AdamW factory
  - lr: warmup + cosine learning rate
  - metrics: throughput and ETA tracking
  - rank: LoRA rank scheduling policies
  - scheduler: background worker, command and event protocol
"""
