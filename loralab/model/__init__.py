# Author : Eshan Roy <eshanized@proton.me>
# SPDX-License-Identifier: MIT

"""
The fixed decoder graph.

Architecture:
  - RMSNorm
  - rotary positions restarted per packed segment
  - SwiGLU feedforward
  - block-diagonal causal self-attention
  - bias-free projections whose weights are bound by the session
"""
