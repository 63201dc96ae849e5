# Author : Eshan Roy <eshanized@proton.me>
# SPDX-License-Identifier: MIT

"""
loralab: on-device LoRA and full-parameter fine-tuning of a small decoder.

Raw text goes through the corpus loader, the TF-IDF curriculum sampler and
the dual-row batch packer. A background training scheduler then feeds the
packed batches to an execution session that owns the fixed graph and its
weights.
"""

__version__ = "0.1.0"
