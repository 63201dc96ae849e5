# Author : Eshan Roy <eshanized@proton.me>
# SPDX-License-Identifier: MIT

"""
Reduced-precision kernels.

``quant4`` holds the group-wise 4-bit format and its reference programs;
``registry`` compiles them per descriptor and hands out handles.
"""
