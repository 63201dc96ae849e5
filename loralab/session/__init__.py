# Author : Eshan Roy <eshanized@proton.me>
# SPDX-License-Identifier: MIT

"""
Execution session package.

  - core: ExecutionSession, create_session, adapter validation
  - binding: persistent device input buffers
  - capture: CUDA graph capture and replay of a whole step
"""

from loralab.session.core import ExecutionMode, ExecutionSession, StepResult, create_session

__all__ = ["ExecutionMode", "ExecutionSession", "StepResult", "create_session"]
