# Author : Eshan Roy <eshanized@proton.me>
# SPDX-License-Identifier: MIT

"""
Error kinds raised by the loralab training core.

Every error carries a stable ``kind`` string. The scheduler reports that
string in ``failed`` events, so callers on the other side of the message
boundary can branch on it without importing these classes.

Config problems have their own hierarchy in ``loralab.config.exceptions``.
"""

from typing import Optional


class LoraLabError(Exception):
    """Base for every training-core error."""

    kind: str = "LoraLabError"


class EmptyCorpus(LoraLabError):
    """No document produced any tokens after cleaning and tokenization."""

    kind = "EmptyCorpus"


class UnsupportedEncoding(LoraLabError):
    """Corpus bytes could not be decoded as text."""

    kind = "UnsupportedEncoding"


class UnsupportedHardware(LoraLabError):
    """No usable compute backend, or no kernel that runs on it."""

    kind = "UnsupportedHardware"


class KernelCompileError(LoraLabError):
    """
    The backend rejected a kernel program.

    ``diagnostic`` holds whatever text the compiler produced. This is fatal
    for the session that asked for the kernel, never for the process.
    """

    kind = "KernelCompileError"

    def __init__(self, message: str, diagnostic: str = "") -> None:
        super().__init__(message)
        self.diagnostic = diagnostic


class NonFiniteLoss(LoraLabError):
    """A step produced a NaN or infinite loss."""

    kind = "NonFiniteLoss"

    def __init__(self, step: int, loss: float) -> None:
        super().__init__(f"Non-finite loss {loss} at step {step}")
        self.step = step
        self.loss = loss


class AdapterIncompatible(LoraLabError):
    """Imported adapter tensors do not match the base model graph."""

    kind = "AdapterIncompatible"


class AbortRequested(LoraLabError):
    """A run was cancelled on request. A normal terminal transition, not a failure."""

    kind = "AbortRequested"


class TransientBackendError(LoraLabError):
    """A step failed in a way that may succeed if issued once more."""

    kind = "TransientBackendError"


class SessionStateError(LoraLabError):
    """An operation was issued while the session could not accept it."""

    kind = "SessionStateError"

    def __init__(self, message: str, state: Optional[str] = None) -> None:
        super().__init__(message)
        self.state = state
