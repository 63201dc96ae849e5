# Author : Eshan Roy <eshanized@proton.me>
# SPDX-License-Identifier: MIT

"""
Kernel registry for reduced-precision operators.

An operator is a named program (for example ``matmul_q4``) with an optional
higher-precision reference implementation and a sampler that builds small
inputs for it. A ``KernelDescriptor`` pins an operator to an activation
dtype, a quantization group size and a backend.

``KernelRegistry.register(descriptor)`` compiles the operator for the
descriptor's backend once and caches the handle, so a later call with an
equal descriptor returns the same handle. Compilation means wrapping the
program with ``torch.compile`` and running sample inputs through it. Running
them forces code generation and checks the output against the
reference. Any failure becomes ``KernelCompileError`` with the compiler's
text attached.

``resolve`` is what sessions call. It falls back to the reference program
when compilation fails and raises ``UnsupportedHardware`` when there is
nothing to fall back to.
"""

import logging
import threading
from dataclasses import dataclass
from typing import Callable, Iterable, Optional

import torch

from loralab.exceptions import KernelCompileError, UnsupportedHardware
from loralab.kernels.quant4 import dequantize_q4, matmul_q4, quantize_q4, unpack_q4
from loralab.logging.logger import get_logger

logger: logging.Logger = get_logger(__name__)

Program = Callable[..., torch.Tensor]
SampleBuilder = Callable[["KernelDescriptor", torch.device], tuple]
Compiler = Callable[[Program], Program]

_DTYPES = {
    "float32": torch.float32,
    "bfloat16": torch.bfloat16,
    "float16": torch.float16,
}

# Max abs difference tolerated between a compiled kernel and its reference.
_SAMPLE_TOLERANCE = {"float32": 1e-4, "bfloat16": 5e-2, "float16": 1e-2}


@dataclass(frozen=True)
class KernelDescriptor:
    """Identity of a kernel: operator, dtype signature and backend."""

    name: str
    activation_dtype: str = "float32"
    group_size: int = 32
    backend: str = "cuda"
    weight_dtype: str = "int4"

    @property
    def signature(self) -> str:
        return (
            f"{self.name}[{self.weight_dtype}x{self.activation_dtype}"
            f"->{self.activation_dtype}, g{self.group_size}]@{self.backend}"
        )

    @property
    def torch_dtype(self) -> torch.dtype:
        return _DTYPES[self.activation_dtype]


@dataclass(frozen=True)
class KernelHandle:
    """A ready-to-call program. ``compiled`` is False for reference programs."""

    descriptor: KernelDescriptor
    program: Program
    compiled: bool

    def __call__(self, *args: object) -> torch.Tensor:
        return self.program(*args)


@dataclass(frozen=True)
class KernelOperator:
    name: str
    program: Program
    reference: Optional[Program]
    sample: SampleBuilder


_OPERATORS: dict[str, KernelOperator] = {}


def register_operator(
    name: str,
    program: Program,
    sample: SampleBuilder,
    reference: Optional[Program] = None,
) -> None:
    """
    Make an operator available to every registry.

    Raises:
        ValueError: If ``name`` is already registered.
    """
    if name in _OPERATORS:
        raise ValueError(f"Kernel operator '{name}' is already registered")
    _OPERATORS[name] = KernelOperator(name=name, program=program, reference=reference, sample=sample)


def get_operator(name: str) -> KernelOperator:
    if name not in _OPERATORS:
        raise KeyError(f"Unknown kernel operator '{name}'. Available: {sorted(_OPERATORS)}")
    return _OPERATORS[name]


def list_operators() -> list[str]:
    return sorted(_OPERATORS)


def _sample_weight(descriptor: KernelDescriptor, device: torch.device) -> tuple[torch.Tensor, torch.Tensor]:
    generator = torch.Generator().manual_seed(0)
    weight = torch.randn(8, 2 * descriptor.group_size, generator=generator)
    quantized = quantize_q4(weight, descriptor.group_size).to(device)
    return quantized.packed, quantized.scales


def _matmul_sample(descriptor: KernelDescriptor, device: torch.device) -> tuple:
    packed, scales = _sample_weight(descriptor, device)
    generator = torch.Generator().manual_seed(1)
    x = torch.randn(3, 2 * descriptor.group_size, generator=generator)
    return (x.to(device=device, dtype=descriptor.torch_dtype), packed, scales, descriptor.group_size)


def _dequant_sample(descriptor: KernelDescriptor, device: torch.device) -> tuple:
    packed, scales = _sample_weight(descriptor, device)
    return (packed, scales, descriptor.group_size, descriptor.torch_dtype)


def _unpack_sample(descriptor: KernelDescriptor, device: torch.device) -> tuple:
    packed, _ = _sample_weight(descriptor, device)
    return (packed,)


register_operator("matmul_q4", matmul_q4, _matmul_sample, reference=matmul_q4)
register_operator("dequant_q4", dequantize_q4, _dequant_sample, reference=dequantize_q4)
register_operator("unpack_q4", unpack_q4, _unpack_sample, reference=unpack_q4)


def torch_compiler(program: Program) -> Program:
    return torch.compile(program, fullgraph=True, dynamic=False)


class KernelRegistry:
    """
    Thread-safe table of compiled kernels, keyed by descriptor.

    Args:
        compile_kernels: When False every descriptor gets its reference program.
        compile_backends: Backends whose descriptors are compiled; others get
            the reference program directly.
        compiler: Turns a program into a compiled program. Defaults to
            ``torch.compile``.
    """

    def __init__(
        self,
        compile_kernels: bool = True,
        compile_backends: Iterable[str] = ("cuda",),
        compiler: Optional[Compiler] = None,
    ) -> None:
        self.compile_kernels = compile_kernels
        self.compile_backends = frozenset(compile_backends)
        self._compiler = compiler or torch_compiler
        self._handles: dict[KernelDescriptor, KernelHandle] = {}
        self._references: dict[KernelDescriptor, KernelHandle] = {}
        self._failures: dict[KernelDescriptor, KernelCompileError] = {}
        self._lock = threading.Lock()
        self.compilations = 0

    def __contains__(self, descriptor: object) -> bool:
        return descriptor in self._handles

    def __len__(self) -> int:
        return len(self._handles)

    def register(self, descriptor: KernelDescriptor) -> KernelHandle:
        """
        Compile ``descriptor`` once and return its handle.

        Raises:
            KeyError: The operator name is unknown.
            KernelCompileError: The backend rejected the program or its
                output disagreed with the reference.
        """
        operator = get_operator(descriptor.name)
        with self._lock:
            cached = self._handles.get(descriptor)
            if cached is not None:
                return cached
            failure = self._failures.get(descriptor)
            if failure is not None:
                raise failure

            if not self.compile_kernels or descriptor.backend not in self.compile_backends:
                handle = KernelHandle(descriptor=descriptor, program=operator.program, compiled=False)
            else:
                try:
                    handle = self._compile(operator, descriptor)
                except KernelCompileError as err:
                    self._failures[descriptor] = err
                    raise

            self._handles[descriptor] = handle
            return handle

    def _compile(self, operator: KernelOperator, descriptor: KernelDescriptor) -> KernelHandle:
        device = torch.device(descriptor.backend)
        self.compilations += 1
        try:
            program = self._compiler(operator.program)
            args = operator.sample(descriptor, device)
            result = program(*args)
            if device.type == "cuda":
                torch.cuda.synchronize(device)
        except Exception as err:
            raise KernelCompileError(
                f"Backend rejected kernel {descriptor.signature}",
                diagnostic=f"{type(err).__name__}: {err}",
            ) from err

        if operator.reference is not None:
            expected = operator.reference(*args)
            error = (result.float() - expected.float()).abs().max().item()
            tolerance = _SAMPLE_TOLERANCE.get(descriptor.activation_dtype, 1e-4)
            if not error <= tolerance:
                raise KernelCompileError(
                    f"Kernel {descriptor.signature} disagrees with its reference",
                    diagnostic=f"max abs error {error} > {tolerance}",
                )

        logger.info("Kernel compiled", extra={"kernel": descriptor.signature})
        return KernelHandle(descriptor=descriptor, program=program, compiled=True)

    def reference(self, descriptor: KernelDescriptor) -> Optional[KernelHandle]:
        """The uncompiled higher-precision program for ``descriptor``, if the operator has one."""
        operator = get_operator(descriptor.name)
        if operator.reference is None:
            return None
        with self._lock:
            handle = self._references.get(descriptor)
            if handle is None:
                handle = KernelHandle(descriptor=descriptor, program=operator.reference, compiled=False)
                self._references[descriptor] = handle
            return handle

    def resolve(self, descriptor: KernelDescriptor) -> KernelHandle:
        """
        ``register`` with fallback.

        Raises:
            UnsupportedHardware: Compilation failed and the operator has no
                reference program.
        """
        try:
            return self.register(descriptor)
        except KernelCompileError as err:
            fallback = self.reference(descriptor)
            if fallback is None:
                logger.error(
                    "Kernel compile failed with no reference fallback",
                    extra={"kernel": descriptor.signature, "diagnostic": err.diagnostic},
                )
                raise UnsupportedHardware(
                    f"No runnable kernel for {descriptor.signature}: {err.diagnostic}"
                ) from err
            logger.warning(
                "Kernel compile failed, using reference kernel",
                extra={"kernel": descriptor.signature, "diagnostic": err.diagnostic},
            )
            return fallback

    def clear(self) -> None:
        with self._lock:
            self._handles.clear()
            self._references.clear()
            self._failures.clear()


_DEFAULT_REGISTRY: Optional[KernelRegistry] = None
_DEFAULT_REGISTRY_LOCK = threading.Lock()


def default_registry() -> KernelRegistry:
    """Process-wide registry, so re-created sessions reuse compiled kernels."""
    global _DEFAULT_REGISTRY
    with _DEFAULT_REGISTRY_LOCK:
        if _DEFAULT_REGISTRY is None:
            _DEFAULT_REGISTRY = KernelRegistry()
        return _DEFAULT_REGISTRY
