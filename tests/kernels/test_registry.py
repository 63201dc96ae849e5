# Author : Eshan Roy <eshanized@proton.me>
# SPDX-License-Identifier: MIT

"""
Tests for the kernel registry.

The compiler is injected so these run without a GPU: an identity compiler
stands in for a working backend, a raising one for a backend that rejects
the program.
"""

import pytest
import torch

from loralab.exceptions import KernelCompileError, UnsupportedHardware
from loralab.kernels import registry as registry_module
from loralab.kernels.quant4 import matmul_q4
from loralab.kernels.registry import (
    KernelDescriptor,
    KernelOperator,
    KernelRegistry,
    get_operator,
    list_operators,
    register_operator,
)

CPU_MATMUL = KernelDescriptor("matmul_q4", activation_dtype="float32", group_size=16, backend="cpu")


def _identity(program):
    return program


def _rejecting(program):
    raise RuntimeError("unsupported instruction in generated code")


def _counting(calls: list):
    def compiler(program):
        calls.append(program)
        return program

    return compiler


@pytest.fixture()
def no_reference_operator(monkeypatch: pytest.MonkeyPatch) -> str:
    name = "matmul_q4_noref"
    operator = get_operator("matmul_q4")
    monkeypatch.setitem(
        registry_module._OPERATORS,
        name,
        KernelOperator(name=name, program=matmul_q4, reference=None, sample=operator.sample),
    )
    return name


class TestOperators:
    def test_builtin_operators(self) -> None:
        assert {"matmul_q4", "dequant_q4", "unpack_q4"} <= set(list_operators())

    def test_duplicate_operator_rejected(self) -> None:
        with pytest.raises(ValueError):
            register_operator("matmul_q4", matmul_q4, get_operator("matmul_q4").sample)

    def test_unknown_operator(self) -> None:
        with pytest.raises(KeyError):
            KernelRegistry().register(KernelDescriptor("conv_q4", backend="cpu"))

    def test_descriptor_signature(self) -> None:
        assert CPU_MATMUL.signature == "matmul_q4[int4xfloat32->float32, g16]@cpu"
        assert CPU_MATMUL.torch_dtype == torch.float32


class TestRegister:
    def test_compiles_once_per_descriptor(self) -> None:
        calls: list = []
        registry = KernelRegistry(compile_backends=("cpu",), compiler=_counting(calls))

        first = registry.register(CPU_MATMUL)
        second = registry.register(KernelDescriptor("matmul_q4", group_size=16, backend="cpu"))

        assert first is second
        assert first.compiled is True
        assert registry.compilations == 1
        assert len(calls) == 1
        assert CPU_MATMUL in registry

    def test_distinct_descriptors_compile_separately(self) -> None:
        registry = KernelRegistry(compile_backends=("cpu",), compiler=_identity)
        registry.register(CPU_MATMUL)
        registry.register(KernelDescriptor("matmul_q4", group_size=32, backend="cpu"))
        assert registry.compilations == 2
        assert len(registry) == 2

    def test_uncompiled_backend_gets_plain_program(self) -> None:
        registry = KernelRegistry(compile_backends=("cuda",), compiler=_rejecting)
        handle = registry.register(CPU_MATMUL)
        assert handle.compiled is False
        assert registry.compilations == 0

    def test_disabled_compilation(self) -> None:
        registry = KernelRegistry(compile_kernels=False, compile_backends=("cpu",), compiler=_rejecting)
        assert registry.register(CPU_MATMUL).compiled is False

    def test_backend_failure_carries_diagnostic(self) -> None:
        registry = KernelRegistry(compile_backends=("cpu",), compiler=_rejecting)
        with pytest.raises(KernelCompileError) as info:
            registry.register(CPU_MATMUL)
        assert "unsupported instruction" in info.value.diagnostic
        assert info.value.kind == "KernelCompileError"

    def test_failure_is_cached(self) -> None:
        registry = KernelRegistry(compile_backends=("cpu",), compiler=_rejecting)
        for _ in range(2):
            with pytest.raises(KernelCompileError):
                registry.register(CPU_MATMUL)
        assert registry.compilations == 1

    def test_handle_runs_program(self) -> None:
        registry = KernelRegistry(compile_backends=("cpu",), compiler=_identity)
        handle = registry.register(CPU_MATMUL)
        args = get_operator("matmul_q4").sample(CPU_MATMUL, torch.device("cpu"))
        assert handle(*args).shape == (3, 8)


class TestResolve:
    def test_falls_back_to_reference(self) -> None:
        registry = KernelRegistry(compile_backends=("cpu",), compiler=_rejecting)
        handle = registry.resolve(CPU_MATMUL)
        assert handle.compiled is False
        assert handle.program is matmul_q4
        assert registry.resolve(CPU_MATMUL) is handle
        assert registry.compilations == 1

    def test_no_reference_is_unsupported(self, no_reference_operator: str) -> None:
        registry = KernelRegistry(compile_backends=("cpu",), compiler=_rejecting)
        with pytest.raises(UnsupportedHardware):
            registry.resolve(KernelDescriptor(no_reference_operator, group_size=16, backend="cpu"))

    def test_clear_forgets_failures(self) -> None:
        registry = KernelRegistry(compile_backends=("cpu",), compiler=_rejecting)
        registry.resolve(CPU_MATMUL)
        registry.clear()
        registry._compiler = _identity
        assert registry.register(CPU_MATMUL).compiled is True
