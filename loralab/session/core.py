# Author : Eshan Roy <eshanized@proton.me>
# SPDX-License-Identifier: MIT

"""
Execution session: owns the fixed graph, its weights, and training steps.

The session holds:
  - device copies of the BaseWeights, frozen and never written
  - in Adapter mode, LoRA factors on the targeted projections; the frozen
    base projections optionally run through the registry's 4-bit kernel
  - in Full mode, a trainable clone of every base tensor
  - an AdamW optimizer over whichever set is trainable
  - persistent device input buffers (I/O binding) for the static batch shape
  - on CUDA, a captured graph of the whole step, replayed after warmup

``step`` issues all device work asynchronously and syncs exactly once, to
read the loss and gradient norm together. On the eager path the update is
applied only after that read-back confirms a finite loss. A captured step
applies the update inside the graph, so when it reports a non-finite loss
the weights are already updated; the run fails either way and those
weights are never exported.

A session is not thread-safe. The training scheduler drives it from one
thread, one step at a time.
"""

import contextlib
import json
import logging
import math
from dataclasses import dataclass
from enum import Enum
from typing import Optional

import torch
import torch.nn as nn

from loralab.config.schema import AdapterConfig, SessionConfig, TrainConfig
from loralab.data.packing.core import Batch
from loralab.exceptions import (
    AdapterIncompatible,
    NonFiniteLoss,
    SessionStateError,
    TransientBackendError,
    UnsupportedHardware,
)
from loralab.kernels.quant4 import QuantizedWeight, quantize_q4
from loralab.kernels.registry import KernelDescriptor, KernelHandle, KernelRegistry, default_registry
from loralab.logging.logger import get_logger
from loralab.model.graph import DecoderGraph, GraphConfig, loss_from_logits, packed_targets
from loralab.model.lora import init_lora_pair, resize_lora_pair
from loralab.model.weights import BaseWeights, base_weight_shapes, validate_base_weights
from loralab.runtime.hardware import HardwareReport, detect_hardware
from loralab.session.binding import IOBinding
from loralab.session.capture import CapturedStep
from loralab.training.lr.core import get_learning_rate, set_learning_rate
from loralab.training.optimizer.core import create_optimizer
from loralab.weights.snapshot import ADAPTER_KIND, FULL_KIND, WeightSnapshot

logger: logging.Logger = get_logger(__name__)

LORA_A_SUFFIX = ".lora_A.weight"
LORA_B_SUFFIX = ".lora_B.weight"

_AUTOCAST_DTYPES = {"bfloat16": torch.bfloat16, "float16": torch.float16}


class ExecutionMode(str, Enum):
    ADAPTER = "adapter"
    FULL = "full"


@dataclass(frozen=True)
class StepResult:
    step: int
    loss: float
    gradient_norm: float
    learning_rate: float
    tokens: int
    captured: bool = False


def _projection_shapes(graph_config: GraphConfig) -> dict[str, tuple[int, int]]:
    """Module path -> (out, in) for every projection a LoRA pair may target."""
    shapes: dict[str, tuple[int, int]] = {}
    for name, shape in base_weight_shapes(graph_config).items():
        path = name.removesuffix(".weight")
        if path.rsplit(".", 1)[-1] in ("wq", "wk", "wv", "wo", "w1", "w2", "w3"):
            shapes[path] = (shape[0], shape[1])
    return shapes


def adapter_targets(graph_config: GraphConfig, target_modules: list[str]) -> list[str]:
    """Projection paths matching ``target_modules``, in graph order."""
    return [
        path
        for path in _projection_shapes(graph_config)
        if path.rsplit(".", 1)[-1] in target_modules
    ]


def validate_adapter_weights(adapter: WeightSnapshot, graph_config: GraphConfig) -> int:
    """
    Check an imported adapter against the graph, touching nothing.

    Returns:
        The adapter rank.

    Raises:
        AdapterIncompatible: Wrong kind, unknown or unpaired tensors,
            inconsistent rank, misshaped or non-float32 tensors.
    """
    if adapter.kind != ADAPTER_KIND:
        raise AdapterIncompatible(f"Expected an adapter snapshot, got kind '{adapter.kind}'")
    if not adapter.tensors:
        raise AdapterIncompatible("Adapter contains no tensors")

    projections = _projection_shapes(graph_config)
    paths: set[str] = set()
    for name in adapter.tensors:
        if name.endswith(LORA_A_SUFFIX):
            paths.add(name.removesuffix(LORA_A_SUFFIX))
        elif name.endswith(LORA_B_SUFFIX):
            paths.add(name.removesuffix(LORA_B_SUFFIX))
        else:
            raise AdapterIncompatible(f"Tensor '{name}' is not a LoRA factor")

    ranks: set[int] = set()
    for path in sorted(paths):
        if path not in projections:
            raise AdapterIncompatible(f"Adapter targets unknown projection '{path}'")
        lora_A = adapter.tensors.get(path + LORA_A_SUFFIX)
        lora_B = adapter.tensors.get(path + LORA_B_SUFFIX)
        if lora_A is None or lora_B is None:
            raise AdapterIncompatible(f"Projection '{path}' lacks one of its LoRA factors")
        for tensor_name, tensor in ((LORA_A_SUFFIX, lora_A), (LORA_B_SUFFIX, lora_B)):
            if tensor.dtype != torch.float32:
                raise AdapterIncompatible(f"'{path}{tensor_name}' has dtype {tensor.dtype}, expected float32")
            if tensor.dim() != 2:
                raise AdapterIncompatible(f"'{path}{tensor_name}' is not a matrix")
        out_features, in_features = projections[path]
        rank = lora_A.shape[0]
        if tuple(lora_A.shape) != (rank, in_features) or tuple(lora_B.shape) != (out_features, rank):
            raise AdapterIncompatible(
                f"'{path}' factors {tuple(lora_A.shape)} / {tuple(lora_B.shape)} do not fit "
                f"a ({out_features}, {in_features}) projection"
            )
        ranks.add(rank)

    if len(ranks) != 1:
        raise AdapterIncompatible(f"Adapter mixes ranks {sorted(ranks)}")
    return ranks.pop()


def select_device(hardware: HardwareReport, config: SessionConfig) -> torch.device:
    """
    Raises:
        UnsupportedHardware: A GPU is required but absent, and CPU fallback
            is disabled.
    """
    if config.device == "cpu":
        return torch.device("cpu")
    if hardware.gpu_available and hardware.backend == "cuda":
        return torch.device("cuda")
    if config.allow_cpu_fallback:
        logger.warning(
            "No GPU backend available, using the CPU reference path",
            extra={"requested_device": config.device},
        )
        return torch.device("cpu")
    raise UnsupportedHardware(
        f"No compatible GPU backend (detected '{hardware.backend}') and CPU fallback is disabled"
    )


class ExecutionSession:
    """Create through ``create_session``."""

    def __init__(
        self,
        mode: ExecutionMode,
        device: torch.device,
        graph_config: GraphConfig,
        base_weights: BaseWeights,
        adapter_config: AdapterConfig,
        session_config: SessionConfig,
        train_config: TrainConfig,
        registry: KernelRegistry,
        seed: int,
        total_steps: Optional[int] = None,
        adapter_weights: Optional[WeightSnapshot] = None,
        row_length: Optional[int] = None,
    ) -> None:
        self.device = device
        self.row_length = row_length if row_length is not None else graph_config.max_seq_len
        self.graph_config = graph_config
        self.adapter_config = adapter_config
        self.session_config = session_config
        self.train_config = train_config
        self.registry = registry
        self.seed = seed
        self.total_steps = total_steps
        self.step_count = 0

        self._mode = mode
        self._in_flight = False
        self._released = False
        self._optimizer: Optional[torch.optim.AdamW] = None
        self._trainable: list[nn.Parameter] = []
        self._capture: Optional[CapturedStep] = None
        self._binding: Optional[IOBinding] = None
        self._full_params: dict[str, nn.Parameter] = {}
        self._adapter_params: dict[str, tuple[nn.Parameter, nn.Parameter]] = {}
        self._adapter_alpha = adapter_config.alpha
        self._quantized: dict[str, QuantizedWeight] = {}
        self._kernel: Optional[KernelHandle] = None

        torch.manual_seed(seed)
        self.graph = DecoderGraph(graph_config).to(device)
        self._base: dict[str, nn.Parameter] = {
            name: nn.Parameter(tensor.detach().to(device, dtype=torch.float32, copy=True), requires_grad=False)
            for name, tensor in base_weights.items()
        }

        if adapter_weights is not None:
            self._load_adapter(adapter_weights)

        self._bind(mode)

    @property
    def mode(self) -> ExecutionMode:
        return self._mode

    @property
    def is_captured(self) -> bool:
        return self._capture is not None and self._capture.is_captured

    @property
    def is_released(self) -> bool:
        return self._released

    def _require_idle(self, operation: str) -> None:
        if self._released:
            raise SessionStateError(f"Cannot {operation}: session was released", state="released")
        if self._in_flight:
            raise SessionStateError(f"Cannot {operation}: a step is in flight", state="in_flight")

    def _load_adapter(self, adapter: WeightSnapshot) -> None:
        rank = validate_adapter_weights(adapter, self.graph_config)
        alpha_text = adapter.metadata.get("alpha")
        self._adapter_alpha = float(alpha_text) if alpha_text is not None else self.adapter_config.alpha
        for name in adapter.tensors:
            if not name.endswith(LORA_A_SUFFIX):
                continue
            path = name.removesuffix(LORA_A_SUFFIX)
            self._adapter_params[path] = (
                nn.Parameter(adapter.tensors[path + LORA_A_SUFFIX].to(self.device, copy=True)),
                nn.Parameter(adapter.tensors[path + LORA_B_SUFFIX].to(self.device, copy=True)),
            )
        logger.info(
            "Adapter imported",
            extra={"projections": len(self._adapter_params), "rank": rank, "alpha": self._adapter_alpha},
        )

    def _init_adapter(self) -> None:
        generator = torch.Generator()
        generator.manual_seed(self.seed)
        shapes = _projection_shapes(self.graph_config)
        for path in adapter_targets(self.graph_config, self.adapter_config.target_modules):
            out_features, in_features = shapes[path]
            self._adapter_params[path] = init_lora_pair(
                in_features, out_features, self.adapter_config.rank, generator, self.device
            )

    def _quantized_kernel(self) -> KernelHandle:
        if self._kernel is None:
            activation_dtype = "float32" if self.device.type == "cpu" else self.session_config.activation_dtype
            descriptor = KernelDescriptor(
                name="matmul_q4",
                activation_dtype=activation_dtype,
                group_size=self.adapter_config.group_size,
                backend=self.device.type,
            )
            if self.session_config.compile_kernels:
                self._kernel = self.registry.resolve(descriptor)
            else:
                reference = self.registry.reference(descriptor)
                if reference is None:
                    raise UnsupportedHardware(f"No reference kernel for {descriptor.signature}")
                self._kernel = reference
        return self._kernel

    def _bind_base(self) -> None:
        for name, param in self._base.items():
            self.graph.bind_tensor(name, param)

    def _bind_quantized(self) -> None:
        group_size = self.adapter_config.group_size
        for path, module in self.graph.projections():
            if path not in self._adapter_params:
                continue
            if module.in_features % group_size != 0:
                logger.warning(
                    "Projection not quantizable with this group size, kept dense",
                    extra={"projection": path, "in_features": module.in_features, "group_size": group_size},
                )
                continue
            if path not in self._quantized:
                self._quantized[path] = quantize_q4(self._base[path + ".weight"], group_size)
            module.bind_quantized(self._quantized[path], self._quantized_kernel())

    def _bind(self, mode: ExecutionMode) -> None:
        self._bind_base()
        projections = dict(self.graph.projections())

        if mode is ExecutionMode.ADAPTER:
            if not self._adapter_params:
                self._init_adapter()
            if self.adapter_config.quantize_base:
                self._bind_quantized()
            for path, (lora_A, lora_B) in self._adapter_params.items():
                projections[path].attach_lora(lora_A, lora_B, self._adapter_alpha, self.adapter_config.dropout)
            named = [
                (path + suffix, param)
                for path, pair in self._adapter_params.items()
                for suffix, param in zip((LORA_A_SUFFIX, LORA_B_SUFFIX), pair)
            ]
        else:
            for module in projections.values():
                module.detach_lora()
            self._full_params = {
                name: nn.Parameter(param.detach().clone(), requires_grad=True)
                for name, param in self._base.items()
            }
            for name, param in self._full_params.items():
                self.graph.bind_tensor(name, param)
            named = list(self._full_params.items())

        self._mode = mode
        self._trainable = [param for _, param in named]
        capturable = self._capture_enabled()
        self._optimizer = create_optimizer(named, self.train_config, capturable=capturable, device=self.device)

        if self.session_config.io_binding and self._binding is None:
            self._binding = IOBinding((2, self.row_length), self.device)
        self._capture = None
        if capturable and self._binding is not None:
            self._capture = CapturedStep(
                self._bound_device_step,
                self._optimizer,
                warmup_steps=self.session_config.capture_warmup_steps,
            )

        logger.info(
            "Trainable parameters bound",
            extra={
                "mode": mode.value,
                "device": str(self.device),
                "trainable_parameters": sum(param.numel() for param in self._trainable),
                "quantized_projections": sum(1 for _, m in self.graph.projections() if m.is_quantized),
                "graph_capture": self._capture is not None,
            },
        )

    def _capture_enabled(self) -> bool:
        return (
            self.session_config.graph_capture
            and self.session_config.io_binding
            and self.device.type == "cuda"
        )

    def _autocast(self) -> contextlib.AbstractContextManager:
        dtype = _AUTOCAST_DTYPES.get(self.session_config.activation_dtype)
        if self.device.type == "cuda" and dtype is not None:
            return torch.autocast(device_type="cuda", dtype=dtype)
        return contextlib.nullcontext()

    def _forward_backward(
        self,
        input_ids: torch.Tensor,
        position_ids: torch.Tensor,
        segment_ids: torch.Tensor,
    ) -> torch.Tensor:
        """Loss and pre-clip gradient norm as one device tensor; no host sync."""
        with self._autocast():
            logits = self.graph(input_ids, position_ids, segment_ids)
        loss = loss_from_logits(logits, packed_targets(input_ids, segment_ids))
        loss.backward()
        max_norm = self.train_config.grad_clip if self.train_config.grad_clip > 0 else math.inf
        grad_norm = torch.nn.utils.clip_grad_norm_(self._trainable, max_norm)
        return torch.stack((loss.detach().float(), grad_norm.detach().float()))

    def _bound_device_step(self) -> torch.Tensor:
        assert self._binding is not None and self._optimizer is not None
        stats = self._forward_backward(*self._binding.tensors())
        self._optimizer.step()
        return stats

    def _inputs_for(self, batch: Batch) -> Optional[tuple[torch.Tensor, torch.Tensor, torch.Tensor]]:
        """Bound buffers when the batch fits them, else fresh device tensors."""
        if self._binding is not None and self._binding.accepts(batch):
            self._binding.upload(batch)
            return None
        return (
            batch.input_ids.to(self.device),
            batch.position_ids.to(self.device),
            batch.segment_ids.to(self.device),
        )

    def step(self, batch: Batch) -> StepResult:
        """
        Run one forward, backward and optimizer update on ``batch``.

        Raises:
            NonFiniteLoss: The loss was NaN or infinite.
            TransientBackendError: The device ran out of memory; its cache
                has been emptied and the step may be issued once more.
            SessionStateError: The session is released or already stepping.
            ValueError: The batch is longer than the graph's context.
        """
        self._require_idle("step")
        if batch.shape[1] > self.graph_config.max_seq_len:
            raise ValueError(
                f"Batch rows of {batch.shape[1]} positions exceed the graph context "
                f"of {self.graph_config.max_seq_len}"
            )
        self._in_flight = True
        try:
            return self._run_step(batch)
        except torch.cuda.OutOfMemoryError as err:
            if self._optimizer is not None:
                self._optimizer.zero_grad(set_to_none=True)
            torch.cuda.empty_cache()
            raise TransientBackendError(f"Device out of memory at step {self.step_count}: {err}") from err
        finally:
            self._in_flight = False

    def _run_step(self, batch: Batch) -> StepResult:
        assert self._optimizer is not None
        learning_rate = get_learning_rate(
            self.step_count,
            max_lr=self.train_config.learning_rate,
            min_lr=self.train_config.min_learning_rate,
            warmup_steps=self.train_config.warmup_steps,
            max_steps=self.total_steps,
        )
        set_learning_rate(self._optimizer, learning_rate)
        self.graph.train()

        inputs = self._inputs_for(batch)
        captured = False
        if inputs is None and self._capture is not None:
            loss, grad_norm = self._capture().tolist()
            captured = self._capture.is_captured
            if not math.isfinite(loss):
                raise NonFiniteLoss(self.step_count, loss)
        else:
            if inputs is None:
                assert self._binding is not None
                inputs = self._binding.tensors()
            self._optimizer.zero_grad(set_to_none=True)
            loss, grad_norm = self._forward_backward(*inputs).tolist()
            if not math.isfinite(loss):
                self._optimizer.zero_grad(set_to_none=True)
                raise NonFiniteLoss(self.step_count, loss)
            self._optimizer.step()

        result = StepResult(
            step=self.step_count,
            loss=loss,
            gradient_norm=grad_norm,
            learning_rate=learning_rate,
            tokens=batch.occupied,
            captured=captured,
        )
        self.step_count += 1
        return result

    def switch_mode(self, new_mode: ExecutionMode) -> None:
        """
        Rebind trainable parameters for ``new_mode``.

        Base weights are untouched. Adapter factors survive a round trip
        through Full mode; Full-mode weights are discarded when leaving it.
        Optimizer state and any captured graph are rebuilt.

        Raises:
            SessionStateError: A step is in flight or the session is released.
        """
        self._require_idle("switch_mode")
        new_mode = ExecutionMode(new_mode)
        if new_mode is self._mode:
            return
        previous = self._mode
        self._optimizer = None
        self._capture = None
        self._trainable = []
        self._full_params = {}
        self._bind(new_mode)
        logger.info("Execution mode switched", extra={"from": previous.value, "to": new_mode.value})

    @property
    def adapter_rank(self) -> int:
        """Rank of the held LoRA factors, or the configured rank before any exist."""
        for lora_A, _ in self._adapter_params.values():
            return lora_A.shape[0]
        return self.adapter_config.rank

    @property
    def adapter_rank_limit(self) -> int:
        """Largest rank every adapted projection can hold."""
        shapes = _projection_shapes(self.graph_config)
        paths = list(self._adapter_params) or adapter_targets(
            self.graph_config, self.adapter_config.target_modules
        )
        return min(min(shapes[path]) for path in paths)

    def resize_adapter(self, rank: int) -> None:
        """
        Change the LoRA rank between steps.

        Growing preserves the adapted output exactly; shrinking keeps the
        closest lower-rank delta. In Adapter mode the optimizer and any
        captured graph are rebuilt over the new factors, so optimizer
        moments start over. In Full mode the resized factors wait for the
        next switch back.

        Raises:
            SessionStateError: A step is in flight or the session is released.
            ValueError: ``rank`` is below 1 or above ``adapter_rank_limit``.
        """
        self._require_idle("resize_adapter")
        limit = self.adapter_rank_limit
        if not 1 <= rank <= limit:
            raise ValueError(f"Adapter rank must be in [1, {limit}], got {rank}")
        if not self._adapter_params:
            self._init_adapter()
        previous = self.adapter_rank
        if rank == previous:
            return

        generator = torch.Generator()
        generator.manual_seed(self.seed + self.step_count + 1)
        self._adapter_params = {
            path: resize_lora_pair(lora_A, lora_B, rank, generator)
            for path, (lora_A, lora_B) in self._adapter_params.items()
        }
        if self._mode is ExecutionMode.ADAPTER:
            self._optimizer = None
            self._capture = None
            self._trainable = []
            self._bind(ExecutionMode.ADAPTER)
        logger.info(
            "Adapter resized",
            extra={"from_rank": previous, "to_rank": rank, "mode": self._mode.value, "step": self.step_count},
        )

    def _adapter_metadata(self) -> dict[str, str]:
        paths = list(self._adapter_params)
        rank = self.adapter_rank
        targets = sorted({path.rsplit(".", 1)[-1] for path in paths})
        return {
            "adapter_type": "lora",
            "rank": str(rank),
            "alpha": str(self._adapter_alpha),
            "scaling": str(self._adapter_alpha / rank),
            "target_modules": json.dumps(targets),
        }

    def snapshot_weights(self) -> WeightSnapshot:
        """
        Immutable CPU copy of the trainable weights.

        Adapter mode yields the LoRA factors; Full mode yields every
        parameter of the trainable copy.
        """
        self._require_idle("snapshot_weights")
        metadata = {"mode": self._mode.value, "training_steps": str(self.step_count)}
        if self._mode is ExecutionMode.ADAPTER:
            tensors = {
                path + suffix: param
                for path, pair in self._adapter_params.items()
                for suffix, param in zip((LORA_A_SUFFIX, LORA_B_SUFFIX), pair)
            }
            metadata.update(self._adapter_metadata())
            return WeightSnapshot.capture(ADAPTER_KIND, tensors, metadata)
        return WeightSnapshot.capture(FULL_KIND, dict(self._full_params), metadata)

    def snapshot_base_weights(self) -> WeightSnapshot:
        """CPU copy of the frozen base tensors the session holds."""
        self._require_idle("snapshot_base_weights")
        return WeightSnapshot.capture("base", dict(self._base), {})

    def release(self) -> None:
        """Free optimizer state, captured graph, buffers and device weights. Idempotent."""
        if self._released:
            return
        if self._in_flight:
            raise SessionStateError("Cannot release: a step is in flight", state="in_flight")
        self._optimizer = None
        self._capture = None
        self._binding = None
        self._trainable = []
        self._full_params = {}
        self._adapter_params = {}
        self._quantized = {}
        self._base = {}
        self._released = True
        if self.device.type == "cuda":
            torch.cuda.empty_cache()
        logger.info("Session released", extra={"steps": self.step_count})


def create_session(
    mode: ExecutionMode,
    base_weights: BaseWeights,
    adapter_weights: Optional[WeightSnapshot] = None,
    *,
    graph_config: GraphConfig,
    adapter_config: AdapterConfig,
    session_config: SessionConfig,
    train_config: TrainConfig,
    row_length: Optional[int] = None,
    hardware: Optional[HardwareReport] = None,
    registry: Optional[KernelRegistry] = None,
    seed: int = 0,
    total_steps: Optional[int] = None,
) -> ExecutionSession:
    """
    Validate inputs, pick a device, and build a bound session.

    Args:
        mode: Which weight set receives updates.
        base_weights: Frozen pretrained tensors, never modified.
        adapter_weights: Imported LoRA factors to resume from (Adapter mode).
        row_length: Static row length to bind buffers for; defaults to the
            graph context length.
        hardware: Capability report; detected when omitted.
        registry: Kernel registry; the process-wide one when omitted.
        seed: Seeds LoRA init and the global RNG used by dropout.
        total_steps: Run length for the cosine schedule, if known.

    Raises:
        UnsupportedHardware: No usable backend.
        AdapterIncompatible: ``adapter_weights`` does not fit the graph.
        ValueError: ``base_weights`` does not fit the graph.
    """
    mode = ExecutionMode(mode)
    validate_base_weights(base_weights, graph_config)
    if adapter_weights is not None:
        validate_adapter_weights(adapter_weights, graph_config)

    report = hardware if hardware is not None else detect_hardware()
    device = select_device(report, session_config)
    bound_row_length = row_length if row_length is not None else graph_config.max_seq_len
    if bound_row_length > graph_config.max_seq_len:
        raise ValueError(
            f"row_length {bound_row_length} exceeds graph context {graph_config.max_seq_len}"
        )

    session = ExecutionSession(
        mode=mode,
        device=device,
        graph_config=graph_config,
        base_weights=base_weights,
        adapter_config=adapter_config,
        session_config=session_config,
        train_config=train_config,
        registry=registry if registry is not None else default_registry(),
        seed=seed,
        total_steps=total_steps,
        adapter_weights=adapter_weights,
        row_length=bound_row_length,
    )
    logger.info(
        "Session created",
        extra={"mode": mode.value, "device": str(device), "row_length": bound_row_length, "seed": seed},
    )
    return session
