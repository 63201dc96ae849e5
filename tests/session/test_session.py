# Author : Eshan Roy <eshanized@proton.me>
# SPDX-License-Identifier: MIT

"""
Tests for the execution session on the CPU reference path.

  1. Steps are finite, deterministic, and reduce the loss
  2. Base weights are bit-identical after any amount of training
  3. Adapter factors survive a switch through Full mode and back
  4. Adapter resizing keeps the adapted output when growing
  5. Snapshots, adapter import and incompatible adapters
  6. Device selection, release, and the non-finite loss guard
"""

import json
import math

import pytest
import torch

from loralab.config.schema import AdapterConfig, SessionConfig, TrainConfig
from loralab.data.corpus.core import TokenSequence
from loralab.data.packing.core import Batch, BatchPacker
from loralab.exceptions import AdapterIncompatible, NonFiniteLoss, SessionStateError, UnsupportedHardware
from loralab.kernels.registry import KernelRegistry
from loralab.model.graph import GraphConfig
from loralab.model.weights import BaseWeights
from loralab.runtime.hardware import cpu_only_report
from loralab.session import ExecutionMode, ExecutionSession, create_session
from loralab.session.core import LORA_A_SUFFIX, LORA_B_SUFFIX, adapter_targets, select_device
from loralab.weights.snapshot import ADAPTER_KIND, FULL_KIND, WeightSnapshot

ROW_LENGTH = 16


def _batch() -> Batch:
    lengths = (9, 7, 6, 5)
    sequences = [
        TokenSequence(
            sequence_id=i,
            document_id=i,
            chunk_index=0,
            tokens=tuple(40 + 13 * i + j for j in range(length)),
        )
        for i, length in enumerate(lengths)
    ]
    packer = BatchPacker(capacity=2 * ROW_LENGTH, pad_id=0)
    return packer.materialize(packer.plan_epoch(sequences)[0], epoch=0, batch_index=0)


@pytest.fixture()
def batch() -> Batch:
    return _batch()


@pytest.fixture()
def make_session(
    graph_config: GraphConfig,
    base_weights: BaseWeights,
    adapter_config: AdapterConfig,
    cpu_session_config: SessionConfig,
    train_config: TrainConfig,
):
    def factory(mode: ExecutionMode = ExecutionMode.ADAPTER, **overrides) -> ExecutionSession:
        options = dict(
            graph_config=graph_config,
            adapter_config=adapter_config,
            session_config=cpu_session_config,
            train_config=train_config,
            row_length=ROW_LENGTH,
            hardware=cpu_only_report(),
            registry=KernelRegistry(compile_kernels=False),
            seed=0,
        )
        options.update(overrides)
        weights = options.pop("base_weights", base_weights)
        adapter = options.pop("adapter_weights", None)
        return create_session(mode, weights, adapter, **options)

    return factory


def _same_tensors(first: WeightSnapshot, second: WeightSnapshot) -> bool:
    return first.names() == second.names() and all(
        first.raw_bytes(name) == second.raw_bytes(name) for name in first.names()
    )


class TestStep:
    def test_step_reports_finite_loss(self, make_session, batch: Batch) -> None:
        session = make_session()
        first = session.step(batch)
        second = session.step(batch)
        assert math.isfinite(first.loss) and math.isfinite(first.gradient_norm)
        assert (first.step, second.step) == (0, 1)
        assert first.tokens == batch.occupied
        assert first.learning_rate == pytest.approx(1e-2)
        assert first.captured is False

    def test_steps_are_deterministic(self, make_session, batch: Batch) -> None:
        runs = []
        for _ in range(2):
            session = make_session()
            losses = [session.step(batch).loss for _ in range(3)]
            runs.append((losses, session.snapshot_weights()))
        assert runs[0][0] == runs[1][0]
        assert _same_tensors(runs[0][1], runs[1][1])

    @pytest.mark.parametrize("mode", [ExecutionMode.ADAPTER, ExecutionMode.FULL])
    def test_training_reduces_loss(self, make_session, batch: Batch, mode: ExecutionMode) -> None:
        session = make_session(mode)
        losses = [session.step(batch).loss for _ in range(15)]
        assert losses[-1] < losses[0]

    def test_batch_shape_outside_binding(self, make_session) -> None:
        session = make_session()
        packer = BatchPacker(capacity=2 * ROW_LENGTH, pad_id=0)
        sequence = TokenSequence(sequence_id=0, document_id=0, chunk_index=0, tokens=tuple(range(50, 70)))
        oversize = packer.materialize(packer.plan_epoch([sequence])[0], epoch=0, batch_index=0)
        assert oversize.shape == (1, 20)
        assert math.isfinite(session.step(oversize).loss)

    def test_batch_longer_than_context(self, make_session, graph_config: GraphConfig) -> None:
        session = make_session()
        length = graph_config.max_seq_len + 1
        too_long = Batch(
            index=0,
            epoch=0,
            input_ids=torch.ones(1, length, dtype=torch.long),
            segment_ids=torch.ones(1, length, dtype=torch.long),
            position_ids=torch.arange(length).unsqueeze(0),
            manifest=(),
            capacity=length,
            oversize=True,
        )
        with pytest.raises(ValueError):
            session.step(too_long)

    def test_quantized_base(self, make_session, batch: Batch) -> None:
        config = AdapterConfig(rank=4, alpha=8.0, group_size=16, quantize_base=True)
        session = make_session(adapter_config=config)
        assert session.graph.get_submodule("layers.0.attention.wq").is_quantized
        assert not session.graph.get_submodule("layers.0.feed_forward.w1").is_quantized
        assert math.isfinite(session.step(batch).loss)


class TestBaseWeightsUntouched:
    @pytest.mark.parametrize("mode", [ExecutionMode.ADAPTER, ExecutionMode.FULL])
    def test_base_bit_identical_after_training(
        self, make_session, batch: Batch, base_weights: BaseWeights, mode: ExecutionMode
    ) -> None:
        reference = WeightSnapshot.capture("base", base_weights, {})
        session = make_session(mode)
        for _ in range(3):
            session.step(batch)
        assert _same_tensors(session.snapshot_base_weights(), reference)

    def test_full_mode_trains_a_copy(self, make_session, batch: Batch, base_weights: BaseWeights) -> None:
        session = make_session(ExecutionMode.FULL)
        session.step(batch)
        trained = session.snapshot_weights()
        assert trained.kind == FULL_KIND
        assert set(trained.names()) == set(base_weights)
        assert not torch.equal(trained.tensors["output.weight"], base_weights["output.weight"])


class TestModeSwitch:
    def test_adapter_survives_full_round_trip(self, make_session, batch: Batch) -> None:
        session = make_session()
        for _ in range(2):
            session.step(batch)
        before = session.snapshot_weights()

        session.switch_mode(ExecutionMode.FULL)
        assert session.mode is ExecutionMode.FULL
        session.step(batch)
        session.switch_mode(ExecutionMode.ADAPTER)

        assert _same_tensors(session.snapshot_weights(), before)

    def test_switch_to_same_mode_is_a_no_op(self, make_session) -> None:
        session = make_session()
        optimizer = session._optimizer
        session.switch_mode("adapter")
        assert session._optimizer is optimizer

    def test_full_mode_starts_from_base(self, make_session, batch: Batch, base_weights: BaseWeights) -> None:
        session = make_session()
        session.step(batch)
        session.switch_mode(ExecutionMode.FULL)
        snapshot = session.snapshot_weights()
        assert torch.equal(snapshot.tensors["output.weight"], base_weights["output.weight"])


class TestSnapshots:
    def test_adapter_snapshot_layout(self, make_session, graph_config: GraphConfig) -> None:
        snapshot = make_session().snapshot_weights()
        targets = adapter_targets(graph_config, ["wq", "wk", "wv", "wo"])
        assert snapshot.kind == ADAPTER_KIND
        assert snapshot.names() == sorted(
            path + suffix for path in targets for suffix in (LORA_A_SUFFIX, LORA_B_SUFFIX)
        )
        assert snapshot.metadata["rank"] == "4"
        assert snapshot.metadata["alpha"] == "8.0"
        assert snapshot.metadata["scaling"] == "2.0"
        assert json.loads(snapshot.metadata["target_modules"]) == ["wk", "wo", "wq", "wv"]

    def test_snapshot_does_not_alias_session(self, make_session, batch: Batch) -> None:
        session = make_session()
        snapshot = session.snapshot_weights()
        frozen = {name: snapshot.raw_bytes(name) for name in snapshot.names()}
        for _ in range(2):
            session.step(batch)
        assert all(snapshot.raw_bytes(name) == frozen[name] for name in snapshot.names())

    def test_imported_adapter_resumes(self, make_session, batch: Batch) -> None:
        trained = make_session()
        for _ in range(2):
            trained.step(batch)
        exported = trained.snapshot_weights()

        resumed = make_session(adapter_weights=exported, seed=99)
        assert _same_tensors(resumed.snapshot_weights(), exported)


class TestResizeAdapter:
    def _outputs(self, session: ExecutionSession, batch: Batch) -> torch.Tensor:
        session.graph.eval()
        with torch.no_grad():
            return session.graph(batch.input_ids, batch.position_ids, batch.segment_ids)

    def test_growing_preserves_outputs(self, make_session, batch: Batch) -> None:
        session = make_session()
        for _ in range(2):
            session.step(batch)
        before = self._outputs(session, batch)

        session.resize_adapter(6)

        assert session.adapter_rank == 6
        assert torch.allclose(self._outputs(session, batch), before, atol=1e-5)
        snapshot = session.snapshot_weights()
        assert snapshot.metadata["rank"] == "6"
        assert snapshot.metadata["scaling"] == str(8.0 / 6)

    def test_shrinking_keeps_training(self, make_session, batch: Batch) -> None:
        session = make_session()
        session.step(batch)
        session.resize_adapter(2)

        snapshot = session.snapshot_weights()
        assert all(snapshot.tensors[name].shape[0] == 2 for name in snapshot.names() if name.endswith(LORA_A_SUFFIX))
        assert all(snapshot.tensors[name].shape[1] == 2 for name in snapshot.names() if name.endswith(LORA_B_SUFFIX))
        assert math.isfinite(session.step(batch).loss)
        assert sum(p.numel() for p in session._trainable) == sum(t.numel() for t in snapshot.tensors.values())

    def test_same_rank_keeps_optimizer(self, make_session) -> None:
        session = make_session()
        optimizer = session._optimizer
        session.resize_adapter(4)
        assert session._optimizer is optimizer

    @pytest.mark.parametrize("rank", [0, 33])
    def test_rank_out_of_range(self, make_session, rank: int) -> None:
        session = make_session()
        assert session.adapter_rank_limit == 32
        with pytest.raises(ValueError):
            session.resize_adapter(rank)
        assert session.adapter_rank == 4

    def test_resize_in_full_mode_applies_on_return(self, make_session, batch: Batch) -> None:
        session = make_session()
        session.step(batch)
        session.switch_mode(ExecutionMode.FULL)
        session.resize_adapter(8)
        assert session.snapshot_weights().kind == FULL_KIND

        session.switch_mode(ExecutionMode.ADAPTER)
        assert session.snapshot_weights().metadata["rank"] == "8"
        assert math.isfinite(session.step(batch).loss)

    def test_resize_after_release(self, make_session) -> None:
        session = make_session()
        session.release()
        with pytest.raises(SessionStateError):
            session.resize_adapter(2)


class TestAdapterValidation:
    def _adapter(self, tensors: dict) -> WeightSnapshot:
        return WeightSnapshot.capture(ADAPTER_KIND, tensors, {})

    def test_unpaired_factor(self, make_session) -> None:
        adapter = self._adapter({"layers.0.attention.wq" + LORA_A_SUFFIX: torch.zeros(4, 32)})
        with pytest.raises(AdapterIncompatible):
            make_session(adapter_weights=adapter)

    def test_wrong_shape(self, make_session) -> None:
        adapter = self._adapter(
            {
                "layers.0.attention.wq" + LORA_A_SUFFIX: torch.zeros(4, 31),
                "layers.0.attention.wq" + LORA_B_SUFFIX: torch.zeros(32, 4),
            }
        )
        with pytest.raises(AdapterIncompatible):
            make_session(adapter_weights=adapter)

    def test_unknown_projection(self, make_session) -> None:
        adapter = self._adapter(
            {
                "layers.5.attention.wq" + LORA_A_SUFFIX: torch.zeros(4, 32),
                "layers.5.attention.wq" + LORA_B_SUFFIX: torch.zeros(32, 4),
            }
        )
        with pytest.raises(AdapterIncompatible):
            make_session(adapter_weights=adapter)

    def test_wrong_kind(self, make_session, base_weights: BaseWeights) -> None:
        with pytest.raises(AdapterIncompatible):
            make_session(adapter_weights=WeightSnapshot.capture(FULL_KIND, base_weights, {}))

    def test_wrong_dtype(self, make_session) -> None:
        adapter = self._adapter(
            {
                "layers.0.attention.wq" + LORA_A_SUFFIX: torch.zeros(4, 32, dtype=torch.float16),
                "layers.0.attention.wq" + LORA_B_SUFFIX: torch.zeros(32, 4, dtype=torch.float16),
            }
        )
        with pytest.raises(AdapterIncompatible):
            make_session(adapter_weights=adapter)


class TestDevice:
    def test_no_gpu_without_fallback(self, make_session) -> None:
        config = SessionConfig(device="auto", allow_cpu_fallback=False, compile_kernels=False)
        with pytest.raises(UnsupportedHardware):
            make_session(session_config=config)

    def test_no_gpu_with_fallback(self) -> None:
        config = SessionConfig(device="cuda", allow_cpu_fallback=True)
        assert select_device(cpu_only_report(), config) == torch.device("cpu")

    def test_cpu_requested(self) -> None:
        assert select_device(cpu_only_report(), SessionConfig(device="cpu")) == torch.device("cpu")


class TestLifecycle:
    def test_release_is_idempotent_and_final(self, make_session, batch: Batch) -> None:
        session = make_session()
        session.release()
        session.release()
        assert session.is_released
        with pytest.raises(SessionStateError):
            session.step(batch)
        with pytest.raises(SessionStateError):
            session.snapshot_weights()

    def test_non_finite_loss_skips_update(
        self, make_session, batch: Batch, base_weights: BaseWeights
    ) -> None:
        poisoned = dict(base_weights)
        poisoned["output.weight"] = torch.full_like(base_weights["output.weight"], float("nan"))
        session = make_session(base_weights=poisoned)
        before = session.snapshot_weights()

        with pytest.raises(NonFiniteLoss) as info:
            session.step(batch)

        assert info.value.step == 0
        assert session.step_count == 0
        assert _same_tensors(session.snapshot_weights(), before)
