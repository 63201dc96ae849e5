# Author : Eshan Roy <eshanized@proton.me>
# SPDX-License-Identifier: MIT

"""
Background training scheduler.

The scheduler owns one worker thread and two queues. Callers send
commands through the public methods and read events with ``next_event``
or ``events``. The worker is the only code that touches the execution
session, the training job or the state, so steps never overlap.

States:

    Idle -> Loading -> Running -> {Aborting, Completing} -> Idle
                        Running <-> Paused

``start`` runs the corpus loader and curriculum sampler on the calling
thread and plans every batch of the run once. Their errors (``EmptyCorpus``, ``UnsupportedEncoding``,
bad paths) raise right there, before the worker sees anything. Everything
after that happens on the worker: session creation, steps, snapshots and
export. Worker-side errors become a ``failed`` event and the scheduler
returns to Idle with the session released.

Commands are polled between steps, so an abort lands after at most the
one step already in flight. A paused worker blocks on its inbox and keeps
the session bound.
"""

import logging
import math
import queue
import threading
import time
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from types import MappingProxyType
from typing import Callable, Iterator, Optional, Union

from tokenizers import Tokenizer

from loralab.config.schema import LoraLabConfig, RankConfig, RunConfig, TrainConfig
from loralab.data.corpus.core import CorpusIndex, load_corpus
from loralab.data.curriculum.core import CurriculumSampler
from loralab.data.packing.core import Batch, BatchPacker, EpochPlan
from loralab.exceptions import (
    AbortRequested,
    LoraLabError,
    NonFiniteLoss,
    SessionStateError,
    TransientBackendError,
)
from loralab.logging.logger import get_logger
from loralab.model.graph import GraphConfig
from loralab.model.weights import BaseWeights, init_base_weights, load_base_weights
from loralab.runtime.hardware import HardwareReport
from loralab.session.core import ExecutionMode, create_session, validate_adapter_weights
from loralab.tokenizer.core import special_token_ids
from loralab.training.metrics.core import MetricsTracker, StepMetrics
from loralab.training.rank.core import RankObservation, RankScheduler
from loralab.training.scheduler.protocol import (
    Abort,
    Aborted,
    Command,
    CommandRejected,
    Completed,
    Event,
    Failed,
    ModeChanged,
    Pause,
    Paused,
    Progress,
    RankChanged,
    Resume,
    Resumed,
    Shutdown,
    Started,
    StartRun,
    Status,
    StatusReport,
    SwitchMode,
)
from loralab.weights.codec import export_snapshot, import_snapshot
from loralab.weights.snapshot import WeightSnapshot

logger: logging.Logger = get_logger(__name__)

SessionFactory = Callable[..., object]


class SchedulerState(str, Enum):
    IDLE = "idle"
    LOADING = "loading"
    RUNNING = "running"
    PAUSED = "paused"
    ABORTING = "aborting"
    COMPLETING = "completing"


_TRANSITIONS: dict[SchedulerState, frozenset[SchedulerState]] = {
    SchedulerState.IDLE: frozenset({SchedulerState.LOADING}),
    SchedulerState.LOADING: frozenset({SchedulerState.RUNNING, SchedulerState.ABORTING}),
    SchedulerState.RUNNING: frozenset(
        {SchedulerState.PAUSED, SchedulerState.ABORTING, SchedulerState.COMPLETING}
    ),
    SchedulerState.PAUSED: frozenset({SchedulerState.RUNNING, SchedulerState.ABORTING}),
    SchedulerState.ABORTING: frozenset({SchedulerState.IDLE}),
    SchedulerState.COMPLETING: frozenset({SchedulerState.IDLE, SchedulerState.ABORTING}),
}


@dataclass(frozen=True)
class PreparedRun:
    """
    Everything ``start`` built on the caller's thread, handed to the worker.

    ``epoch_plans`` holds the batch layout of every epoch the run will
    reach, so the worker only materializes tensors.
    """

    run_id: str
    mode: Optional[ExecutionMode]
    index: CorpusIndex
    packer: BatchPacker
    epoch_plans: tuple[EpochPlan, ...]
    total_steps: int
    seed: int
    train_config: TrainConfig
    export_path: Optional[str]
    adapter_weights: Optional[WeightSnapshot]
    rank_config: RankConfig
    rank_strategy: Optional[str] = None

    def batches(self) -> Iterator[Batch]:
        return self.packer.iter_planned(self.epoch_plans, max_batches=self.total_steps)


@dataclass
class TrainingJob:
    """Mutable state of the current run. Only the worker thread touches it."""

    run_id: str
    mode: ExecutionMode
    total_steps: int
    step: int = 0
    cumulative_loss: float = 0.0
    last_loss: Optional[float] = None
    rank: Optional[int] = None
    started_at: float = field(default_factory=time.monotonic)
    failure: Optional[str] = None

    @property
    def elapsed_seconds(self) -> float:
        return time.monotonic() - self.started_at

    @property
    def mean_loss(self) -> Optional[float]:
        return self.cumulative_loss / self.step if self.step else None


def read_corpus_path(path: Path) -> list[bytes]:
    """
    A file is one input; a directory contributes its ``*.txt`` files in
    sorted order.

    Raises:
        FileNotFoundError: Nothing exists at ``path``, or a directory holds
            no ``.txt`` files.
    """
    if path.is_file():
        return [path.read_bytes()]
    if path.is_dir():
        files = sorted(p for p in path.glob("*.txt") if p.is_file())
        if not files:
            raise FileNotFoundError(f"No .txt files in corpus directory {path}")
        return [p.read_bytes() for p in files]
    raise FileNotFoundError(f"Corpus path not found: {path}")


class TrainingScheduler:
    """
    Args:
        config: Loaded configuration; run payloads override parts of it.
        tokenizer: The base model's fixed tokenizer.
        base_weights: Frozen pretrained weights. Loaded from
            ``model.base_weights_path`` or seeded when omitted.
        session_factory: Builds the execution session; defaults to
            ``create_session`` and is called with the same arguments.
        hardware: Capability report passed to the session factory.
    """

    def __init__(
        self,
        config: LoraLabConfig,
        tokenizer: Tokenizer,
        base_weights: Optional[BaseWeights] = None,
        session_factory: Optional[SessionFactory] = None,
        hardware: Optional[HardwareReport] = None,
    ) -> None:
        self.config = config
        self.tokenizer = tokenizer
        self.graph_config = GraphConfig.from_model_config(config.model)
        self.hardware = hardware
        self._session_factory = session_factory or create_session
        self._pad_id = special_token_ids(tokenizer).pad
        if tokenizer.get_vocab_size() > config.model.vocab_size:
            raise ValueError(
                f"Tokenizer vocabulary ({tokenizer.get_vocab_size()}) exceeds model.vocab_size "
                f"({config.model.vocab_size})"
            )
        if base_weights is None:
            if config.model.base_weights_path is not None:
                base_weights = load_base_weights(Path(config.model.base_weights_path), self.graph_config)
            else:
                base_weights = init_base_weights(self.graph_config, seed=config.global_config.seed)
        self.base_weights = base_weights

        self._inbox: "queue.Queue[Command]" = queue.Queue()
        self._events: "queue.Queue[Event]" = queue.Queue()
        self._state = SchedulerState.IDLE
        self._busy = False
        self._lock = threading.Lock()
        self._snapshots: dict[str, WeightSnapshot] = {}
        self._next_mode = ExecutionMode(config.train.mode)
        self._job: Optional[TrainingJob] = None
        self._session: Optional[object] = None
        self._runs = 0
        self._shutting_down = False

        self._thread = threading.Thread(target=self._worker, name="loralab-scheduler", daemon=True)
        self._thread.start()

    # Caller-side API

    @property
    def state(self) -> SchedulerState:
        return self._state

    @property
    def is_alive(self) -> bool:
        return self._thread.is_alive()

    def start(self, run_config: RunConfig) -> str:
        """
        Prepare a run and hand it to the worker.

        Returns:
            The run id used in snapshot refs.

        Raises:
            SessionStateError: A run is already active or the scheduler is shut down.
            EmptyCorpus: No document produced tokens.
            UnsupportedEncoding: Corpus bytes could not be decoded.
            AdapterIncompatible: ``adapter_path`` does not fit the graph.
            FileNotFoundError: A corpus or adapter path does not exist.
        """
        with self._lock:
            if self._shutting_down or not self._thread.is_alive():
                raise SessionStateError("Scheduler is shut down", state="shutdown")
            if self._busy:
                raise SessionStateError(
                    f"A run is already active (state {self._state.value})", state=self._state.value
                )
            self._busy = True

        try:
            prepared = self._prepare(run_config)
        except BaseException:
            with self._lock:
                self._busy = False
            raise
        self._inbox.put(StartRun(prepared=prepared))
        return prepared.run_id

    def pause(self) -> None:
        self._inbox.put(Pause())

    def resume(self) -> None:
        self._inbox.put(Resume())

    def abort(self) -> None:
        self._inbox.put(Abort())

    def switch_mode(self, mode: Union[ExecutionMode, str]) -> None:
        self._inbox.put(SwitchMode(mode=ExecutionMode(mode).value))

    def status(self) -> None:
        self._inbox.put(Status())

    def shutdown(self, timeout: Optional[float] = None) -> None:
        """Abort any active run, stop the worker and wait for it."""
        with self._lock:
            self._shutting_down = True
        if self._thread.is_alive():
            self._inbox.put(Shutdown())
            self._thread.join(timeout)

    def next_event(self, timeout: Optional[float] = None) -> Optional[Event]:
        """Next event, or None if none arrives within ``timeout`` seconds."""
        try:
            return self._events.get(timeout=timeout)
        except queue.Empty:
            return None

    def events(self) -> list[Event]:
        """Every event queued so far, without blocking."""
        drained: list[Event] = []
        while True:
            try:
                drained.append(self._events.get_nowait())
            except queue.Empty:
                return drained

    def get_snapshot(self, ref: str) -> WeightSnapshot:
        """
        Resolve a ``final_snapshot_ref`` from a ``completed`` event.

        Only the latest completed run's snapshot is held; a new completion
        drops the previous one. Export a snapshot that must outlive the
        next run.

        Raises:
            KeyError: Unknown ref.
        """
        with self._lock:
            if ref not in self._snapshots:
                raise KeyError(f"Unknown snapshot ref '{ref}'")
            return self._snapshots[ref]

    def release_snapshot(self, ref: str) -> None:
        """
        Drop a held snapshot.

        Raises:
            KeyError: Unknown or already released ref.
        """
        with self._lock:
            if self._snapshots.pop(ref, None) is None:
                raise KeyError(f"Unknown snapshot ref '{ref}'")

    def __enter__(self) -> "TrainingScheduler":
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.shutdown()

    def _prepare(self, run: RunConfig) -> PreparedRun:
        seed = run.seed if run.seed is not None else self.config.global_config.seed
        capacity = run.capacity if run.capacity is not None else self.config.packing.capacity
        row_length = capacity // 2
        if row_length > self.graph_config.max_seq_len:
            raise ValueError(
                f"capacity {capacity} gives rows of {row_length}, longer than the model "
                f"context of {self.graph_config.max_seq_len}"
            )
        epochs = run.epochs if run.epochs is not None else self.config.train.epochs
        max_steps = run.max_steps if run.max_steps is not None else self.config.train.max_steps

        curriculum = self.config.curriculum
        if run.curriculum_strength is not None:
            curriculum = curriculum.model_copy(update={"strength": run.curriculum_strength})

        source = run.corpus_text if run.corpus_text is not None else read_corpus_path(Path(run.corpus_path))
        index = load_corpus(source, self.tokenizer, self.config.corpus, max_sequence_length=row_length)
        sampler = CurriculumSampler(index, curriculum, seed=seed)
        packer = BatchPacker(capacity, pad_id=self._pad_id)

        epoch_plans = packer.plan_epochs(index, sampler, epochs, max_batches=max_steps)
        total_steps = sum(len(plan.plans) for plan in epoch_plans)
        if max_steps is not None:
            total_steps = min(total_steps, max_steps)

        adapter_weights = None
        if run.adapter_path is not None:
            adapter_weights = import_snapshot(Path(run.adapter_path))
            validate_adapter_weights(adapter_weights, self.graph_config)

        with self._lock:
            self._runs += 1
            run_id = f"run-{self._runs}"

        export_path = run.export_path if run.export_path is not None else self.config.train.export_path
        logger.info(
            "Run prepared",
            extra={
                "run_id": run_id,
                "corpus_id": index.corpus_id[:12],
                "capacity": capacity,
                "epochs": epochs,
                "total_steps": total_steps,
                "seed": seed,
            },
        )
        return PreparedRun(
            run_id=run_id,
            mode=ExecutionMode(run.mode) if run.mode is not None else None,
            index=index,
            packer=packer,
            epoch_plans=tuple(epoch_plans),
            total_steps=total_steps,
            seed=seed,
            train_config=self.config.train,
            export_path=export_path,
            adapter_weights=adapter_weights,
            rank_config=self.config.rank,
            rank_strategy=run.rank_strategy,
        )

    # Worker side

    def _emit(self, event: Event) -> None:
        self._events.put(event)

    def _transition(self, new_state: SchedulerState) -> None:
        if new_state not in _TRANSITIONS[self._state]:
            raise SessionStateError(
                f"Illegal scheduler transition {self._state.value} -> {new_state.value}",
                state=self._state.value,
            )
        logger.info(
            "Scheduler state changed",
            extra={"from": self._state.value, "to": new_state.value},
        )
        self._state = new_state

    def _worker(self) -> None:
        while True:
            command = self._inbox.get()
            if isinstance(command, Shutdown):
                logger.info("Scheduler worker stopped")
                return
            if isinstance(command, StartRun):
                self._run(command.prepared)
                if self._shutting_down:
                    logger.info("Scheduler worker stopped")
                    return
            elif isinstance(command, SwitchMode):
                self._next_mode = ExecutionMode(command.mode)
                logger.info("Mode set for next run", extra={"mode": command.mode})
                self._emit(ModeChanged(mode=command.mode))
            elif isinstance(command, Status):
                self._emit_status()
            else:
                self._reject(command)

    def _reject(self, command: Command) -> None:
        name = type(command).__name__.lower()
        logger.warning("Command rejected", extra={"command": name, "state": self._state.value})
        self._emit(CommandRejected(command=name, state=self._state.value))

    def _emit_status(self) -> None:
        job = self._job
        self._emit(
            StatusReport(
                state=self._state.value,
                mode=job.mode.value if job is not None else self._next_mode.value,
                step=job.step if job is not None else 0,
                total_steps=job.total_steps if job is not None else None,
                last_loss=job.last_loss if job is not None else None,
                rank=job.rank if job is not None and job.mode is ExecutionMode.ADAPTER else None,
            )
        )

    def _run(self, prepared: PreparedRun) -> None:
        mode = prepared.mode if prepared.mode is not None else self._next_mode
        job = TrainingJob(run_id=prepared.run_id, mode=mode, total_steps=prepared.total_steps)
        self._job = job
        try:
            self._transition(SchedulerState.LOADING)
            self._session = self._session_factory(
                mode,
                self.base_weights,
                prepared.adapter_weights,
                graph_config=self.graph_config,
                adapter_config=self.config.adapter,
                session_config=self.config.session,
                train_config=prepared.train_config,
                row_length=prepared.packer.row_length,
                hardware=self.hardware,
                seed=prepared.seed,
                total_steps=prepared.total_steps,
            )
            self._emit(
                Started(
                    run_id=job.run_id,
                    mode=mode.value,
                    total_steps=job.total_steps,
                    corpus_id=prepared.index.corpus_id,
                    documents=prepared.index.num_documents,
                    sequences=len(prepared.index.sequences),
                )
            )
            self._train(prepared, job)
            self._complete(prepared, job)
        except AbortRequested:
            self._finish_aborting(Aborted(step=job.step))
        except LoraLabError as err:
            job.failure = err.kind
            logger.error(
                "Training run failed",
                extra={"run_id": job.run_id, "error_kind": err.kind, "error": str(err), "step": job.step},
            )
            self._finish_aborting(Failed(error_kind=err.kind, message=str(err), step=job.step))
        except Exception as err:
            job.failure = type(err).__name__
            logger.error(
                "Training run crashed",
                extra={"run_id": job.run_id, "error": str(err), "step": job.step},
                exc_info=True,
            )
            self._finish_aborting(Failed(error_kind=type(err).__name__, message=str(err), step=job.step))
        finally:
            self._release_session()

    def _train(self, prepared: PreparedRun, job: TrainingJob) -> None:
        metrics = MetricsTracker(
            total_steps=job.total_steps,
            progress_interval=prepared.train_config.progress_interval_seconds,
        )
        rank_policy = RankScheduler(
            prepared.rank_config,
            initial_rank=self._session.adapter_rank,
            rank_limit=self._session.adapter_rank_limit,
            strategy=prepared.rank_strategy,
        )
        job.rank = self._session.adapter_rank
        batches = prepared.batches()
        batch = next(batches, None)
        self._transition(SchedulerState.RUNNING)

        while batch is not None:
            self._poll_commands(job)

            metrics.begin_step()
            result = self._step_with_retry(batch, job)
            if not math.isfinite(result.loss):
                raise NonFiniteLoss(job.step, result.loss)

            job.step += 1
            job.last_loss = result.loss
            job.cumulative_loss += result.loss
            step_metrics = metrics.end_step(
                step=job.step,
                loss=result.loss,
                learning_rate=result.learning_rate,
                gradient_norm=result.gradient_norm,
                tokens=result.tokens,
            )
            final = job.step >= job.total_steps
            if metrics.should_report(final=final):
                self._emit(
                    Progress(
                        step=job.step,
                        loss=result.loss,
                        tokens_per_second=step_metrics.tokens_per_second,
                        eta_seconds=step_metrics.eta_seconds,
                        average_loss=job.mean_loss,
                        memory_mb=step_metrics.memory_usage_mb,
                        rank=job.rank if job.mode is ExecutionMode.ADAPTER else None,
                    )
                )
            if job.mode is ExecutionMode.ADAPTER and not final:
                self._adapt_rank(rank_policy, step_metrics, job)
            batch = next(batches, None)

        # Commands that arrived during the last step still count.
        self._poll_commands(job)

    def _adapt_rank(self, policy: RankScheduler, step_metrics: StepMetrics, job: TrainingJob) -> None:
        decision = policy.update(
            RankObservation(
                step=job.step,
                loss=step_metrics.loss,
                gradient_norm=step_metrics.gradient_norm,
                tokens_per_second=step_metrics.tokens_per_second,
                memory_mb=step_metrics.memory_usage_mb,
            )
        )
        if not decision.should_adapt:
            return
        self._session.resize_adapter(decision.recommended_rank)
        job.rank = decision.recommended_rank
        self._emit(
            RankChanged(
                step=job.step,
                previous_rank=decision.current_rank,
                rank=decision.recommended_rank,
                reason=decision.reason,
            )
        )

    def _step_with_retry(self, batch: Batch, job: TrainingJob):
        try:
            return self._session.step(batch)
        except TransientBackendError as err:
            logger.warning(
                "Transient backend error, retrying step once",
                extra={"run_id": job.run_id, "step": job.step, "error": str(err)},
            )
            return self._session.step(batch)

    def _poll_commands(self, job: TrainingJob) -> None:
        while True:
            try:
                command = self._inbox.get_nowait()
            except queue.Empty:
                return
            self._handle_running_command(command, job)

    def _handle_running_command(self, command: Command, job: TrainingJob) -> None:
        if isinstance(command, (Abort, Shutdown)):
            if isinstance(command, Shutdown):
                with self._lock:
                    self._shutting_down = True
            logger.info("Abort requested", extra={"run_id": job.run_id, "step": job.step})
            raise AbortRequested(f"Run {job.run_id} aborted at step {job.step}")
        if isinstance(command, Pause):
            self._pause(job)
        elif isinstance(command, SwitchMode):
            self._switch_running_mode(ExecutionMode(command.mode), job)
        elif isinstance(command, Status):
            self._emit_status()
        else:
            self._reject(command)

    def _pause(self, job: TrainingJob) -> None:
        self._transition(SchedulerState.PAUSED)
        self._emit(Paused(step=job.step))
        while True:
            command = self._inbox.get()
            if isinstance(command, Resume):
                self._transition(SchedulerState.RUNNING)
                self._emit(Resumed(step=job.step))
                return
            if isinstance(command, Pause):
                self._reject(command)
                continue
            self._handle_running_command(command, job)

    def _switch_running_mode(self, mode: ExecutionMode, job: TrainingJob) -> None:
        if mode is job.mode:
            self._emit(ModeChanged(mode=mode.value))
            return
        self._session.switch_mode(mode)
        job.mode = mode
        self._emit(ModeChanged(mode=mode.value))

    def _complete(self, prepared: PreparedRun, job: TrainingJob) -> None:
        self._transition(SchedulerState.COMPLETING)
        final_loss = job.last_loss if job.last_loss is not None else float("nan")
        snapshot = self._session.snapshot_weights()
        metadata = dict(snapshot.metadata)
        metadata["final_loss"] = repr(final_loss)
        metadata["training_steps"] = str(job.step)
        snapshot = WeightSnapshot(kind=snapshot.kind, tensors=snapshot.tensors, metadata=MappingProxyType(metadata))

        ref = f"{job.run_id}/final"
        with self._lock:
            self._snapshots = {ref: snapshot}

        export_path = None
        if prepared.export_path is not None:
            export_snapshot(snapshot, Path(prepared.export_path))
            export_path = prepared.export_path

        self._release_session()
        self._transition(SchedulerState.IDLE)
        logger.info(
            "Training run completed",
            extra={
                "run_id": job.run_id,
                "steps": job.step,
                "final_loss": final_loss,
                "elapsed_seconds": round(job.elapsed_seconds, 3),
            },
        )
        self._settle()
        self._emit(Completed(final_snapshot_ref=ref, final_loss=final_loss, steps=job.step, export_path=export_path))

    def _finish_aborting(self, event: Event) -> None:
        if self._state is not SchedulerState.IDLE:
            if self._state is not SchedulerState.ABORTING:
                self._transition(SchedulerState.ABORTING)
            self._release_session()
            self._transition(SchedulerState.IDLE)
        self._settle()
        self._emit(event)

    def _settle(self) -> None:
        """Accept a new start before the terminal event goes out."""
        self._job = None
        with self._lock:
            self._busy = False

    def _release_session(self) -> None:
        session, self._session = self._session, None
        if session is not None:
            session.release()
