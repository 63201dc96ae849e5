# Author : Eshan Roy <eshanized@proton.me>
# SPDX-License-Identifier: MIT

"""
Dual-sequence batch packer.

A batch of capacity C is two cursor rows of C / 2 positions each. Sequences
arrive in curriculum draw order and are concatenated into the rows:

  - each sequence goes to the cursor with more remaining room (cursor 0 on
    a tie); if it does not fit there it fits nowhere, so it is deferred
  - deferred sequences are offered first to the next batch, in the order
    they were deferred
  - a batch closes when both rows are full or when no sequence left in the
    epoch fits its remaining room; only then is the residue padded

Sequences are never cut. One longer than a cursor row cannot share a batch,
so it is emitted alone in an *oversize* batch: one row exactly as long as
the sequence. The loader normally splits documents to the row length, so
oversize batches only appear when that split is disabled.

Packing happens in two phases. ``plan_epoch`` only decides placements and
``plan_epochs`` collects them for a whole run, which lets the scheduler
count steps up front and then stream the same plans. ``materialize`` builds
the tensors for one plan. Plans hold references to the loader's
``TokenSequence`` objects, never copies of their tokens.
"""

import logging
from dataclasses import dataclass
from typing import Iterable, Iterator, Optional

import torch

from loralab.data.corpus.core import CorpusIndex, TokenSequence
from loralab.data.curriculum.core import CurriculumSampler
from loralab.logging.logger import get_logger

logger: logging.Logger = get_logger(__name__)

NUM_CURSORS = 2


@dataclass(frozen=True)
class PackedSpan:
    """Where one sequence landed inside a batch."""

    sequence_id: int
    document_id: int
    row: int
    start: int
    length: int


@dataclass(frozen=True)
class BatchPlan:
    rows: tuple[tuple[TokenSequence, ...], ...]
    row_length: int
    oversize: bool = False

    @property
    def occupied(self) -> int:
        return sum(len(sequence) for row in self.rows for sequence in row)

    @property
    def capacity(self) -> int:
        return len(self.rows) * self.row_length


@dataclass(frozen=True)
class Batch:
    """
    Packed token positions ready for one execution step.

    ``segment_ids`` is 0 on padding and 1..k on the k packed sequences;
    ``position_ids`` restart at 0 for every sequence. Tensors have shape
    ``(rows, row_length)`` and live on the CPU.
    """

    index: int
    epoch: int
    input_ids: torch.Tensor
    segment_ids: torch.Tensor
    position_ids: torch.Tensor
    manifest: tuple[PackedSpan, ...]
    capacity: int
    oversize: bool = False

    @property
    def occupied(self) -> int:
        return sum(span.length for span in self.manifest)

    @property
    def shape(self) -> tuple[int, int]:
        rows, row_length = self.input_ids.shape
        return int(rows), int(row_length)


@dataclass(frozen=True)
class EpochPlan:
    """Placements for one epoch, in emission order."""

    epoch: int
    plans: tuple[BatchPlan, ...]


class _PlanBuilder:
    def __init__(self, row_length: int) -> None:
        self.row_length = row_length
        self.rows: list[list[TokenSequence]] = [[] for _ in range(NUM_CURSORS)]
        self.used = [0] * NUM_CURSORS

    def room(self, cursor: int) -> int:
        return self.row_length - self.used[cursor]

    @property
    def full(self) -> bool:
        return all(self.room(cursor) == 0 for cursor in range(NUM_CURSORS))

    def try_place(self, sequence: TokenSequence) -> bool:
        # max() returns the first maximal cursor, which is the lowest index on a tie.
        cursor = max(range(NUM_CURSORS), key=self.room)
        if len(sequence) > self.room(cursor):
            return False
        self.rows[cursor].append(sequence)
        self.used[cursor] += len(sequence)
        return True

    def build(self) -> BatchPlan:
        return BatchPlan(rows=tuple(tuple(row) for row in self.rows), row_length=self.row_length)


class BatchPacker:
    """
    Args:
        capacity: Positions per batch; must be even.
        pad_id: Token id written into padding positions.
    """

    def __init__(self, capacity: int, pad_id: int) -> None:
        if capacity < NUM_CURSORS or capacity % NUM_CURSORS != 0:
            raise ValueError(f"capacity must be a positive even number, got {capacity}")
        self.capacity = capacity
        self.row_length = capacity // NUM_CURSORS
        self.pad_id = pad_id

    def is_oversize(self, sequence: TokenSequence) -> bool:
        return len(sequence) > self.row_length

    def plan_epoch(self, sequences: Iterable[TokenSequence]) -> list[BatchPlan]:
        """
        Decide placements for one epoch's sequences, in draw order.

        Every batch is offered the whole remaining epoch, so a batch is only
        padded when nothing left in the epoch fits its residual room.
        """
        pending = list(sequences)
        plans: list[BatchPlan] = []

        while pending:
            if self.is_oversize(pending[0]):
                plans.append(self._oversize_plan(pending.pop(0)))
                continue

            # pending[0] fits an empty builder, so every plan here is non-empty.
            builder = _PlanBuilder(self.row_length)
            deferred: list[TokenSequence] = []
            for position, sequence in enumerate(pending):
                if builder.full:
                    deferred.extend(pending[position:])
                    break
                if not builder.try_place(sequence):
                    deferred.append(sequence)
            plans.append(builder.build())
            pending = deferred

        return plans

    def plan_epochs(
        self,
        index: CorpusIndex,
        sampler: CurriculumSampler,
        epochs: int,
        max_batches: Optional[int] = None,
    ) -> list[EpochPlan]:
        """
        Plans for ``epochs`` epochs, stopping early once ``max_batches``
        batches are planned. The last epoch may then hold more plans than
        are needed; ``iter_planned`` trims them.
        """
        planned: list[EpochPlan] = []
        total = 0
        for epoch in range(epochs):
            if max_batches is not None and total >= max_batches:
                break
            order = sampler.epoch_order(epoch)
            sequences = [seq for doc in order for seq in index.sequences_for(doc)]
            plans = tuple(self.plan_epoch(sequences))
            planned.append(EpochPlan(epoch=epoch, plans=plans))
            total += len(plans)
        return planned

    def iter_planned(
        self,
        epoch_plans: Iterable[EpochPlan],
        max_batches: Optional[int] = None,
    ) -> Iterator[Batch]:
        """Materialize precomputed plans lazily, one batch at a time."""
        batch_index = 0
        for epoch_plan in epoch_plans:
            for plan in epoch_plan.plans:
                if max_batches is not None and batch_index >= max_batches:
                    return
                yield self.materialize(plan, epoch=epoch_plan.epoch, batch_index=batch_index)
                batch_index += 1

    def _oversize_plan(self, sequence: TokenSequence) -> BatchPlan:
        logger.warning(
            "Sequence longer than a cursor row packed alone",
            extra={
                "sequence_id": sequence.sequence_id,
                "length": len(sequence),
                "row_length": self.row_length,
            },
        )
        return BatchPlan(rows=((sequence,),), row_length=len(sequence), oversize=True)

    def materialize(self, plan: BatchPlan, epoch: int, batch_index: int) -> Batch:
        """Build the tensors for one plan."""
        input_rows: list[list[int]] = []
        segment_rows: list[list[int]] = []
        position_rows: list[list[int]] = []
        manifest: list[PackedSpan] = []
        segment = 0

        for row_index, row in enumerate(plan.rows):
            tokens: list[int] = []
            segments: list[int] = []
            positions: list[int] = []
            for sequence in row:
                segment += 1
                manifest.append(
                    PackedSpan(
                        sequence_id=sequence.sequence_id,
                        document_id=sequence.document_id,
                        row=row_index,
                        start=len(tokens),
                        length=len(sequence),
                    )
                )
                tokens.extend(sequence.tokens)
                segments.extend([segment] * len(sequence))
                positions.extend(range(len(sequence)))
            padding = plan.row_length - len(tokens)
            input_rows.append(tokens + [self.pad_id] * padding)
            segment_rows.append(segments + [0] * padding)
            position_rows.append(positions + [0] * padding)

        return Batch(
            index=batch_index,
            epoch=epoch,
            input_ids=torch.tensor(input_rows, dtype=torch.long),
            segment_ids=torch.tensor(segment_rows, dtype=torch.long),
            position_ids=torch.tensor(position_rows, dtype=torch.long),
            manifest=tuple(manifest),
            capacity=plan.capacity,
            oversize=plan.oversize,
        )

    def pack_epoch(
        self,
        sequences: Iterable[TokenSequence],
        epoch: int = 0,
        start_index: int = 0,
    ) -> Iterator[Batch]:
        """Batches for one epoch's draw order."""
        for offset, plan in enumerate(self.plan_epoch(sequences)):
            yield self.materialize(plan, epoch=epoch, batch_index=start_index + offset)

    def iter_batches(
        self,
        index: CorpusIndex,
        sampler: CurriculumSampler,
        epochs: Optional[int] = None,
        start_epoch: int = 0,
    ) -> Iterator[Batch]:
        """
        Batches across epochs, drawing a fresh curriculum order per epoch.

        Endless when ``epochs`` is None. Epoch boundaries flush: no batch
        mixes sequences from two epochs.
        """
        batch_index = 0
        for epoch, order in sampler.iter_epochs(start_epoch):
            if epochs is not None and epoch >= start_epoch + epochs:
                return
            sequences = [seq for doc in order for seq in index.sequences_for(doc)]
            for batch in self.pack_epoch(sequences, epoch=epoch, start_index=batch_index):
                batch_index += 1
                yield batch
            logger.debug("Epoch packed", extra={"epoch": epoch, "batches_so_far": batch_index})

