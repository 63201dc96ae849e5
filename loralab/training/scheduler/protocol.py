# Author : Eshan Roy <eshanized@proton.me>
# SPDX-License-Identifier: MIT

"""
Messages exchanged with the training scheduler's worker thread.

Commands flow in, events flow out. Both are frozen dataclasses holding
primitive values or frozen config objects, so nothing mutable is shared
between the caller and the worker. Every event carries a ``kind`` string
for callers that dispatch on it.
"""

from dataclasses import dataclass, field
from typing import Any, Optional, Union


# Commands


@dataclass(frozen=True)
class StartRun:
    """Built by ``TrainingScheduler.start`` once the data pipeline is ready."""

    prepared: Any


@dataclass(frozen=True)
class Pause:
    pass


@dataclass(frozen=True)
class Resume:
    pass


@dataclass(frozen=True)
class Abort:
    pass


@dataclass(frozen=True)
class SwitchMode:
    mode: str


@dataclass(frozen=True)
class Status:
    pass


@dataclass(frozen=True)
class Shutdown:
    pass


Command = Union[StartRun, Pause, Resume, Abort, SwitchMode, Status, Shutdown]


# Events


@dataclass(frozen=True)
class Started:
    run_id: str
    mode: str
    total_steps: int
    corpus_id: str
    documents: int
    sequences: int
    kind: str = field(default="started", init=False)


@dataclass(frozen=True)
class Progress:
    step: int
    loss: float
    tokens_per_second: float
    eta_seconds: Optional[float]
    average_loss: Optional[float] = None
    memory_mb: float = 0.0
    rank: Optional[int] = None
    kind: str = field(default="progress", init=False)


@dataclass(frozen=True)
class Paused:
    step: int
    kind: str = field(default="paused", init=False)


@dataclass(frozen=True)
class Resumed:
    step: int
    kind: str = field(default="resumed", init=False)


@dataclass(frozen=True)
class ModeChanged:
    mode: str
    kind: str = field(default="mode_changed", init=False)


@dataclass(frozen=True)
class RankChanged:
    """The adapter was resized between two steps."""

    step: int
    previous_rank: int
    rank: int
    reason: str
    kind: str = field(default="rank_changed", init=False)


@dataclass(frozen=True)
class Completed:
    final_snapshot_ref: str
    final_loss: float
    steps: int
    export_path: Optional[str] = None
    kind: str = field(default="completed", init=False)


@dataclass(frozen=True)
class Failed:
    error_kind: str
    message: str
    step: int = 0
    kind: str = field(default="failed", init=False)


@dataclass(frozen=True)
class Aborted:
    step: int
    kind: str = field(default="aborted", init=False)


@dataclass(frozen=True)
class StatusReport:
    state: str
    mode: str
    step: int
    total_steps: Optional[int]
    last_loss: Optional[float]
    rank: Optional[int] = None
    kind: str = field(default="status", init=False)


@dataclass(frozen=True)
class CommandRejected:
    """A command arrived in a state that cannot accept it."""

    command: str
    state: str
    kind: str = field(default="rejected", init=False)


Event = Union[
    Started,
    Progress,
    Paused,
    Resumed,
    ModeChanged,
    RankChanged,
    Completed,
    Failed,
    Aborted,
    StatusReport,
    CommandRejected,
]

TERMINAL_EVENTS = (Completed, Failed, Aborted)
