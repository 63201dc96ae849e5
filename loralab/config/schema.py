# Author : Eshan Roy <eshanized@proton.me>
# SPDX-License-Identifier: MIT

"""
Type-safe configuration schemas for loralab.

Each config section is a frozen pydantic model:
  - frozen=True: a run never mutates its settings halfway through
  - extra="forbid": a misspelled key fails loudly instead of being ignored
  - validate_default=True: defaults get the same checks as user values

Every section except ``global`` has defaults that describe a tiny model
that trains on a CPU in seconds, so a config file only needs to state
what differs from that.

``RunConfig`` is not part of the file. It is the per-run payload handed to
``TrainingScheduler.start`` and overrides the matching file settings.
"""

from typing import Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, model_validator

ExecutionModeName = Literal["adapter", "full"]
RankStrategyName = Literal["fixed", "progressive", "adaptive", "hardware_aware"]

LORA_TARGETS = ("wq", "wk", "wv", "wo", "w1", "w2", "w3")


class GlobalConfig(BaseModel):
    """Cross-cutting settings: identity, reproducibility and observability."""

    model_config = ConfigDict(frozen=True, extra="forbid", validate_default=True)

    config_version: str = Field(
        description="Schema version for compatibility tracking, e.g. '1.0.0'"
    )
    project_name: str = Field(default="loralab", description="Human-readable run identifier")
    seed: int = Field(
        default=42,
        ge=0,
        description="Default seed for sampling, adapter init and dropout",
    )
    log_level: str = Field(
        default="INFO",
        description="One of DEBUG, INFO, WARNING, ERROR, CRITICAL",
    )
    log_file: Optional[str] = Field(
        default=None,
        description="Optional file that receives a copy of every log line",
    )


class TokenizerConfig(BaseModel):
    """Settings for training the fixed BPE tokenizer shipped with a base model."""

    model_config = ConfigDict(frozen=True, extra="forbid", validate_default=True)

    vocab_size: int = Field(default=512, ge=16, description="Target vocabulary size")
    min_frequency: int = Field(default=2, ge=1, description="Minimum pair frequency to merge")
    special_tokens: list[str] = Field(
        default_factory=lambda: ["<pad>", "<unk>", "<bos>", "<eos>"],
        description="Reserved tokens, assigned ids in this order starting at 0",
    )


class CorpusConfig(BaseModel):
    """How raw text becomes documents and token sequences."""

    model_config = ConfigDict(frozen=True, extra="forbid", validate_default=True)

    granularity: Literal["paragraph", "file"] = Field(
        default="paragraph",
        description="Split inputs on blank lines, or treat each input as one document",
    )
    clean_text: bool = Field(
        default=True,
        description="Normalize line endings, whitespace, control chars and typography",
    )
    max_sequence_length: Optional[int] = Field(
        default=None,
        ge=3,
        description="Split documents into chunks of at most this many tokens (markers included)",
    )
    tokenizer_path: Optional[str] = Field(
        default=None,
        description="Path to the base model's tokenizer.json",
    )


class CurriculumConfig(BaseModel):
    """TF-IDF curriculum sampling."""

    model_config = ConfigDict(frozen=True, extra="forbid", validate_default=True)

    strength: float = Field(
        default=0.5,
        ge=0.0,
        le=1.0,
        description="0 = uniform sampling, 1 = pure TF-IDF weighting",
    )
    epoch_length: Optional[int] = Field(
        default=None,
        ge=1,
        description="Documents drawn per epoch; defaults to every document",
    )
    warmup_epochs: int = Field(
        default=0,
        ge=0,
        description="Epochs over which strength ramps linearly up from 0",
    )


class PackingConfig(BaseModel):
    """Dual-sequence batch packing."""

    model_config = ConfigDict(frozen=True, extra="forbid", validate_default=True)

    capacity: int = Field(
        default=128,
        ge=2,
        description="Token positions per batch, split evenly over two cursor rows",
    )

    @model_validator(mode="after")
    def _capacity_is_even(self) -> "PackingConfig":
        if self.capacity % 2 != 0:
            raise ValueError(f"packing.capacity must be even, got {self.capacity}")
        return self


class ModelConfig(BaseModel):
    """Dimensions of the fixed decoder graph the base weights belong to."""

    model_config = ConfigDict(frozen=True, extra="forbid", validate_default=True)

    vocab_size: int = Field(default=512, ge=16)
    hidden_size: int = Field(default=64, ge=8)
    n_layers: int = Field(default=2, ge=1)
    n_heads: int = Field(default=4, ge=1)
    head_dim: int = Field(default=16, ge=2)
    ffn_dim: int = Field(default=192, ge=8, description="SwiGLU intermediate size")
    context_length: int = Field(default=128, ge=8, description="Longest row the graph accepts")
    dropout: float = Field(default=0.0, ge=0.0, le=1.0)
    norm_eps: float = Field(default=1e-6, gt=0.0)
    rope_theta: float = Field(default=10000.0, gt=0.0)
    init_std: float = Field(default=0.02, gt=0.0)
    base_weights_path: Optional[str] = Field(
        default=None,
        description="safetensors file with pretrained weights; seeded init when unset",
    )

    @model_validator(mode="after")
    def _heads_cover_hidden(self) -> "ModelConfig":
        if self.n_heads * self.head_dim != self.hidden_size:
            raise ValueError(
                f"n_heads * head_dim ({self.n_heads} * {self.head_dim}) "
                f"must equal hidden_size ({self.hidden_size})"
            )
        if self.head_dim % 2 != 0:
            raise ValueError(f"head_dim must be even for rotary embeddings, got {self.head_dim}")
        return self


class AdapterConfig(BaseModel):
    """LoRA adapter shape and the optional 4-bit base path."""

    model_config = ConfigDict(frozen=True, extra="forbid", validate_default=True)

    rank: int = Field(default=8, ge=1, le=256)
    alpha: float = Field(default=16.0, gt=0.0)
    dropout: float = Field(default=0.0, ge=0.0, le=1.0)
    target_modules: list[str] = Field(
        default_factory=lambda: ["wq", "wk", "wv", "wo"],
        description="Projections that receive low-rank adapters",
    )
    quantize_base: bool = Field(
        default=False,
        description="Run frozen targeted projections through the 4-bit matmul kernel",
    )
    group_size: int = Field(default=32, ge=2, description="Columns sharing one 4-bit scale")

    @model_validator(mode="after")
    def _targets_are_known(self) -> "AdapterConfig":
        unknown = sorted(set(self.target_modules) - set(LORA_TARGETS))
        if unknown:
            raise ValueError(f"Unknown adapter target_modules {unknown}; valid: {list(LORA_TARGETS)}")
        if not self.target_modules:
            raise ValueError("adapter.target_modules must name at least one projection")
        if self.group_size % 2 != 0:
            raise ValueError(f"adapter.group_size must be even, got {self.group_size}")
        return self


class RankConfig(BaseModel):
    """Policy that resizes the LoRA rank between steps of an adapter run."""

    model_config = ConfigDict(frozen=True, extra="forbid", validate_default=True)

    strategy: RankStrategyName = Field(
        default="fixed",
        description="fixed, progressive, adaptive or hardware_aware",
    )
    min_rank: int = Field(default=2, ge=1)
    max_rank: int = Field(default=64, ge=1, description="Also capped by the smallest targeted projection")
    cooldown_steps: int = Field(default=50, ge=1, description="Steps between two adaptations")
    progressive_steps: int = Field(
        default=1000,
        ge=1,
        description="Steps over which the progressive strategy climbs from min_rank to max_rank",
    )
    convergence_window: int = Field(
        default=100,
        ge=20,
        description="Recent steps the adaptive strategy fits its loss and gradient trends on",
    )
    target_memory_mb: float = Field(
        default=4096.0,
        gt=0.0,
        description="Device memory the hardware_aware strategy tries to stay under",
    )
    performance_threshold: float = Field(default=0.95, gt=0.0, le=1.0)

    @model_validator(mode="after")
    def _bounds_are_ordered(self) -> "RankConfig":
        if self.min_rank > self.max_rank:
            raise ValueError(f"rank.min_rank ({self.min_rank}) exceeds rank.max_rank ({self.max_rank})")
        return self


class SessionConfig(BaseModel):
    """Execution backend selection and step-level optimizations."""

    model_config = ConfigDict(frozen=True, extra="forbid", validate_default=True)

    device: Literal["auto", "cuda", "cpu"] = Field(default="auto")
    allow_cpu_fallback: bool = Field(
        default=True,
        description="Run the CPU reference path when no GPU backend exists",
    )
    io_binding: bool = Field(default=True, description="Reuse persistent device buffers")
    graph_capture: bool = Field(default=True, description="Record and replay CUDA graphs")
    capture_warmup_steps: int = Field(default=3, ge=1)
    compile_kernels: bool = Field(default=True, description="torch.compile the 4-bit kernels")
    activation_dtype: Literal["float32", "bfloat16", "float16"] = Field(
        default="float32",
        description="Autocast dtype on GPU; the CPU path always uses float32",
    )


class TrainConfig(BaseModel):
    """Optimization and run budget."""

    model_config = ConfigDict(frozen=True, extra="forbid", validate_default=True)

    mode: ExecutionModeName = Field(default="adapter")
    epochs: int = Field(default=1, ge=1)
    max_steps: Optional[int] = Field(default=None, ge=1)
    learning_rate: float = Field(default=2e-4, gt=0.0)
    min_learning_rate: float = Field(default=2e-5, ge=0.0)
    weight_decay: float = Field(default=0.0, ge=0.0)
    beta1: float = Field(default=0.9, ge=0.0, lt=1.0)
    beta2: float = Field(default=0.999, ge=0.0, lt=1.0)
    grad_clip: float = Field(default=1.0, ge=0.0, description="0 disables clipping")
    warmup_steps: int = Field(default=0, ge=0)
    progress_interval_seconds: float = Field(
        default=0.5,
        ge=0.0,
        description="Minimum wall time between progress events",
    )
    export_path: Optional[str] = Field(default=None)


class LoraLabConfig(BaseModel):
    """
    Top-level container. Only ``global`` is required in YAML; every other
    section falls back to its defaults.
    """

    model_config = ConfigDict(
        frozen=True, extra="forbid", validate_default=True, populate_by_name=True
    )

    global_config: GlobalConfig = Field(alias="global")
    tokenizer: TokenizerConfig = Field(default_factory=TokenizerConfig)
    corpus: CorpusConfig = Field(default_factory=CorpusConfig)
    curriculum: CurriculumConfig = Field(default_factory=CurriculumConfig)
    packing: PackingConfig = Field(default_factory=PackingConfig)
    model: ModelConfig = Field(default_factory=ModelConfig)
    adapter: AdapterConfig = Field(default_factory=AdapterConfig)
    rank: RankConfig = Field(default_factory=RankConfig)
    session: SessionConfig = Field(default_factory=SessionConfig)
    train: TrainConfig = Field(default_factory=TrainConfig)

    @model_validator(mode="after")
    def _rows_fit_context(self) -> "LoraLabConfig":
        row_length = self.packing.capacity // 2
        if row_length > self.model.context_length:
            raise ValueError(
                f"packing.capacity / 2 ({row_length}) exceeds model.context_length "
                f"({self.model.context_length})"
            )
        return self


class RunConfig(BaseModel):
    """
    Payload of a ``start`` command.

    Exactly one corpus reference must be set. Fields left as None inherit
    the value from the loaded ``LoraLabConfig``.
    """

    model_config = ConfigDict(frozen=True, extra="forbid", validate_default=True)

    corpus_text: Optional[str] = Field(default=None, description="Inline corpus text")
    corpus_path: Optional[str] = Field(
        default=None,
        description="A text file, or a directory whose *.txt files are read in sorted order",
    )
    mode: Optional[ExecutionModeName] = None
    capacity: Optional[int] = Field(default=None, ge=2)
    epochs: Optional[int] = Field(default=None, ge=1)
    max_steps: Optional[int] = Field(default=None, ge=1)
    curriculum_strength: Optional[float] = Field(default=None, ge=0.0, le=1.0)
    seed: Optional[int] = Field(default=None, ge=0)
    export_path: Optional[str] = None
    adapter_path: Optional[str] = Field(
        default=None,
        description="safetensors adapter to resume from (adapter mode)",
    )
    rank_strategy: Optional[RankStrategyName] = None

    @model_validator(mode="after")
    def _one_corpus_reference(self) -> "RunConfig":
        if (self.corpus_text is None) == (self.corpus_path is None):
            raise ValueError("Exactly one of corpus_text or corpus_path must be given")
        if self.capacity is not None and self.capacity % 2 != 0:
            raise ValueError(f"capacity must be even, got {self.capacity}")
        return self
