# Author : Eshan Roy <eshanized@proton.me>
# SPDX-License-Identifier: MIT

"""
The fixed decoder graph every session executes.

Topology:
  tokens -> embedding -> N x [RMSNorm -> attention -> residual,
                              RMSNorm -> SwiGLU -> residual]
         -> RMSNorm -> output projection -> logits

Inputs are packed batches, so two things differ from a plain causal LM:

  - attention is block-diagonal: a position only sees earlier positions of
    its own segment, and padding positions only see themselves
  - rotary positions come from ``position_ids``, which restart at 0 for
    every packed sequence

Every projection is an ``AdaptableLinear``, so the session can bind dense,
trainable, 4-bit, or LoRA-augmented weights without changing the graph.
Parameter tensors are created empty; weights always come from binding.
"""

from typing import Iterator

import torch
import torch.nn as nn
import torch.nn.functional as F

from loralab.config.schema import ModelConfig
from loralab.model.lora import AdaptableLinear

IGNORE_INDEX = -100


class GraphConfig:
    """
    Plain carrier of graph dimensions, kept out of pydantic because torch
    modules read it on every forward.
    """

    __slots__ = (
        "vocab_size", "dim", "n_layers", "n_heads", "head_dim", "ffn_dim",
        "max_seq_len", "dropout", "norm_eps", "rope_theta", "init_std",
    )

    def __init__(
        self,
        vocab_size: int,
        dim: int,
        n_layers: int,
        n_heads: int,
        head_dim: int,
        ffn_dim: int,
        max_seq_len: int = 128,
        dropout: float = 0.0,
        norm_eps: float = 1e-6,
        rope_theta: float = 10000.0,
        init_std: float = 0.02,
    ) -> None:
        self.vocab_size = vocab_size
        self.dim = dim
        self.n_layers = n_layers
        self.n_heads = n_heads
        self.head_dim = head_dim
        self.ffn_dim = ffn_dim
        self.max_seq_len = max_seq_len
        self.dropout = dropout
        self.norm_eps = norm_eps
        self.rope_theta = rope_theta
        self.init_std = init_std

    @classmethod
    def from_model_config(cls, config: ModelConfig) -> "GraphConfig":
        return cls(
            vocab_size=config.vocab_size,
            dim=config.hidden_size,
            n_layers=config.n_layers,
            n_heads=config.n_heads,
            head_dim=config.head_dim,
            ffn_dim=config.ffn_dim,
            max_seq_len=config.context_length,
            dropout=config.dropout,
            norm_eps=config.norm_eps,
            rope_theta=config.rope_theta,
            init_std=config.init_std,
        )


class RMSNorm(nn.Module):
    def __init__(self, dim: int, eps: float = 1e-6) -> None:
        super().__init__()
        self.eps = eps
        self.weight = nn.Parameter(torch.empty(dim), requires_grad=False)

    def forward(self, x: torch.Tensor) -> torch.Tensor:
        normed = x.float() * torch.rsqrt(x.float().pow(2).mean(dim=-1, keepdim=True) + self.eps)
        return normed.type_as(x) * self.weight


def precompute_rotary_tables(
    head_dim: int,
    max_seq_len: int,
    theta: float = 10000.0,
) -> tuple[torch.Tensor, torch.Tensor]:
    """cos and sin tables of shape (max_seq_len, head_dim // 2)."""
    freqs = 1.0 / (theta ** (torch.arange(0, head_dim, 2).float() / head_dim))
    angles = torch.outer(torch.arange(max_seq_len).float(), freqs)
    return torch.cos(angles), torch.sin(angles)


def apply_rotary(x: torch.Tensor, cos: torch.Tensor, sin: torch.Tensor) -> torch.Tensor:
    """
    Rotate consecutive dimension pairs of ``x`` (batch, seq, heads, head_dim)
    by per-position angles; ``cos``/``sin`` are (batch, seq, head_dim // 2).
    """
    pairs = x.float().reshape(*x.shape[:-1], -1, 2)
    x0, x1 = pairs[..., 0], pairs[..., 1]
    cos = cos.unsqueeze(2)
    sin = sin.unsqueeze(2)
    rotated = torch.stack((x0 * cos - x1 * sin, x0 * sin + x1 * cos), dim=-1)
    return rotated.flatten(-2).type_as(x)


def segment_attention_mask(segment_ids: torch.Tensor) -> torch.Tensor:
    """
    Boolean mask (batch, 1, seq, seq); True means "may attend".

    Causal within a segment, nothing across segments. Every position may
    attend to itself, so padding rows never produce an all-masked softmax.
    """
    seq_len = segment_ids.shape[1]
    same_segment = segment_ids.unsqueeze(2) == segment_ids.unsqueeze(1)
    causal = torch.ones(seq_len, seq_len, dtype=torch.bool, device=segment_ids.device).tril()
    real = (segment_ids != 0).unsqueeze(2)
    diagonal = torch.eye(seq_len, dtype=torch.bool, device=segment_ids.device)
    return ((same_segment & causal & real) | diagonal).unsqueeze(1)


def packed_targets(input_ids: torch.Tensor, segment_ids: torch.Tensor) -> torch.Tensor:
    """
    Next-token targets that never cross a segment boundary.

    Position i predicts token i + 1 only when both belong to the same
    non-padding segment; everything else is ``IGNORE_INDEX``.
    """
    next_tokens = input_ids[:, 1:]
    valid = (segment_ids[:, 1:] == segment_ids[:, :-1]) & (segment_ids[:, 1:] != 0)
    shifted = torch.where(valid, next_tokens, torch.full_like(next_tokens, IGNORE_INDEX))
    tail = torch.full_like(input_ids[:, :1], IGNORE_INDEX)
    return torch.cat((shifted, tail), dim=1)


class Attention(nn.Module):
    def __init__(self, config: GraphConfig) -> None:
        super().__init__()
        self.n_heads = config.n_heads
        self.head_dim = config.head_dim
        inner = config.n_heads * config.head_dim
        self.wq = AdaptableLinear(config.dim, inner)
        self.wk = AdaptableLinear(config.dim, inner)
        self.wv = AdaptableLinear(config.dim, inner)
        self.wo = AdaptableLinear(inner, config.dim)
        self.dropout = config.dropout

    def forward(
        self,
        x: torch.Tensor,
        cos: torch.Tensor,
        sin: torch.Tensor,
        mask: torch.Tensor,
    ) -> torch.Tensor:
        batch_size, seq_len, _ = x.shape
        q = self.wq(x).view(batch_size, seq_len, self.n_heads, self.head_dim)
        k = self.wk(x).view(batch_size, seq_len, self.n_heads, self.head_dim)
        v = self.wv(x).view(batch_size, seq_len, self.n_heads, self.head_dim)

        q = apply_rotary(q, cos, sin).transpose(1, 2)
        k = apply_rotary(k, cos, sin).transpose(1, 2)
        v = v.transpose(1, 2)

        out = F.scaled_dot_product_attention(
            q,
            k,
            v,
            attn_mask=mask,
            dropout_p=self.dropout if self.training else 0.0,
        )
        out = out.transpose(1, 2).contiguous().view(batch_size, seq_len, -1)
        return self.wo(out)


class FeedForward(nn.Module):
    """SwiGLU: w2(silu(w1 x) * w3 x)."""

    def __init__(self, config: GraphConfig) -> None:
        super().__init__()
        self.w1 = AdaptableLinear(config.dim, config.ffn_dim)
        self.w2 = AdaptableLinear(config.ffn_dim, config.dim)
        self.w3 = AdaptableLinear(config.dim, config.ffn_dim)
        self.dropout = nn.Dropout(config.dropout)

    def forward(self, x: torch.Tensor) -> torch.Tensor:
        return self.w2(self.dropout(F.silu(self.w1(x)) * self.w3(x)))


class DecoderBlock(nn.Module):
    def __init__(self, config: GraphConfig) -> None:
        super().__init__()
        self.attention_norm = RMSNorm(config.dim, eps=config.norm_eps)
        self.attention = Attention(config)
        self.ffn_norm = RMSNorm(config.dim, eps=config.norm_eps)
        self.feed_forward = FeedForward(config)

    def forward(
        self,
        x: torch.Tensor,
        cos: torch.Tensor,
        sin: torch.Tensor,
        mask: torch.Tensor,
    ) -> torch.Tensor:
        h = x + self.attention(self.attention_norm(x), cos, sin, mask)
        return h + self.feed_forward(self.ffn_norm(h))


class DecoderGraph(nn.Module):
    """
    Args:
        config: Graph dimensions.
    """

    def __init__(self, config: GraphConfig) -> None:
        super().__init__()
        self.config = config
        self.tok_embeddings = nn.Embedding(config.vocab_size, config.dim)
        self.tok_embeddings.weight.requires_grad_(False)
        self.layers = nn.ModuleList([DecoderBlock(config) for _ in range(config.n_layers)])
        self.norm = RMSNorm(config.dim, eps=config.norm_eps)
        self.output = AdaptableLinear(config.dim, config.vocab_size)

        cos, sin = precompute_rotary_tables(config.head_dim, config.max_seq_len, config.rope_theta)
        self.register_buffer("rope_cos", cos, persistent=False)
        self.register_buffer("rope_sin", sin, persistent=False)

    def forward(
        self,
        input_ids: torch.Tensor,
        position_ids: torch.Tensor,
        segment_ids: torch.Tensor,
    ) -> torch.Tensor:
        """
        Args:
            input_ids: (batch, seq) token ids.
            position_ids: (batch, seq) per-segment positions.
            segment_ids: (batch, seq) segment labels, 0 for padding.

        Returns:
            Logits of shape (batch, seq, vocab_size).
        """
        cos = self.rope_cos[position_ids]
        sin = self.rope_sin[position_ids]
        mask = segment_attention_mask(segment_ids)

        h = self.tok_embeddings(input_ids)
        for layer in self.layers:
            h = layer(h, cos, sin, mask)
        return self.output(self.norm(h))

    def projections(self) -> Iterator[tuple[str, AdaptableLinear]]:
        """Every ``AdaptableLinear`` with its dotted module path."""
        for name, module in self.named_modules():
            if isinstance(module, AdaptableLinear):
                yield name, module

    def bind_tensor(self, name: str, tensor: nn.Parameter) -> None:
        """Point the parameter slot ``name`` (e.g. ``layers.0.attention.wq.weight``) at ``tensor``."""
        module_path, _, leaf = name.rpartition(".")
        module = self.get_submodule(module_path)
        if isinstance(module, AdaptableLinear) and leaf == "weight":
            module.bind_weight(tensor)
            return
        current = getattr(module, leaf, None)
        if not isinstance(current, nn.Parameter):
            raise KeyError(f"Graph has no parameter slot '{name}'")
        if current.shape != tensor.shape:
            raise ValueError(f"Shape mismatch for '{name}': {tuple(tensor.shape)} vs {tuple(current.shape)}")
        setattr(module, leaf, tensor)


def loss_from_logits(logits: torch.Tensor, targets: torch.Tensor) -> torch.Tensor:
    """Mean cross-entropy over non-ignored targets, computed in float32."""
    return F.cross_entropy(
        logits.float().view(-1, logits.shape[-1]),
        targets.view(-1),
        ignore_index=IGNORE_INDEX,
    )
