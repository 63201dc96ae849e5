# Author : Eshan Roy <eshanized@proton.me>
# SPDX-License-Identifier: MIT

"""
TF-IDF curriculum sampler.

Each document gets a relevance score

    score(doc) = sum over distinct tokens t in doc of tf(t, doc) * log(N / df(t))

with ``tf`` the token's share of the document, ``N`` the document count and
``df`` the number of documents containing the token. Scores are normalized
into a probability distribution, then blended with the uniform distribution:

    weight = (1 - strength) * uniform + strength * tfidf

Every epoch draws ``epoch_length`` documents without replacement using
Efraimidis-Spirakis keys ``log(u) / weight`` (largest keys first). The
uniform draws come from a ``torch.Generator`` seeded from ``(seed, epoch)``
alone, so any epoch's order can be reproduced without replaying earlier
epochs.
"""

import logging
import math
from dataclasses import dataclass
from typing import Iterator

import torch

from loralab.config.schema import CurriculumConfig
from loralab.data.corpus.core import CorpusIndex, TermFrequencyTable
from loralab.logging.logger import get_logger
from loralab.utils.hashing import compute_sha256_parts

logger: logging.Logger = get_logger(__name__)

# Floor for uniform draws so log(u) stays finite.
_MIN_UNIFORM = 1e-300


@dataclass(frozen=True)
class DocumentScore:
    """Relevance of one document: raw TF-IDF score and its normalized share."""

    document_id: int
    tfidf: float
    weight: float


def compute_tfidf_scores(table: TermFrequencyTable) -> list[float]:
    """Raw, unnormalized TF-IDF score per document."""
    n_docs = table.num_documents
    idf = {
        token: math.log(n_docs / df) for token, df in table.document_frequency.items()
    }
    scores: list[float] = []
    for counts, length in zip(table.counts, table.lengths):
        if length == 0:
            scores.append(0.0)
            continue
        scores.append(sum((count / length) * idf[token] for token, count in counts.items()))
    return scores


def normalize_weights(scores: list[float]) -> list[float]:
    """
    Scale non-negative scores to sum to 1.

    All-zero scores (e.g. a single document, or documents sharing every
    token) become the uniform distribution.
    """
    if not scores:
        return []
    if any(score < 0 for score in scores):
        raise ValueError("Document scores must be non-negative")
    total = math.fsum(scores)
    if total <= 0.0:
        return [1.0 / len(scores)] * len(scores)
    return [score / total for score in scores]


def interpolate_weights(tfidf_weights: list[float], strength: float) -> list[float]:
    """Linear blend between uniform (strength 0) and TF-IDF (strength 1)."""
    if not 0.0 <= strength <= 1.0:
        raise ValueError(f"strength must be in [0, 1], got {strength}")
    n_docs = len(tfidf_weights)
    uniform = 1.0 / n_docs if n_docs else 0.0
    return [(1.0 - strength) * uniform + strength * weight for weight in tfidf_weights]


def _epoch_seed(seed: int, epoch: int) -> int:
    return int(compute_sha256_parts(["curriculum", str(seed), str(epoch)])[:16], 16)


class CurriculumSampler:
    """
    Restartable, explicitly seeded producer of per-epoch document orders.

    The sampler holds no iteration state. ``epoch_order(epoch)`` is a pure
    function of ``(corpus, config, seed, epoch)``; ``iter_epochs`` simply
    walks it forward.
    """

    def __init__(self, index: CorpusIndex, config: CurriculumConfig, seed: int) -> None:
        self.index = index
        self.config = config
        self.seed = seed

        raw = compute_tfidf_scores(index.term_frequencies())
        normalized = normalize_weights(raw)
        self.scores: tuple[DocumentScore, ...] = tuple(
            DocumentScore(document_id=i, tfidf=score, weight=weight)
            for i, (score, weight) in enumerate(zip(raw, normalized))
        )
        self.epoch_length = min(
            config.epoch_length or index.num_documents, index.num_documents
        )

        logger.info(
            "Curriculum sampler ready",
            extra={
                "documents": index.num_documents,
                "epoch_length": self.epoch_length,
                "strength": config.strength,
                "warmup_epochs": config.warmup_epochs,
                "seed": seed,
            },
        )

    @property
    def num_documents(self) -> int:
        return len(self.scores)

    def strength_for_epoch(self, epoch: int) -> float:
        warmup = self.config.warmup_epochs
        if warmup == 0 or epoch >= warmup:
            return self.config.strength
        return self.config.strength * epoch / warmup

    def weights_for_epoch(self, epoch: int) -> list[float]:
        """Sampling distribution for ``epoch``; sums to 1."""
        tfidf = [score.weight for score in self.scores]
        return interpolate_weights(tfidf, self.strength_for_epoch(epoch))

    def epoch_order(self, epoch: int) -> tuple[int, ...]:
        """Document ids drawn in ``epoch``, without replacement, in draw order."""
        if epoch < 0:
            raise ValueError(f"epoch must be non-negative, got {epoch}")

        weights = torch.tensor(self.weights_for_epoch(epoch), dtype=torch.float64)
        generator = torch.Generator()
        generator.manual_seed(_epoch_seed(self.seed, epoch))
        uniforms = torch.rand(self.num_documents, generator=generator, dtype=torch.float64)

        keys = torch.log(uniforms.clamp_min(_MIN_UNIFORM)) / weights
        keys = torch.where(weights > 0, keys, torch.full_like(keys, -math.inf))
        order = torch.sort(keys, descending=True, stable=True).indices

        return tuple(order[: self.epoch_length].tolist())

    def iter_epochs(self, start_epoch: int = 0) -> Iterator[tuple[int, tuple[int, ...]]]:
        """Endless ``(epoch, order)`` pairs starting at ``start_epoch``."""
        epoch = start_epoch
        while True:
            yield epoch, self.epoch_order(epoch)
            epoch += 1

    def __iter__(self) -> Iterator[int]:
        for _, order in self.iter_epochs():
            yield from order
