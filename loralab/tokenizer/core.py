# Author : Eshan Roy <eshanized@proton.me>
# SPDX-License-Identifier: MIT

"""
The fixed subword tokenizer.

A base model ships with exactly one tokenizer, and every corpus is encoded
with it unchanged. This module loads that tokenizer, trains one for a new
base model (byte-level BPE through HuggingFace ``tokenizers``), and exposes
the ids of the reserved tokens the data pipeline relies on.

Training is deterministic: the same config and the same text in the same
order produce a byte-identical tokenizer.json.
"""

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Iterator

from tokenizers import Tokenizer, decoders, pre_tokenizers
from tokenizers.models import BPE
from tokenizers.trainers import BpeTrainer

from loralab.config.schema import TokenizerConfig
from loralab.logging.logger import get_logger
from loralab.utils.hashing import compute_sha256_bytes

logger: logging.Logger = get_logger(__name__)

PAD_TOKEN = "<pad>"
UNK_TOKEN = "<unk>"
BOS_TOKEN = "<bos>"
EOS_TOKEN = "<eos>"


@dataclass(frozen=True)
class SpecialTokenIds:
    """Ids of the reserved tokens. Missing tokens make the tokenizer unusable."""

    pad: int
    unk: int
    bos: int
    eos: int


def train_tokenizer(config: TokenizerConfig, corpus_iterator: Iterator[str]) -> Tokenizer:
    """
    Train a byte-level BPE tokenizer from a stream of texts.

    The full 256-symbol byte alphabet is seeded into the vocabulary, so no
    input ever maps to ``<unk>``.
    """
    tokenizer = Tokenizer(BPE(unk_token=UNK_TOKEN))
    tokenizer.pre_tokenizer = pre_tokenizers.ByteLevel(add_prefix_space=False)
    tokenizer.decoder = decoders.ByteLevel()

    trainer = BpeTrainer(
        vocab_size=config.vocab_size,
        min_frequency=config.min_frequency,
        special_tokens=list(config.special_tokens),
        initial_alphabet=pre_tokenizers.ByteLevel.alphabet(),
        show_progress=False,
    )
    tokenizer.train_from_iterator(corpus_iterator, trainer=trainer)

    logger.info(
        "Tokenizer training complete",
        extra={
            "actual_vocab_size": tokenizer.get_vocab_size(),
            "target_vocab_size": config.vocab_size,
        },
    )
    return tokenizer


def save_tokenizer(tokenizer: Tokenizer, path: Path) -> Path:
    path.parent.mkdir(parents=True, exist_ok=True)
    tokenizer.save(str(path))
    return path


def load_tokenizer(path: Path) -> Tokenizer:
    """
    Load a tokenizer.json.

    Raises:
        FileNotFoundError: If ``path`` does not exist.
    """
    if not path.is_file():
        raise FileNotFoundError(f"Tokenizer file not found: {path}")
    return Tokenizer.from_file(str(path))


def special_token_ids(tokenizer: Tokenizer) -> SpecialTokenIds:
    """
    Raises:
        ValueError: If any reserved token is absent from the vocabulary.
    """
    ids: dict[str, int] = {}
    for token in (PAD_TOKEN, UNK_TOKEN, BOS_TOKEN, EOS_TOKEN):
        token_id = tokenizer.token_to_id(token)
        if token_id is None:
            raise ValueError(f"Tokenizer vocabulary lacks reserved token {token!r}")
        ids[token] = token_id
    return SpecialTokenIds(
        pad=ids[PAD_TOKEN], unk=ids[UNK_TOKEN], bos=ids[BOS_TOKEN], eos=ids[EOS_TOKEN]
    )


def tokenizer_fingerprint(tokenizer: Tokenizer) -> str:
    """SHA-256 of the serialized tokenizer; part of a corpus's identity."""
    return compute_sha256_bytes(tokenizer.to_str().encode("utf-8"))


def encode_batch(tokenizer: Tokenizer, texts: list[str]) -> list[list[int]]:
    """Encode texts without any post-processor markers; the loader adds its own."""
    encodings = tokenizer.encode_batch(texts, add_special_tokens=False)
    return [enc.ids for enc in encodings]
