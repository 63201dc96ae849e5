# Author : Eshan Roy <eshanized@proton.me>
# SPDX-License-Identifier: MIT

"""
Tests for the fixed byte-level BPE tokenizer.
"""

from pathlib import Path

import pytest
from tokenizers import Tokenizer

from loralab.config.schema import TokenizerConfig
from loralab.tokenizer.core import (
    encode_batch,
    load_tokenizer,
    special_token_ids,
    tokenizer_fingerprint,
    train_tokenizer,
)


class TestTraining:
    def test_special_tokens_get_first_ids(self, tokenizer: Tokenizer) -> None:
        ids = special_token_ids(tokenizer)
        assert (ids.pad, ids.unk, ids.bos, ids.eos) == (0, 1, 2, 3)

    def test_vocab_never_exceeds_target(self, tokenizer: Tokenizer) -> None:
        assert tokenizer.get_vocab_size() <= 300

    def test_training_is_deterministic(self, sample_corpus: str) -> None:
        config = TokenizerConfig(vocab_size=300, min_frequency=1)
        first = train_tokenizer(config, iter([sample_corpus]))
        second = train_tokenizer(config, iter([sample_corpus]))
        assert tokenizer_fingerprint(first) == tokenizer_fingerprint(second)

    def test_unseen_text_never_maps_to_unk(self, tokenizer: Tokenizer) -> None:
        unk = special_token_ids(tokenizer).unk
        (ids,) = encode_batch(tokenizer, ["Zebra quokka ✓ 数字"])
        assert ids
        assert unk not in ids


class TestEncoding:
    def test_encode_adds_no_markers(self, tokenizer: Tokenizer) -> None:
        specials = special_token_ids(tokenizer)
        (ids,) = encode_batch(tokenizer, ["the keeper"])
        assert specials.bos not in ids
        assert specials.eos not in ids

    def test_round_trip_decodes_text(self, tokenizer: Tokenizer) -> None:
        (ids,) = encode_batch(tokenizer, ["The river carried snow."])
        assert tokenizer.decode(ids) == "The river carried snow."


class TestPersistence:
    def test_load_missing_file_raises(self, tmp_path: Path) -> None:
        with pytest.raises(FileNotFoundError):
            load_tokenizer(tmp_path / "missing.json")

    def test_saved_tokenizer_keeps_fingerprint(self, tokenizer: Tokenizer, tokenizer_file: Path) -> None:
        assert tokenizer_fingerprint(load_tokenizer(tokenizer_file)) == tokenizer_fingerprint(tokenizer)
