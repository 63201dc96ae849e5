# Author : Eshan Roy <eshanized@proton.me>
# SPDX-License-Identifier: MIT

"""
Corpus loader: raw text or file bytes to an immutable sequence index.

Pipeline:
  1. Decode bytes (UTF-8, or UTF-16 when a UTF-16 BOM is present)
  2. Optionally clean the text (line endings, whitespace, control chars,
     typographic quotes and dashes)
  3. Split into documents, per paragraph or per input file
  4. Encode every document with the fixed tokenizer
  5. Drop documents that produce zero tokens
  6. Wrap each document in ``<bos> ... <eos>``; documents longer than
     ``max_sequence_length`` become several chunks, each with its own markers

The result is a ``CorpusIndex``: frozen dataclasses and tuples only, safe to
hand across the scheduler's thread boundary without copying. The per-document
term-frequency table the curriculum sampler needs is computed on first use
and cached under the corpus identity.
"""

import codecs
import logging
import re
import threading
from collections import Counter, OrderedDict
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Mapping, Sequence, Union

from tokenizers import Tokenizer

from loralab.config.schema import CorpusConfig
from loralab.exceptions import EmptyCorpus, UnsupportedEncoding
from loralab.logging.logger import get_logger
from loralab.tokenizer.core import (
    SpecialTokenIds,
    encode_batch,
    special_token_ids,
    tokenizer_fingerprint,
)
from loralab.utils.hashing import compute_sha256_parts

logger: logging.Logger = get_logger(__name__)

CorpusSource = Union[str, bytes, Sequence[Union[str, bytes]]]

_WORD_PATTERN = re.compile(r"\b\w+\b")
_PARAGRAPH_BREAK = re.compile(r"\n\s*\n")
_CONTROL_CHARS = re.compile(r"[\x00-\x08\x0B\x0C\x0E-\x1F\x7F]")
_TYPOGRAPHY = (
    (re.compile("[“”]"), '"'),
    (re.compile("[‘’]"), "'"),
    (re.compile("[–—]"), "-"),
    (re.compile("…"), "..."),
)

# Corpus validation thresholds.
_SHORT_TEXT_CHARS = 1000
_LONG_TEXT_CHARS = 10_000_000
_FEW_WORDS = 100
_MIN_UNIQUE_LINE_RATIO = 0.5
_MIN_DISTINCT_CHARS = 20

_TF_CACHE_SIZE = 4


@dataclass(frozen=True)
class TokenSequence:
    """One trainable unit: a document or a chunk of one, with boundary markers."""

    sequence_id: int
    document_id: int
    chunk_index: int
    tokens: tuple[int, ...]

    def __len__(self) -> int:
        return len(self.tokens)


@dataclass(frozen=True)
class CorpusStats:
    characters: int
    words: int
    unique_words: int
    documents: int
    sequences: int
    tokens: int


@dataclass(frozen=True)
class TermFrequencyTable:
    """
    Raw token counts per document plus corpus-wide document frequencies.

    Boundary markers are excluded; they appear in every document and carry
    no signal.
    """

    counts: tuple[Mapping[int, int], ...]
    lengths: tuple[int, ...]
    document_frequency: Mapping[int, int]

    @property
    def num_documents(self) -> int:
        return len(self.counts)


@dataclass(frozen=True)
class CorpusIndex:
    """Everything downstream stages need to know about a loaded corpus."""

    corpus_id: str
    documents: tuple[str, ...]
    sequences: tuple[TokenSequence, ...]
    document_sequences: tuple[tuple[int, ...], ...]
    special_tokens: SpecialTokenIds
    stats: CorpusStats
    warnings: tuple[str, ...] = field(default=())

    @property
    def num_documents(self) -> int:
        return len(self.documents)

    def sequences_for(self, document_id: int) -> tuple[TokenSequence, ...]:
        """Sequences of one document, in chunk order."""
        return tuple(self.sequences[i] for i in self.document_sequences[document_id])

    def term_frequencies(self) -> TermFrequencyTable:
        """Per-document term counts, computed once per corpus identity."""
        with _TF_CACHE_LOCK:
            cached = _TF_CACHE.get(self.corpus_id)
            if cached is not None:
                _TF_CACHE.move_to_end(self.corpus_id)
                return cached

        table = _build_term_frequencies(self)

        with _TF_CACHE_LOCK:
            _TF_CACHE[self.corpus_id] = table
            while len(_TF_CACHE) > _TF_CACHE_SIZE:
                _TF_CACHE.popitem(last=False)
        return table


_TF_CACHE: "OrderedDict[str, TermFrequencyTable]" = OrderedDict()
_TF_CACHE_LOCK = threading.Lock()


def _build_term_frequencies(index: CorpusIndex) -> TermFrequencyTable:
    markers = {index.special_tokens.bos, index.special_tokens.eos}
    counts: list[Mapping[int, int]] = []
    lengths: list[int] = []
    document_frequency: Counter[int] = Counter()

    for document_id in range(index.num_documents):
        counter: Counter[int] = Counter()
        for sequence in index.sequences_for(document_id):
            counter.update(token for token in sequence.tokens if token not in markers)
        counts.append(MappingProxyType(dict(counter)))
        lengths.append(sum(counter.values()))
        document_frequency.update(counter.keys())

    logger.debug(
        "Term-frequency table built",
        extra={"corpus_id": index.corpus_id[:12], "vocabulary": len(document_frequency)},
    )
    return TermFrequencyTable(
        counts=tuple(counts),
        lengths=tuple(lengths),
        document_frequency=MappingProxyType(dict(document_frequency)),
    )


def decode_corpus_bytes(data: bytes) -> str:
    """
    Decode corpus bytes strictly.

    Raises:
        UnsupportedEncoding: The bytes are not valid UTF-8 (or UTF-16 with BOM).
    """
    if data.startswith((codecs.BOM_UTF16_LE, codecs.BOM_UTF16_BE)):
        encoding = "utf-16"
    else:
        encoding = "utf-8-sig"
    try:
        return data.decode(encoding)
    except UnicodeDecodeError as err:
        raise UnsupportedEncoding(
            f"Corpus is not valid {encoding}: byte {err.start} ({err.reason})"
        ) from err


def clean_text(text: str) -> str:
    """Normalize whitespace and typography while keeping paragraph breaks."""
    processed = text.replace("\r\n", "\n").replace("\r", "\n")
    processed = re.sub(r"[ \t]+", " ", processed)
    processed = re.sub(r"\n\s*\n\s*\n+", "\n\n", processed)
    processed = processed.strip()
    processed = _CONTROL_CHARS.sub("", processed)
    for pattern, replacement in _TYPOGRAPHY:
        processed = pattern.sub(replacement, processed)
    return processed


def validate_corpus(text: str) -> list[str]:
    """Heuristic warnings about a corpus. Never fatal."""
    warnings: list[str] = []
    length = len(text)
    word_count = len(_WORD_PATTERN.findall(text))

    if length < _SHORT_TEXT_CHARS:
        warnings.append("Text is very short (< 1000 characters); may not provide enough training data")
    if length > _LONG_TEXT_CHARS:
        warnings.append("Text is very long (> 10M characters); consider splitting it")
    if word_count < _FEW_WORDS:
        warnings.append("Very few words detected; check that the text is in a supported language")

    lines = text.split("\n")
    if len(set(lines)) < len(lines) * _MIN_UNIQUE_LINE_RATIO:
        warnings.append("High line repetition detected; may lead to overfitting")
    if len(set(text)) < _MIN_DISTINCT_CHARS:
        warnings.append("Low character diversity; check that the text is not corrupted")

    return warnings


def _as_texts(source: CorpusSource) -> list[str]:
    if isinstance(source, (str, bytes)):
        items: Sequence[Union[str, bytes]] = [source]
    else:
        items = source
    return [decode_corpus_bytes(item) if isinstance(item, bytes) else item for item in items]


def split_documents(texts: Sequence[str], granularity: str) -> list[str]:
    """Paragraph granularity splits on blank lines; file granularity keeps inputs whole."""
    documents: list[str] = []
    for text in texts:
        if granularity == "file":
            pieces = [text]
        else:
            pieces = _PARAGRAPH_BREAK.split(text)
        documents.extend(piece.strip() for piece in pieces if piece.strip())
    return documents


def _chunk(body: list[int], max_length: int | None, bos: int, eos: int) -> list[tuple[int, ...]]:
    if max_length is None:
        return [(bos, *body, eos)]
    step = max_length - 2
    return [(bos, *body[start : start + step], eos) for start in range(0, len(body), step)]


def load_corpus(
    source: CorpusSource,
    tokenizer: Tokenizer,
    config: CorpusConfig,
    max_sequence_length: int | None = None,
) -> CorpusIndex:
    """
    Turn raw corpus input into a ``CorpusIndex``.

    Args:
        source: Text, bytes, or a sequence of either (one element per file).
        tokenizer: The base model's fixed tokenizer.
        config: Corpus settings.
        max_sequence_length: Overrides ``config.max_sequence_length`` when set.

    Raises:
        UnsupportedEncoding: A bytes input could not be decoded.
        EmptyCorpus: No document produced any tokens.
    """
    specials = special_token_ids(tokenizer)
    max_length = max_sequence_length if max_sequence_length is not None else config.max_sequence_length
    if max_length is not None and max_length < 3:
        raise ValueError(f"max_sequence_length must be at least 3, got {max_length}")

    texts = _as_texts(source)
    if config.clean_text:
        texts = [clean_text(text) for text in texts]

    candidates = split_documents(texts, config.granularity)
    encoded = encode_batch(tokenizer, candidates) if candidates else []

    documents: list[str] = []
    sequences: list[TokenSequence] = []
    document_sequences: list[tuple[int, ...]] = []
    rejected = 0

    for text, body in zip(candidates, encoded):
        if not body:
            rejected += 1
            continue
        document_id = len(documents)
        documents.append(text)
        ids: list[int] = []
        for chunk_index, tokens in enumerate(_chunk(body, max_length, specials.bos, specials.eos)):
            sequence = TokenSequence(
                sequence_id=len(sequences),
                document_id=document_id,
                chunk_index=chunk_index,
                tokens=tokens,
            )
            sequences.append(sequence)
            ids.append(sequence.sequence_id)
        document_sequences.append(tuple(ids))

    if not documents:
        raise EmptyCorpus(
            f"No documents with tokens remain ({len(candidates)} candidates, {rejected} rejected)"
        )

    joined = "\n\n".join(documents)
    words = _WORD_PATTERN.findall(joined)
    stats = CorpusStats(
        characters=len(joined),
        words=len(words),
        unique_words=len({word.lower() for word in words}),
        documents=len(documents),
        sequences=len(sequences),
        tokens=sum(len(sequence) for sequence in sequences),
    )
    warnings = tuple(validate_corpus(joined))
    corpus_id = compute_sha256_parts([tokenizer_fingerprint(tokenizer), str(max_length), *documents])

    logger.info(
        "Corpus loaded",
        extra={
            "corpus_id": corpus_id[:12],
            "documents": stats.documents,
            "rejected_documents": rejected,
            "sequences": stats.sequences,
            "tokens": stats.tokens,
            "split_documents": sum(1 for ids in document_sequences if len(ids) > 1),
        },
    )
    for warning in warnings:
        logger.warning("Corpus warning", extra={"warning": warning})

    return CorpusIndex(
        corpus_id=corpus_id,
        documents=tuple(documents),
        sequences=tuple(sequences),
        document_sequences=tuple(document_sequences),
        special_tokens=specials,
        stats=stats,
        warnings=warnings,
    )
