# Author : Eshan Roy <eshanized@proton.me>
# SPDX-License-Identifier: MIT

"""
Shared pytest fixtures for loralab tests.

Fixtures here are available to every test file automatically. The model
fixtures describe a graph small enough that a CPU step takes milliseconds.
"""

import textwrap
from pathlib import Path

import pytest
from tokenizers import Tokenizer

from loralab.config.loader import parse_config
from loralab.config.schema import (
    AdapterConfig,
    CorpusConfig,
    LoraLabConfig,
    SessionConfig,
    TokenizerConfig,
    TrainConfig,
)
from loralab.model.graph import GraphConfig
from loralab.model.weights import BaseWeights, init_base_weights
from loralab.tokenizer.core import train_tokenizer

SAMPLE_CORPUS = textwrap.dedent("""\
    The lighthouse keeper climbed the spiral stairs every evening at dusk.
    He trimmed the wick and polished the great lens until it shone.

    Ships passing the rocky headland relied on the steady beam of light.
    Fishermen told stories about the keeper and his patient routine.

    In spring the gardens behind the cottage filled with tulips and daffodils.
    Bees moved between the flowers while the orchard trees began to bloom.

    Mathematics describes patterns: primes, fractals, and symmetric groups.
    A theorem is a statement proved from axioms by careful logical steps.

    The river carried melting snow from the mountains down to the valley.
    Farmers opened the sluice gates so the water reached the thirsty fields.

    Compilers translate source code into machine instructions for processors.
    Parsers build syntax trees, and optimizers rewrite them for speed.

    Bread dough rises slowly when the kitchen is cool and quiet.
    Bakers knead, fold, and shape each loaf before dawn.

    Astronomers measure the distance to stars with parallax and spectra.
    Telescopes gather faint light from galaxies billions of years old.
""")

TEST_VOCAB_SIZE = 320


@pytest.fixture()
def tmp_config_file(tmp_path: Path) -> Path:
    """The smallest config that passes schema validation."""
    config_content = textwrap.dedent("""\
        global:
          config_version: "1.0.0"
          project_name: "loralab-test"
          seed: 42
          log_level: "DEBUG"
    """)
    config_file = tmp_path / "test_config.yaml"
    config_file.write_text(config_content, encoding="utf-8")
    return config_file


@pytest.fixture()
def invalid_config_file(tmp_path: Path) -> Path:
    """Valid YAML, but the required config_version is missing."""
    config_content = textwrap.dedent("""\
        global:
          project_name: "loralab-test"
          seed: 42
    """)
    config_file = tmp_path / "invalid_config.yaml"
    config_file.write_text(config_content, encoding="utf-8")
    return config_file


@pytest.fixture()
def broken_yaml_file(tmp_path: Path) -> Path:
    config_file = tmp_path / "broken.yaml"
    config_file.write_text("{{not: yaml: at: all:::", encoding="utf-8")
    return config_file


@pytest.fixture(scope="session")
def sample_corpus() -> str:
    return SAMPLE_CORPUS


@pytest.fixture(scope="session")
def tokenizer() -> Tokenizer:
    """Byte-level BPE trained once on the sample corpus."""
    config = TokenizerConfig(vocab_size=300, min_frequency=1)
    return train_tokenizer(config, iter([SAMPLE_CORPUS]))


@pytest.fixture(scope="session")
def tokenizer_file(tmp_path_factory: pytest.TempPathFactory, tokenizer: Tokenizer) -> Path:
    path = tmp_path_factory.mktemp("tokenizer") / "tokenizer.json"
    tokenizer.save(str(path))
    return path


@pytest.fixture()
def corpus_config() -> CorpusConfig:
    return CorpusConfig()


@pytest.fixture(scope="session")
def graph_config() -> GraphConfig:
    return GraphConfig(
        vocab_size=TEST_VOCAB_SIZE,
        dim=32,
        n_layers=1,
        n_heads=2,
        head_dim=16,
        ffn_dim=64,
        max_seq_len=32,
    )


@pytest.fixture(scope="session")
def base_weights(graph_config: GraphConfig) -> BaseWeights:
    return init_base_weights(graph_config, seed=0)


@pytest.fixture()
def adapter_config() -> AdapterConfig:
    return AdapterConfig(rank=4, alpha=8.0, group_size=16)


@pytest.fixture()
def cpu_session_config() -> SessionConfig:
    return SessionConfig(device="cpu", graph_capture=False, compile_kernels=False)


@pytest.fixture()
def train_config() -> TrainConfig:
    return TrainConfig(learning_rate=1e-2, min_learning_rate=1e-3, progress_interval_seconds=0.0)


@pytest.fixture()
def small_config() -> LoraLabConfig:
    """A full config whose model matches ``graph_config`` and runs on the CPU."""
    return parse_config(
        {
            "global": {"config_version": "1.0.0", "seed": 7, "log_level": "DEBUG"},
            "packing": {"capacity": 32},
            "model": {
                "vocab_size": TEST_VOCAB_SIZE,
                "hidden_size": 32,
                "n_layers": 1,
                "n_heads": 2,
                "head_dim": 16,
                "ffn_dim": 64,
                "context_length": 32,
            },
            "adapter": {"rank": 4, "alpha": 8.0, "group_size": 16},
            "session": {"device": "cpu", "graph_capture": False, "compile_kernels": False},
            "train": {
                "learning_rate": 0.01,
                "min_learning_rate": 0.001,
                "progress_interval_seconds": 0.0,
            },
        },
        source="<test>",
    )
