# Author : Eshan Roy <eshanized@proton.me>
# SPDX-License-Identifier: MIT

"""
CLI smoke tests.

These run the real entrypoint in a subprocess, the way a user would, so
broken imports and argument wiring show up here even when unit tests pass.
"""

import subprocess
import sys
import textwrap
from pathlib import Path

import pytest

REPO_ROOT = Path(__file__).resolve().parents[2]


def _run_cli(*args: str, timeout: int = 120) -> subprocess.CompletedProcess[str]:
    """Run `loralab` with the given arguments and capture output."""
    return subprocess.run(
        [sys.executable, "-m", "loralab.cli.main", *args],
        capture_output=True,
        text=True,
        timeout=timeout,
        cwd=REPO_ROOT,
    )


@pytest.fixture()
def corpus_file(tmp_path: Path, sample_corpus: str) -> Path:
    path = tmp_path / "notes.txt"
    path.write_text(sample_corpus, encoding="utf-8")
    return path


@pytest.fixture()
def cpu_config_file(tmp_path: Path) -> Path:
    path = tmp_path / "cpu.yaml"
    path.write_text(
        textwrap.dedent("""\
            global:
              config_version: "1.0.0"
              seed: 3
            packing:
              capacity: 32
            train:
              max_steps: 2
              progress_interval_seconds: 0.0
            session:
              device: "cpu"
        """),
        encoding="utf-8",
    )
    return path


class TestHelpTexts:
    @pytest.mark.parametrize("subcommand", ["train", "tokenizer", "info"])
    def test_subcommand_help_exits_zero(self, subcommand: str) -> None:
        result = _run_cli(subcommand, "--help")
        assert result.returncode == 0
        assert "usage" in result.stdout.lower()

    def test_root_help_exits_with_user_error(self) -> None:
        result = _run_cli()
        assert result.returncode == 1


class TestSubcommandExecution:
    def test_info_runs_without_config(self) -> None:
        assert _run_cli("info").returncode == 0

    def test_train_requires_corpus(self) -> None:
        assert _run_cli("train").returncode == 1

    def test_train_missing_corpus_path(self, tmp_path: Path) -> None:
        assert _run_cli("train", "--corpus", str(tmp_path / "absent.txt")).returncode == 1

    def test_train_dry_run(self, corpus_file: Path) -> None:
        result = _run_cli("train", "--corpus", str(corpus_file), "--dry-run")
        assert result.returncode == 0

    def test_tokenizer_writes_file(self, corpus_file: Path, tmp_path: Path) -> None:
        output = tmp_path / "tokenizer.json"
        result = _run_cli("tokenizer", "--corpus", str(corpus_file), "--output", str(output))
        assert result.returncode == 0
        assert output.is_file()

    def test_train_exports_adapter(self, corpus_file: Path, cpu_config_file: Path, tmp_path: Path) -> None:
        export = tmp_path / "adapter.safetensors"
        result = _run_cli(
            "train",
            "--config", str(cpu_config_file),
            "--corpus", str(corpus_file),
            "--export", str(export),
        )
        assert result.returncode == 0, result.stderr
        assert export.is_file()

    def test_train_with_rank_strategy(self, corpus_file: Path, cpu_config_file: Path) -> None:
        result = _run_cli(
            "train",
            "--config", str(cpu_config_file),
            "--corpus", str(corpus_file),
            "--rank-strategy", "progressive",
        )
        assert result.returncode == 0, result.stderr


class TestConfigLoading:
    def test_info_does_not_read_config(self) -> None:
        result = _run_cli("info", "--config", "/nonexistent/path.yaml")
        assert result.returncode == 0

    def test_train_with_nonexistent_config(self, corpus_file: Path) -> None:
        result = _run_cli("train", "--config", "/nonexistent/path.yaml", "--corpus", str(corpus_file))
        assert result.returncode == 2

    def test_invalid_config_returns_config_error(self, invalid_config_file: Path, corpus_file: Path) -> None:
        result = _run_cli("tokenizer", "--config", str(invalid_config_file), "--corpus", str(corpus_file))
        assert result.returncode == 2
