# Author : Eshan Roy <eshanized@proton.me>
# SPDX-License-Identifier: MIT

"""
Subcommand handlers for the loralab CLI.

Each handler takes the parsed namespace and returns an exit code. No
print() calls: everything, events included, goes through the structured
logger.
"""

import argparse
import logging
from pathlib import Path
from typing import Optional

from loralab.cli.exit_codes import CONFIG_ERROR, RUNTIME_ERROR, SUCCESS, USER_ERROR, VALIDATION_ERROR
from loralab.config.exceptions import ConfigError
from loralab.config.loader import load_config, parse_config
from loralab.config.schema import LoraLabConfig, RunConfig
from loralab.exceptions import LoraLabError
from loralab.logging.logger import get_logger
from loralab.runtime.bootstrap import bootstrap

_DEFAULT_CONFIG = {"global": {"config_version": "1.0.0"}}


def _load_and_bootstrap(
    args: argparse.Namespace,
    command_name: str,
) -> tuple[int, Optional[LoraLabConfig], logging.Logger]:
    """
    Load the config (or the built-in defaults) and bootstrap the process.

    Returns (exit_code, config, logger). A non-SUCCESS exit code means the
    caller should return it at once.
    """
    logger = get_logger(f"loralab.cli.{command_name}", log_level=args.log_level)

    try:
        if args.config is not None:
            config = load_config(Path(args.config))
        else:
            logger.debug("No config provided, running with defaults", extra={"command": command_name})
            config = parse_config(_DEFAULT_CONFIG, source="<defaults>")
    except ConfigError as err:
        logger.error("Configuration error", extra={"command": command_name, "error": str(err)})
        return CONFIG_ERROR, None, logger

    if args.seed is not None:
        global_config = config.global_config.model_copy(update={"seed": args.seed})
        config = config.model_copy(update={"global_config": global_config})
    bootstrap(config.global_config)
    return SUCCESS, config, logger


def _read_corpus_texts(corpus: Path) -> list[str]:
    from loralab.data.corpus.core import decode_corpus_bytes
    from loralab.training.scheduler.core import read_corpus_path

    return [decode_corpus_bytes(data) for data in read_corpus_path(corpus)]


def handle_tokenizer(args: argparse.Namespace) -> int:
    """Train the byte-level BPE tokenizer on a corpus and write tokenizer.json."""
    exit_code, config, logger = _load_and_bootstrap(args, "tokenizer")
    if exit_code != SUCCESS:
        return exit_code
    assert config is not None

    if args.corpus is None or args.output is None:
        logger.error("--corpus and --output are required", extra={"command": "tokenizer"})
        return USER_ERROR

    try:
        texts = _read_corpus_texts(Path(args.corpus))
        if args.dry_run:
            logger.info(
                "Dry run, would train tokenizer",
                extra={"inputs": len(texts), "vocab_size": config.tokenizer.vocab_size},
            )
            return SUCCESS

        from loralab.tokenizer.core import save_tokenizer, tokenizer_fingerprint, train_tokenizer

        tokenizer = train_tokenizer(config.tokenizer, iter(texts))
        path = save_tokenizer(tokenizer, Path(args.output))
        logger.info(
            "Tokenizer written",
            extra={
                "path": str(path),
                "vocab_size": tokenizer.get_vocab_size(),
                "fingerprint": tokenizer_fingerprint(tokenizer)[:12],
            },
        )
        return SUCCESS

    except FileNotFoundError as err:
        logger.error("Corpus not found", extra={"error": str(err)})
        return USER_ERROR
    except LoraLabError as err:
        logger.error("Corpus rejected", extra={"error_kind": err.kind, "error": str(err)})
        return VALIDATION_ERROR
    except Exception as err:
        logger.error("Tokenizer training failed", extra={"error": str(err)}, exc_info=True)
        return RUNTIME_ERROR


def handle_train(args: argparse.Namespace) -> int:
    """Run one fine-tuning job through the background scheduler and log its events."""
    exit_code, config, logger = _load_and_bootstrap(args, "train")
    if exit_code != SUCCESS:
        return exit_code
    assert config is not None

    if args.corpus is None:
        logger.error("--corpus is required", extra={"command": "train"})
        return USER_ERROR

    try:
        run_config = RunConfig(
            corpus_path=args.corpus,
            mode=args.mode,
            export_path=args.export,
            rank_strategy=args.rank_strategy,
            seed=args.seed,
        )
    except ValueError as err:
        logger.error("Invalid run settings", extra={"error": str(err)})
        return USER_ERROR

    try:
        from loralab.tokenizer.core import load_tokenizer, train_tokenizer
        from loralab.training.scheduler.core import TrainingScheduler
        from loralab.training.scheduler.protocol import TERMINAL_EVENTS, Completed

        tokenizer_path = args.tokenizer or config.corpus.tokenizer_path
        if tokenizer_path is not None:
            tokenizer = load_tokenizer(Path(tokenizer_path))
        else:
            logger.warning(
                "No tokenizer configured, training one on the corpus",
                extra={"vocab_size": config.tokenizer.vocab_size},
            )
            tokenizer = train_tokenizer(config.tokenizer, iter(_read_corpus_texts(Path(args.corpus))))

        if args.dry_run:
            logger.info(
                "Dry run, would start training",
                extra={
                    "mode": run_config.mode or config.train.mode,
                    "capacity": config.packing.capacity,
                    "epochs": config.train.epochs,
                    "max_steps": config.train.max_steps,
                },
            )
            return SUCCESS

        with TrainingScheduler(config, tokenizer) as scheduler:
            scheduler.start(run_config)
            while True:
                event = scheduler.next_event(timeout=1.0)
                if event is None:
                    continue
                logger.info("Scheduler event", extra={"event": event.kind, **_event_fields(event)})
                if isinstance(event, TERMINAL_EVENTS):
                    return SUCCESS if isinstance(event, Completed) else RUNTIME_ERROR

    except FileNotFoundError as err:
        logger.error("Input not found", extra={"error": str(err)})
        return USER_ERROR
    except LoraLabError as err:
        logger.error("Run rejected", extra={"error_kind": err.kind, "error": str(err)})
        return VALIDATION_ERROR
    except Exception as err:
        logger.error("Training failed", extra={"error": str(err)}, exc_info=True)
        return RUNTIME_ERROR


def _event_fields(event: object) -> dict[str, object]:
    from dataclasses import asdict

    fields = asdict(event)  # type: ignore[arg-type]
    fields.pop("kind", None)
    # LogRecord reserves "message".
    if "message" in fields:
        fields["detail"] = fields.pop("message")
    return fields


def handle_info(args: argparse.Namespace) -> int:
    """Display the environment and the hardware capability report."""
    logger = get_logger("loralab.cli.info", log_level=args.log_level)

    from loralab import __version__
    from loralab.runtime.environment import get_system_info
    from loralab.runtime.hardware import detect_hardware

    system_info = get_system_info()
    hardware = detect_hardware()

    logger.info(
        "System information",
        extra={
            "loralab_version": __version__,
            "python_version": system_info.python_version,
            "torch_version": system_info.torch_version,
            "platform": system_info.platform,
            "architecture": system_info.architecture,
            "config": args.config,
        },
    )
    logger.info(
        "Hardware report",
        extra={
            "gpu_available": hardware.gpu_available,
            "backend": hardware.backend,
            "device_name": hardware.device_name,
            "total_memory_mb": round(hardware.total_memory_mb, 1),
            "available_memory_mb": round(hardware.available_memory_mb, 1),
            "graph_capture": hardware.supports_graph_capture(),
        },
    )
    return SUCCESS
