# Author : Eshan Roy <eshanized@proton.me>
# SPDX-License-Identifier: MIT

"""
CLI entrypoint for loralab.

Every operation is a subcommand of ``loralab``. The global options
(--config, --log-level, --dry-run, --seed) are inherited by every
subcommand through argparse's parent parser mechanism.

Usage:
    loralab info
    loralab tokenizer --corpus notes/ --output tokenizer.json
    loralab train --config configs/default.yaml --corpus notes/ --mode adapter --export adapter.safetensors
"""

import argparse
import sys

from loralab.cli.commands import handle_info, handle_tokenizer, handle_train
from loralab.cli.exit_codes import USER_ERROR


def _build_global_parser() -> argparse.ArgumentParser:
    """Parent parser with the options every subcommand shares; add_help=False avoids clashing -h."""
    parent = argparse.ArgumentParser(add_help=False)
    parent.add_argument(
        "--config",
        type=str,
        default=None,
        help="Path to YAML configuration file.",
    )
    parent.add_argument(
        "--log-level",
        type=str,
        default="INFO",
        dest="log_level",
        choices=["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"],
        help="Set the logging verbosity level.",
    )
    parent.add_argument(
        "--dry-run",
        action="store_true",
        default=False,
        dest="dry_run",
        help="Validate inputs and report what would run, without training.",
    )
    parent.add_argument(
        "--seed",
        type=int,
        default=None,
        help="Override the random seed (takes precedence over config).",
    )
    return parent


def _register_subcommands(
    subparsers: argparse._SubParsersAction,  # type: ignore[type-arg]
    parent: argparse.ArgumentParser,
) -> None:
    train_parser = subparsers.add_parser("train", parents=[parent], help="Fine-tune on a corpus.")
    train_parser.add_argument("--corpus", type=str, default=None, help="Text file or directory of .txt files.")
    train_parser.add_argument("--mode", type=str, default=None, choices=["adapter", "full"])
    train_parser.add_argument(
        "--rank-strategy",
        type=str,
        default=None,
        choices=["fixed", "progressive", "adaptive", "hardware_aware"],
        help="LoRA rank policy for adapter runs.",
    )
    train_parser.add_argument("--export", type=str, default=None, help="Write final weights here.")
    train_parser.add_argument("--tokenizer", type=str, default=None, help="Path to tokenizer.json.")
    train_parser.set_defaults(func=handle_train)

    tokenizer_parser = subparsers.add_parser(
        "tokenizer", parents=[parent], help="Train the byte-level BPE tokenizer."
    )
    tokenizer_parser.add_argument("--corpus", type=str, default=None)
    tokenizer_parser.add_argument("--output", type=str, default=None)
    tokenizer_parser.set_defaults(func=handle_tokenizer)

    info_parser = subparsers.add_parser("info", parents=[parent], help="Display environment and hardware info.")
    info_parser.set_defaults(func=handle_info)


def main() -> None:
    """Entry point for ``[project.scripts]``. No subcommand prints help and exits with USER_ERROR."""
    parent = _build_global_parser()

    root_parser = argparse.ArgumentParser(
        prog="loralab",
        description="loralab: on-device LoRA and full fine-tuning.",
        parents=[parent],
    )
    subparsers = root_parser.add_subparsers(dest="command")
    _register_subcommands(subparsers, parent)

    args = root_parser.parse_args()

    if not hasattr(args, "func") or args.func is None:
        root_parser.print_help()
        sys.exit(USER_ERROR)

    exit_code = args.func(args)
    sys.exit(exit_code)


if __name__ == "__main__":
    main()
