# Author : Eshan Roy <eshanized@proton.me>
# SPDX-License-Identifier: MIT

"""
Config loader: YAML on disk to a validated, frozen ``LoraLabConfig``.

Read the file, parse it with ``yaml.safe_load``, hand the mapping to
pydantic. Any failure stops here with a ConfigError subclass; there are no
fallback defaults for a file that exists but is broken.
"""

from pathlib import Path
from typing import Any

import yaml
from pydantic import ValidationError

from loralab.config.exceptions import ConfigLoadError, ConfigValidationError
from loralab.config.schema import LoraLabConfig


def _read_yaml_file(config_path: Path) -> dict[str, Any]:
    """
    Parse a YAML file into a dict.

    Raises:
        ConfigLoadError: Missing file, unreadable file, bad YAML, or a
            document whose root is not a mapping.
    """
    if not config_path.exists():
        raise ConfigLoadError(f"Config file not found: {config_path}")

    if not config_path.is_file():
        raise ConfigLoadError(f"Config path is not a file: {config_path}")

    try:
        raw_text = config_path.read_text(encoding="utf-8")
    except OSError as err:
        raise ConfigLoadError(f"Cannot read config file {config_path}: {err}") from err

    try:
        parsed = yaml.safe_load(raw_text)
    except yaml.YAMLError as err:
        raise ConfigLoadError(f"Invalid YAML in {config_path}: {err}") from err

    if not isinstance(parsed, dict):
        raise ConfigLoadError(
            f"Config file must contain a YAML mapping (dict), got {type(parsed).__name__}"
        )

    return parsed


def parse_config(raw_data: dict[str, Any], source: str = "<mapping>") -> LoraLabConfig:
    """
    Validate an already-parsed mapping.

    Raises:
        ConfigValidationError: Schema or cross-field violations.
    """
    try:
        return LoraLabConfig.model_validate(raw_data)
    except ValidationError as err:
        raise ConfigValidationError(f"Config validation failed for {source}:\n{err}") from err


def load_config(config_path: Path) -> LoraLabConfig:
    """
    Load, validate, and freeze a config file.

    Args:
        config_path: Path to a YAML config file.

    Returns:
        A validated, immutable LoraLabConfig.

    Raises:
        ConfigLoadError: File I/O or YAML parse failures.
        ConfigValidationError: Schema violations.
    """
    raw_data = _read_yaml_file(config_path)
    return parse_config(raw_data, source=str(config_path))
