# Author : Eshan Roy <eshanized@proton.me>
# SPDX-License-Identifier: MIT

"""
Exceptions for loading and validating loralab configuration files.
"""


class ConfigError(Exception):
    """Base for all configuration errors."""


class ConfigLoadError(ConfigError):
    """The file is missing, unreadable, or not a YAML mapping."""


class ConfigValidationError(ConfigError):
    """
    The YAML parsed but does not satisfy the schema: a missing field, a
    wrong type, an out-of-range value, an unknown key, or a cross-field
    constraint such as an odd packing capacity.
    """
