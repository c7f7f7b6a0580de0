"""
Core module for the Yun updater.

This module provides the single source of truth for:
- Configuration and overrides (config.py)
- Address and size parsing (parsing.py)
- Result objects (results.py)
- Standardized warnings/messages (messages.py)

The end-to-end workflow lives in actions.py and is imported from there
directly.
"""

from .config import (
    ConfigError,
    UpdaterConfig,
    SerialPresets,
    StageTimeouts,
    SettleDelays,
    FlashLayout,
    ProgrammerConfig,
    load_config,
    config_from_dict,
)
from .parsing import parse_address, parse_baud, erase_length, format_hex
from .results import OperationResult
from .messages import (
    MessageLevel,
    WarningCode,
    WarningItem,
    warnings_from_strings,
    result_to_warnings,
)

__all__ = [
    # Config
    "ConfigError",
    "UpdaterConfig",
    "SerialPresets",
    "StageTimeouts",
    "SettleDelays",
    "FlashLayout",
    "ProgrammerConfig",
    "load_config",
    "config_from_dict",
    # Parsing
    "parse_address",
    "parse_baud",
    "erase_length",
    "format_hex",
    # Results
    "OperationResult",
    # Messages
    "MessageLevel",
    "WarningCode",
    "WarningItem",
    "warnings_from_strings",
    "result_to_warnings",
]
