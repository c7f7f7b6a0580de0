"""Board registry and session data model."""

from .registry import (
    Dialect,
    UsbIdentity,
    SUPPORTED_USB_IDS,
    DIALECT_PATTERNS,
    EXPECTED_SHELL,
    EXPECTED_STOP_KEYWORD,
    DEFAULT_BOARD,
    is_supported,
    dialect_patterns,
    dialect_for_index,
)
from .session import FirmwareImage, SessionContext

__all__ = [
    # Registry
    "Dialect",
    "UsbIdentity",
    "SUPPORTED_USB_IDS",
    "DIALECT_PATTERNS",
    "EXPECTED_SHELL",
    "EXPECTED_STOP_KEYWORD",
    "DEFAULT_BOARD",
    "is_supported",
    "dialect_patterns",
    "dialect_for_index",
    # Session
    "FirmwareImage",
    "SessionContext",
]
