"""
Board registry for the Yun updater.

Provides a single source of truth for:
- USB identities of boards the updater can drive
- Boot-loader dialects and the banner patterns that identify them
- Fixed names of the post-upgrade boot-loader (shell name, stop keyword)

Usage:
    from yun_updater.models import (
        is_supported, Dialect, DIALECT_PATTERNS, dialect_for_index
    )

    if is_supported(port_info.vid, port_info.pid):
        ...
"""

from dataclasses import dataclass
from enum import Enum
from typing import Optional, Tuple


class Dialect(Enum):
    """Boot-loader console dialect, inferred from the autoboot banner."""
    KEYWORD = "keyword"              # "... (stop with 'ard')"
    LEGACY = "legacy"                # "Hit any key to stop autoboot"
    ENTER_CONSOLE = "enter_console"  # "type 'yun' to enter u-boot console"


@dataclass(frozen=True)
class UsbIdentity:
    """USB vendor/product pair of a supported board (lowercase hex)."""
    vid: str
    pid: str

    def matches(self, vid: Optional[str], pid: Optional[str]) -> bool:
        if vid is None or pid is None:
            return False
        return self.vid == vid.lower() and self.pid == pid.lower()


# Arduino LLC and Arduino SRL, bootloader and sketch PIDs
SUPPORTED_USB_IDS: Tuple[UsbIdentity, ...] = (
    UsbIdentity("2341", "8041"),
    UsbIdentity("2341", "0041"),
    UsbIdentity("2a03", "8041"),
    UsbIdentity("2a03", "0041"),
)

# Each alternative declares the named group it populates. LEGACY has none.
DIALECT_PATTERNS: Tuple[Tuple[Dialect, str], ...] = (
    (Dialect.KEYWORD, r"stop with '(?P<stop>[a-z]+)'"),
    (Dialect.LEGACY, r"Hit any key to stop autoboot"),
    (Dialect.ENTER_CONSOLE, r"type '(?P<stop>[a-z]+)' to enter u-boot console"),
)

# The boot-loader shipped with the upgrade always uses these
EXPECTED_SHELL = "arduino"
EXPECTED_STOP_KEYWORD = "ard"

DEFAULT_BOARD = "Yun"


def is_supported(vid: Optional[str], pid: Optional[str]) -> bool:
    """Return True if the USB identity belongs to an updatable board."""
    return any(identity.matches(vid, pid) for identity in SUPPORTED_USB_IDS)


def dialect_patterns() -> Tuple[str, ...]:
    """Return the dialect banner patterns in match-priority order."""
    return tuple(pattern for _, pattern in DIALECT_PATTERNS)


def dialect_for_index(index: int) -> Dialect:
    """Map the index of a matched banner pattern back to its dialect."""
    return DIALECT_PATTERNS[index][0]
