"""
Standardized warning and message system for the Yun updater.

Provides structured warning items with stable codes so the CLI can show the
operator what went wrong and what to do about it.
"""

from dataclasses import dataclass
from enum import Enum
from typing import List, Dict, Any


class MessageLevel(Enum):
    """Severity level for messages."""
    INFO = "info"
    WARN = "warn"
    ERROR = "error"


# Standard warning codes for known conditions
class WarningCode(Enum):
    """Stable warning codes for known conditions."""
    # Device warnings
    W_DEVICE_NOT_FOUND = "W_DEVICE_NOT_FOUND"
    W_PORT_UNCHANGED = "W_PORT_UNCHANGED"
    W_UPLOAD_FAILED = "W_UPLOAD_FAILED"

    # Console warnings
    W_REBOOT_MANUAL = "W_REBOOT_MANUAL"
    W_CONSOLE_TIMEOUT = "W_CONSOLE_TIMEOUT"
    W_SERIAL_ERROR = "W_SERIAL_ERROR"
    W_BOOTLOADER_OUTDATED = "W_BOOTLOADER_OUTDATED"

    # Verification warnings
    W_SIZE_MISMATCH = "W_SIZE_MISMATCH"
    W_ENV_MISMATCH = "W_ENV_MISMATCH"

    # Network warnings
    W_NETWORK = "W_NETWORK"
    W_TFTP_BIND = "W_TFTP_BIND"

    # Generic
    W_UNKNOWN = "W_UNKNOWN"


# Default remediation hints for each warning code
WARNING_REMEDIATIONS: Dict[WarningCode, str] = {
    WarningCode.W_DEVICE_NOT_FOUND:
        "Check the USB cable, then run 'ports' to list available serial ports.",
    WarningCode.W_PORT_UNCHANGED:
        "The board did not re-enumerate; continuing on the known port.",
    WarningCode.W_UPLOAD_FAILED:
        "Check the avr/ folder (avrdude binary, avrdude.conf, agent hex file).",
    WarningCode.W_REBOOT_MANUAL:
        "Reboot the board using the YUN RST button.",
    WarningCode.W_CONSOLE_TIMEOUT:
        "Check the Ethernet cable and that nothing blocks TFTP (UDP 69) on this host.",
    WarningCode.W_SERIAL_ERROR:
        "Close other serial apps (Arduino IDE serial monitor). Check USB driver.",
    WarningCode.W_BOOTLOADER_OUTDATED:
        "The boot-loader was replaced as part of the update.",
    WarningCode.W_SIZE_MISMATCH:
        "The image arrived truncated. Check the network link and retry.",
    WarningCode.W_ENV_MISMATCH:
        "The boot-loader did not keep a setting. Power-cycle the board and retry.",
    WarningCode.W_NETWORK:
        "Connect this computer and the board to the same wired network.",
    WarningCode.W_TFTP_BIND:
        "Run as administrator and stop any other TFTP server.",
    WarningCode.W_UNKNOWN:
        "Check logs for more details.",
}


@dataclass
class WarningItem:
    """
    Structured warning message with stable code.

    Attributes:
        level: Severity (INFO, WARN, ERROR)
        code: Stable warning code for programmatic handling
        title: Short, user-facing title
        detail: Longer explanation of the issue
        remediation: Suggested action to resolve the issue
    """
    level: MessageLevel
    code: WarningCode
    title: str
    detail: str = ""
    remediation: str = ""

    def __post_init__(self):
        """Set default remediation if not provided."""
        if not self.remediation and self.code in WARNING_REMEDIATIONS:
            self.remediation = WARNING_REMEDIATIONS[self.code]

    @classmethod
    def info(cls, code: WarningCode, title: str, detail: str = "") -> "WarningItem":
        """Create an INFO-level warning."""
        return cls(MessageLevel.INFO, code, title, detail)

    @classmethod
    def warn(cls, code: WarningCode, title: str, detail: str = "") -> "WarningItem":
        """Create a WARN-level warning."""
        return cls(MessageLevel.WARN, code, title, detail)

    @classmethod
    def error(cls, code: WarningCode, title: str, detail: str = "") -> "WarningItem":
        """Create an ERROR-level warning."""
        return cls(MessageLevel.ERROR, code, title, detail)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for JSON/display."""
        return {
            "level": self.level.value,
            "code": self.code.value,
            "title": self.title,
            "detail": self.detail,
            "remediation": self.remediation,
        }


def classify(message: str) -> WarningCode:
    """Guess the warning code of a plain message."""
    msg = message.lower()
    if "bytes, expected" in msg:
        return WarningCode.W_SIZE_MISMATCH
    if "reads back as" in msg:
        return WarningCode.W_ENV_MISMATCH
    if "timed out" in msg or "timeout" in msg:
        return WarningCode.W_CONSOLE_TIMEOUT
    if "rst button" in msg or "reboot the board" in msg:
        return WarningCode.W_REBOOT_MANUAL
    if "did not re-enumerate" in msg:
        return WarningCode.W_PORT_UNCHANGED
    if "boot-loader is outdated" in msg:
        return WarningCode.W_BOOTLOADER_OUTDATED
    if "serial port" in msg and ("no " in msg or "suitable" in msg):
        return WarningCode.W_DEVICE_NOT_FOUND
    if "programmer" in msg or "executing command" in msg:
        return WarningCode.W_UPLOAD_FAILED
    if "tftp server" in msg:
        return WarningCode.W_TFTP_BIND
    if "connected to the network" in msg or "no free address" in msg:
        return WarningCode.W_NETWORK
    if "port" in msg and ("open" in msg or "write error" in msg or "read error" in msg):
        return WarningCode.W_SERIAL_ERROR
    return WarningCode.W_UNKNOWN


def warnings_from_strings(
    warning_strings: List[str],
    default_level: MessageLevel = MessageLevel.WARN,
) -> List[WarningItem]:
    """
    Convert plain warning strings to WarningItem list.

    Args:
        warning_strings: List of plain warning message strings
        default_level: Default severity level

    Returns:
        List of WarningItem objects
    """
    return [WarningItem(default_level, classify(msg), msg) for msg in warning_strings]


def result_to_warnings(result: "OperationResult") -> List[WarningItem]:
    """
    Convert Result object's warnings and errors to WarningItem list.

    Args:
        result: OperationResult from core operations

    Returns:
        List of WarningItem objects
    """
    items = warnings_from_strings(result.warnings, MessageLevel.WARN)
    items.extend(warnings_from_strings(result.errors, MessageLevel.ERROR))
    return items
