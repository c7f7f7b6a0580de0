"""
Yun Updater - unattended firmware upgrade for Arduino Yun boards

Drives the U-Boot console over the USB serial bridge while serving the
firmware images over TFTP.
"""

__version__ = "0.1.0"

from yun_updater.protocol import ConsoleSession, FlashOrchestrator
from yun_updater.core.actions import UpdateOptions, update_board

__all__ = [
    "ConsoleSession",
    "FlashOrchestrator",
    "UpdateOptions",
    "update_board",
    "__version__",
]
