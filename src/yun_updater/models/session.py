"""Firmware image metadata and the per-run session context."""

from dataclasses import dataclass
from pathlib import Path
from typing import Union

from .registry import DEFAULT_BOARD


@dataclass(frozen=True)
class FirmwareImage:
    """
    A firmware file served over TFTP.

    Attributes:
        name: File name as requested by the device
        size: Byte count; must match the "Bytes transferred" report
    """
    name: str
    size: int

    @classmethod
    def from_path(cls, path: Union[str, Path]) -> "FirmwareImage":
        """
        Load image metadata from a file on disk.

        Raises:
            FileNotFoundError: If the image does not exist
        """
        path = Path(path)
        if not path.is_file():
            raise FileNotFoundError(f"Firmware image not found: {path}")
        return cls(name=path.name, size=path.stat().st_size)


@dataclass
class SessionContext:
    """
    Mutable record shared across flash attempts.

    Only the retry controller writes to it between attempts; the
    orchestrator reads it.

    Attributes:
        server_address: Host address the device fetches images from
        device_address: Address assigned to the device
        flash_bootloader: Whether the boot-loader is replaced as well
        target_board: Value persisted in the "board" environment variable
        bootloader_image: Boot-loader image metadata
        main_image: Sysupgrade image metadata
        legacy: Skip dialect detection (very old boards)
    """
    server_address: str
    device_address: str
    bootloader_image: FirmwareImage
    main_image: FirmwareImage
    flash_bootloader: bool = False
    target_board: str = DEFAULT_BOARD
    legacy: bool = False
