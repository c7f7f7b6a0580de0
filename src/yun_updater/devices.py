"""Serial device discovery by USB identity."""

import logging
from dataclasses import dataclass
from typing import Callable, Iterable, List, Optional

try:
    import serial.tools.list_ports
except ImportError:
    raise ImportError("PySerial required: pip install pyserial")

from .models import is_supported

logger = logging.getLogger(__name__)


class DeviceNotFoundError(Exception):
    """No serial port belongs to a supported board"""
    pass


@dataclass(frozen=True)
class PortInfo:
    """Serial port with its USB identity (None for non-USB ports)."""
    device: str
    description: str = ""
    vid: Optional[str] = None
    pid: Optional[str] = None
    serial_number: Optional[str] = None

    @property
    def is_usb(self) -> bool:
        return self.vid is not None

    @property
    def usb_id(self) -> str:
        if not self.is_usb:
            return "-"
        return f"{self.vid}:{self.pid}"


def detailed_ports() -> List[PortInfo]:
    """List serial ports with USB details from pyserial."""
    ports = []
    for p in serial.tools.list_ports.comports():
        ports.append(
            PortInfo(
                device=p.device,
                description=p.description or "",
                vid=f"{p.vid:04x}" if p.vid is not None else None,
                pid=f"{p.pid:04x}" if p.pid is not None else None,
                serial_number=p.serial_number,
            )
        )
    return ports


def can_use(port: PortInfo) -> bool:
    """Return True if the port belongs to an updatable board."""
    return port.is_usb and is_supported(port.vid, port.pid)


def find_board_port(
    ports: Optional[Iterable[PortInfo]] = None,
    lister: Callable[[], List[PortInfo]] = detailed_ports,
) -> PortInfo:
    """
    Find the first serial port of a supported board.

    Raises:
        DeviceNotFoundError: If no port is found or none is suitable
    """
    candidates = list(lister() if ports is None else ports)
    if not candidates:
        raise DeviceNotFoundError("No serial ports found!")

    for port in candidates:
        if not port.is_usb:
            continue
        logger.info(f"Found port: {port.device}")
        logger.info(f"USB ID     {port.usb_id}")
        logger.info(f"USB serial {port.serial_number or '-'}")
        if can_use(port):
            logger.info("Using it")
            return port

    raise DeviceNotFoundError("No serial port suitable for updating")
