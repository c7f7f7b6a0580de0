"""
Serial port reset and re-enumeration tracking.

Touching the board's USB serial port at 1200 baud reboots the
microcontroller into its bootloader, which makes the OS drop the port and
enumerate it again, possibly under a different name. The helpers here
issue that reset and watch the port list until the board comes back.
"""

import logging
import threading
import time
from collections import Counter
from typing import Callable, List, Optional, Sequence

try:
    import serial
    import serial.tools.list_ports
except ImportError:
    raise ImportError("PySerial required: pip install pyserial")

logger = logging.getLogger(__name__)

TOUCH_BAUD_RATE = 1200
POLL_INTERVAL = 0.1


class PortListError(Exception):
    """The OS serial port list could not be read"""
    pass


def list_ports() -> List[str]:
    """
    Return the device names of all serial ports.

    Raises:
        PortListError: If enumeration fails
    """
    try:
        return [p.device for p in serial.tools.list_ports.comports()]
    except (OSError, serial.SerialException) as e:
        raise PortListError(f"Cannot list serial ports: {e}") from e


def differ(first: Sequence[str], second: Sequence[str]) -> str:
    """
    Return a port name present in exactly one of the two lists.

    Occurrences are counted across both lists and the first name seen
    whose total count is 1 is returned, or "" when there is none.
    """
    counts = Counter(first)
    counts.update(second)
    for name, count in counts.items():
        if count == 1:
            return name
    return ""


def _safe_list(lister: Callable[[], List[str]]) -> Optional[List[str]]:
    try:
        return lister()
    except PortListError as e:
        logger.debug(f"Port list failed while polling: {e}")
        return None


def wait_for_change(
    before: Sequence[str],
    original_port: str,
    timeout: float,
    lister: Callable[[], List[str]] = list_ports,
    poll_interval: float = POLL_INTERVAL,
    settle: float = 0.5,
) -> str:
    """
    Watch the port list until a port disappears and then reappears.

    Meant to be called just after a reset. A one-shot timer flags the
    timeout; both phases stop when it fires.

    Args:
        before: Port list captured before the reset
        original_port: Port name to fall back to
        timeout: Seconds before giving up on both phases
        lister: Returns the current port list
        poll_interval: Seconds between polls
        settle: Pause after the port reappears

    Returns:
        The reappeared port name, or ``original_port`` if no change was
        observed.
    """
    expired = threading.Event()
    timer = threading.Timer(timeout, expired.set)
    timer.daemon = True
    timer.start()

    port = ""

    logger.info("Wait for the port to disappear")
    while True:
        ports = _safe_list(lister)
        if ports is not None:
            port = differ(ports, before)
            if port:
                logger.debug(f"Port {port} went away")
                break
        if expired.is_set():
            logger.debug(f"No port change observed, ports: {ports}")
            break
        time.sleep(poll_interval)

    logger.info("Wait for the port to reappear")
    after = _safe_list(lister)
    if after is None:
        after = list(before)
    port = ""
    while True:
        ports = _safe_list(lister)
        if ports is not None:
            port = differ(ports, after)
            if port:
                logger.info(f"Found upload port: {port}")
                time.sleep(settle)
                break
        if expired.is_set():
            break
        time.sleep(poll_interval)

    if not port:
        logger.warning(f"Port did not re-enumerate, keeping {original_port}")
        port = original_port

    return port


def touch(port: str, baudrate: int = TOUCH_BAUD_RATE, serial_factory=None) -> bool:
    """
    Open the port at 1200 baud and drop DTR to reboot the board.

    The touch is best-effort: some boards are already in the right mode and
    refuse the open.

    Returns:
        True if the port was opened and DTR dropped
    """
    factory = serial_factory or serial.Serial
    try:
        p = factory(port=port, baudrate=baudrate)
    except (serial.SerialException, OSError) as e:
        logger.warning(f"1200bps touch: cannot open port {port}: {e}")
        return False
    try:
        p.dtr = False
        # Wait a bit to allow restart of the board
        time.sleep(0.2)
        return True
    except (serial.SerialException, OSError) as e:
        logger.warning(f"1200bps touch: cannot set DTR on {port}: {e}")
        return False
    finally:
        p.close()


class PortTracker:
    """
    Reset a board and follow it across re-enumeration.

    Example:
        tracker = PortTracker()
        port = tracker.reset("/dev/ttyACM0")
    """

    def __init__(
        self,
        lister: Callable[[], List[str]] = list_ports,
        toucher: Callable[[str], bool] = touch,
        poll_interval: float = POLL_INTERVAL,
        settle: float = 0.5,
    ):
        self.lister = lister
        self.toucher = toucher
        self.poll_interval = poll_interval
        self.settle = settle

    def snapshot(self) -> List[str]:
        return self.lister()

    def watch(self, before: Sequence[str], original_port: str, timeout: float) -> str:
        return wait_for_change(
            before,
            original_port,
            timeout,
            lister=self.lister,
            poll_interval=self.poll_interval,
            settle=self.settle,
        )

    def reset(self, port: str, wait: bool = True, timeout: float = 10.0) -> str:
        """
        Touch the port at 1200 baud and return the port name afterwards.

        Raises:
            PortListError: If the port list before the reset cannot be read
        """
        logger.info("Restarting in bootloader mode")
        before = self.snapshot()
        self.toucher(port)
        if wait:
            port = self.watch(before, port, timeout)
        return port
