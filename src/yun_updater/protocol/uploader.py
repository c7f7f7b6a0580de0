"""
Serial-bridge agent upload.

Installs the YunSerialTerminal sketch on the board's ATmega32U4 with
avrdude so the Atheros console becomes reachable over USB serial.
"""

import logging
import subprocess
import threading
import time
from functools import partial
from pathlib import Path
from typing import Callable, IO, List, Optional, Sequence

from .ports import PortTracker, touch
from ..core.config import UpdaterConfig

logger = logging.getLogger(__name__)


class UploadError(Exception):
    """The programmer could not be started or reported failure"""
    pass


def build_programmer_args(port: str, config: UpdaterConfig) -> List[str]:
    """Build the avrdude argument list for flashing the agent sketch."""
    base_dir = Path(config.base_dir)
    programmer = config.programmer
    hex_file = programmer.hex_file(base_dir)
    return [
        f"-C{programmer.conf_file(base_dir)}",
        "-v",
        f"-p{programmer.part}",
        f"-c{programmer.protocol}",
        f"-P{port}",
        f"-b{config.serial.upload_baud}",
        "-D",
        f"-Uflash:w:{hex_file}:i",
    ]


def _drain(stream: IO[str], label: str) -> None:
    for line in stream:
        logger.debug(f"[{label}] {line.rstrip()}")
    stream.close()


def run_programmer(binary: str, args: Sequence[str]) -> None:
    """
    Run the programmer, draining stdout and stderr into the debug log.

    Success is decided by the exit status alone.

    Raises:
        UploadError: If the binary cannot be spawned or exits non-zero
    """
    # Quotes sometimes sneak in from config files
    binary = binary.replace('"', "")
    args = [arg.replace('"', "") for arg in args]

    logger.info(f"Flashing with command: {binary} {' '.join(args)}")
    try:
        proc = subprocess.Popen(
            [binary, *args],
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
            text=True,
            errors="replace",
        )
    except OSError as e:
        raise UploadError(f"Cannot start programmer {binary}: {e}") from e

    drains = [
        threading.Thread(target=_drain, args=(proc.stdout, "stdout"), daemon=True),
        threading.Thread(target=_drain, args=(proc.stderr, "stderr"), daemon=True),
    ]
    for thread in drains:
        thread.start()

    returncode = proc.wait()
    for thread in drains:
        thread.join(timeout=1.0)

    if returncode != 0:
        raise UploadError(f"Executing command: {binary} exited with status {returncode}")


class AgentUploader:
    """
    Reset the board, upload the serial-bridge agent and find its port again.

    Example:
        uploader = AgentUploader(config)
        port = uploader.upload("/dev/ttyACM0")
    """

    def __init__(
        self,
        config: UpdaterConfig,
        tracker: Optional[PortTracker] = None,
        runner: Callable[[str, Sequence[str]], None] = run_programmer,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.config = config
        self.tracker = tracker or PortTracker(toucher=partial(touch, baudrate=config.serial.touch_baud))
        self.runner = runner
        self.sleep = sleep

    def upload(self, port: str) -> str:
        """
        Install the agent and return the (possibly renamed) port.

        Raises:
            UploadError: If the programmer fails
            PortListError: If the port list cannot be read
        """
        port = self.tracker.reset(port, wait=True, timeout=self.config.reset_timeout)
        self.sleep(self.config.delays.after_touch)

        binary = self.config.programmer.binary(Path(self.config.base_dir))
        self.runner(str(binary), build_programmer_args(port, self.config))

        # Leaving the bootloader renumbers the port again
        ports = self.tracker.snapshot()
        port = self.tracker.watch(ports, port, self.config.upload_reset_timeout)
        logger.info(f"Serial-bridge agent running on {port}")
        return port
