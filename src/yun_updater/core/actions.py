"""
Core workflow actions for the Yun updater.

This module exposes the end-to-end update as one function the CLI calls.
Collaborators are injectable so the workflow can run against simulated
hardware.
"""

import logging
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Optional

from .config import UpdaterConfig
from .results import OperationResult
from ..addressing import AddressAllocationError, AddressAllocator
from ..devices import DeviceNotFoundError, find_board_port
from ..models import DEFAULT_BOARD, FirmwareImage, SessionContext
from ..protocol.console import ConsoleSession, ConsoleTransportError
from ..protocol.orchestrator import FlashOrchestrator, FlashOutcome
from ..protocol.ports import PortListError
from ..protocol.retry import RetryPolicy, run_with_retries
from ..protocol.uploader import AgentUploader, UploadError
from ..tftp_server import FirmwareServer, FirmwareServerError

logger = logging.getLogger(__name__)


class _ListLogHandler(logging.Handler):
    """Capture log records into lists of formatted strings."""

    def __init__(self, level: int = logging.INFO) -> None:
        super().__init__(level)
        self.records = []
        self.warnings = []
        self.setFormatter(logging.Formatter("%(levelname)s %(name)s: %(message)s"))

    def emit(self, record: logging.LogRecord) -> None:
        self.records.append(self.format(record))
        if record.levelno == logging.WARNING:
            self.warnings.append(record.getMessage())


@contextmanager
def _capture_logs(logger_name: str = "yun_updater"):
    """Capture logs for core operations."""
    target_logger = logging.getLogger(logger_name)
    handler = _ListLogHandler()
    previous_level = target_logger.level
    if previous_level in (logging.NOTSET, logging.WARNING, logging.ERROR, logging.CRITICAL):
        target_logger.setLevel(logging.INFO)
    target_logger.addHandler(handler)
    try:
        yield handler
    finally:
        target_logger.removeHandler(handler)
        target_logger.setLevel(previous_level)


@dataclass
class UpdateOptions:
    """
    Operator choices for one update run.

    Attributes:
        legacy: Very old board; skip dialect detection
        flash_bootloader: Replace the boot-loader even if it looks current
        board: Board name persisted in the boot-loader environment
        port: Serial port to use instead of USB discovery
    """
    legacy: bool = False
    flash_bootloader: bool = False
    board: str = DEFAULT_BOARD
    port: Optional[str] = None


def load_images(config: UpdaterConfig):
    """
    Read size metadata of both firmware images.

    Raises:
        FileNotFoundError: If an image is missing from the TFTP root
    """
    root = config.firmware_path
    bootloader = FirmwareImage.from_path(root / config.bootloader_image)
    sysupgrade = FirmwareImage.from_path(root / config.sysupgrade_image)
    return bootloader, sysupgrade


def update_board(
    options: UpdateOptions,
    config: Optional[UpdaterConfig] = None,
    allocator: Optional[Callable] = None,
    uploader: Optional[AgentUploader] = None,
    session_factory: Callable[..., ConsoleSession] = ConsoleSession,
    port_finder: Callable = find_board_port,
    server: Optional[FirmwareServer] = None,
) -> OperationResult:
    """
    Run the full update: TFTP server, addresses, agent upload, console flash.

    Args:
        options: Operator choices
        config: Updater configuration (defaults if omitted)
        allocator: (previous server) -> (server, device) addresses
        uploader: Agent uploader (default AgentUploader(config))
        session_factory: Builds a ConsoleSession for a port
        port_finder: Returns the PortInfo of the board
        server: Already running TFTP server; one is started if omitted

    Returns:
        OperationResult; ``ok`` is True once the kernel boots
    """
    config = config or UpdaterConfig()
    allocator = allocator or AddressAllocator(config.probe_port, config.probe_timeout)
    uploader = uploader or AgentUploader(config)
    result = OperationResult(ok=False, operation="update", board=options.board)
    own_server = server is None

    with _capture_logs() as captured:
        try:
            bootloader, sysupgrade = load_images(config)
            if own_server:
                server = FirmwareServer(config.firmware_path, port=config.tftp_port).start()

            server_address, device_address = allocator(None)

            if options.port:
                port = options.port
            else:
                port = port_finder().device
            port = uploader.upload(port)
            result.port = port

            context = SessionContext(
                server_address=server_address,
                device_address=device_address,
                bootloader_image=bootloader,
                main_image=sysupgrade,
                flash_bootloader=options.flash_bootloader,
                target_board=options.board,
                legacy=options.legacy,
            )

            attempts = 0

            def run_attempt(ctx: SessionContext) -> FlashOutcome:
                nonlocal attempts
                attempts += 1
                try:
                    with session_factory(
                        port,
                        baudrate=config.serial.agent_baud,
                        timeout=config.timeouts.stop_autoboot,
                    ) as console:
                        return FlashOrchestrator(console, config).run(ctx)
                except ConsoleTransportError as e:
                    logger.error(f"Console on {port} failed: {e}")
                    return FlashOutcome(ok=False, output=e.output, error=e, stage="open")

            outcome = run_with_retries(
                run_attempt,
                context,
                allocator,
                max_attempts=config.max_attempts,
                policy=RetryPolicy(signatures=config.retry_on),
            )

            result.attempts = attempts
            result.server_address = context.server_address
            result.device_address = context.device_address
            result.stage = outcome.stage
            result.output = outcome.output
            result.metadata.update({
                "dialect": outcome.dialect.value if outcome.dialect else None,
                "stop_command": outcome.stop_command,
                "shell": outcome.shell_name,
                "bootloader_flashed": "bootloader_restart" in outcome.completed,
                "completed": outcome.completed,
            })
            result.ok = outcome.ok
            if outcome.ok:
                logger.info(f"All done! Enjoy your updated {options.board}")
            else:
                result.add_error(str(outcome.error))

        except (
            FileNotFoundError,
            FirmwareServerError,
            AddressAllocationError,
            DeviceNotFoundError,
            PortListError,
            UploadError,
        ) as e:
            logger.error(str(e))
            result.add_error(str(e))
        finally:
            if own_server and server is not None:
                server.stop()

    result.logs = list(captured.records)
    result.warnings.extend(captured.warnings)
    return result
