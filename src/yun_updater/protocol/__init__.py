"""Board protocol layer - serial console, port tracking, agent upload, flashing."""

from .console import (
    ConsoleSession,
    ConsoleError,
    ConsoleTransportError,
    ConsoleClosed,
    ConsoleTimeout,
    VerificationMismatch,
    Send,
    Expect,
    ExpectMatch,
    TransactionResult,
)
from .ports import PortTracker, PortListError, differ, wait_for_change, touch, list_ports
from .uploader import AgentUploader, UploadError, build_programmer_args, run_programmer
from .orchestrator import FlashOrchestrator, FlashOutcome, Stage, STAGES
from .retry import RetryPolicy, run_with_retries

__all__ = [
    # Console transport
    "ConsoleSession",
    "ConsoleError",
    "ConsoleTransportError",
    "ConsoleClosed",
    "ConsoleTimeout",
    "VerificationMismatch",
    "Send",
    "Expect",
    "ExpectMatch",
    "TransactionResult",
    # Port tracking
    "PortTracker",
    "PortListError",
    "differ",
    "wait_for_change",
    "touch",
    "list_ports",
    # Agent upload
    "AgentUploader",
    "UploadError",
    "build_programmer_args",
    "run_programmer",
    # Orchestration
    "FlashOrchestrator",
    "FlashOutcome",
    "Stage",
    "STAGES",
    "RetryPolicy",
    "run_with_retries",
]
