"""
Result objects for core operations.

Provides a unified result structure the CLI uses to display operation
outcomes consistently.
"""

from dataclasses import dataclass, field
from typing import List, Dict, Any


@dataclass
class OperationResult:
    """
    Unified result object for all core operations.

    Attributes:
        ok: Whether the operation completed successfully
        operation: Name of the operation (e.g., "update")
        board: Target board name
        port: Serial port the console ran on
        server_address: Host address used in the last attempt
        device_address: Device address used in the last attempt
        attempts: Number of flash attempts made
        stage: Last orchestrator stage reached
        output: Console output of the last transaction
        warnings: Non-blocking issues encountered
        errors: Blocking errors that caused failure
        metadata: Additional operation-specific data
        logs: Captured log lines from the operation
    """
    ok: bool
    operation: str
    board: str = ""
    port: str = ""
    server_address: str = ""
    device_address: str = ""
    attempts: int = 0
    stage: str = ""
    output: str = ""
    warnings: List[str] = field(default_factory=list)
    errors: List[str] = field(default_factory=list)
    metadata: Dict[str, Any] = field(default_factory=dict)
    logs: List[str] = field(default_factory=list)

    def add_warning(self, message: str) -> None:
        """Add a warning message."""
        self.warnings.append(message)

    def add_error(self, message: str) -> None:
        """Add an error message and mark result as failed."""
        self.errors.append(message)
        self.ok = False

    def add_log(self, message: str) -> None:
        """Add a log line to the result."""
        self.logs.append(message)

    def to_summary(self) -> str:
        """
        Generate a human-readable summary string.

        Suitable for CLI output or simple logging.
        """
        status = "SUCCESS" if self.ok else "FAILED"
        lines = [f"[{status}] {self.operation}"]

        if self.board:
            lines.append(f"  Board: {self.board}")
        if self.port:
            lines.append(f"  Port: {self.port}")
        if self.server_address:
            lines.append(f"  Server: {self.server_address}")
        if self.device_address:
            lines.append(f"  Board address: {self.device_address}")
        if self.attempts:
            lines.append(f"  Attempts: {self.attempts}")
        if self.stage and not self.ok:
            lines.append(f"  Failed stage: {self.stage}")

        if self.warnings:
            lines.append("  Warnings:")
            for warn in self.warnings:
                lines.append(f"    - {warn}")

        if self.errors:
            lines.append("  Errors:")
            for err in self.errors:
                lines.append(f"    - {err}")

        return "\n".join(lines)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        return {
            "ok": self.ok,
            "operation": self.operation,
            "board": self.board,
            "port": self.port,
            "server_address": self.server_address,
            "device_address": self.device_address,
            "attempts": self.attempts,
            "stage": self.stage,
            "output": self.output,
            "warnings": self.warnings,
            "errors": self.errors,
            "metadata": self.metadata,
            "logs": self.logs,
        }

    @classmethod
    def failure(
        cls,
        operation: str,
        error: str,
        **kwargs,
    ) -> "OperationResult":
        """Create a failed result."""
        result = cls(ok=False, operation=operation, **kwargs)
        result.errors.append(error)
        return result
