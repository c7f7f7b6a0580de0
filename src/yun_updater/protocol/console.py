"""
Boot-loader Console Transport

Text send/expect session over the serial-bridge agent.

This module provides:
- Serial port initialization (8N1) and deterministic release
- Line sends and multi-pattern regular-expression expects
- Console transactions: ordered send/expect scripts that fail with the
  output consumed so far

Example:
    with ConsoleSession(port="/dev/ttyACM0") as console:
        console.send("printenv")
        match = console.expect([r"(?P<shell>[0-9A-Za-z]+)>"], timeout=5)
        print(match.groups["shell"])
"""

import logging
import re
import time
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional, Pattern, Sequence, Union

try:
    import serial
except ImportError:
    raise ImportError("PySerial required: pip install pyserial")

logger = logging.getLogger(__name__)

AGENT_BAUD_RATE = 115200
READ_CHUNK = 256
POLL_INTERVAL = 0.05


class ConsoleError(Exception):
    """
    Base exception for console failures.

    Attributes:
        output: Console text observed up to the failure
    """

    def __init__(self, message: str, output: str = ""):
        super().__init__(message)
        self.output = output


class ConsoleTransportError(ConsoleError):
    """Port could not be opened, read or written"""
    pass


class ConsoleClosed(ConsoleTransportError):
    """Operation attempted on a closed session"""
    pass


class ConsoleTimeout(ConsoleError):
    """None of the expected patterns appeared in time"""
    pass


class VerificationMismatch(ConsoleError):
    """Device reported a value different from the one required"""
    pass


@dataclass(frozen=True)
class Send:
    """Transaction step: write ``text`` followed by a newline."""
    text: str


@dataclass(frozen=True, init=False)
class Expect:
    """
    Transaction step: wait for one of ``patterns``.

    ``verify`` receives the match and may raise VerificationMismatch.
    """
    patterns: Sequence[str]
    verify: Optional[Callable[["ExpectMatch"], None]] = None

    def __init__(self, *patterns: str, verify: Optional[Callable[["ExpectMatch"], None]] = None):
        if not patterns:
            raise ValueError("Expect step needs at least one pattern")
        object.__setattr__(self, "patterns", tuple(patterns))
        object.__setattr__(self, "verify", verify)


Step = Union[Send, Expect]


@dataclass
class ExpectMatch:
    """
    Result of a successful expect.

    Attributes:
        index: Index of the alternative pattern that matched
        groups: Named groups that participated in the match
        text: Text consumed from the buffer, up to the end of the match
        matched: The matched substring
    """
    index: int
    groups: Dict[str, str]
    text: str
    matched: str

    def group(self, name: str, default: str = "") -> str:
        value = self.groups.get(name)
        return default if value is None else value


@dataclass
class TransactionResult:
    """Matches and console text of a completed transaction."""
    matches: List[ExpectMatch] = field(default_factory=list)
    output: str = ""

    @property
    def last(self) -> Optional[ExpectMatch]:
        return self.matches[-1] if self.matches else None


def _compile(patterns: Sequence[Union[str, Pattern]]) -> List[Pattern]:
    return [p if isinstance(p, re.Pattern) else re.compile(p) for p in patterns]


def find_first(patterns: Sequence[Pattern], text: str):
    """
    Search every pattern in ``text`` and pick the winner.

    The match starting earliest in the text wins; ties go to the pattern
    listed first.

    Returns:
        (index, match) or None
    """
    best = None
    for index, pattern in enumerate(patterns):
        m = pattern.search(text)
        if m is None:
            continue
        if best is None or m.start() < best[1].start():
            best = (index, m)
    return best


class ConsoleSession:
    """
    Send/expect session on a serial port.

    The session owns the port handle for its lifetime; use it as a context
    manager so the port is released even when an attempt aborts.
    """

    def __init__(
        self,
        port: str,
        baudrate: int = AGENT_BAUD_RATE,
        timeout: float = 10.0,
        serial_factory: Optional[Callable[..., "serial.Serial"]] = None,
    ):
        """
        Initialize console session.

        Args:
            port: Serial port (e.g., "/dev/ttyACM0", "COM5")
            baudrate: Agent baud rate (default 115200)
            timeout: Default expect timeout in seconds
            serial_factory: Callable building the serial object (tests)
        """
        self.port = port
        self.baudrate = baudrate
        self.timeout = timeout
        self.serial_factory = serial_factory or serial.Serial
        self.ser = None
        self._buffer = ""

    @property
    def is_open(self) -> bool:
        return self.ser is not None and bool(getattr(self.ser, "is_open", True))

    def open(self) -> "ConsoleSession":
        """
        Open the port at the agent's framing.

        Raises:
            ConsoleTransportError: If port cannot be opened
        """
        try:
            self.ser = self.serial_factory(
                port=self.port,
                baudrate=self.baudrate,
                bytesize=serial.EIGHTBITS,
                parity=serial.PARITY_NONE,
                stopbits=serial.STOPBITS_ONE,
                timeout=0,
                write_timeout=self.timeout,
            )
        except (serial.SerialException, OSError) as e:
            raise ConsoleTransportError(f"Cannot open port {self.port}: {e}") from e
        self._buffer = ""
        logger.debug(f"Opened {self.port} at {self.baudrate} bps")
        return self

    def close(self) -> None:
        """Release the port. Safe to call more than once."""
        if self.ser is None:
            return
        try:
            self.ser.close()
            logger.debug(f"Closed {self.port}")
        except (serial.SerialException, OSError) as e:
            logger.warning(f"Problems when closing port {self.port}: {e}")
        finally:
            self.ser = None

    def __enter__(self) -> "ConsoleSession":
        if not self.is_open:
            self.open()
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    def _require_open(self) -> None:
        if not self.is_open:
            raise ConsoleClosed("Serial port not open", output=self._buffer)

    def send(self, text: str) -> None:
        """
        Send one line of text (newline appended).

        Raises:
            ConsoleClosed: If the session is not open
            ConsoleTransportError: If write fails
        """
        self._require_open()
        data = (text + "\n").encode("ascii", errors="replace")
        try:
            self.ser.write(data)
            flush = getattr(self.ser, "flush", None)
            if flush is not None:
                flush()
        except (serial.SerialException, OSError) as e:
            raise ConsoleTransportError(f"Write error: {e}", output=self._buffer) from e
        logger.debug(f">>> {text!r}")

    def _read_available(self) -> str:
        try:
            waiting = getattr(self.ser, "in_waiting", 0)
            data = self.ser.read(waiting or READ_CHUNK)
        except (serial.SerialException, OSError) as e:
            raise ConsoleTransportError(f"Read error: {e}", output=self._buffer) from e
        if not data:
            return ""
        text = data.decode("utf-8", errors="replace")
        logger.debug(f"<<< {text!r}")
        return text

    def discard_input(self) -> str:
        """
        Drop buffered and pending input.

        Returns:
            The discarded text (for logging)
        """
        self._require_open()
        stale = self._buffer
        while True:
            chunk = self._read_available()
            if not chunk:
                break
            stale += chunk
        self._buffer = ""
        if stale:
            logger.debug(f"Discarded {len(stale)} chars of stale console output")
        return stale

    def expect(
        self,
        patterns: Sequence[Union[str, Pattern]],
        timeout: Optional[float] = None,
    ) -> ExpectMatch:
        """
        Block until one of ``patterns`` appears in the incoming stream.

        Args:
            patterns: Alternative regular expressions
            timeout: Seconds to wait (default: session timeout)

        Returns:
            ExpectMatch for the winning pattern; the buffer is consumed up
            to the end of the match.

        Raises:
            ConsoleTimeout: If nothing matched in time
            ConsoleClosed / ConsoleTransportError: On port failure
        """
        self._require_open()
        compiled = _compile(patterns)
        timeout = self.timeout if timeout is None else timeout
        deadline = time.monotonic() + timeout

        while True:
            found = find_first(compiled, self._buffer)
            if found is not None:
                index, m = found
                consumed = self._buffer[:m.end()]
                self._buffer = self._buffer[m.end():]
                groups = {k: v for k, v in m.groupdict().items() if v is not None}
                return ExpectMatch(index=index, groups=groups, text=consumed, matched=m.group(0))

            if time.monotonic() >= deadline:
                wanted = " | ".join(p.pattern for p in compiled)
                raise ConsoleTimeout(
                    f"Timed out after {timeout:g}s waiting for: {wanted}",
                    output=self._buffer,
                )

            chunk = self._read_available()
            if chunk:
                self._buffer += chunk
            else:
                time.sleep(POLL_INTERVAL)

    def run_transaction(self, steps: Sequence[Step], timeout: Optional[float] = None) -> TransactionResult:
        """
        Execute send/expect steps strictly in order.

        Each expect step gets ``timeout``. The first failure aborts the
        remaining steps.

        Returns:
            TransactionResult with every match and the consumed text

        Raises:
            ConsoleError subclass whose ``output`` holds the text consumed by
            this transaction plus the unmatched tail
        """
        result = TransactionResult()
        for step in steps:
            try:
                if isinstance(step, Send):
                    self.send(step.text)
                    continue
                match = self.expect(step.patterns, timeout)
                result.output += match.text
                result.matches.append(match)
                if step.verify is not None:
                    step.verify(match)
            except ConsoleError as e:
                e.output = result.output + e.output
                raise
        return result
