"""
Read-only TFTP server (RFC 1350) for firmware images.

The device fetches the boot-loader and sysupgrade images from here once it
has been told the server address. Only read requests are served; each
transfer runs on its own UDP socket and thread.
"""

import logging
import socket
import struct
import threading
from pathlib import Path
from typing import Optional, Tuple, Union

logger = logging.getLogger(__name__)

TFTP_PORT = 69
BLOCK_SIZE = 512
SOCK_TIMEOUT = 5.0
MAX_TIMEOUT_RETRIES = 5

OP_RRQ, OP_WRQ, OP_DATA, OP_ACK, OP_ERROR = 1, 2, 3, 4, 5
TFTP_OPCODES = {OP_RRQ: "RRQ", OP_WRQ: "WRQ", OP_DATA: "DATA", OP_ACK: "ACK", OP_ERROR: "ERROR"}

TRANSFER_MODES = ("netascii", "octet")  # "mail" is deprecated

ERR_NOT_DEFINED = 0
ERR_FILE_NOT_FOUND = 1
ERR_ACCESS_VIOLATION = 2
ERR_ILLEGAL_OPERATION = 4
ERR_UNKNOWN_TID = 5

TFTP_ERRORS = {
    ERR_NOT_DEFINED: "Not Defined",
    ERR_FILE_NOT_FOUND: "File Not Found",
    ERR_ACCESS_VIOLATION: "Access Violation",
    3: "Disk Full or Allocation Exceeded",
    ERR_ILLEGAL_OPERATION: "Illegal TFTP operation",
    ERR_UNKNOWN_TID: "Unknown Transfer TID",
    6: "File Already Exists",
    7: "No Such User",
}


class FirmwareServerError(Exception):
    """The TFTP listener could not be started"""
    pass


class TftpPacketError(ValueError):
    """Malformed TFTP packet"""
    pass


def build_data(block: int, payload: bytes) -> bytes:
    return struct.pack(">HH", OP_DATA, block & 0xFFFF) + payload


def build_ack(block: int) -> bytes:
    return struct.pack(">HH", OP_ACK, block & 0xFFFF)


def build_error(code: int, message: Optional[str] = None) -> bytes:
    text = message if message is not None else TFTP_ERRORS.get(code, "Not Defined")
    return struct.pack(">HH", OP_ERROR, code) + text.encode("ascii", errors="replace") + b"\x00"


def get_opcode(data: bytes) -> Optional[int]:
    """Return the opcode of a packet, or None if it is not a TFTP opcode."""
    if len(data) < 2:
        return None
    opcode = struct.unpack(">H", data[:2])[0]
    return opcode if opcode in TFTP_OPCODES else None


def parse_request(data: bytes) -> Tuple[str, str]:
    """
    Decode the filename and mode of an RRQ/WRQ packet.

    Options (RFC 2347) after the mode are ignored.

    Raises:
        TftpPacketError: If the packet is truncated
    """
    fields = data[2:].split(b"\x00")
    if len(fields) < 3 or not fields[0]:
        raise TftpPacketError("Truncated request")
    filename = fields[0].decode("utf-8", errors="replace")
    mode = fields[1].decode("ascii", errors="replace").lower()
    return filename, mode


def parse_ack(data: bytes) -> Optional[int]:
    """Block number of an ACK packet, or None for any other packet."""
    if len(data) < 4 or get_opcode(data) != OP_ACK:
        return None
    return struct.unpack(">H", data[2:4])[0]


class FirmwareServer:
    """
    Serve files from ``root`` over TFTP, read-only.

    Example:
        server = FirmwareServer("tftp").start()
        ...
        server.stop()
    """

    def __init__(
        self,
        root: Union[str, Path],
        host: str = "0.0.0.0",
        port: int = TFTP_PORT,
        timeout: float = SOCK_TIMEOUT,
        retries: int = MAX_TIMEOUT_RETRIES,
    ):
        self.root = Path(root)
        self.host = host
        self.port = port
        self.timeout = timeout
        self.retries = retries
        self.sock: Optional[socket.socket] = None
        self._stopped = threading.Event()
        self._thread: Optional[threading.Thread] = None

    @property
    def address(self) -> Tuple[str, int]:
        """Bound (host, port); useful when started on port 0."""
        return self.host, self.port

    def _bind(self) -> socket.socket:
        sock = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
        try:
            sock.bind((self.host, self.port))
        except OSError:
            sock.close()
            raise
        # Port 0 resolves once; re-arming binds the same port again
        self.port = sock.getsockname()[1]
        # Short timeout so the loop notices stop()
        sock.settimeout(0.5)
        return sock

    def start(self) -> "FirmwareServer":
        """
        Bind the listener and start serving in a background thread.

        Raises:
            FirmwareServerError: If the port cannot be bound
        """
        try:
            self.sock = self._bind()
        except OSError as e:
            raise FirmwareServerError(
                f"Can't spawn tftp server on port {self.port}, "
                f"make sure you are running as administrator: {e}"
            ) from e
        self._stopped.clear()
        self._thread = threading.Thread(target=self._serve_loop, name="tftp-server", daemon=True)
        self._thread.start()
        logger.info(f"TFTP server listening on {self.address[0]}:{self.address[1]}, serving {self.root}")
        return self

    def stop(self) -> None:
        self._stopped.set()
        if self.sock is not None:
            self.sock.close()
        if self._thread is not None:
            self._thread.join(timeout=2.0)
        self._thread = None

    def __enter__(self) -> "FirmwareServer":
        return self.start()

    def __exit__(self, exc_type, exc, tb) -> None:
        self.stop()

    def _rearm(self) -> None:
        """Rebind the listener after it was shut down underneath us."""
        if self.sock is not None:
            self.sock.close()
        while not self._stopped.is_set():
            try:
                self.sock = self._bind()
                logger.info(f"TFTP listener re-armed on port {self.port}")
                return
            except OSError as e:
                logger.warning(f"Re-arming TFTP listener failed: {e}")
                self._stopped.wait(1.0)

    def _serve_loop(self) -> None:
        while not self._stopped.is_set():
            try:
                data, addr = self.sock.recvfrom(1024)
            except socket.timeout:
                continue
            except OSError as e:
                if self._stopped.is_set():
                    break
                logger.warning(f"TFTP listener stopped unexpectedly: {e}")
                self._rearm()
                continue
            self._handle_request(data, addr)

    def resolve(self, filename: str) -> Optional[Path]:
        """Map a requested name to a file inside root, or None if it escapes."""
        root = self.root.resolve()
        path = (root / filename.lstrip("/\\")).resolve()
        if path != root and root not in path.parents:
            return None
        return path

    def _handle_request(self, data: bytes, addr) -> None:
        opcode = get_opcode(data)
        if opcode == OP_WRQ:
            logger.warning(f"Write request from {addr[0]} refused (read-only server)")
            self.sock.sendto(build_error(ERR_ACCESS_VIOLATION, "Server is read-only"), addr)
            return
        if opcode != OP_RRQ:
            logger.debug(f"Wrong opcode {opcode} from {addr[0]}")
            self.sock.sendto(build_error(ERR_ILLEGAL_OPERATION), addr)
            return

        try:
            filename, mode = parse_request(data)
        except TftpPacketError as e:
            self.sock.sendto(build_error(ERR_NOT_DEFINED, str(e)), addr)
            return
        if mode not in TRANSFER_MODES:
            logger.warning(f"Unsupported mode {mode} requested by {addr[0]}")
            self.sock.sendto(build_error(ERR_NOT_DEFINED, f"Unsupported mode {mode}"), addr)
            return

        logger.info(f"{filename} was requested by {addr[0]}")
        path = self.resolve(filename)
        if path is None:
            self.sock.sendto(build_error(ERR_ACCESS_VIOLATION), addr)
            return
        if not path.is_file():
            logger.error(f"Requested file not found: {path}")
            self.sock.sendto(build_error(ERR_FILE_NOT_FOUND), addr)
            return

        threading.Thread(
            target=self.send_file,
            args=(path, addr),
            name=f"tftp-{addr[0]}:{addr[1]}",
            daemon=True,
        ).start()

    def send_file(self, path: Path, addr) -> bool:
        """
        Transfer ``path`` to ``addr`` from a fresh ephemeral port.

        Returns:
            True if the final block was acknowledged
        """
        sent = 0
        with socket.socket(socket.AF_INET, socket.SOCK_DGRAM) as sock, path.open("rb") as f:
            sock.bind((self.host, 0))
            sock.settimeout(self.timeout)
            block = 1
            payload = f.read(BLOCK_SIZE)
            packet = build_data(block, payload)
            sock.sendto(packet, addr)
            timeouts = 0

            while True:
                try:
                    data, peer = sock.recvfrom(1024)
                except socket.timeout:
                    if timeouts >= self.retries:
                        logger.error(f"Timeout serving {path.name} to {addr[0]} after {sent} bytes")
                        return False
                    timeouts += 1
                    sock.sendto(packet, addr)
                    continue

                # Check address (IP, port) matches initial connection address
                if peer != addr:
                    sock.sendto(build_error(ERR_UNKNOWN_TID), peer)
                    continue

                acked = parse_ack(data)
                if acked is None:
                    if get_opcode(data) == OP_ERROR:
                        logger.error(f"{addr[0]} aborted transfer of {path.name}")
                        return False
                    sock.sendto(build_error(ERR_ILLEGAL_OPERATION), addr)
                    return False
                if acked != block & 0xFFFF:
                    # Duplicate ACK of an earlier block; wait for the right one
                    continue

                timeouts = 0
                sent += len(payload)
                if len(payload) < BLOCK_SIZE:
                    logger.info(f"{sent} bytes sent")
                    return True

                block += 1
                payload = f.read(BLOCK_SIZE)
                packet = build_data(block, payload)
                sock.sendto(packet, addr)


def serve_firmware(root: Union[str, Path], port: int = TFTP_PORT) -> FirmwareServer:
    """Start a read-only TFTP server for the process lifetime."""
    return FirmwareServer(root, port=port).start()
