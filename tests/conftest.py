"""Shared fixtures: a simulated Yun console and a fast updater config."""

import time
from typing import Dict, List, Optional

import pytest

from yun_updater.core.config import SettleDelays, StageTimeouts, UpdaterConfig
from yun_updater.models import FirmwareImage, SessionContext
from yun_updater.protocol.console import ConsoleSession

BOOTLOADER_ADDRESS = 0x9F000000

BANNERS = {
    "keyword": "autoboot in 4 seconds (stop with '{stop}')...\r\n",
    "legacy": "Hit any key to stop autoboot:  4 \r\n",
    "enter_console": "autoboot in 4 seconds: type '{stop}' to enter u-boot console\r\n",
}

BOOT_PREAMBLE = (
    "[  312.470000] reboot: Restarting system\r\n\r\n"
    "U-Boot 1.1.4-linino (Oct 17 2013 - 12:41:22)\r\n\r\n"
    "DRAM:  64 MB\r\nTop of RAM usable for U-Boot at: 84000000\r\n"
)


class FakeYun:
    """
    Serial stand-in for the Yun's Atheros console behind the bridge agent.

    Output is produced synchronously when a full line is written, so every
    response is already readable when the next expect polls.

    Args:
        shell: Shell name of the installed boot-loader
        dialect: Autoboot banner variant ("keyword", "legacy", "enter_console")
        stop: Stop keyword announced by the banner
        images: File name -> size the TFTP download reports
        size_offset: File name -> bytes added to the reported transfer size
        sticky: Env names whose setenv is silently ignored
        linux: Whether a Linux shell answers on the console
        banner_after: Seconds after open before a silent board shows the
            banner (operator pressed reset)
        env: Initial boot-loader environment
    """

    def __init__(
        self,
        shell: str = "arduino",
        dialect: str = "keyword",
        stop: str = "ard",
        images: Optional[Dict[str, int]] = None,
        size_offset: Optional[Dict[str, int]] = None,
        sticky: tuple = (),
        linux: bool = True,
        banner_after: float = 0.3,
        env: Optional[Dict[str, str]] = None,
    ):
        self.shell = shell
        self.dialect = dialect
        self.stop = stop
        self.images = dict(images or {})
        self.size_offset = dict(size_offset or {})
        self.sticky = set(sticky)
        if env is None:
            env = {"bootcmd": "bootm 0x9f050000", "baudrate": "115200"}
            if shell == "arduino":
                env["board"] = "Yun"
        self.env = dict(env)
        self.mode = "linux" if linux else "silent"
        self.banner_after = banner_after
        self.is_open = True
        self.opened_at = time.monotonic()
        self.open_kwargs: Dict = {}
        self.written: List[str] = []
        self.commands: List[str] = []
        self._out = b""
        self._line = ""
        self._last_copy: Optional[int] = None

    # --- pyserial surface ---

    def __call__(self, **kwargs) -> "FakeYun":
        self.open_kwargs = kwargs
        self.is_open = True
        self.opened_at = time.monotonic()
        return self

    @property
    def in_waiting(self) -> int:
        self._maybe_reset_by_hand()
        return len(self._out)

    def read(self, size: int = 1) -> bytes:
        self._maybe_reset_by_hand()
        data, self._out = self._out[:size], self._out[size:]
        return data

    def write(self, data: bytes) -> int:
        text = data.decode("ascii")
        self.written.append(text)
        self._line += text
        while "\n" in self._line:
            line, self._line = self._line.split("\n", 1)
            self._handle(line.rstrip("\r"))
        return len(data)

    def flush(self) -> None:
        pass

    def close(self) -> None:
        self.is_open = False

    # --- board behaviour ---

    def _emit(self, text: str) -> None:
        self._out += text.encode("ascii")

    def _prompt(self) -> None:
        self._emit(f"{self.shell}> ")

    def _banner(self) -> None:
        self._emit(BOOT_PREAMBLE + BANNERS[self.dialect].format(stop=self.stop))
        self.mode = "countdown"

    def _maybe_reset_by_hand(self) -> None:
        if self.mode == "silent" and time.monotonic() - self.opened_at >= self.banner_after:
            self._banner()

    def _handle(self, line: str) -> None:
        if self.mode == "silent":
            return
        if self.mode == "linux":
            if line == "reboot -f":
                self._banner()
            elif line == "":
                self._emit("\r\nroot@Arduino:~# ")
            return
        if self.mode == "countdown":
            if self.dialect == "legacy" or line == self.stop:
                self.mode = "uboot"
                self._emit("\r\n")
                self._prompt()
            return
        self._emit(line + "\r\n")
        self.commands.append(line)
        self._command(line)

    def _command(self, line: str) -> None:
        parts = line.split()
        name = parts[0] if parts else ""
        if name == "":
            self._prompt()
        elif name == "printenv":
            for key, value in self.env.items():
                self._emit(f"{key}={value}\r\n")
            self._emit(f"\r\nEnvironment size: {len(self.env) * 20}/65532 bytes\r\n")
            self._prompt()
        elif name == "setenv":
            if parts[1] not in self.sticky:
                self.env[parts[1]] = " ".join(parts[2:])
            self._prompt()
        elif name == "tftp":
            filename = parts[2]
            if filename not in self.images:
                self._emit("TFTP error: 'File not found' (1)\r\nStarting again\r\n")
                return
            size = self.images[filename] + self.size_offset.get(filename, 0)
            self._emit(
                f"Using eth0 device\r\nTFTP from server {self.env.get('serverip', '')}; "
                f"our IP address is {self.env.get('ipaddr', '')}\r\n"
                f"Filename '{filename}'.\r\nLoad address: {parts[1]}\r\n"
                f"Loading: #################\r\ndone\r\n"
                f"Bytes transferred = {size} ({size:x} hex)\r\n"
            )
            self.env["fileaddr"] = parts[1][2:]
            self.env["filesize"] = f"{size:x}"
            self._prompt()
        elif name == "erase":
            self._emit("Erasing flash... \r\nErased 5 sectors\r\n")
            self._prompt()
        elif name == "cp.b":
            self._last_copy = int(parts[2], 16)
            self._emit("Copy to Flash... write addr: 9f000000\r\ndone\r\n")
            self._prompt()
        elif name == "saveenv":
            self._emit("Saving Environment to Flash...\r\nWriting to Flash... done\r\n")
            self._prompt()
        elif name == "reset":
            if self._last_copy == BOOTLOADER_ADDRESS:
                # The new boot-loader comes up with a fresh environment
                self.shell = "arduino"
                self.stop = "ard"
                self.dialect = "keyword"
                self.env = {"bootcmd": "bootm 0x9f050000", "baudrate": "115200"}
                self._banner()
            else:
                self._emit("## Booting image at 9f050000 ...\r\nStarting kernel ...\r\n\r\n")
                self.mode = "booted"
        else:
            self._emit(f"Unknown command '{name}' - try 'help'\r\n")
            self._prompt()


def fast_timeouts(seconds: float = 0.5) -> StageTimeouts:
    return StageTimeouts(
        reboot=seconds,
        detect_dialect=seconds * 2,
        stop_autoboot=seconds,
        bootloader_network=seconds,
        bootloader_flash=seconds,
        bootloader_restart=seconds,
        network=seconds,
        firmware=seconds,
    )


@pytest.fixture
def fast_config(tmp_path) -> UpdaterConfig:
    """Config with short timeouts and no settle delays."""
    return UpdaterConfig(
        base_dir=str(tmp_path),
        timeouts=fast_timeouts(),
        delays=SettleDelays(after_stop=0, after_network=0, after_bootloader_reset=0, after_touch=0),
    )


@pytest.fixture
def images():
    return (
        FirmwareImage("u-boot-arduino-lede.bin", 196608),
        FirmwareImage("sysupgrade.bin", 11534340),
    )


@pytest.fixture
def context(images) -> SessionContext:
    bootloader, sysupgrade = images
    return SessionContext(
        server_address="192.168.1.10",
        device_address="192.168.1.11",
        bootloader_image=bootloader,
        main_image=sysupgrade,
    )


def make_board(images, **kwargs) -> FakeYun:
    sizes = {image.name: image.size for image in images}
    return FakeYun(images=sizes, **kwargs)


def open_session(board: FakeYun, timeout: float = 0.5) -> ConsoleSession:
    return ConsoleSession("/dev/ttyFAKE0", timeout=timeout, serial_factory=board).open()
