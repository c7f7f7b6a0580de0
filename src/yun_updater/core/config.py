"""
Updater configuration.

All tunables live in frozen dataclasses with the values the upgrade was
validated with as defaults. A JSON file can override any subset:

    {
        "agent_baud": "legacy",
        "timeouts": {"firmware": 90},
        "layout": {"firmware_address": "0x9f050000"}
    }
"""

import json
import logging
from dataclasses import dataclass, field, fields, replace
from pathlib import Path
from typing import Any, Dict, Optional, Tuple, Union

from .parsing import parse_address, parse_baud
from ..models import EXPECTED_SHELL, EXPECTED_STOP_KEYWORD

logger = logging.getLogger(__name__)

DEFAULT_BOOTLOADER_IMAGE = "u-boot-arduino-lede.bin"
DEFAULT_SYSUPGRADE_IMAGE = (
    "ledeyun-17.11-r5403+1-3e7b776-ar71xx-generic-arduino-yun-squashfs-sysupgrade.bin"
)
TFTP_PORT = 69

# One run plus three retries
DEFAULT_MAX_ATTEMPTS = 4


class ConfigError(Exception):
    """Raised when a configuration file or override is invalid."""
    pass


@dataclass(frozen=True)
class SerialPresets:
    """Baud rates for each phase. Framing is always 8N1."""
    touch_baud: int = 1200
    upload_baud: int = 57600
    agent_baud: int = 115200


@dataclass(frozen=True)
class StageTimeouts:
    """Per-expect timeouts (seconds) for each orchestrator stage."""
    reboot: float = 5.0
    detect_dialect: float = 20.0
    stop_autoboot: float = 5.0
    bootloader_network: float = 10.0
    bootloader_flash: float = 30.0
    bootloader_restart: float = 10.0
    network: float = 20.0
    firmware: float = 60.0


@dataclass(frozen=True)
class SettleDelays:
    """Pauses (seconds) after a stage before the next one starts."""
    after_stop: float = 1.0
    after_network: float = 2.0
    after_bootloader_reset: float = 1.0
    after_touch: float = 1.0


@dataclass(frozen=True)
class FlashLayout:
    """
    RAM and NOR flash addresses of the AR9331 memory map.

    Attributes:
        load_address: RAM address TFTP downloads land at
        bootloader_address: Flash address of U-Boot
        bootloader_erase: Bytes erased before writing U-Boot
        env_address: Flash address of the U-Boot environment
        env_erase: Bytes erased to reset the environment
        firmware_address: Flash address of the sysupgrade image
        erase_block_size: Round firmware erase length up to this; 0 disables
    """
    load_address: int = 0x80060000
    bootloader_address: int = 0x9F000000
    bootloader_erase: int = 0x40000
    env_address: int = 0x9F040000
    env_erase: int = 0x10000
    firmware_address: int = 0x9F050000
    erase_block_size: int = 0


@dataclass(frozen=True)
class ProgrammerConfig:
    """avrdude invocation used to install the serial-bridge agent."""
    tool_dir: str = "avr"
    part: str = "atmega32u4"
    protocol: str = "avr109"
    hex_name: str = "YunSerialTerminal.ino.hex"

    def tool_path(self, base_dir: Path) -> Path:
        return Path(base_dir) / self.tool_dir

    def binary(self, base_dir: Path) -> Path:
        return self.tool_path(base_dir) / "bin" / "avrdude"

    def conf_file(self, base_dir: Path) -> Path:
        return self.tool_path(base_dir) / "etc" / "avrdude.conf"

    def hex_file(self, base_dir: Path) -> Path:
        return self.tool_path(base_dir) / self.hex_name


@dataclass(frozen=True)
class UpdaterConfig:
    """
    Complete updater configuration.

    Attributes:
        base_dir: Directory holding the ``tftp`` and ``avr`` folders
        firmware_dir: TFTP root, relative to base_dir
        bootloader_image: Boot-loader file name inside firmware_dir
        sysupgrade_image: Sysupgrade file name inside firmware_dir
        tftp_port: UDP port of the firmware server
        expected_shell: Shell name of an up-to-date boot-loader
        stop_keyword: Autoboot stop keyword of an up-to-date boot-loader
        reset_timeout: Seconds to wait for re-enumeration after a touch reset
        upload_reset_timeout: Seconds to wait for re-enumeration after upload
        probe_port: TCP port used to probe candidate device addresses
        probe_timeout: Seconds per address probe
        max_attempts: Total flash runs, including the first
        retry_on: Output signatures a failure must contain to be retried
    """
    base_dir: str = "."
    firmware_dir: str = "tftp"
    bootloader_image: str = DEFAULT_BOOTLOADER_IMAGE
    sysupgrade_image: str = DEFAULT_SYSUPGRADE_IMAGE
    tftp_port: int = TFTP_PORT
    expected_shell: str = EXPECTED_SHELL
    stop_keyword: str = EXPECTED_STOP_KEYWORD
    reset_timeout: float = 10.0
    upload_reset_timeout: float = 1.0
    probe_port: int = 80
    probe_timeout: float = 2.0
    max_attempts: int = DEFAULT_MAX_ATTEMPTS
    retry_on: Tuple[str, ...] = ()
    serial: SerialPresets = field(default_factory=SerialPresets)
    timeouts: StageTimeouts = field(default_factory=StageTimeouts)
    delays: SettleDelays = field(default_factory=SettleDelays)
    layout: FlashLayout = field(default_factory=FlashLayout)
    programmer: ProgrammerConfig = field(default_factory=ProgrammerConfig)

    @property
    def firmware_path(self) -> Path:
        return Path(self.base_dir) / self.firmware_dir

    def with_overrides(self, **overrides: Any) -> "UpdaterConfig":
        """Return a copy with top-level fields replaced, skipping None values."""
        values = {key: value for key, value in overrides.items() if value is not None}
        try:
            return replace(self, **values)
        except TypeError as e:
            raise ConfigError(str(e)) from e


_SECTIONS = {
    "serial": SerialPresets,
    "timeouts": StageTimeouts,
    "delays": SettleDelays,
    "layout": FlashLayout,
    "programmer": ProgrammerConfig,
}

# Flat aliases accepted at the top level of a config file
_SERIAL_ALIASES = ("touch_baud", "upload_baud", "agent_baud")


def _coerce_section(name: str, current: Any, values: Dict[str, Any]) -> Any:
    if not isinstance(values, dict):
        raise ConfigError(f"Section '{name}' must be an object")
    known = {f.name for f in fields(current)}
    unknown = sorted(set(values) - known)
    if unknown:
        raise ConfigError(f"Unknown keys in '{name}': {', '.join(unknown)}")

    coerced: Dict[str, Any] = {}
    for key, value in values.items():
        try:
            if name == "layout":
                coerced[key] = parse_address(value)
            elif name == "serial":
                coerced[key] = parse_baud(value)
            elif name in ("timeouts", "delays"):
                coerced[key] = float(value)
                if coerced[key] < 0:
                    raise ValueError(f"must not be negative: {value}")
            else:
                coerced[key] = str(value)
        except (TypeError, ValueError) as e:
            raise ConfigError(f"Invalid value for {name}.{key}: {e}") from e
    return replace(current, **coerced)


def config_from_dict(data: Dict[str, Any], base: Optional[UpdaterConfig] = None) -> UpdaterConfig:
    """
    Merge a dictionary of overrides onto ``base`` (defaults if omitted).

    Raises:
        ConfigError: On unknown keys or values that fail to parse
    """
    config = base or UpdaterConfig()
    data = dict(data)

    serial_overrides = {key: data.pop(key) for key in _SERIAL_ALIASES if key in data}
    if serial_overrides:
        section = dict(data.get("serial", {}))
        section.update(serial_overrides)
        data["serial"] = section

    top_level = {f.name for f in fields(config)}
    updates: Dict[str, Any] = {}
    for key, value in data.items():
        if key in _SECTIONS:
            updates[key] = _coerce_section(key, getattr(config, key), value)
        elif key == "retry_on":
            if isinstance(value, str):
                value = [value]
            updates[key] = tuple(str(item) for item in value)
        elif key in top_level:
            updates[key] = value
        else:
            raise ConfigError(f"Unknown configuration key: {key}")

    if "max_attempts" in updates:
        try:
            updates["max_attempts"] = int(updates["max_attempts"])
        except (TypeError, ValueError) as e:
            raise ConfigError(f"Invalid value for max_attempts: {e}") from e
        if updates["max_attempts"] < 1:
            raise ConfigError("max_attempts must be at least 1")

    return replace(config, **updates)


def load_config(path: Union[str, Path, None] = None) -> UpdaterConfig:
    """
    Load configuration, applying overrides from a JSON file if given.

    Raises:
        ConfigError: If the file is unreadable, not JSON, or invalid
    """
    if path is None:
        return UpdaterConfig()

    path = Path(path)
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
    except OSError as e:
        raise ConfigError(f"Cannot read config file {path}: {e}") from e
    except json.JSONDecodeError as e:
        raise ConfigError(f"Config file {path} is not valid JSON: {e}") from e

    if not isinstance(data, dict):
        raise ConfigError(f"Config file {path} must contain a JSON object")

    logger.debug(f"Loaded config overrides from {path}: {sorted(data)}")
    return config_from_dict(data)
