"""
Centralized parsing helpers for addresses, sizes and baud presets.

Both the config loader and the CLI import these helpers rather than
re-implement them.
"""

from typing import Optional, Union

# Agent baud rates observed across serial-bridge sketch revisions
AGENT_BAUD_PRESETS = {
    "legacy": 9600,
    "default": 115200,
}


def parse_address(value: Union[str, int, None]) -> Optional[int]:
    """
    Parse a flash/RAM address or size, supporting multiple formats.

    Accepts:
        - Integers, returned unchanged
        - Decimal: "262144"
        - Hex with 0x prefix: "0x9f050000" or "0X40000"
        - Hex with h suffix: "40000h"
        - None or blank for "not set"

    Returns:
        Parsed integer, or None if value is None or empty.

    Raises:
        ValueError: If value cannot be parsed or is negative.
    """
    if value is None:
        return None
    if isinstance(value, bool):
        raise ValueError(f"Invalid address {value!r}")
    if isinstance(value, int):
        parsed = value
    else:
        text = value.strip()
        if not text:
            return None
        try:
            if text.lower().startswith("0x"):
                parsed = int(text, 16)
            elif text.lower().endswith("h"):
                parsed = int(text[:-1], 16)
            else:
                parsed = int(text)
        except ValueError:
            raise ValueError(
                f"Invalid address '{value}'. Use decimal (262144), hex (0x40000), or suffix (40000h)."
            )
    if parsed < 0:
        raise ValueError(f"Address must not be negative: {value}")
    return parsed


def parse_baud(value: Union[str, int]) -> int:
    """
    Parse a baud rate given as a number or a named preset.

    Raises:
        ValueError: If the value is neither a positive integer nor a preset.
    """
    if isinstance(value, int) and not isinstance(value, bool):
        baud = value
    else:
        text = str(value).strip().lower()
        if text in AGENT_BAUD_PRESETS:
            return AGENT_BAUD_PRESETS[text]
        try:
            baud = int(text)
        except ValueError:
            presets = ", ".join(sorted(AGENT_BAUD_PRESETS))
            raise ValueError(f"Invalid baud rate '{value}'. Use a number or one of: {presets}.")
    if baud <= 0:
        raise ValueError(f"Baud rate must be positive: {value}")
    return baud


def erase_length(size: int, block_size: int = 0) -> int:
    """
    Length to erase for an image of ``size`` bytes.

    With a zero block size the image size is used as is; otherwise it is
    rounded up to the next multiple of ``block_size``.
    """
    if size < 0:
        raise ValueError(f"Image size must not be negative: {size}")
    if block_size <= 0:
        return size
    blocks = -(-size // block_size)
    return blocks * block_size


def format_hex(value: int) -> str:
    """Format an integer the way U-Boot commands take it (``0x`` + lowercase hex)."""
    return f"0x{value:x}"
