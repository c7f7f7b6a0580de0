"""Tests for configuration loading and parsing helpers."""

import json

import pytest

from yun_updater.core.config import (
    DEFAULT_MAX_ATTEMPTS,
    ConfigError,
    UpdaterConfig,
    config_from_dict,
    load_config,
)
from yun_updater.core.parsing import erase_length, format_hex, parse_address, parse_baud


class TestParseAddress:
    """Address and size parsing."""

    def test_none_and_blank(self):
        assert parse_address(None) is None
        assert parse_address("") is None
        assert parse_address("  ") is None

    def test_formats(self):
        assert parse_address("262144") == 0x40000
        assert parse_address("0x9f050000") == 0x9F050000
        assert parse_address("0X40000") == 0x40000
        assert parse_address("40000h") == 0x40000
        assert parse_address(0x80060000) == 0x80060000

    def test_invalid(self):
        with pytest.raises(ValueError):
            parse_address("0xZZ")
        with pytest.raises(ValueError):
            parse_address("-1")
        with pytest.raises(ValueError):
            parse_address(True)


class TestParseBaud:
    """Baud rates and presets."""

    def test_presets(self):
        assert parse_baud("legacy") == 9600
        assert parse_baud("DEFAULT") == 115200

    def test_numbers(self):
        assert parse_baud("57600") == 57600
        assert parse_baud(1200) == 1200

    def test_invalid(self):
        with pytest.raises(ValueError):
            parse_baud("fast")
        with pytest.raises(ValueError):
            parse_baud(0)


class TestEraseLength:
    """Erase sizing."""

    def test_raw_size(self):
        assert erase_length(196608) == 196608

    def test_rounded_up(self):
        assert erase_length(65537, 0x10000) == 0x20000
        assert erase_length(0x20000, 0x10000) == 0x20000

    def test_format_hex(self):
        assert format_hex(0x9F050000) == "0x9f050000"


class TestConfigFromDict:
    """Overrides on top of defaults."""

    def test_defaults(self):
        config = UpdaterConfig()
        assert config.max_attempts == DEFAULT_MAX_ATTEMPTS == 4
        assert config.serial.agent_baud == 115200
        assert config.layout.firmware_address == 0x9F050000
        assert config.tftp_port == 69

    def test_sections(self):
        config = config_from_dict({
            "timeouts": {"firmware": 90},
            "layout": {"firmware_address": "0x9f060000"},
            "programmer": {"part": "m32u4"},
        })
        assert config.timeouts.firmware == 90.0
        assert config.timeouts.network == 20.0
        assert config.layout.firmware_address == 0x9F060000
        assert config.programmer.part == "m32u4"

    def test_flat_baud_alias(self):
        config = config_from_dict({"agent_baud": "legacy"})
        assert config.serial.agent_baud == 9600
        assert config.serial.touch_baud == 1200

    def test_retry_on_string(self):
        assert config_from_dict({"retry_on": "Retry count"}).retry_on == ("Retry count",)

    def test_unknown_key(self):
        with pytest.raises(ConfigError, match="Unknown configuration key"):
            config_from_dict({"speed": 1})

    def test_unknown_section_key(self):
        with pytest.raises(ConfigError, match="timeouts"):
            config_from_dict({"timeouts": {"forever": 1}})

    def test_negative_timeout(self):
        with pytest.raises(ConfigError):
            config_from_dict({"timeouts": {"firmware": -1}})

    def test_max_attempts_validated(self):
        with pytest.raises(ConfigError):
            config_from_dict({"max_attempts": 0})

    def test_with_overrides_skips_none(self):
        config = UpdaterConfig().with_overrides(base_dir="/opt/yun", max_attempts=None)
        assert config.base_dir == "/opt/yun"
        assert config.max_attempts == 4
        assert str(config.firmware_path).replace("\\", "/") == "/opt/yun/tftp"


class TestLoadConfig:
    """JSON files."""

    def test_no_file(self):
        assert load_config() == UpdaterConfig()

    def test_file(self, tmp_path):
        path = tmp_path / "yun.json"
        path.write_text(json.dumps({"max_attempts": 2, "delays": {"after_network": 0}}))
        config = load_config(path)
        assert config.max_attempts == 2
        assert config.delays.after_network == 0

    def test_bad_json(self, tmp_path):
        path = tmp_path / "yun.json"
        path.write_text("{not json")
        with pytest.raises(ConfigError, match="not valid JSON"):
            load_config(path)

    def test_not_an_object(self, tmp_path):
        path = tmp_path / "yun.json"
        path.write_text("[1, 2]")
        with pytest.raises(ConfigError):
            load_config(path)

    def test_missing_file(self, tmp_path):
        with pytest.raises(ConfigError, match="Cannot read"):
            load_config(tmp_path / "missing.json")
