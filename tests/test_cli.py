"""Tests for the command-line interface."""

import json
from unittest.mock import MagicMock, patch

import pytest
import typer
from typer.testing import CliRunner

from yun_updater import cli
from yun_updater.addressing import AddressAllocationError
from yun_updater.core.results import OperationResult
from yun_updater.devices import PortInfo
from yun_updater.tftp_server import FirmwareServerError

runner = CliRunner()


def ok_result(**kwargs):
    return OperationResult(ok=True, operation="update", board="Yun", port="/dev/ttyACM0", attempts=1, **kwargs)


class TestBuildConfig:
    """CLI overrides on top of the config file."""

    def test_overrides(self, tmp_path):
        config = cli.build_config(None, str(tmp_path), 2, ["Retry count"], "legacy")
        assert config.base_dir == str(tmp_path)
        assert config.max_attempts == 2
        assert config.retry_on == ("Retry count",)
        assert config.serial.agent_baud == 9600
        assert config.serial.upload_baud == 57600

    def test_defaults_kept(self):
        config = cli.build_config(None, None, None, None, None)
        assert config.max_attempts == 4
        assert config.retry_on == ()

    def test_bad_attempts(self):
        with pytest.raises(typer.BadParameter):
            cli.build_config(None, None, 0, None, None)

    def test_bad_baud(self):
        with pytest.raises(typer.BadParameter):
            cli.build_config(None, None, None, None, "fast")

    def test_bad_file(self, tmp_path):
        path = tmp_path / "bad.json"
        path.write_text("{")
        with pytest.raises(typer.BadParameter):
            cli.build_config(str(path), None, None, None, None)


class TestUpdateCommand:
    """The update command."""

    def test_flags_become_options(self):
        with patch.object(cli, "update_board", return_value=ok_result()) as update_board:
            result = runner.invoke(cli.app, ["update", "--old", "--bl", "--board", "Yun-Mini", "-p", "COM5"])

        assert result.exit_code == 0, result.output
        options, config = update_board.call_args[0]
        assert options.legacy
        assert options.flash_bootloader
        assert options.board == "Yun-Mini"
        assert options.port == "COM5"
        assert "Enjoy your updated Yun-Mini" in result.output

    def test_failure_exit_code(self):
        failed = OperationResult.failure("update", "No serial ports found!", board="Yun")
        with patch.object(cli, "update_board", return_value=failed):
            result = runner.invoke(cli.app, ["update"])

        assert result.exit_code == 1
        assert "No serial ports found!" in result.output
        assert "W_DEVICE_NOT_FOUND" in result.output

    def test_json_output(self):
        with patch.object(cli, "update_board", return_value=ok_result()):
            result = runner.invoke(cli.app, ["update", "--json"])

        assert result.exit_code == 0
        assert json.loads(result.output)["ok"] is True

    def test_config_file(self, tmp_path):
        path = tmp_path / "yun.json"
        path.write_text(json.dumps({"max_attempts": 7}))
        with patch.object(cli, "update_board", return_value=ok_result()) as update_board:
            runner.invoke(cli.app, ["update", "--config", str(path), "--retry-on", "Retry count"])

        _, config = update_board.call_args[0]
        assert config.max_attempts == 7
        assert config.retry_on == ("Retry count",)

    def test_invalid_attempts(self):
        result = runner.invoke(cli.app, ["update", "--max-attempts", "0"])
        assert result.exit_code != 0


class TestPortsCommand:
    """The ports command."""

    def test_lists_ports(self):
        ports = [
            PortInfo("/dev/ttyACM0", "Arduino Yun", "2341", "8041"),
            PortInfo("/dev/ttyS0", "ttyS0"),
        ]
        with patch.object(cli, "detailed_ports", return_value=ports):
            result = runner.invoke(cli.app, ["ports"])

        assert result.exit_code == 0
        assert "/dev/ttyACM0" in result.output
        assert "2341:8041" in result.output

    def test_no_ports(self):
        with patch.object(cli, "detailed_ports", return_value=[]):
            result = runner.invoke(cli.app, ["ports"])
        assert "No serial ports found" in result.output


class TestAddressesCommand:
    """The addresses command."""

    def test_shows_pair(self):
        allocator = MagicMock(return_value=("192.168.1.10", "192.168.1.11"))
        with patch.object(cli, "AddressAllocator", return_value=allocator):
            result = runner.invoke(cli.app, ["addresses"])

        assert result.exit_code == 0
        assert "192.168.1.11" in result.output

    def test_no_network(self):
        allocator = MagicMock(side_effect=AddressAllocationError("are you connected to the network?"))
        with patch.object(cli, "AddressAllocator", return_value=allocator):
            result = runner.invoke(cli.app, ["addresses"])

        assert result.exit_code == 1
        assert "connected to the network" in result.output


class TestServeCommand:
    """The serve command."""

    def test_serves_until_interrupted(self, tmp_path):
        server = MagicMock()
        with patch.object(cli, "serve_firmware", return_value=server) as serve_firmware, \
                patch.object(cli.time, "sleep", side_effect=KeyboardInterrupt):
            result = runner.invoke(cli.app, ["serve", "-d", str(tmp_path), "--tftp-port", "6969"])

        assert result.exit_code == 0, result.output
        root = serve_firmware.call_args[0][0]
        assert str(root).startswith(str(tmp_path))
        assert serve_firmware.call_args[1]["port"] == 6969
        server.stop.assert_called_once()
        assert "TFTP server stopped" in result.output

    def test_bind_failure(self):
        error = FirmwareServerError("Can't spawn tftp server on port 69, make sure you are running as administrator")
        with patch.object(cli, "serve_firmware", side_effect=error):
            result = runner.invoke(cli.app, ["serve"])

        assert result.exit_code == 1
        assert "administrator" in result.output
