from unittest.mock import patch

import click.testing
import pytest

from tipshaper.cli import cli
from tipshaper.meas.tip_prep import ControllerAction, ControllerState, TipShape
from tipshaper.system.appconfig import write_default_config
from tipshaper.types import NanonisIOError, NanonisTimeout
from tipshaper.util.save import ActionLogger

SIGNAL_NAMES = [f"Input {i} (V)" for i in range(76)] + ["OC M1 Freq. Shift (Hz)"]


@pytest.fixture
def cli_runner():
    return click.testing.CliRunner()


@pytest.fixture
def config_file(tmp_path):
    return write_default_config(tmp_path / "tipshaper.ini")


@pytest.fixture
def run_config(tmp_path):
    path = tmp_path / "run.ini"
    path.write_text(
        f"""
[experiment_logging]
output_path = {tmp_path / "experiments"}

[tcp_channel_mapping]
76 = 18
"""
    )
    return path


def _final_state(shape=TipShape.STABLE, stopped=False):
    return ControllerState(
        tip_shape=shape,
        cycle_count=12,
        pulse_count=9,
        pulse_voltage=4.5,
        freq_shift=-1.2,
        elapsed_secs=321.0,
        current_action=ControllerAction.FINISHED,
        stopped=stopped,
    )


class TestTree:
    def test_root_tree(self, cli_runner):
        result = cli_runner.invoke(cli, ["--tree"])
        assert result.exit_code == 0
        for name in ("config", "log", "run", "signals", "validate"):
            assert name in result.output

    def test_subgroup_tree(self, cli_runner):
        result = cli_runner.invoke(cli, ["config", "--tree"])
        assert result.exit_code == 0
        assert "init" in result.output
        assert "run" not in result.output


class TestConfigCLI:
    def test_init_and_validate(self, cli_runner, tmp_path):
        path = tmp_path / "new.ini"
        result = cli_runner.invoke(cli, ["config", "init", str(path)])
        assert result.exit_code == 0
        assert path.exists()

        result = cli_runner.invoke(cli, ["config", "validate", str(path)])
        assert result.exit_code == 0
        assert "OK" in result.output

    def test_init_refuses_overwrite(self, cli_runner, config_file):
        result = cli_runner.invoke(cli, ["config", "init", str(config_file)])
        assert result.exit_code == 1
        result = cli_runner.invoke(cli, ["config", "init", str(config_file), "--force"])
        assert result.exit_code == 0

    def test_validate_invalid(self, cli_runner, tmp_path):
        path = tmp_path / "bad.ini"
        path.write_text("[stability]\nbias_range = 2.0, 1.0\n")
        result = cli_runner.invoke(cli, ["config", "validate", str(path)])
        assert result.exit_code == 1
        assert "INVALID" in result.output

    def test_show(self, cli_runner, config_file):
        result = cli_runner.invoke(cli, ["config", "show", "-c", str(config_file)])
        assert result.exit_code == 0
        assert "[pulse_method]" in result.output
        assert "76 = 18" in result.output

    def test_show_missing_file(self, cli_runner, tmp_path):
        result = cli_runner.invoke(
            cli, ["config", "show", "-c", str(tmp_path / "missing.ini")]
        )
        assert result.exit_code == 1
        assert "Configuration error" in result.output


class TestLogCLI:
    def test_show(self, cli_runner, tmp_path):
        path = tmp_path / "run.jsonl"
        with ActionLogger(str(path)) as log:
            log.log({"action": "bias_pulse", "voltage": 4.0})
            log.log({"action": "bias_pulse", "voltage": 4.0})
            log.log({"action": "run_finished", **_final_state().to_dict()})
        result = cli_runner.invoke(cli, ["log", "show", str(path)])
        assert result.exit_code == 0
        assert "bias_pulse" in result.output
        assert "Stable" in result.output

    def test_show_missing(self, cli_runner, tmp_path):
        result = cli_runner.invoke(cli, ["log", "show", str(tmp_path / "nope.jsonl")])
        assert result.exit_code == 1


class TestSignalsCLI:
    @patch("tipshaper.cli.base.NanonisClient")
    def test_lists_signals(self, mock_client_cls, cli_runner, config_file):
        client = mock_client_cls.return_value.__enter__.return_value
        client.signals_names_get.return_value = SIGNAL_NAMES
        result = cli_runner.invoke(
            cli, ["signals", "-c", str(config_file), "-f", "freq"]
        )
        assert result.exit_code == 0
        assert "OC M1 Freq. Shift (Hz)" in result.output
        assert "18" in result.output
        mock_client_cls.assert_called_once_with("127.0.0.1", 6501)

    @patch("tipshaper.cli.base.NanonisClient")
    def test_connection_error(self, mock_client_cls, cli_runner, config_file):
        mock_client_cls.return_value.__enter__.side_effect = NanonisIOError(
            "refused", context="Connecting"
        )
        result = cli_runner.invoke(cli, ["signals", "-c", str(config_file)])
        assert result.exit_code == 1


@patch("tipshaper.cli.run.setup_logging")
@patch("tipshaper.cli.run.TipController")
@patch("tipshaper.cli.run.SPMDriver")
@patch("tipshaper.cli.run.NanonisClient")
class TestRunCLI:
    def _driver(self, mock_driver_cls):
        driver = mock_driver_cls.return_value
        driver.client.signals_names_get.return_value = SIGNAL_NAMES
        return driver

    def test_successful_run(
        self, mock_client_cls, mock_driver_cls, mock_controller_cls, mock_logging,
        cli_runner, run_config,
    ):
        driver = self._driver(mock_driver_cls)
        mock_controller_cls.return_value.run.return_value = _final_state()
        result = cli_runner.invoke(cli, ["run", "-c", str(run_config), "--yes"])
        assert result.exit_code == 0, result.output
        assert "Stable" in result.output
        driver.start_buffering.assert_called_once()
        monitored = mock_controller_cls.call_args.args[1]
        assert monitored.index == 76
        assert monitored.tcp_channel == 18
        driver.close.assert_called_once()

    def test_confirmation_declined(
        self, mock_client_cls, mock_driver_cls, mock_controller_cls, mock_logging,
        cli_runner, run_config,
    ):
        driver = self._driver(mock_driver_cls)
        result = cli_runner.invoke(cli, ["run", "-c", str(run_config)], input="n\n")
        assert result.exit_code != 0
        mock_controller_cls.assert_not_called()
        driver.close.assert_called_once()

    def test_unknown_signal(
        self, mock_client_cls, mock_driver_cls, mock_controller_cls, mock_logging,
        cli_runner, run_config,
    ):
        driver = self._driver(mock_driver_cls)
        driver.client.signals_names_get.return_value = ["Current (A)", "Bias (V)"]
        result = cli_runner.invoke(cli, ["run", "-c", str(run_config), "--yes"])
        assert result.exit_code == 1
        assert "not found" in result.output
        driver.close.assert_called_once()

    def test_instrument_failure(
        self, mock_client_cls, mock_driver_cls, mock_controller_cls, mock_logging,
        cli_runner, run_config,
    ):
        driver = self._driver(mock_driver_cls)
        mock_controller_cls.return_value.run.side_effect = NanonisTimeout("approach")
        result = cli_runner.invoke(cli, ["run", "-c", str(run_config), "--yes"])
        assert result.exit_code == 1
        driver.close.assert_called_once()
