"""Tests for composite SPM operations against a mocked Nanonis client."""

from itertools import chain, count, repeat
from unittest.mock import MagicMock, call, patch

import pytest

from tipshaper.meas.driver import SPMDriver
from tipshaper.meas.signals import Signal
from tipshaper.meas.tip_prep import TipShape
from tipshaper.types import NanonisError, NanonisTimeout

FREQ = Signal("OC M1 Freq. Shift (Hz)", 76, tcp_channel=18)


@pytest.fixture
def client():
    client = MagicMock()
    client.host = "127.0.0.1"
    client.is_connected.return_value = True
    client.auto_approach_on_off_get.return_value = False
    return client


@pytest.fixture
def driver(client):
    return SPMDriver(client, action_logger=MagicMock())


@pytest.fixture(autouse=True)
def no_sleep():
    with patch("tipshaper.meas.driver.time.sleep"):
        yield


class TestApproach:
    def test_already_running(self, driver, client):
        client.auto_approach_on_off_get.return_value = True
        driver.auto_approach(timeout=1)
        client.auto_approach_on_off_set.assert_not_called()
        client.auto_approach_open.assert_not_called()

    def test_completes(self, driver, client):
        client.auto_approach_on_off_get.side_effect = [False, True, True, False]
        with patch("tipshaper.util.poll.time.sleep"):
            driver.auto_approach(timeout=10)
        client.auto_approach_open.assert_called_once()
        client.auto_approach_on_off_set.assert_called_once_with(True)

    def test_timeout_stops_approach(self, driver, client):
        client.auto_approach_on_off_get.side_effect = chain([False], repeat(True))
        # each clock read advances one second
        with patch("tipshaper.util.poll.time.monotonic", side_effect=count(step=1.0)):
            with pytest.raises(NanonisTimeout):
                driver.auto_approach(timeout=3)
        assert client.auto_approach_on_off_set.call_args_list == [
            call(True),
            call(False),
        ]


class TestMotion:
    def test_move_motor_3d(self, driver, client):
        driver.move_motor_3d(3, 0, -2)
        assert client.motor_start_move.call_args_list == [
            call("X+", 3, wait=True),
            call("Z-", 2, wait=True),
        ]

    def test_safe_reposition(self, driver, client):
        driver.safe_reposition(3, 3, approach_timeout=10)
        client.z_ctrl_withdraw.assert_called_once()
        assert client.motor_start_move.call_args_list == [
            call("X+", 3, wait=True),
            call("Y+", 3, wait=True),
        ]
        client.auto_approach_on_off_set.assert_called_once_with(True)

    def test_bias_pulse(self, driver, client):
        driver.bias_pulse(-4.0, 0.05)
        client.bias_pulse.assert_called_once_with(0.05, -4.0, wait_until_done=True)
        driver.action_logger.log.assert_called_with(
            {"action": "bias_pulse", "voltage": -4.0, "width_s": 0.05}
        )


class TestTipState:
    @pytest.mark.parametrize(
        "value, shape",
        [
            (-1.0, TipShape.SHARP),
            (-2.0, TipShape.SHARP),
            (0.0, TipShape.SHARP),
            (-2.01, TipShape.BLUNT),
            (0.5, TipShape.BLUNT),
        ],
    )
    def test_bounds_inclusive(self, driver, client, value, shape):
        client.signals_vals_get.return_value = [value]
        assert driver.check_tip_state(FREQ, (-2.0, 0.0)) == (shape, value)
        client.signals_vals_get.assert_called_with([76], wait_for_newest=True)

    def test_sample_falls_back_to_direct_read(self, driver, client):
        client.signals_vals_get.return_value = [-0.7]
        assert driver.sample_signal(FREQ, 0.1) == -0.7


class TestBuffering:
    @patch("tipshaper.meas.driver.TCPLoggerStream")
    def test_start_and_stop(self, mock_stream_cls, driver, client):
        mock_stream_cls.return_value.spawn_background_reader.return_value = MagicMock()
        with patch("tipshaper.meas.driver.TelemetryBuffer") as mock_buffer_cls:
            buffer = driver.start_buffering([FREQ], oversampling=10, capacity=50)
            client.tcplog_chs_set.assert_called_once_with([18])
            client.tcplog_oversampl_set.assert_called_once_with(10)
            client.tcplog_start.assert_called_once()
            mock_stream_cls.assert_called_once_with("127.0.0.1", 6590)
            assert buffer is mock_buffer_cls.return_value
            buffer.start.assert_called_once()

            driver.stop_buffering()
            buffer.stop.assert_called_once()
            assert driver.buffer is None

    @patch("tipshaper.meas.driver.TCPLoggerStream")
    def test_buffered_values(self, mock_stream_cls, driver):
        other = Signal("Current (A)", 0, tcp_channel=0)
        assert driver.buffered_values(FREQ, 1.0).size == 0
        with patch("tipshaper.meas.driver.TelemetryBuffer"):
            buffer = driver.start_buffering([other, FREQ], oversampling=10)
            buffer.channel_values.return_value = [-1.0]
            assert driver.buffered_values(FREQ, 2.0) == [-1.0]
            buffer.recent.assert_called_once_with(2.0)
            args = buffer.channel_values.call_args.args
            assert args == (buffer.recent.return_value, 1)
            driver.stop_buffering()

    def test_signal_without_channel(self, driver):
        with pytest.raises(NanonisError):
            driver.start_buffering([Signal("Input 10 (V)", 10)], oversampling=0)


class TestClose:
    def test_withdraws_and_backs_off(self, driver, client):
        driver.close()
        client.z_ctrl_withdraw.assert_called_once_with(wait=False, timeout_s=1.0)
        client.motor_start_move.assert_called_once_with("Z-", 2, wait=False)
        client.close.assert_called_once()

    def test_idempotent(self, driver, client):
        driver.close()
        driver.close()
        client.close.assert_called_once()

    def test_errors_only_logged(self, driver, client):
        client.z_ctrl_withdraw.side_effect = NanonisError("lost")
        driver.close()
        client.close.assert_called_once()

    def test_disconnected_client_left_alone(self, driver, client):
        client.is_connected.return_value = False
        driver.close()
        client.z_ctrl_withdraw.assert_not_called()

    def test_context_manager_opens(self, client):
        client.is_connected.return_value = False
        with SPMDriver(client):
            client.open.assert_called_once()
