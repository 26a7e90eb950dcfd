"""Tests for INI configuration loading, environment overrides and validation."""

import pytest

from tipshaper.system.appconfig import (
    format_value,
    load_app_config,
    parse_value,
    validate_config_file,
    write_default_config,
)
from tipshaper.types import ConfigError
from tipshaper.types.config import (
    AppConfig,
    FixedPulse,
    LinearPulse,
    ProportionalThreshold,
    SteppingPulse,
    SweepPolarity,
)


@pytest.fixture
def write_ini(tmp_path):
    def _write(text: str, name: str = "tipshaper.ini"):
        path = tmp_path / name
        path.write_text(text)
        return path

    return _write


class TestValues:
    @pytest.mark.parametrize(
        "text, expected",
        [
            ("1, 2", [1, 2]),
            ("0.5", 0.5),
            ("true", True),
            ("off", False),
            ("none", None),
            ("freq shift", "freq shift"),
        ],
    )
    def test_parse(self, text, expected):
        assert parse_value(text) == expected

    def test_format(self):
        assert format_value(None) == "none"
        assert format_value(False) == "false"
        assert format_value((2.0, 6.0)) == "2.0, 6.0"
        assert format_value(SweepPolarity.BOTH) == "both"


class TestLoad:
    def test_defaults_without_sections(self, write_ini):
        config = load_app_config(write_ini(""), env={})
        assert config == AppConfig()

    def test_sections(self, write_ini):
        path = write_ini(
            """
[nanonis]
host_ip = 192.168.1.10
control_ports = 6501

[tip_prep]
sharp_tip_bounds = -3.0, -0.5
max_cycles = none

[pulse_method]
type = stepping
voltage_bounds = 1.0, 5.0
threshold.kind = proportional
threshold.fraction = 0.05

[stability]
polarity_mode = negative

[tcp_channel_mapping]
76 = 18
"""
        )
        config = load_app_config(path, env={})
        assert config.nanonis.host_ip == "192.168.1.10"
        assert config.nanonis.control_ports == [6501]
        assert config.tip_prep.sharp_tip_bounds == (-3.0, -0.5)
        assert config.tip_prep.max_cycles is None
        assert isinstance(config.pulse_method, SteppingPulse)
        assert config.pulse_method.voltage_bounds == (1.0, 5.0)
        assert config.pulse_method.cycles_before_step == 2
        assert isinstance(config.pulse_method.threshold, ProportionalThreshold)
        assert config.pulse_method.threshold.fraction == 0.05
        assert config.stability.polarity_mode is SweepPolarity.NEGATIVE
        assert config.tcp_channel_mapping == {76: 18}

    @pytest.mark.parametrize("kind, cls", [("fixed", FixedPulse), ("linear", LinearPulse)])
    def test_pulse_method_variants(self, write_ini, kind, cls):
        config = load_app_config(write_ini(f"[pulse_method]\ntype = {kind}\n"), env={})
        assert type(config.pulse_method) is cls

    def test_env_override(self, write_ini):
        path = write_ini("[pulse_method]\ntype = stepping\n")
        config = load_app_config(
            path,
            env={
                "TIPSHAPER__PULSE_METHOD__THRESHOLD__VALUE": "0.3",
                "TIPSHAPER__NANONIS__HOST_IP": "10.0.0.2",
                "TIPSHAPER__BOGUS": "1",
                "OTHER__NANONIS__HOST_IP": "ignored",
            },
        )
        assert config.pulse_method.threshold.threshold(0.0) == 0.3
        assert config.nanonis.host_ip == "10.0.0.2"

    def test_env_override_without_file_section(self, write_ini):
        config = load_app_config(
            write_ini(""), env={"TIPSHAPER__STABILITY__ALLOWED_CHANGE": "0.5"}
        )
        assert config.stability.allowed_change == 0.5

    @pytest.mark.parametrize(
        "text, match",
        [
            ("[nanonis]\nhostname = x\n", "Unknown key"),
            ("[unknown]\na = 1\n", "Unknown section"),
            ("[pulse_method]\ntype = zigzag\n", "Unknown pulse_method type"),
            ("[stability]\nbias_range = 2.0, 1.0\n", "lower bound"),
            ("[tcp_channel_mapping]\n76 = 30\n", "tcp_channel_mapping"),
            ("[tcp_channel_mapping]\nfreq = 3\n", "tcp_channel_mapping"),
        ],
    )
    def test_invalid(self, write_ini, text, match):
        with pytest.raises(ConfigError, match=match):
            load_app_config(write_ini(text), env={})

    def test_missing_explicit_file(self, tmp_path):
        with pytest.raises(ConfigError):
            load_app_config(tmp_path / "missing.ini", env={})


class TestWrite:
    def test_written_defaults_load_back(self, tmp_path):
        path = write_default_config(tmp_path / "cfg" / "tipshaper.ini")
        config = load_app_config(path, env={})
        assert config == AppConfig(tcp_channel_mapping={76: 18})
        assert validate_config_file(path) == (True, "")

    def test_refuses_overwrite(self, tmp_path):
        path = write_default_config(tmp_path / "tipshaper.ini")
        with pytest.raises(ConfigError):
            write_default_config(path)
        write_default_config(path, overwrite=True)

    def test_validate_reports_error(self, write_ini):
        valid, msg = validate_config_file(write_ini("[stability]\nallowed_change = -1\n"))
        assert not valid
        assert "allowed_change" in msg
