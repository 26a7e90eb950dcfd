"""Application configuration file handling.

A tipshaper configuration is an INI file with one section per `AppConfig` field.
Nested values use dotted keys, sequences are comma separated:

[nanonis]
host_ip = 127.0.0.1
control_ports = 6501, 6502, 6503, 6504

[pulse_method]
type = stepping
voltage_bounds = 2.0, 6.0
voltage_steps = 4
cycles_before_step = 2
threshold.kind = fixed
threshold.value = 0.1

[tcp_channel_mapping]
76 = 18

Any key can be overridden from the environment with
`TIPSHAPER__<SECTION>__<KEY>=value` (a further `__` stands for a dot, e.g.
`TIPSHAPER__PULSE_METHOD__THRESHOLD__VALUE=0.2`).

Search order when no file is given:
1. ./tipshaper.ini
2. ~/.tipshaper/config.ini
3. built-in defaults

See Also
--------
tipshaper.types.config : The configuration dataclasses
"""

from __future__ import annotations

import os
from configparser import ConfigParser
from configparser import Error as ConfigParserError
from enum import Enum
from pathlib import Path
from typing import Any, Mapping, Optional

from loguru import logger
from mashumaro.exceptions import InvalidFieldValue, MissingField

from tipshaper.types import ConfigError
from tipshaper.types.config import (
    AppConfig,
    FixedPulse,
    LinearPulse,
    SteppingPulse,
)
from tipshaper.util.defaults import ENV_PREFIX

SECTIONS = (
    "nanonis",
    "data_acquisition",
    "experiment_logging",
    "console",
    "tip_prep",
    "stability",
    "pulse_method",
    "tcp_channel_mapping",
)

PULSE_METHODS = {"fixed": FixedPulse, "stepping": SteppingPulse, "linear": LinearPulse}

CONFIG_FILENAME = "tipshaper.ini"


def user_config_path() -> Path:
    return Path.home() / ".tipshaper" / "config.ini"


def find_config_file() -> Optional[Path]:
    for candidate in (Path.cwd() / CONFIG_FILENAME, user_config_path()):
        if candidate.exists():
            return candidate
    return None


# ======================================================================================
# Text <-> values
# ======================================================================================


def _parse_scalar(text: str) -> Any:
    text = text.strip()
    lowered = text.lower()
    if lowered in ("", "none"):
        return None
    if lowered in ("true", "yes", "on"):
        return True
    if lowered in ("false", "no", "off"):
        return False
    for conv in (int, float):
        try:
            return conv(text)
        except ValueError:
            pass
    return text


def parse_value(text: str) -> Any:
    """'1, 2' -> [1, 2]; '0.5' -> 0.5; 'true' -> True; 'none' -> None."""
    if "," in text:
        return [_parse_scalar(part) for part in text.split(",") if part.strip()]
    return _parse_scalar(text)


def format_value(value: Any) -> str:
    if value is None:
        return "none"
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, Enum):
        return str(value.value)
    if isinstance(value, (list, tuple)):
        return ", ".join(format_value(v) for v in value)
    return str(value)


def _flatten(d: Mapping[str, Any], prefix: str = "") -> dict[str, Any]:
    flat = {}
    for key, value in d.items():
        dotted = f"{prefix}{key}"
        if isinstance(value, Mapping):
            flat.update(_flatten(value, dotted + "."))
        else:
            flat[dotted] = value
    return flat


def _nest(flat: Mapping[str, Any]) -> dict[str, Any]:
    nested: dict[str, Any] = {}
    for dotted, value in flat.items():
        node = nested
        *parents, leaf = dotted.split(".")
        for part in parents:
            child = node.get(part)
            if not isinstance(child, dict):
                child = node[part] = {}
            node = child
        node[leaf] = value
    return nested


def _section_defaults(section: str, values: Mapping[str, Any]) -> dict[str, Any]:
    if section == "pulse_method":
        cls = PULSE_METHODS.get(str(values.get("type", "stepping")).lower())
        if cls is None:
            raise ConfigError(
                f"Unknown pulse_method type '{values.get('type')}', "
                + f"expected one of {list(PULSE_METHODS)}"
            )
        return cls().to_dict()
    return getattr(AppConfig(), section).to_dict()


def _section_to_dict(section: str, raw: Mapping[str, str]) -> Any:
    values = {key: parse_value(text) for key, text in raw.items()}
    if section == "tcp_channel_mapping":
        try:
            return {int(k): int(v) for k, v in values.items()}
        except (TypeError, ValueError):
            raise ConfigError("tcp_channel_mapping entries must be '<index> = <channel>'")

    defaults = _section_defaults(section, values)
    flat_defaults = _flatten(defaults)
    for key, value in list(values.items()):
        top = key.split(".")[0]
        if top not in defaults:
            raise ConfigError(f"Unknown key '{key}' in section [{section}]")
        default = flat_defaults.get(key)
        # single item given for a sequence field
        if isinstance(default, (list, tuple)) and not isinstance(value, list):
            values[key] = [] if value is None else [value]
        elif isinstance(default, str) and value is not None:
            values[key] = raw[key].strip()
    if section == "pulse_method":
        # keep the discriminators and unset fields of the variant
        values = {**flat_defaults, **values}
    return _nest(values)


def _apply_env_overrides(
    sections: dict[str, dict[str, str]], env: Mapping[str, str]
) -> None:
    prefix = f"{ENV_PREFIX}__"
    for name, value in env.items():
        if not name.startswith(prefix):
            continue
        parts = name[len(prefix) :].lower().split("__")
        if len(parts) < 2 or parts[0] not in SECTIONS:
            logger.warning("Ignoring malformed config override {}", name)
            continue
        key = ".".join(parts[1:])
        sections.setdefault(parts[0], {})[key] = value
        logger.debug("Config override from environment: [{}] {} = {}", parts[0], key, value)


# ======================================================================================
# Public API
# ======================================================================================


def app_config_from_parser(
    parser: ConfigParser, env: Optional[Mapping[str, str]] = None
) -> AppConfig:
    """Build (and validate) an `AppConfig` from parsed INI content."""
    sections: dict[str, dict[str, str]] = {}
    for section in parser.sections():
        name = section.lower()
        if name not in SECTIONS:
            raise ConfigError(f"Unknown section [{section}], expected one of {SECTIONS}")
        sections[name] = dict(parser[section])
    _apply_env_overrides(sections, os.environ if env is None else env)

    data = {name: _section_to_dict(name, raw) for name, raw in sections.items()}
    try:
        config = AppConfig.from_dict(data)
    except (MissingField, InvalidFieldValue, ValueError, TypeError) as e:
        raise ConfigError(f"Invalid configuration: {e}") from e

    ok, msg = config.validate()
    if not ok:
        raise ConfigError(msg)
    return config


def load_app_config(
    path: Optional[str | Path] = None, env: Optional[Mapping[str, str]] = None
) -> AppConfig:
    """Load configuration from `path`, or search the default locations.

    Raises
    ------
    ConfigError
        If an explicit `path` does not exist, or any file found is invalid.
    """
    if path is None:
        found = find_config_file()
        if found is None:
            logger.info("No configuration file found, using defaults")
        path = found
    elif not Path(path).exists():
        raise ConfigError(f"Configuration file not found: {path}")

    parser = ConfigParser()
    if path is not None:
        try:
            parser.read(path)
        except ConfigParserError as e:
            raise ConfigError(f"Could not parse {path}: {e}") from e
        logger.info("Loaded configuration from {}", Path(path).resolve())
    return app_config_from_parser(parser, env)


def app_config_to_parser(config: AppConfig) -> ConfigParser:
    parser = ConfigParser()
    for section in SECTIONS:
        value = getattr(config, section)
        if section == "tcp_channel_mapping":
            parser[section] = {str(k): str(v) for k, v in value.items()}
            continue
        parser[section] = {
            key: format_value(v) for key, v in _flatten(value.to_dict()).items()
        }
    return parser


def write_default_config(path: str | Path, overwrite: bool = False) -> Path:
    """Write a configuration file holding the default values."""
    path = Path(path)
    if path.exists() and not overwrite:
        raise ConfigError(f"Refusing to overwrite existing file {path}")
    path.parent.mkdir(parents=True, exist_ok=True)
    config = AppConfig(tcp_channel_mapping={76: 18})
    with path.open("w") as f:
        f.write("# tipshaper configuration\n")
        f.write("# Environment overrides: TIPSHAPER__<SECTION>__<KEY>=value\n\n")
        app_config_to_parser(config).write(f)
    logger.info("Wrote default configuration to {}", path)
    return path


def validate_config_file(path: str | Path) -> tuple[bool, str]:
    """Validate configuration file.

    Returns
    -------
    tuple[bool, str]
        (is_valid, error_message)
    """
    try:
        load_app_config(path, env={})
    except ConfigError as e:
        return False, str(e)
    return True, ""
