"""Device base class.

Instruments that tipshaper talks to (the Nanonis control port, its telemetry
stream) derive from `Device`, which provides:
1. Configuration validation against `required_config`
2. Connection handling (`open`, `close`, `is_connected`, context manager)
"""

from __future__ import annotations

from typing import Type

from loguru import logger


class Device:
    """Base class for all hardware connections in tipshaper.

    Subclasses declare the keyword configuration they need in `required_config`
    and implement `open()`, `close()` and `is_connected()`.

    Attributes
    ----------
    required_config : dict[str, Type]
        Required configuration parameters and their types

    Examples
    --------
    ```python
    class MyInstrument(Device):
        required_config = {"host": str, "port": int}

        def open(self) -> tuple[bool, str]:
            ...
            return True, "Connected successfully"
    ```
    """

    required_config: dict[str, Type] = {}  # Required configuration keys

    def __init__(self, **config_kwargs):
        for key, value in config_kwargs.items():
            setattr(self, key, value)
        for key, value in self.required_config.items():
            if not hasattr(self, key):
                logger.error(
                    f"Device {self.__class__.__name__} missing required config key: "
                    + f"{key}"
                )
                raise ValueError(
                    f"Device {self.__class__.__name__} missing required config "
                    + f"key: {key}"
                )
            if not isinstance(getattr(self, key), value):
                logger.error(
                    f"Device {self.__class__.__name__} config key {key} "
                    + f"has wrong type: {type(getattr(self, key))} (expected {value})"
                )
                raise ValueError(
                    f"Device {self.__class__.__name__} config key {key} has "
                    + f"wrong type: {type(getattr(self, key))} (expected {value})"
                )

    def open(self) -> tuple[bool, str]:
        raise NotImplementedError()

    def close(self):
        raise NotImplementedError()

    def is_connected(self) -> bool:
        raise NotImplementedError()

    def __enter__(self):
        if not self.is_connected():
            self.open()
        return self

    def __exit__(self, exc_type, exc, tb):
        self.close()
        return False
