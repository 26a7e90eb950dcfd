import os
import socket

import pytest

from tipshaper.util import DEFAULT_CONTROL_PORT, DEFAULT_HOST_ADDR


def nanonis_address() -> tuple[str, int]:
    """Instrument under test, from TIPSHAPER_TEST_HOST / TIPSHAPER_TEST_PORT."""
    host = os.environ.get("TIPSHAPER_TEST_HOST", DEFAULT_HOST_ADDR)
    port = int(os.environ.get("TIPSHAPER_TEST_PORT", DEFAULT_CONTROL_PORT))
    return host, port


@pytest.fixture(scope="session")
def nanonis_available():
    """Skip the test unless a Nanonis control port accepts connections."""
    host, port = nanonis_address()
    try:
        with socket.create_connection((host, port), timeout=1.0):
            pass
    except OSError:
        pytest.skip(f"No Nanonis controller at {host}:{port}")
    return host, port
