"""Tests for deadline polling."""

from unittest.mock import MagicMock

import pytest

from tipshaper.types import NanonisTimeout
from tipshaper.util.poll import poll_until


def test_returns_when_condition_met():
    condition = MagicMock(side_effect=[False, False, True])
    poll_until(condition, timeout=5, interval=0.001)
    assert condition.call_count == 3


def test_timeout():
    with pytest.raises(NanonisTimeout, match="auto approach"):
        poll_until(lambda: False, timeout=0.05, interval=0.01, description="auto approach")


def test_condition_errors_propagate():
    def condition():
        raise RuntimeError("lost connection")

    with pytest.raises(RuntimeError, match="lost connection"):
        poll_until(condition, timeout=1)
