"""Shared test fixtures for MateBook Applet tests.

Mock setup (rumps, settings, make_app) lives in helpers.py to avoid
double-execution issues with pytest conftest loading.
"""

import sys
import os
import pytest
from unittest.mock import patch

# Ensure the project root and tests dir are on the path
sys.path.insert(0, os.path.join(os.path.dirname(__file__), ".."))
sys.path.insert(0, os.path.dirname(__file__))

# Trigger mock setup by importing helpers (runs once per process)
import helpers  # noqa: F401


@pytest.fixture
def no_sleep():
    """Patch time in the hardware layer so settle and poll delays return at once."""
    with patch("matebook_common.time") as mock_time:
        yield mock_time


@pytest.fixture
def thresh_log():
    return helpers.SAMPLE_THRESH_LOG


@pytest.fixture
def fnlock_log():
    return helpers.SAMPLE_FNLOCK_LOG
