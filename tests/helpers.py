"""Shared test helpers for MateBook Applet tests.

This module contains:
1. Fake getters/setters for endpoint and toggle tests
2. Centralized rumps mock (installed once, shared across all test files)
3. make_app factory for menu bar app tests
"""

import sys
import os
import tempfile
from unittest.mock import patch, MagicMock


# =====================================================================
# Endpoint test helpers
# =====================================================================

class FakeGetter:
    """Getter returning queued values; the last one repeats forever.

    Exception instances in the queue are raised instead of returned.
    """

    def __init__(self, *values):
        self.values = list(values)
        self.calls = 0

    def get(self):
        self.calls += 1
        value = self.values.pop(0) if len(self.values) > 1 else self.values[0]
        if isinstance(value, BaseException):
            raise value
        return value


class FakeSetter:
    def __init__(self, error=None):
        self.error = error
        self.written = []

    def set(self, value):
        if self.error is not None:
            raise self.error
        self.written.append(value)


SAMPLE_THRESH_LOG = (
    "2021-05-02 12:00:00.000 Df kernel[0:1a2b] (ACPIDebug) ACPIDebug: "
    "{ \"Reading (hexadecimal values):\", 0x50, 0x3c"
)
SAMPLE_FNLOCK_LOG = (
    "2021-05-02 12:00:00.000 Df kernel[0:1a2b] (ACPIDebug) ACPIDebug: "
    "{ \"Reading Fn-Lock state\", 0x1"
)


# =====================================================================
# Centralized rumps mock, installed once, shared by all test files
# =====================================================================

# Guard: only create mock once per process
if "rumps" not in sys.modules or not hasattr(sys.modules["rumps"], "_is_test_mock"):
    mock_rumps = MagicMock()
    mock_rumps._is_test_mock = True
    mock_rumps.App = type("MockApp", (), {
        "__init__": lambda self, *a, **kw: None,
        "run": lambda self: None,
    })
    mock_rumps.timer = lambda interval: lambda func: func
    mock_rumps.quit_application = MagicMock()
    mock_rumps.notification = MagicMock()

    class _MockMenuItem:
        """Mock rumps.MenuItem with dict-like menu support."""
        def __init__(self, title="", callback=None, **kwargs):
            self.title = title
            self.callback = callback
            self.state = 0
            self._items = {}

        def set_callback(self, callback):
            self.callback = callback

        def clear(self):
            self._items = {}

        def add(self, item):
            if isinstance(item, _MockMenuItem):
                self._items[item.title] = item

        def __setitem__(self, key, value):
            self._items[key] = value

        def __getitem__(self, key):
            return self._items[key]

        def keys(self):
            return self._items.keys()

    mock_rumps.MenuItem = _MockMenuItem
    sys.modules["rumps"] = mock_rumps
else:
    mock_rumps = sys.modules["rumps"]

# Redirect settings so tests don't read real user config
import settings as settings_mod
settings_mod.CONFIG_DIR = tempfile.mkdtemp(prefix="matebook-applet-test-")
settings_mod.CONFIG_FILE = os.path.join(settings_mod.CONFIG_DIR, "settings.json")

# Import the app AFTER rumps mock is installed
from matebook_common import EndpointRegistry, FnLockEndpoint, ThresholdEndpoint, ThresholdValue
from matebook_applet import MatebookApp


def make_registry(thresholds=ThresholdValue(40, 70), fnlock=False,
                  thresh_setter=None, fnlock_setter=None):
    """Registry with one fake threshold endpoint and one fake Fn-Lock endpoint."""
    return EndpointRegistry(
        threshold_endpoints=[ThresholdEndpoint(FakeGetter(thresholds), thresh_setter or FakeSetter())],
        fnlock_endpoints=[FnLockEndpoint(FakeGetter(fnlock), fnlock_setter or FakeSetter())],
    )


def make_app(registry=None):
    """Create a MatebookApp with fresh settings and no wake observer."""
    if os.path.exists(settings_mod.CONFIG_FILE):
        os.remove(settings_mod.CONFIG_FILE)
    if registry is None:
        registry = make_registry()
    with patch("matebook_applet._setup_wake_observer") as mock_wake:
        mock_wake.return_value = None
        app = MatebookApp(registry=registry)
    return app
