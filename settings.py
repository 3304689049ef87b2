"""Persistent settings for MateBook Applet.

Stored as JSON in ~/.config/matebook-applet/settings.json. Values read from
disk go through the same checks as values set from the menu; a bad value on
disk falls back to its default instead of failing startup.
"""

import json
import logging
import os
import tempfile

logger = logging.getLogger("matebook_applet")

CONFIG_DIR = os.path.expanduser("~/.config/matebook-applet")
CONFIG_FILE = os.path.join(CONFIG_DIR, "settings.json")

# key: (default, type)
SCHEMA = {
    "wait_for_confirmation": (True, bool),  # poll after a Fn-Lock write until the firmware reports it
    "verbose": (False, bool),
    "ioio_binary": ("ioio", str),
    "log_binary": ("log", str),
}

DEFAULTS = {key: default for key, (default, _) in SCHEMA.items()}


def validate(key, value):
    """Raise ValueError or TypeError if ``value`` is not acceptable for ``key``."""
    if key not in SCHEMA:
        raise ValueError(f"Unknown setting key: {key!r}")
    expected = SCHEMA[key][1]
    # bool is a subclass of int, so reject the reverse explicitly
    if expected is bool and not isinstance(value, bool):
        raise TypeError(f"Setting '{key}' requires bool, got {type(value).__name__}")
    if not isinstance(value, expected):
        raise TypeError(f"Setting '{key}' requires {expected.__name__}, got {type(value).__name__}")
    if key.endswith("_binary") and not value.strip():
        raise ValueError(f"Setting '{key}' must not be empty")


def _read_config():
    with open(CONFIG_FILE, "r") as f:
        return json.load(f)


def _write_config(data):
    os.makedirs(CONFIG_DIR, exist_ok=True)
    fd, tmp_path = tempfile.mkstemp(dir=CONFIG_DIR, suffix=".tmp")
    try:
        with os.fdopen(fd, "w") as f:
            json.dump(data, f, indent=2)
        os.replace(tmp_path, CONFIG_FILE)
    except Exception:
        try:
            os.unlink(tmp_path)
        except OSError:
            pass
        raise


class Settings:
    def __init__(self):
        self._data = dict(DEFAULTS)
        self.load()

    def load(self):
        """Merge saved values over the defaults, skipping any that fail validation."""
        if not os.path.exists(CONFIG_FILE):
            return
        try:
            saved = _read_config()
        except (json.JSONDecodeError, ValueError) as e:
            logger.warning("Corrupt settings file (%s), using defaults", e)
            return
        except OSError as e:
            logger.error("Error loading settings: %s", e)
            return
        if not isinstance(saved, dict):
            logger.warning("Settings file has invalid structure, using defaults")
            return
        for key in SCHEMA.keys() & saved.keys():
            try:
                validate(key, saved[key])
            except (TypeError, ValueError) as e:
                logger.warning("%s, using default", e)
                continue
            self._data[key] = saved[key]
        logger.info("Settings loaded from %s", CONFIG_FILE)

    def save(self):
        try:
            _write_config(self._data)
            logger.debug("Settings saved to %s", CONFIG_FILE)
        except Exception as e:
            logger.error("Error saving settings: %s", e)

    def get(self, key):
        return self._data.get(key, DEFAULTS.get(key))

    def set(self, key, value):
        validate(key, value)
        self._data[key] = value
        self.save()
