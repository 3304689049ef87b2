#!/usr/bin/env python3
"""MateBook Applet: macOS menu bar control for MateBook battery protection and Fn-Lock."""

import sys
import os
import logging
import subprocess
import threading
import traceback
from logging.handlers import RotatingFileHandler

sys.path.insert(0, os.path.dirname(os.path.abspath(__file__)))

import rumps
from matebook_common import EndpointError, init_endpoints, select_endpoint
from messages import localize
from settings import Settings

# --- Constants ---
APP_NAME = "MateBook Applet"
WAKE_DELAY = 2.0             # seconds to wait after wake before re-reading firmware state

# (message id, min, max)
THRESHOLD_PRESETS = [
    ("PresetOff", 0, 100),
    ("PresetHome", 40, 70),
    ("PresetOffice", 70, 90),
    ("PresetTravel", 95, 100),
]

# --- Logging setup ---
LOG_PATH = os.path.expanduser("~/Library/Logs/matebook-applet.log")
os.makedirs(os.path.dirname(LOG_PATH), exist_ok=True)

logger = logging.getLogger("matebook_applet")
logger.setLevel(logging.INFO)

_handler_exists = any(
    isinstance(h, RotatingFileHandler) and getattr(h, "baseFilename", None) == LOG_PATH
    for h in logger.handlers
)
if not _handler_exists:
    _handler = RotatingFileHandler(LOG_PATH, maxBytes=5 * 1024 * 1024, backupCount=3)
    _handler.setFormatter(logging.Formatter("%(asctime)s [%(levelname)s] %(message)s"))
    logger.addHandler(_handler)
else:
    _handler = next(
        h for h in logger.handlers
        if isinstance(h, RotatingFileHandler) and getattr(h, "baseFilename", None) == LOG_PATH
    )

# Route matebook_common logs to the same file so ioio and log errors are visible
logging.getLogger("matebook_common").setLevel(logging.INFO)
if _handler not in logging.getLogger("matebook_common").handlers:
    logging.getLogger("matebook_common").addHandler(_handler)


def _set_verbose(verbose):
    level = logging.DEBUG if verbose else logging.INFO
    logger.setLevel(level)
    logging.getLogger("matebook_common").setLevel(level)


def _setup_wake_observer(callback):
    """Register for NSWorkspaceDidWakeNotification. Returns observer to prevent GC."""
    try:
        import objc
        from Foundation import NSObject
        from AppKit import NSWorkspace

        class WakeObserver(NSObject):
            def initWithCallback_(self, cb):
                self = objc.super(WakeObserver, self).init()
                if self is None:
                    return None
                self._callback = cb
                return self

            def handleWake_(self, notification):
                try:
                    self._callback()
                except Exception:
                    logger.error("Wake callback error: %s", traceback.format_exc())

        observer = WakeObserver.alloc().initWithCallback_(callback)
        center = NSWorkspace.sharedWorkspace().notificationCenter()
        center.addObserver_selector_name_object_(
            observer,
            "handleWake:",
            "NSWorkspaceDidWakeNotification",
            None,
        )
        logger.info("Wake observer registered")
        return observer
    except Exception:
        logger.warning("Could not register wake observer: %s", traceback.format_exc())
        return None


class MatebookApp(rumps.App):
    def __init__(self, registry=None):
        super().__init__("", quit_button=None)
        self.settings = Settings()
        _set_verbose(self.settings.get("verbose"))
        if registry is None:
            registry = init_endpoints(self.settings.get("ioio_binary"), self.settings.get("log_binary"))
        self.registry = registry

        # Hardware state
        self.thresh_endpoint = None
        self.thresholds = None
        self.thresh_writable = False
        self.fnlock_endpoint = None
        self.fnlock_state = None
        self.fnlock_writable = False

        # Menu items
        self.threshold_item = rumps.MenuItem(localize("BatteryUnknown"), callback=None)
        self.presets_menu = rumps.MenuItem(localize("BatteryMenu"))
        self.fnlock_item = rumps.MenuItem(localize("FnlockUnknown"), callback=None)
        self.refresh_item = rumps.MenuItem(localize("Refresh"), callback=self.refresh)
        self.open_log_item = rumps.MenuItem(localize("OpenLog"), callback=self._open_log_file)
        self.quit_item = rumps.MenuItem(localize("Quit"), callback=self.quit)

        self.settings_menu = rumps.MenuItem(localize("Settings"))
        self._build_settings_menu()
        self._build_presets_menu()

        self.menu = [
            self.threshold_item,
            self.presets_menu, None,
            self.fnlock_item, None,
            self.refresh_item, None,
            self.settings_menu,
            self.open_log_item, None,
            self.quit_item,
        ]
        self.title = "\U0001f50b --"

        self._wake_observer = None
        self._update_lock = threading.Lock()

        logger.info("Starting %s", APP_NAME)
        self.find_endpoints()
        self.render()

        self._wake_observer = _setup_wake_observer(self._on_wake)

    # --- Menus ---
    def _build_settings_menu(self):
        """Build the Settings submenu with current values."""
        if getattr(self.settings_menu, '_menu', None) is not None:
            self.settings_menu.clear()

        wait_item = rumps.MenuItem(localize("WaitForConfirmation"),
                                   callback=self._make_toggle_setting_callback("wait_for_confirmation"))
        wait_item.state = 1 if self.settings.get("wait_for_confirmation") else 0
        self.settings_menu.add(wait_item)

        verbose_item = rumps.MenuItem(localize("VerboseLogging"),
                                      callback=self._make_toggle_setting_callback("verbose"))
        verbose_item.state = 1 if self.settings.get("verbose") else 0
        self.settings_menu.add(verbose_item)

    def _make_toggle_setting_callback(self, key):
        def callback(_):
            value = not self.settings.get(key)
            self.settings.set(key, value)
            logger.info("Setting %s changed to %s", key, value)
            if key == "verbose":
                _set_verbose(value)
            self._build_settings_menu()
        return callback

    def _build_presets_menu(self):
        """Build the Battery Protection submenu; presets are disabled unless writable."""
        if getattr(self.presets_menu, '_menu', None) is not None:
            self.presets_menu.clear()
        for message_id, min_pct, max_pct in THRESHOLD_PRESETS:
            callback = self._make_preset_callback(min_pct, max_pct) if self.thresh_writable else None
            item = rumps.MenuItem(localize(message_id), callback=callback)
            item.state = 1 if self.thresholds == (min_pct, max_pct) else 0
            self.presets_menu.add(item)

    def _make_preset_callback(self, min_pct, max_pct):
        def callback(_):
            logger.info("Battery protection preset selected: %d-%d%%", min_pct, max_pct)
            self._schedule(lambda: self.set_thresholds(min_pct, max_pct))
        return callback

    def _open_log_file(self, _=None):
        """Open the app log file in Finder."""
        try:
            subprocess.run(
                ["open", "-R", LOG_PATH],
                check=False,
                capture_output=True,
                text=True,
                timeout=5,
            )
            logger.info("Opened log file in Finder: %s", LOG_PATH)
        except Exception:
            logger.error("Failed to reveal log file: %s", traceback.format_exc())

    def _notify(self, message):
        try:
            rumps.notification(title=APP_NAME, subtitle="", message=message)
        except Exception:
            logger.debug("Notification failed: %s", message)

    # --- Background work ---
    def _schedule(self, task):
        """Run a hardware task on a background thread, one at a time.

        Returns False if another task is still running.
        """
        if not self._update_lock.acquire(blocking=False):
            logger.debug("Operation already in progress, skipping")
            return False

        def worker():
            try:
                task()
            except Exception:
                logger.error("Background task error: %s", traceback.format_exc())
            finally:
                self._update_lock.release()

        threading.Thread(target=worker, daemon=True).start()
        return True

    # --- Wake handler ---
    def _on_wake(self):
        logger.info("System wake detected, scheduling refresh in %.1fs", WAKE_DELAY)
        t = threading.Timer(WAKE_DELAY, self._wake_refresh)
        t.daemon = True
        t.start()

    def _wake_refresh(self):
        if not self._update_lock.acquire(blocking=False):
            logger.debug("Operation in progress, skipping wake refresh")
            return
        try:
            self.update_state()
        except Exception:
            logger.error("Wake refresh error: %s", traceback.format_exc())
        finally:
            self._update_lock.release()

    # --- Core logic ---
    def find_endpoints(self):
        """Pick the first readable threshold and Fn-Lock endpoints and probe writability."""
        self._find_thresh_endpoint()
        self._find_fnlock_endpoint()

    def _find_thresh_endpoint(self):
        self.thresh_endpoint, self.thresholds = select_endpoint(self.registry.threshold_endpoints)
        self.thresh_writable = self.thresh_endpoint is not None and self.thresh_endpoint.is_writable()
        if self.thresh_endpoint is None:
            logger.error(localize("CantReadThresholds"))
        else:
            logger.info("Battery thresholds via %r (writable: %s)", self.thresh_endpoint, self.thresh_writable)

    def _find_fnlock_endpoint(self):
        self.fnlock_endpoint, self.fnlock_state = select_endpoint(self.registry.fnlock_endpoints)
        self.fnlock_writable = self.fnlock_endpoint is not None and self.fnlock_endpoint.is_writable()
        if self.fnlock_endpoint is None:
            logger.error(localize("CantReadFnlock"))
        else:
            logger.info("Fn-Lock via %r (writable: %s)", self.fnlock_endpoint, self.fnlock_writable)

    def update_state(self):
        """Re-read thresholds and Fn-Lock from the selected endpoints and redraw."""
        if self.thresh_endpoint is not None:
            try:
                self.thresholds = self.thresh_endpoint.get()
                logger.info("Battery thresholds: %d-%d%%", self.thresholds.min, self.thresholds.max)
            except EndpointError as e:
                logger.error("%s: %s", localize("CantReadThresholds"), e)
                self.thresholds = None
        if self.fnlock_endpoint is not None:
            try:
                self.fnlock_state = self.fnlock_endpoint.get()
                logger.info("Fn-Lock: %s", "on" if self.fnlock_state else "off")
            except EndpointError as e:
                logger.error("%s: %s", localize("CantReadFnlock"), e)
                self.fnlock_state = None
        self.render()

    def render(self):
        """Update the title and menu items from the last read state."""
        if self.thresholds is None:
            self.title = "\U0001f50b --"
            self.threshold_item.title = localize("BatteryUnknown")
        elif self.thresholds == (0, 100):
            self.title = "\U0001f50b off"
            self.threshold_item.title = localize("BatteryOff")
        else:
            self.title = f"\U0001f50b {self.thresholds.min}-{self.thresholds.max}%"
            self.threshold_item.title = localize("BatteryThresholds",
                                                 min=self.thresholds.min, max=self.thresholds.max)
        self._build_presets_menu()

        if self.fnlock_state is None:
            self.fnlock_item.title = localize("FnlockUnknown")
            self.fnlock_item.state = 0
        else:
            self.fnlock_item.title = localize("Fnlock")
            self.fnlock_item.state = 1 if self.fnlock_state else 0
        self.fnlock_item.set_callback(self.toggle_fnlock if self.fnlock_writable else None)

    def set_thresholds(self, min_pct, max_pct):
        try:
            self.thresh_endpoint.write(min_pct, max_pct)
        except (EndpointError, NotImplementedError) as e:
            message = localize("CantSetThresholds", min=min_pct, max=max_pct)
            logger.error("%s: %s", message, e)
            self._notify(message)
        self.update_state()

    def _toggle_fnlock(self):
        if not self.fnlock_endpoint.toggle(wait=self.settings.get("wait_for_confirmation")):
            self._notify(localize("CantToggleFnlock"))
        self.update_state()

    def toggle_fnlock(self, _=None):
        logger.info("Fn-Lock toggle requested")
        self._schedule(self._toggle_fnlock)

    def refresh(self, _=None):
        """Manual refresh triggered from menu."""
        logger.info("Manual refresh triggered")
        self._schedule(self._refresh)

    def _refresh(self):
        # Selection writes back to probe writability; only rescan kinds with no endpoint yet
        if self.thresh_endpoint is None:
            self._find_thresh_endpoint()
        if self.fnlock_endpoint is None:
            self._find_fnlock_endpoint()
        self.update_state()

    def quit(self, _=None):
        logger.info(localize("AppletExit"))
        rumps.quit_application()


def main():
    MatebookApp().run()


if __name__ == "__main__":
    main()
