"""Message catalog for MateBook Applet.

Messages are looked up by ID and translated through the ``matebook-applet``
gettext domain. Without an installed catalog the English defaults are used.
"""

import gettext
import os

DOMAIN = "matebook-applet"
LOCALE_DIR = os.path.join(os.path.dirname(os.path.abspath(__file__)), "locale")

MESSAGES = {
    "CantReadFnlock": "Failed to read Fn-Lock state",
    "CantToggleFnlock": "Failed to toggle Fn-Lock",
    "CantRunLog": 'Failed to run the "log" command. Is "log" binary not in PATH?',
    "CantRunIoio": 'Failed to run the "ioio" command. Is the binary not in PATH?',
    "CantReadThresholds": "Failed to read battery protection settings",
    "CantSetThresholds": "Failed to set battery protection to {min}-{max}%",
    "AppletExit": "Exiting the applet...",
    "BatteryOff": "Battery protection off",
    "BatteryThresholds": "Battery protection: {min}-{max}%",
    "BatteryUnknown": "Battery protection: unavailable",
    "BatteryMenu": "Battery Protection",
    "PresetOff": "Off",
    "PresetHome": "Home (40-70%)",
    "PresetOffice": "Office (70-90%)",
    "PresetTravel": "Travel (95-100%)",
    "Fnlock": "Fn-Lock",
    "FnlockUnknown": "Fn-Lock: unavailable",
    "Refresh": "Refresh Now",
    "Settings": "Settings",
    "WaitForConfirmation": "Wait for Confirmation",
    "VerboseLogging": "Verbose Logging",
    "OpenLog": "Open Log File",
    "Quit": "Quit",
}

_translation = gettext.translation(DOMAIN, localedir=LOCALE_DIR, fallback=True)


def localize(message_id, **kwargs):
    """Return the translated text for ``message_id``, formatted with ``kwargs``.

    Unknown IDs are returned unchanged so a missing entry never breaks the UI.
    """
    default = MESSAGES.get(message_id)
    if default is None:
        return message_id
    text = _translation.gettext(default)
    if kwargs:
        text = text.format(**kwargs)
    return text
