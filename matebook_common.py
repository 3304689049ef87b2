#!/usr/bin/env python3

import os
import time
import logging
import subprocess
import threading
from typing import NamedTuple, Protocol, TypeVar

from messages import localize

logger = logging.getLogger("matebook_common")

T = TypeVar("T")

IOIO_BINARY = "ioio"
LOG_BINARY = "log"
ACPI_DEBUG_SERVICE = "org_rehabman_ACPIDebug"
LOG_PREDICATE = 'senderImagePath contains "ACPIDebug"'

# ACPIDebug debug selectors
DBG_THRESH_READ = "dbg4"
DBG_THRESH_WRITE = "dbg5"
DBG_FNLOCK_READ = "dbg6"
DBG_FNLOCK_WRITE = "dbg7"

THRESH_MARKER = "Reading (hexadecimal values):"
FNLOCK_MARKER = "Reading Fn-Lock state"

FNLOCK_ARG_OFF = "65536"    # 0x10000
FNLOCK_ARG_ON = "131072"    # 0x20000

LOG_ATTACH_DELAY = 0.2      # seconds for `log stream` to attach before triggering
LOG_FLUSH_DELAY = 0.5       # seconds for the log writer to flush after triggering
READER_JOIN_TIMEOUT = 1.0

# The driver takes a while to apply Fn-Lock changes due to an ACPI bug
CONFIRM_ATTEMPTS = 4
CONFIRM_DELAY = 0.9

INT32_MIN = -(1 << 31)
INT32_MAX = (1 << 31) - 1
BYTE_MAX = 0xff


class EndpointError(Exception):
    """Base class for failures talking to the firmware."""


class RunError(EndpointError):
    """A helper command started but failed, or could not be run at all."""


class LaunchError(RunError):
    """A helper command could not be started (usually missing from PATH)."""


class ParseError(EndpointError):
    """Captured log text did not contain the expected values."""


class ThresholdValue(NamedTuple):
    min: int
    max: int


class Getter(Protocol[T]):
    def get(self) -> T: ...


class Setter(Protocol[T]):
    def set(self, value: T) -> None: ...


# --- Log parsing ---

def get_hex_values(fragments: list, count: int) -> list:
    """Extract ``count`` integers from comma-separated ``...0xNN`` fragments.

    Fragments without an ``x`` carry no value and are skipped.
    """
    values = []
    for fragment in fragments:
        i = fragment.find("x")
        if i == -1:
            continue
        if len(fragment) < i + 2:
            raise ParseError("malformed hex token")
        logger.debug("Found hex value: %s", fragment)
        try:
            value = int(fragment[i + 1:].strip(), 16)
        except ValueError as e:
            raise ParseError("invalid hex digits") from e
        if not INT32_MIN <= value <= INT32_MAX:
            raise ParseError("invalid hex digits")
        values.append(value)
    if len(values) != count:
        raise ParseError("wrong value count")
    return values


def parse_log_values(text: str, marker: str, count: int) -> list:
    _, found, rest = text.partition(marker)
    if not found:
        raise ParseError("marker not found")
    return get_hex_values(rest.split(","), count)


def get_thresholds_from_log(text: str) -> ThresholdValue:
    # firmware reports max first
    max_pct, min_pct = parse_log_values(text, THRESH_MARKER, 2)
    return ThresholdValue(min_pct, max_pct)


def get_fnlock_from_log(text: str) -> bool:
    (state,) = parse_log_values(text, FNLOCK_MARKER, 1)
    return state != 0


# --- Write argument encoding ---

def threshold_to_hex_arg(min_pct: int, max_pct: int) -> str:
    """Encode thresholds as the decimal form of 0xMAXMIN0000.

    Returns "0" instead of raising when the values do not fit a byte each.
    """
    try:
        if not (0 <= min_pct <= BYTE_MAX and 0 <= max_pct <= BYTE_MAX):
            return "0"
        arg_hex = "%02x%02x0000" % (max_pct, min_pct)
        return str(int(arg_hex, 16))
    except (TypeError, ValueError):
        return "0"


# --- Command helpers ---

def ioio_command(selector: str, arg: str, ioio: str = IOIO_BINARY) -> list:
    return [ioio, "-s", ACPI_DEBUG_SERVICE, selector, arg]


def log_stream_command(log: str = LOG_BINARY) -> list:
    return [log, "stream", "--predicate", LOG_PREDICATE]


def run_command(cmd: list) -> None:
    """Run a helper command to completion, raising RunError on failure."""
    try:
        subprocess.run(cmd, check=True, capture_output=True, text=True)
    except OSError as e:
        logger.error(localize("CantRunIoio"))
        raise LaunchError(f"diagnostic tool unavailable: {cmd[0]}: {e}") from e
    except subprocess.CalledProcessError as e:
        logger.error(localize("CantRunIoio"))
        raise RunError(f"diagnostic tool unavailable: {cmd[0]} exited with code {e.returncode}: {(e.stderr or '').strip()}") from e


class LogCapture:
    """Streams the system log into memory for as long as the context is open.

    The log process is killed and reaped, and its pipe closed, on every exit path.
    """

    def __init__(self, cmd: list):
        self.cmd = cmd
        self._proc = None
        self._reader = None
        self._chunks = []

    def __enter__(self):
        try:
            self._proc = subprocess.Popen(
                self.cmd,
                stdout=subprocess.PIPE,
                stderr=subprocess.DEVNULL,
                text=True,
            )
        except OSError as e:
            logger.error(localize("CantRunLog"))
            raise LaunchError(f"{self.cmd[0]}: {e}") from e
        self._reader = threading.Thread(target=self._drain, daemon=True)
        self._reader.start()
        return self

    def _drain(self):
        for line in self._proc.stdout:
            self._chunks.append(line)

    def __exit__(self, exc_type, exc, tb):
        logger.debug("Killing the log output process...")
        try:
            self._proc.kill()
        except OSError:
            pass
        self._proc.wait()
        self._reader.join(READER_JOIN_TIMEOUT)
        self._proc.stdout.close()
        return False

    @property
    def text(self) -> str:
        return "".join(self._chunks)


def read_from_log(trigger_cmd: list, log_cmd: list = None) -> str:
    """Run ``trigger_cmd`` while capturing the system log, return what was logged."""
    capture = LogCapture(log_cmd or log_stream_command())
    with capture:
        time.sleep(LOG_ATTACH_DELAY)
        run_command(trigger_cmd)
        time.sleep(LOG_FLUSH_DELAY)
    result = capture.text
    logger.debug("Read from the log: %s", result)
    return result


# --- Getters and setters ---

class IoioThresholdGetter:
    """Reads battery thresholds by triggering ioio and scraping the system log."""

    def __init__(self, ioio=IOIO_BINARY, log=LOG_BINARY):
        self.ioio = ioio
        self.log = log

    def get(self) -> ThresholdValue:
        got = read_from_log(ioio_command(DBG_THRESH_READ, "0", self.ioio), log_stream_command(self.log))
        return get_thresholds_from_log(got)


class IoioThresholdSetter:
    def __init__(self, ioio=IOIO_BINARY):
        self.ioio = ioio

    def set(self, value: ThresholdValue) -> None:
        logger.debug("Using ioio to set battery thresholds to %d-%d", value.min, value.max)
        arg = threshold_to_hex_arg(value.min, value.max)
        run_command(ioio_command(DBG_THRESH_WRITE, arg, self.ioio))


class IoioFnLockGetter:
    """Reads Fn-Lock state by triggering ioio and scraping the system log."""

    def __init__(self, ioio=IOIO_BINARY, log=LOG_BINARY):
        self.ioio = ioio
        self.log = log

    def get(self) -> bool:
        got = read_from_log(ioio_command(DBG_FNLOCK_READ, "0", self.ioio), log_stream_command(self.log))
        return get_fnlock_from_log(got)


class IoioFnLockSetter:
    def __init__(self, ioio=IOIO_BINARY):
        self.ioio = ioio

    def set(self, value: bool) -> None:
        logger.debug("Using ioio to set Fn-Lock state to %s", value)
        arg = FNLOCK_ARG_ON if value else FNLOCK_ARG_OFF
        run_command(ioio_command(DBG_FNLOCK_WRITE, arg, self.ioio))


class ZeroThresholdGetter:
    """Always reports thresholds as 0-100 (protection off)."""

    def get(self) -> ThresholdValue:
        return ThresholdValue(0, 100)


class ErrSetter:
    """Setter for hardware that cannot be written to."""

    def set(self, value) -> None:
        raise NotImplementedError("not implemented")


# --- Endpoints ---

class SplitEndpoint:
    """Endpoint whose reading and writing use unrelated mechanisms."""

    def __init__(self, getter: Getter, setter: Setter):
        self.getter = getter
        self.setter = setter

    def __repr__(self):
        return f"{type(self).__name__}({type(self.getter).__name__}, {type(self.setter).__name__})"

    def get(self):
        return self.getter.get()

    def set(self, value) -> None:
        self.setter.set(value)

    def is_writable(self) -> bool:
        """Write back the current value; True if that round trip succeeds."""
        try:
            value = self.get()
        except EndpointError as e:
            logger.debug("%r not readable: %s", self, e)
            return False
        try:
            self.set(value)
        except (EndpointError, NotImplementedError) as e:
            logger.debug("%r not writable: %s", self, e)
            return False
        return True


class ThresholdEndpoint(SplitEndpoint):
    def write(self, min_pct: int, max_pct: int) -> None:
        self.set(ThresholdValue(min_pct, max_pct))


class FnLockEndpoint(SplitEndpoint):
    def toggle(self, wait: bool = False, attempts: int = CONFIRM_ATTEMPTS,
               delay: float = CONFIRM_DELAY) -> bool:
        """Invert Fn-Lock. Returns False if the state could not be read or written.

        With ``wait``, re-read up to ``attempts`` times until the new state shows
        up; running out of attempts is not treated as a failure.
        """
        try:
            state = self.get()
        except EndpointError as e:
            logger.error("%s: %s", localize("CantReadFnlock"), e)
            return False
        try:
            self.set(not state)
        except (EndpointError, NotImplementedError) as e:
            logger.error("%s: %s", localize("CantToggleFnlock"), e)
            return False
        if wait:
            logger.debug("Fn-Lock state pushed, will wait for it to be set")
            for attempt in range(1, attempts + 1):
                time.sleep(delay)
                logger.debug("Checking state, attempt %d", attempt)
                try:
                    new_state = self.get()
                except EndpointError as e:
                    logger.debug("Re-read failed: %s", e)
                    continue
                if new_state != state:
                    logger.debug("State set as expected")
                    break
                logger.debug("Not set yet")
            logger.debug("Alright, going on")
        return True


class EndpointRegistry:
    """Candidate endpoints for this machine, in order of preference."""

    def __init__(self, threshold_endpoints=(), fnlock_endpoints=()):
        self.threshold_endpoints = tuple(threshold_endpoints)
        self.fnlock_endpoints = tuple(fnlock_endpoints)


def init_endpoints(ioio: str = IOIO_BINARY, log: str = LOG_BINARY) -> EndpointRegistry:
    logger.debug("PATH=%s", os.environ.get("PATH", ""))
    return EndpointRegistry(
        threshold_endpoints=[
            ThresholdEndpoint(IoioThresholdGetter(ioio, log), IoioThresholdSetter(ioio)),
            ThresholdEndpoint(ZeroThresholdGetter(), ErrSetter()),
        ],
        fnlock_endpoints=[
            FnLockEndpoint(IoioFnLockGetter(ioio, log), IoioFnLockSetter(ioio)),
        ],
    )


def select_endpoint(endpoints):
    """Return the first endpoint that can be read and its current value."""
    for endpoint in endpoints:
        try:
            return endpoint, endpoint.get()
        except EndpointError as e:
            logger.info("Endpoint %r unavailable: %s", endpoint, e)
    return None, None
